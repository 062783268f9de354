"""Tests for ModelSpec validation, random-effect terms and parameter layout."""

import numpy as np
import pytest

from pyglmm.core.exceptions import DimensionError, ModelSpecError, ValidationError
from pyglmm.mixed import ModelSpec
from pyglmm.mixed._random_effects import parse_random_effects, rebuild_z_block


class TestRandomEffects:

    def test_intercept_z_block(self):
        groups = {'g': np.array(['b', 'a', 'b', 'c'])}
        (term,) = parse_random_effects(groups, None, None, None, 4)
        assert term.levels.tolist() == ['a', 'b', 'c']
        expected = np.array([
            [0, 1, 0],
            [1, 0, 0],
            [0, 1, 0],
            [0, 0, 1],
        ], dtype=float)
        np.testing.assert_array_equal(term.Z_block, expected)
        assert term.term_labels == ('(Intercept)',)

    def test_slope_z_block_is_term_major(self):
        groups = {'g': np.array([0, 0, 1, 1])}
        x = np.array([1.0, 2.0, 3.0, 4.0])
        (term,) = parse_random_effects(groups, {'g': ['1', 'x']}, {'x': x}, None, 4)
        assert term.Z_block.shape == (4, 4)
        np.testing.assert_array_equal(term.Z_block[:, 2:], [
            [1, 0], [2, 0], [0, 3], [0, 4],
        ])
        assert term.theta_names() == ['log_sd((Intercept))', 'log_sd(x)', 'chol(x,(Intercept))']

    def test_only_listed_groups(self):
        groups = {'a': np.zeros(4), 'b': np.arange(4)}
        terms = parse_random_effects(groups, {'b': ['1']}, None, None, 4)
        assert [t.group_name for t in terms] == ['b']

    def test_unknown_group(self):
        with pytest.raises(ModelSpecError, match="not found in groups"):
            parse_random_effects({'a': np.zeros(4)}, {'b': ['1']}, None, None, 4)

    def test_missing_slope_data(self):
        with pytest.raises(ModelSpecError, match="random_data"):
            parse_random_effects({'a': np.arange(4)}, {'a': ['1', 'x']}, None, None, 4)

    def test_unknown_cov_struct(self):
        with pytest.raises(ModelSpecError, match="Unknown covariance structure"):
            parse_random_effects({'a': np.arange(4)}, None, None, {'a': 'toep'}, 4)

    def test_zi_component_has_no_default_terms(self):
        assert parse_random_effects(
            {'a': np.arange(4)}, None, None, None, 4,
            component='zi', default_intercepts=False,
        ) == []

    def test_unseen_levels_get_zero_rows(self):
        (term,) = parse_random_effects({'g': np.array([0, 1, 0, 1])}, None, None, None, 4)
        Z = rebuild_z_block(term, {'g': np.array([1, 7])}, None, 2)
        np.testing.assert_array_equal(Z, [[0, 1], [0, 0]])


class TestModelSpecBuild:

    def test_defaults(self, poisson_groups):
        d = poisson_groups
        spec = ModelSpec.build(d['y'], d['X'], groups={'group': d['group']},
                               family='poisson')
        assert spec.n == len(d['y'])
        assert spec.p == 2
        assert not spec.has_zi
        assert spec.X_disp.shape == (spec.n, 0)
        assert spec.q == d['n_groups']
        assert spec.coef_names['beta'] == ('(Intercept)', 'X1')

    def test_intercept_only(self, poisson_groups):
        spec = ModelSpec.build(poisson_groups['y'], family='poisson')
        np.testing.assert_array_equal(spec.X, np.ones((spec.n, 1)))
        assert spec.q == 0

    def test_layout_order_and_names(self, zip_sites):
        d = zip_sites
        spec = ModelSpec.build(
            d['y'], d['X'], groups={'site': d['site']},
            zi_X=np.ones((len(d['y']), 1)),
            zi_random_effects={'site': ['1']},
            family='nbinom2',
            coef_names=['(Intercept)', 'trt'],
        )
        assert spec.layout.names == (
            'beta.(Intercept)', 'beta.trt',
            'betazi.(Intercept)',
            'betadisp.(Intercept)',
            'theta.site.log_sd((Intercept))',
            'thetazi.site.log_sd((Intercept))',
        )
        cond, zi = spec.b_slices
        assert cond[0] == slice(0, d['n_sites'])
        assert zi[0] == slice(d['n_sites'], 2 * d['n_sites'])
        assert spec.layout.index('betazi.(Intercept)') == 2

    def test_tweedie_has_shape_parameter(self, rng):
        y = rng.gamma(2.0, 1.0, size=30) * (rng.random(30) > 0.3)
        spec = ModelSpec.build(y, family='tweedie')
        assert spec.layout.names[-1] == 'psi.0'

    def test_hurdle_flag(self, hurdle_counts):
        d = hurdle_counts
        spec = ModelSpec.build(d['y'], d['X'], zi_X=np.ones((len(d['y']), 1)),
                               family='truncated_poisson')
        assert spec.is_hurdle

    def test_truncated_without_hurdle_rejects_zeros(self, hurdle_counts):
        d = hurdle_counts
        with pytest.raises(ModelSpecError, match="strictly positive"):
            ModelSpec.build(d['y'], d['X'], family='truncated_poisson')

    def test_rank_deficient_zi(self, zip_sites):
        d = zip_sites
        zi_X = np.column_stack([np.ones(len(d['y'])), np.ones(len(d['y']))])
        with pytest.raises(ModelSpecError) as info:
            ModelSpec.build(d['y'], d['X'], zi_X=zi_X, family='poisson')
        assert info.value.component == 'zi'

    def test_zero_inflated_gaussian_rejected(self, rng):
        y = rng.normal(size=20)
        with pytest.raises(ModelSpecError, match="no point mass at zero"):
            ModelSpec.build(y, zi_X=np.ones((20, 1)))

    def test_disp_for_poisson_rejected(self, poisson_groups):
        with pytest.raises(ModelSpecError, match="no dispersion") as info:
            ModelSpec.build(poisson_groups['y'], family='poisson',
                            disp_X=np.ones((len(poisson_groups['y']), 1)))
        assert info.value.component == 'disp'

    def test_trials_only_for_binomial(self, poisson_groups):
        y = poisson_groups['y']
        with pytest.raises(ModelSpecError, match="trials"):
            ModelSpec.build(y, family='poisson', trials=np.full(len(y), 20.0))

    def test_negative_weights(self, poisson_groups):
        y = poisson_groups['y']
        w = np.ones(len(y))
        w[0] = -1.0
        with pytest.raises(ValidationError, match="non-negative"):
            ModelSpec.build(y, family='poisson', weights=w)

    def test_zi_random_effects_need_zi_design(self, zip_sites):
        d = zip_sites
        with pytest.raises(ModelSpecError, match="zi_X"):
            ModelSpec.build(d['y'], groups={'site': d['site']},
                            zi_random_effects={'site': ['1']}, family='poisson')

    def test_inconsistent_offset(self, poisson_groups):
        with pytest.raises(DimensionError):
            ModelSpec.build(poisson_groups['y'], family='poisson', offset=np.zeros(3))

    def test_non_finite_response(self):
        with pytest.raises(ValidationError, match="non-finite"):
            ModelSpec.build(np.array([1.0, np.nan, 2.0]), family='poisson')

    def test_unknown_family_is_spec_error(self, poisson_groups):
        with pytest.raises(ModelSpecError, match="Unknown family"):
            ModelSpec.build(poisson_groups['y'], family='zipoisson')

    def test_coef_names_length(self, poisson_groups):
        d = poisson_groups
        with pytest.raises(ValidationError, match="expected 2 names"):
            ModelSpec.build(d['y'], d['X'], family='poisson', coef_names=['a'])

    def test_build_args_recorded(self, poisson_groups):
        d = poisson_groups
        spec = ModelSpec.build(d['y'], d['X'], family='poisson')
        assert spec.build_args['family'] == 'poisson'
        assert spec.build_args['X'] is d['X']
