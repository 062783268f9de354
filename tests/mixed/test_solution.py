"""Tests for GLMMSolution: prediction, simulation, VarCorr and summary."""

import numpy as np
import pytest

from pyglmm.core.exceptions import ModelSpecError, ValidationError
from pyglmm.mixed import GLMMControl, ModelSpec, SimulationSequence, glmm
from pyglmm.mixed._predict import predict, resolve_predict_type


@pytest.fixture
def pois_fit(poisson_groups):
    d = poisson_groups
    return glmm(d['y'], d['X'], groups={'group': d['group']}, family='poisson')


@pytest.fixture
def zip_fit(zip_sites):
    d = zip_sites
    return glmm(d['y'], d['X'], groups={'site': d['site']},
                zi_X=np.ones((len(d['y']), 1)), family='poisson')


@pytest.fixture
def lmm_fit(gaussian_slopes):
    d = gaussian_slopes
    return glmm(d['y'], d['X'], groups={'subject': d['subject']},
                random_effects={'subject': ['1', 'time']},
                random_data={'time': d['time']},
                coef_names=['(Intercept)', 'time'])


class TestPredictTypes:

    @pytest.mark.parametrize('alias,canonical', [
        ('linear', 'link'),
        ('zero_inflation_probability', 'zprob'),
        ('zero-inflation-probability', 'zprob'),
        ('disp', 'disp'),
    ])
    def test_aliases(self, alias, canonical):
        assert resolve_predict_type(alias) == canonical

    def test_unknown_type(self, pois_fit):
        with pytest.raises(ValueError, match="Unknown prediction type"):
            pois_fit.predict(type='mean')

    def test_link_and_response(self, pois_fit):
        eta = pois_fit.predict()
        np.testing.assert_allclose(pois_fit.predict(type='linear'), eta)
        np.testing.assert_allclose(pois_fit.linear_predictor, eta)
        np.testing.assert_allclose(pois_fit.predict(type='response'), np.exp(eta))
        np.testing.assert_allclose(pois_fit.fitted_values, np.exp(eta))

    def test_zi_types_need_zi_model(self, pois_fit):
        with pytest.raises(ModelSpecError) as info:
            pois_fit.predict(type='zprob')
        assert info.value.component == 'zi'

    def test_disp_types_need_dispersion(self, pois_fit):
        with pytest.raises(ModelSpecError, match="no dispersion"):
            pois_fit.predict(type='disp')

    def test_zero_inflated_mean(self, zip_fit):
        p = zip_fit.predict(type='zero_inflation_probability')
        np.testing.assert_allclose(p, zip_fit.predict(type='zprob'))
        mu = zip_fit.predict(type='conditional')
        np.testing.assert_allclose(zip_fit.predict(type='response'), (1 - p) * mu, rtol=1e-12)
        np.testing.assert_allclose(p, 1 / (1 + np.exp(-zip_fit.predict(type='zlink'))))


class TestPredictNewData:

    def test_unseen_level_gets_population_prediction(self, pois_fit):
        beta = pois_fit.coefficients
        b0 = pois_fit.ranef['cond']['group'][0, 0]
        X_new = np.array([[1.0, 0.5], [1.0, 0.5]])
        eta = pois_fit.predict({'X': X_new, 'groups': {'group': np.array([0, 99])}})
        np.testing.assert_allclose(eta, X_new @ beta + np.array([b0, 0.0]))

    def test_exclude_random(self, pois_fit, poisson_groups):
        eta = pois_fit.predict(include_random=False)
        np.testing.assert_allclose(eta, poisson_groups['X'] @ pois_fit.coefficients)

    def test_intercept_only_design_is_filled(self, rng):
        y = rng.poisson(3.0, size=50).astype(float)
        fit = glmm(y, family='poisson', zi_X=np.ones((50, 1)))
        out = fit.predict({'offset': np.zeros(4)}, type='zprob')
        assert out.shape == (4,)

    def test_missing_design(self, pois_fit):
        with pytest.raises(ValidationError, match="'X' is required"):
            pois_fit.predict({'groups': {'group': np.array([0, 1])}})

    def test_unknown_key(self, pois_fit):
        with pytest.raises(ValidationError, match="unknown keys"):
            pois_fit.predict({'X': np.ones((2, 2)), 'weights': np.ones(2)})

    def test_wrong_width(self, pois_fit):
        with pytest.raises(ValidationError, match="columns"):
            pois_fit.predict({'X': np.ones((2, 3)), 'groups': {'group': np.array([0, 1])}})


class TestPredictStandardErrors:

    def test_link_se_is_delta_method(self, pois_fit):
        fit, se = pois_fit.predict(type='link', se_fit=True)
        X = pois_fit.spec.X
        V = pois_fit.vcov[:2, :2]
        np.testing.assert_allclose(se, np.sqrt(np.einsum('ij,jk,ik->i', X, V, X)), rtol=1e-8)
        np.testing.assert_allclose(fit, pois_fit.predict(type='link'))

    def test_response_se_chain_rule(self, pois_fit):
        eta, se_eta = pois_fit.predict(type='link', se_fit=True)
        mu, se_mu = pois_fit.predict(type='response', se_fit=True)
        np.testing.assert_allclose(se_mu, np.exp(eta) * se_eta, rtol=1e-8)

    def test_se_nan_without_hessian(self, poisson_groups):
        d = poisson_groups
        fit = glmm(d['y'], d['X'], family='poisson', control=GLMMControl(compute_se=False))
        _, se = fit.predict(se_fit=True)
        assert np.all(np.isnan(se))


class TestSimulate:

    @pytest.fixture
    def zip_spec(self, rng):
        n = 2000
        return ModelSpec.build(rng.poisson(5.0, size=n).astype(float),
                               zi_X=np.ones((n, 1)), family='poisson')

    def test_zero_fraction_matches_zprob(self, zip_spec):
        """With large μ nearly all zeros are structural."""
        par = np.array([4.0, np.log(0.25 / 0.75)])
        sims = SimulationSequence(zip_spec, par, seed=7, n_draws=5)
        zprob = predict(zip_spec, par, np.zeros(0), np.full((2, 2), np.nan), type='zprob')
        frac = np.mean([np.mean(y == 0) for y in sims])
        assert frac == pytest.approx(float(np.mean(zprob)), abs=0.02)

    def test_zero_fraction_by_treatment(self, zip_trt_fit, zip_sites):
        """Per treatment, zeros occur at rate p + (1 − p)·E_u[exp(−μ)].

        Site effects are redrawn for every dataset, so the count-zero
        probability is averaged over u ~ N(0, σ²) by Gauss-Hermite
        quadrature.
        """
        d = zip_sites
        zprob = zip_trt_fit.predict(type='zprob')
        eta = zip_trt_fit.predict(type='link', include_random=False)
        sigma = zip_trt_fit.var_components[0].std_dev
        nodes, weights = np.polynomial.hermite_e.hermegauss(40)
        weights = weights / weights.sum()
        count_zero = np.exp(-np.exp(eta[:, None] + sigma * nodes[None, :])) @ weights
        expected = zprob + (1.0 - zprob) * count_zero

        draws = zip_trt_fit.simulate(seed=2024, n_draws=200).draw_all()
        for level in (0.0, 1.0):
            rows = d['trt'] == level
            assert np.mean(draws[:, rows] == 0) == pytest.approx(
                np.mean(expected[rows]), abs=0.02,
            )

    def test_restartable(self, zip_fit):
        sims = zip_fit.simulate(seed=11, n_draws=3)
        first = list(sims)
        second = list(sims)
        assert len(sims) == 3
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(sims[1], first[1])
        np.testing.assert_array_equal(sims[-1], first[2])
        np.testing.assert_array_equal(sims.draw_all(n_jobs=2), np.vstack(first))

    def test_unseeded_sequence_is_fixed_at_creation(self, zip_fit):
        sims = zip_fit.simulate(n_draws=2)
        np.testing.assert_array_equal(sims[0], next(iter(sims)))

    def test_draws_differ(self, zip_fit):
        a, b = zip_fit.simulate(seed=3, n_draws=2)
        assert a.shape == (zip_fit.params.n_obs,)
        assert not np.array_equal(a, b)

    def test_index_out_of_range(self, zip_fit):
        with pytest.raises(IndexError):
            zip_fit.simulate(seed=1, n_draws=2)[2]

    def test_invalid_n_draws(self, zip_fit):
        with pytest.raises(ValueError):
            zip_fit.simulate(n_draws=0)


class TestVarCorr:

    def test_covariance_and_correlation(self, lmm_fit):
        vc = lmm_fit.var_corr()
        term = vc.cond['subject']
        assert term.names == ('(Intercept)', 'time')
        assert term.cov.shape == (2, 2)
        np.testing.assert_allclose(np.sqrt(np.diag(term.cov)), term.std_dev)
        np.testing.assert_allclose(np.diag(term.corr), 1.0)
        np.testing.assert_allclose(vc['cond']['subject'], term.cov)
        assert vc.zi == {}
        assert vc.residual_sd == pytest.approx(1.0, abs=0.2)

    def test_format_std_dev(self, lmm_fit):
        lines = lmm_fit.var_corr().format().splitlines()
        assert lines[0] == "Conditional model:"
        assert lines[1].split() == ['Groups', 'Name', 'Std.Dev.', 'Corr']
        assert lines[2].split()[:2] == ['subject', '(Intercept)']
        assert lines[3].split()[0] == 'time'
        assert len(lines[3].split()) == 3
        assert lines[4].split()[0] == 'Residual'

    def test_format_variance_digits(self, lmm_fit):
        vc = lmm_fit.var_corr()
        text = vc.format(('Variance', 'Std.Dev.'), digits=3)
        header = text.splitlines()[1].split()
        assert header == ['Groups', 'Name', 'Variance', 'Std.Dev.', 'Corr']
        sd = vc.cond['subject'].std_dev[0]
        assert f"{sd:.3g}" in text
        assert f"{sd ** 2:.3g}" in text

    def test_format_rejects_unknown_component(self, lmm_fit):
        with pytest.raises(ValueError):
            lmm_fit.var_corr().format('SD')

    def test_poisson_has_no_residual(self, pois_fit):
        vc = pois_fit.var_corr()
        assert vc.residual_sd is None
        assert 'Residual' not in str(vc)


class TestReporting:

    def test_summary_sections(self, zip_fit):
        text = zip_fit.summary()
        assert "Family: poisson  ( log )" in text
        assert "Zero inflation:  ( logit )" in text
        assert "Random effects:" in text
        assert "Conditional model:" in text
        assert "Zero-inflation model:" in text
        assert "Number of obs: 460" in text
        assert "Signif. codes" in text

    def test_summary_dispersion_line(self, lmm_fit):
        assert "Dispersion estimate for gaussian family (sigma^2)" in lmm_fit.summary()

    def test_repr(self, zip_fit):
        text = repr(zip_fit)
        assert text.startswith("GLMMSolution(poisson(log)")
        assert "zi=yes" in text

    def test_residuals(self, pois_fit, poisson_groups):
        y = poisson_groups['y']
        mu = pois_fit.fitted_values
        np.testing.assert_allclose(pois_fit.residuals(), y - mu)
        np.testing.assert_allclose(pois_fit.residuals('pearson'), (y - mu) / np.sqrt(mu))
        with pytest.raises(ValueError):
            pois_fit.residuals('deviance')

    def test_df_residual(self, pois_fit):
        assert pois_fit.df_residual == pois_fit.params.n_obs - pois_fit.n_params
