"""Tests for prior parsing, resolution and penalties."""

import math

import numpy as np
import pytest
import torch
from scipy import stats

from pyglmm.core.exceptions import ModelSpecError
from pyglmm.mixed import ModelSpec, Prior
from pyglmm.mixed._priors import log_density, parse_prior


class TestParsePrior:

    def test_normal(self):
        assert parse_prior("normal(0, 3)") == ('normal', (0.0, 3.0))

    def test_whitespace_and_case(self):
        assert parse_prior("  Cauchy( 0 ,2.5 ) ") == ('cauchy', (0.0, 2.5))

    def test_scientific_notation(self):
        assert parse_prior("gamma(1e8, 2.5)") == ('gamma', (1e8, 2.5))

    @pytest.mark.parametrize('text,match', [
        ("normal 0 3", "Cannot parse"),
        ("lognormal(0, 1)", "Unknown prior distribution"),
        ("normal(0)", "takes 2 parameters"),
        ("t(0, 1)", "takes 3 parameters"),
        ("normal(0, -1)", "must be positive"),
        ("normal(a, 1)", "Non-numeric"),
    ])
    def test_invalid(self, text, match):
        with pytest.raises(ModelSpecError, match=match) as info:
            parse_prior(text)
        assert info.value.component == 'priors'


class TestLogDensity:

    x = torch.tensor([-1.3, 0.0, 2.2], dtype=torch.float64)

    def test_normal(self):
        got = log_density('normal', (0.5, 2.0), self.x).numpy()
        np.testing.assert_allclose(got, stats.norm.logpdf(self.x.numpy(), 0.5, 2.0))

    def test_t(self):
        got = log_density('t', (0.0, 1.5, 4.0), self.x).numpy()
        np.testing.assert_allclose(got, stats.t.logpdf(self.x.numpy(), 4.0, 0.0, 1.5))

    def test_cauchy(self):
        got = log_density('cauchy', (1.0, 2.0), self.x).numpy()
        np.testing.assert_allclose(got, stats.cauchy.logpdf(self.x.numpy(), 1.0, 2.0))

    def test_gamma(self):
        x = torch.tensor([0.5, 1.0, 3.0], dtype=torch.float64)
        got = log_density('gamma', (2.0, 1.5), x).numpy()
        np.testing.assert_allclose(got, stats.gamma.logpdf(x.numpy(), 2.0, scale=1.5))

    @pytest.mark.parametrize('dist,params,expected', [
        ('normal', (0.1, 0.05), stats.norm.logpdf(0.13, 0.1, 0.05)),
        ('t', (0.1, 0.05, 3.0), stats.t.logpdf(0.13, 3.0, 0.1, 0.05)),
        ('cauchy', (0.1, 0.05), stats.cauchy.logpdf(0.13, 0.1, 0.05)),
    ])
    def test_parameters_kept_in_float64(self, dist, params, expected):
        got = log_density(dist, params, torch.tensor([0.13], dtype=torch.float64))
        assert got.dtype == torch.float64
        assert got.item() == pytest.approx(expected, rel=1e-12)

    def test_gradient(self):
        x = torch.tensor([0.4, 1.7], dtype=torch.float64, requires_grad=True)
        log_density('normal', (0.0, 2.0), x).sum().backward()
        np.testing.assert_allclose(x.grad.numpy(), -x.detach().numpy() / 4.0)


class TestPriorFromMapping:

    def test_class_key(self):
        p = Prior.from_mapping({'prior': 'normal(0, 1)', 'class': 'ranef', 'coef': 'site'})
        assert p == Prior('normal(0, 1)', cls='ranef', coef='site')

    def test_defaults(self):
        assert Prior.from_mapping({'prior': 'normal(0, 1)'}) == Prior('normal(0, 1)')

    def test_missing_prior(self):
        with pytest.raises(ModelSpecError, match="'prior'"):
            Prior.from_mapping({'class': 'fixef'})


class TestResolvePriors:

    @pytest.fixture
    def spec_args(self, zip_sites):
        d = zip_sites
        return dict(
            y=d['y'], X=d['X'], groups={'site': d['site']},
            zi_X=np.ones((len(d['y']), 1)), family='poisson',
            coef_names=['(Intercept)', 'trt'],
        )

    def test_fixef_whole_class(self, spec_args):
        spec = ModelSpec.build(**spec_args, priors=[Prior("normal(0, 3)")])
        (prior,) = spec.priors
        assert prior.indices == (0, 1)
        assert prior.label == 'fixef'

    def test_fixef_by_name_and_index(self, spec_args):
        spec = ModelSpec.build(**spec_args, priors=[
            Prior("normal(0, 3)", coef='trt'),
            {'prior': 'normal(0, 1)', 'class': 'fixef_zi', 'coef': 0},
        ])
        by_name, by_index = spec.priors
        assert by_name.indices == (1,)
        assert by_name.label == 'fixef:trt'
        assert by_index.indices == (spec.layout.slices['betazi'].start,)

    def test_ranef_targets_group(self, spec_args):
        spec = ModelSpec.build(**spec_args, priors=[
            Prior("gamma(2, 1)", cls='ranef', coef='site'),
        ])
        (prior,) = spec.priors
        assert len(prior.terms) == 1
        assert prior.terms[0][0] == spec.layout.term_slices['theta'][0]

    def test_penalty_values(self, spec_args):
        spec = ModelSpec.build(**spec_args, priors=[
            Prior("normal(0, 2)", coef='trt'),
            Prior("gamma(2, 1)", cls='ranef'),
            Prior("normal(0, 1)", cls='ranef', coef='site'),
        ])
        par = torch.zeros(spec.layout.size, dtype=torch.float64)
        par[1] = 0.7
        log_sd = 0.3
        par[spec.layout.term_slices['theta'][0]] = log_sd
        fixef, ranef_gamma, ranef_normal = (p.neg_log_density(par).item() for p in spec.priors)

        assert fixef == pytest.approx(-stats.norm.logpdf(0.7, 0, 2))
        # gamma applies to the standard deviation itself
        assert ranef_gamma == pytest.approx(-stats.gamma.logpdf(math.exp(log_sd), 2, scale=1))
        # other distributions apply to log sd
        assert ranef_normal == pytest.approx(-stats.norm.logpdf(log_sd, 0, 1))

    @pytest.mark.parametrize('prior,match', [
        (Prior("normal(0, 1)", cls='fixef_disp'), "no such coefficients"),
        (Prior("normal(0, 1)", cls='ranef_zi'), "no such random effects"),
        (Prior("normal(0, 1)", cls='sigma'), "Unknown prior class"),
        (Prior("normal(0, 1)", coef='x9'), "not found"),
        (Prior("normal(0, 1)", coef=5), "out of range"),
    ])
    def test_invalid(self, spec_args, prior, match):
        with pytest.raises(ModelSpecError, match=match):
            ModelSpec.build(**spec_args, priors=[prior])
