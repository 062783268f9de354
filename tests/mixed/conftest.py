"""
Shared fixtures for mixed model tests.

Provides simulated datasets with known structure for GLMMs with
zero-inflation, hurdle and dispersion components.
"""

import numpy as np
import pytest
from scipy.special import logit

from pyglmm.mixed import glmm


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def zip_sites(rng):
    """Zero-inflated Poisson counts: y ~ trt + (1 | site), zi ~ trt.

    23 sites × 2 treatments × 10 replicates = 460 observations.
    Site intercept SD = 0.5, structural-zero probability 0.15 under the
    control and 0.45 under the treatment.
    """
    n_sites, n_trt, n_rep = 23, 2, 10
    n = n_sites * n_trt * n_rep

    beta0, beta_trt = 1.0, 0.8
    sigma_site = 0.5
    zprob_trt = (0.15, 0.45)
    betazi = np.array([logit(0.15), logit(0.45) - logit(0.15)])

    site = np.repeat(np.arange(n_sites), n_trt * n_rep)
    trt = np.tile(np.repeat([0.0, 1.0], n_rep), n_sites)
    u = rng.normal(0, sigma_site, size=n_sites)

    mu = np.exp(beta0 + beta_trt * trt + u[site])
    structural = rng.random(n) < np.where(trt == 1.0, zprob_trt[1], zprob_trt[0])
    y = np.where(structural, 0.0, rng.poisson(mu).astype(float))

    X = np.column_stack([np.ones(n), trt])
    return {
        'y': y, 'X': X, 'site': site, 'trt': trt,
        'n_sites': n_sites,
        'beta0': beta0, 'beta_trt': beta_trt,
        'sigma_site': sigma_site, 'betazi': betazi, 'zprob_trt': zprob_trt,
    }


@pytest.fixture
def zip_trt_fit(zip_sites):
    """ZIP fit of zip_sites with treatment in both the count and zi models."""
    d = zip_sites
    n = len(d['y'])
    return glmm(
        d['y'], d['X'], groups={'site': d['site']},
        zi_X=np.column_stack([np.ones(n), d['trt']]),
        family='poisson',
        coef_names=['(Intercept)', 'trt'],
        zi_coef_names=['(Intercept)', 'trt'],
    )


@pytest.fixture
def poisson_groups(rng):
    """Poisson counts with a random intercept: y ~ x + (1 | group).

    15 groups × 12 observations = 180 observations.
    """
    n_groups, n_per = 15, 12
    n = n_groups * n_per
    beta0, beta1 = 0.5, 0.4
    sigma_group = 0.6

    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0, 1, size=n)
    u = rng.normal(0, sigma_group, size=n_groups)
    y = rng.poisson(np.exp(beta0 + beta1 * x + u[group])).astype(float)

    return {
        'y': y, 'X': np.column_stack([np.ones(n), x]), 'group': group, 'x': x,
        'n_groups': n_groups,
        'beta0': beta0, 'beta1': beta1, 'sigma_group': sigma_group,
    }


@pytest.fixture
def gaussian_slopes(rng):
    """Gaussian response with correlated random intercepts and slopes.

    y ~ time + (1 + time | subject); 20 subjects × 8 time points.
    """
    n_subjects, n_time = 20, 8
    n = n_subjects * n_time
    cov = np.array([[4.0, 0.6], [0.6, 0.25]])
    re = rng.multivariate_normal([0, 0], cov, size=n_subjects)

    subject = np.repeat(np.arange(n_subjects), n_time)
    time = np.tile(np.arange(n_time, dtype=float), n_subjects)
    y = (10.0 + re[subject, 0] + (1.5 + re[subject, 1]) * time
         + rng.normal(0, 1.0, size=n))

    return {
        'y': y, 'X': np.column_stack([np.ones(n), time]),
        'subject': subject, 'time': time,
        'n_subjects': n_subjects,
    }


@pytest.fixture
def binomial_trials(rng):
    """Binomial successes out of varying trials: y / n ~ x + (1 | group)."""
    n_groups, n_per = 12, 10
    n = n_groups * n_per
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0, 1, size=n)
    u = rng.normal(0, 0.7, size=n_groups)
    trials = rng.integers(5, 15, size=n).astype(float)
    p = 1.0 / (1.0 + np.exp(-(-0.3 + 0.9 * x + u[group])))
    y = rng.binomial(trials.astype(int), p).astype(float)

    return {
        'y': y, 'X': np.column_stack([np.ones(n), x]), 'group': group,
        'trials': trials,
    }


@pytest.fixture
def hurdle_counts(rng):
    """Hurdle Poisson counts: P(y = 0) ≈ 0.4, positives truncated Poisson(mu = 3)."""
    n = 300
    x = rng.normal(0, 1, size=n)
    zero = rng.random(n) < 0.4
    mu = np.exp(1.1 + 0.3 * x)
    pos = np.zeros(n)
    for i in range(n):
        draw = 0
        while draw == 0:
            draw = rng.poisson(mu[i])
        pos[i] = draw
    y = np.where(zero, 0.0, pos)
    return {'y': y, 'X': np.column_stack([np.ones(n), x]), 'x': x}
