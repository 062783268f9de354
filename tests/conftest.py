"""
Shared fixtures for the whole test suite.

Mixed-model datasets live in tests/mixed/conftest.py.
"""

import numpy as np
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def linear_data(rng):
    """Gaussian response without grouping: y = Xβ + ε, σ = 0.5.

    Returns (X, y, beta) with an intercept column in X.
    """
    n = 100
    X = np.column_stack([np.ones(n), rng.standard_normal((n, 2))])
    beta = np.array([1.0, -2.0, 0.5])
    y = X @ beta + 0.5 * rng.standard_normal(n)
    return X, y, beta


@pytest.fixture
def aliased_design(rng):
    """Design whose third column is the sum of the first two."""
    x1, x2 = rng.standard_normal((2, 50))
    return np.column_stack([x1, x2, x1 + x2])
