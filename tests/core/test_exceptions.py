"""Tests for the PyGLMM exception hierarchy."""

import pytest

from pyglmm.core.exceptions import (
    ConvergenceError,
    DimensionError,
    ModelSpecError,
    NonFiniteError,
    NotPositiveDefiniteError,
    NumericalError,
    PyGLMMError,
    ValidationError,
)


class TestHierarchy:

    @pytest.mark.parametrize('err', [
        DimensionError("offset: length 3, expected 5"),
        ModelSpecError("zi_X: rank-deficient", component='zi'),
    ])
    def test_input_errors_are_validation_errors(self, err):
        assert isinstance(err, ValidationError)
        assert isinstance(err, PyGLMMError)

    @pytest.mark.parametrize('err', [
        NotPositiveDefiniteError("not PD", matrix_name='random-effect Hessian'),
        NonFiniteError("Laplace gradient is not finite", quantity='gradient'),
    ])
    def test_evaluation_failures_are_numerical(self, err):
        assert isinstance(err, NumericalError)
        assert not isinstance(err, ValidationError)

    def test_inner_convergence_is_separate_branch(self):
        err = ConvergenceError("inner Newton did not converge", iterations=100)
        assert isinstance(err, PyGLMMError)
        assert not isinstance(err, NumericalError)

    def test_catch_all(self):
        with pytest.raises(PyGLMMError):
            raise NonFiniteError("Laplace objective is not finite", quantity='objective')


class TestAttributes:

    def test_model_spec_component(self):
        err = ModelSpecError("nbinom2 family: disp_X rank-deficient", component='disp')
        assert err.component == 'disp'
        assert "rank-deficient" in str(err)
        assert ModelSpecError("bad").component is None

    def test_not_positive_definite(self):
        assert NotPositiveDefiniteError("x").matrix_name is None
        err = NotPositiveDefiniteError("x", matrix_name='H_b')
        assert err.matrix_name == 'H_b'

    def test_non_finite_requires_quantity(self):
        with pytest.raises(TypeError):
            NonFiniteError("nan")

    def test_convergence_diagnostics(self):
        err = ConvergenceError(
            "inner Newton line search failed",
            iterations=7, max_grad=3.2e-4, reason='line_search', tol=1e-8,
        )
        assert (err.iterations, err.max_grad, err.reason, err.tol) == (
            7, 3.2e-4, 'line_search', 1e-8,
        )

    def test_convergence_defaults(self):
        err = ConvergenceError("failed", iterations=5)
        assert err.max_grad is None and err.reason is None and err.tol is None
