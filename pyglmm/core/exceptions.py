"""
Exception hierarchy for PyGLMM.

All exceptions inherit from PyGLMMError to allow catching any
library-specific error.

    PyGLMMError
    ├── ValidationError          malformed input arrays
    │   ├── DimensionError       wrong or inconsistent shapes
    │   └── ModelSpecError       ill-posed model (raised before fitting)
    ├── NumericalError
    │   ├── NotPositiveDefiniteError
    │   └── NonFiniteError
    └── ConvergenceError         inner Newton mode search failed

Only the ValidationError branch reaches the caller of glmm(). The
numerical errors and ConvergenceError are raised inside a single
Laplace evaluation; the outer optimizer turns them into a penalty value
and the fitted model reports them as warnings.
"""


class PyGLMMError(Exception):
    """Base exception for all PyGLMM errors."""
    pass


class ValidationError(PyGLMMError):
    """User-provided inputs failed validation."""
    pass


class DimensionError(ValidationError):
    """Array shapes are wrong or disagree with the number of observations."""
    pass


class ModelSpecError(ValidationError):
    """
    The model specification is ill-posed.

    Raised by ModelSpec.build before any optimization starts:
    rank-deficient design matrices, responses outside the support of the
    family, unknown grouping factors, malformed priors, prediction types
    the model does not have.

    Attributes:
        component: Sub-model the problem was found in
            ('cond', 'zi', 'disp', 'priors'), or None
    """

    def __init__(self, message: str, component: str | None = None):
        super().__init__(message)
        self.component = component


class NumericalError(PyGLMMError):
    """A numerical computation inside a Laplace evaluation failed."""
    pass


class NotPositiveDefiniteError(NumericalError):
    """
    A matrix that must be positive definite is not.

    Attributes:
        matrix_name: Which matrix failed (e.g. 'random-effect Hessian')
    """

    def __init__(self, message: str, matrix_name: str | None = None):
        super().__init__(message)
        self.matrix_name = matrix_name


class NonFiniteError(NumericalError):
    """
    The Laplace objective or its gradient evaluated to NaN or Inf.

    Attributes:
        quantity: 'objective' or 'gradient'
    """

    def __init__(self, message: str, quantity: str):
        super().__init__(message)
        self.quantity = quantity


class ConvergenceError(PyGLMMError):
    """
    The inner Newton search for the random-effect mode failed.

    Attributes:
        iterations: Newton iterations completed
        max_grad: Max-abs gradient in b when the search stopped
        reason: 'max_iterations' or 'line_search'
        tol: Gradient tolerance that was not met
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        max_grad: float | None = None,
        reason: str | None = None,
        tol: float | None = None,
    ):
        super().__init__(message)
        self.iterations = iterations
        self.max_grad = max_grad
        self.reason = reason
        self.tol = tol
