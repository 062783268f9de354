"""
Core infrastructure for PyGLMM.

Shared abstractions and utilities used by the mixed-model domain package.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing utilities
"""

from pyglmm.core.result import Result
from pyglmm.core.exceptions import (
    PyGLMMError,
    ValidationError,
    DimensionError,
    ModelSpecError,
    NumericalError,
    NonFiniteError,
    NotPositiveDefiniteError,
    ConvergenceError,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyGLMMError",
    "ValidationError",
    "DimensionError",
    "ModelSpecError",
    "NumericalError",
    "NonFiniteError",
    "NotPositiveDefiniteError",
    "ConvergenceError",
]
