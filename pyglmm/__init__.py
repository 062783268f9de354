"""
PyGLMM: zero-inflated and hurdle generalized linear mixed models for Python.

Random effects are integrated out with the Laplace approximation; the
inner mode search and all outer gradients use exact torch autograd
derivatives.

Submodules:
    mixed: Model specification, fitting, prediction and simulation
    core: Result envelope, exceptions, validation, timing
"""

__version__ = "0.1.0"

from pyglmm import mixed
from pyglmm.mixed import (
    glmm,
    update,
    fit_many,
    ModelSpec,
    GLMMControl,
    GLMMSolution,
    Prior,
    families,
)

__all__ = [
    "__version__",
    "mixed",
    "glmm",
    "update",
    "fit_many",
    "ModelSpec",
    "GLMMControl",
    "GLMMSolution",
    "Prior",
    "families",
]
