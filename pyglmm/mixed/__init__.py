"""
Generalized linear mixed models with zero-inflation and hurdle components.

Public API:
    glmm()          — fit a GLMM by Laplace-approximated maximum likelihood
    update()        — refit with changed inputs, warm-started
    fit_many()      — fit independent models concurrently
    ModelSpec       — validated model specification
    GLMMControl     — optimizer settings
    Prior           — MAP prior on fixed effects or random-effect std. devs.
    GLMMSolution    — result wrapper
"""

from pyglmm.mixed.solvers import glmm, update, fit_many
from pyglmm.mixed.solution import GLMMSolution, VarCorr
from pyglmm.mixed.design import ModelSpec, ParameterLayout
from pyglmm.mixed._common import GLMMControl, GLMMParams, CoefTable, VarCompSummary
from pyglmm.mixed._priors import Prior
from pyglmm.mixed._simulate import SimulationSequence
from pyglmm.mixed import families

__all__ = [
    "glmm",
    "update",
    "fit_many",
    "GLMMSolution",
    "VarCorr",
    "ModelSpec",
    "ParameterLayout",
    "GLMMControl",
    "GLMMParams",
    "CoefTable",
    "VarCompSummary",
    "Prior",
    "SimulationSequence",
    "families",
]
