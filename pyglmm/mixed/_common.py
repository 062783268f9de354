"""
Common data types for GLMMs.

Contains the frozen control object and the frozen parameter payloads that
go inside Result[P] envelopes. Payloads are pure data containers.

References:
    Brooks, M. E. et al. (2017). glmmTMB balances speed and flexibility
    among packages for zero-inflated generalized linear mixed modeling.
    The R Journal, 9(2), 378-400.
"""

from dataclasses import dataclass

from numpy.typing import NDArray


_OPTIMIZERS = ('L-BFGS-B', 'BFGS', 'CG')


@dataclass(frozen=True)
class GLMMControl:
    """Optimizer settings for one fit.

    Attributes:
        optimizer: Outer method for scipy.optimize.minimize
            ('L-BFGS-B', 'BFGS' or 'CG').
        max_iter: Outer iteration budget.
        grad_tol: Outer gradient tolerance (max-abs).
        ftol: Relative function tolerance (L-BFGS-B only).
        inner_tol: Max-abs gradient tolerance of the inner mode search.
        inner_max_iter: Newton iteration budget of the inner mode search.
        max_time: Wall-clock budget for the outer loop in seconds, or None.
        hessian_step: Relative step of the finite-difference outer Hessian.
        compute_se: Whether to compute the outer Hessian and standard errors.
    """
    optimizer: str = 'L-BFGS-B'
    max_iter: int = 1000
    grad_tol: float = 1e-6
    ftol: float = 1e-12
    inner_tol: float = 1e-8
    inner_max_iter: int = 100
    max_time: float | None = None
    hessian_step: float = 1e-4
    compute_se: bool = True

    def __post_init__(self):
        if self.optimizer not in _OPTIMIZERS:
            raise ValueError(
                f"optimizer must be one of {_OPTIMIZERS}, got {self.optimizer!r}"
            )
        if self.max_iter < 1 or self.inner_max_iter < 1:
            raise ValueError("iteration budgets must be positive")
        if self.grad_tol <= 0 or self.inner_tol <= 0 or self.ftol <= 0:
            raise ValueError("tolerances must be positive")
        if self.hessian_step <= 0:
            raise ValueError("hessian_step must be positive")
        if self.max_time is not None and self.max_time <= 0:
            raise ValueError("max_time must be positive")


@dataclass(frozen=True)
class VarCompSummary:
    """Variance component summary for one random effect term.

    Attributes:
        component: 'cond' or 'zi'.
        group: Grouping factor name (e.g. 'site').
        name: Term name within the group (e.g. '(Intercept)', 'time').
        variance: Estimated variance.
        std_dev: Standard deviation (sqrt of variance).
        std_dev_se: Delta-method standard error of std_dev (NaN when the
            outer Hessian is unusable).
        corr: Correlation with the previous term in the same group,
              or None if this is the first (or only) term.
    """
    component: str
    group: str
    name: str
    variance: float
    std_dev: float
    std_dev_se: float
    corr: float | None = None


@dataclass(frozen=True)
class CoefTable:
    """Wald coefficient table for one sub-model."""
    component: str
    names: tuple[str, ...]
    estimate: NDArray
    se: NDArray
    z_values: NDArray
    p_values: NDArray

    def __len__(self) -> int:
        return len(self.names)

    def as_dict(self) -> dict[str, tuple[float, float, float, float]]:
        return {
            n: (float(e), float(s), float(z), float(p))
            for n, e, s, z, p in zip(self.names, self.estimate, self.se,
                                     self.z_values, self.p_values)
        }


@dataclass(frozen=True)
class GLMMParams:
    """
    Parameter payload for a fitted GLMM.

    Every vector or matrix indexed by outer parameters follows the order
    of the model's ParameterLayout.
    """
    # Outer parameters
    par: NDArray                       # (k,)
    par_names: tuple[str, ...]
    vcov: NDArray                      # (k, k), NaN when the Hessian is not PD
    hessian: NDArray | None            # (k, k) finite-difference outer Hessian

    # Random effects
    b: NDArray                         # conditional modes, full vector (q,)
    var_components: tuple[VarCompSummary, ...]
    random_effects: dict[str, NDArray]     # cond group → (levels, terms)
    zi_random_effects: dict[str, NDArray]  # zi group → (levels, terms)

    # Model fit
    log_likelihood: float              # Laplace log-likelihood, prior excluded
    objective: float                   # minimized value (prior included)
    prior_penalty: float
    aic: float
    bic: float
    n_obs: int
    n_params: int
    n_groups: dict[str, int]

    # Convergence
    converged: bool
    pd_hessian: bool
    n_iter: int
    n_evals: int
    grad_max: float
    optimizer_message: str

    family_name: str
    link_name: str
