"""
Solver dispatch for GLMMs.

Public API:
    glmm()     — fit a (zero-inflated / hurdle) GLMM by Laplace-approximated ML
    update()   — refit with changed inputs, warm-started from a previous fit
    fit_many() — fit several independent models concurrently
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.optimize import minimize
from joblib import Parallel, delayed
import torch

from pyglmm.core.result import Result
from pyglmm.core.exceptions import DimensionError
from pyglmm.core.compute.timing import Deadline, Timer

from pyglmm.mixed._common import GLMMControl, GLMMParams, VarCompSummary
from pyglmm.mixed._laplace import LaplaceEvaluator
from pyglmm.mixed._objective import JointObjective, DTYPE
from pyglmm.mixed.design import ModelSpec
from pyglmm.mixed.solution import GLMMSolution


logger = logging.getLogger(__name__)

# Standard deviations below this are reported as a near-singular fit.
_SINGULAR_SD = 1e-4

# Final max-abs gradient under which a fit the optimizer stopped for
# other reasons (e.g. precision loss in the line search) counts as converged.
_STATIONARY_GRAD = 1e-3


def glmm(
    y: ArrayLike | ModelSpec,
    X: ArrayLike | None = None,
    *,
    control: GLMMControl | None = None,
    start: Mapping[str, float] | ArrayLike | None = None,
    **spec_kwargs: Any,
) -> GLMMSolution:
    """Fit a generalized linear mixed model via the Laplace approximation.

    Random effects are integrated out by a Laplace approximation around
    their conditional mode, found by Newton iterations with exact
    autograd Hessians. The outer parameters (fixed effects of the
    conditional, zero-inflation and dispersion models, covariance and
    shape parameters) are optimized with scipy.optimize.minimize using
    exact gradients from implicit differentiation.

    Args:
        y: Response vector, or a ModelSpec built with ModelSpec.build().
        X: Conditional fixed effects design matrix (ignored if y is a
           ModelSpec; must then be None).
        control: Optimizer settings (GLMMControl()).
        start: Starting values, either a full parameter vector or a
           mapping from parameter names (see ParameterLayout.names) to
           values. Unnamed parameters use the default start.
        **spec_kwargs: Keyword arguments of ModelSpec.build (groups,
           random_effects, zi_X, family, priors, ...).

    Returns:
        GLMMSolution with fixed effects, random effects, and model fit.

    Raises:
        ModelSpecError: If the model specification is ill-posed.
    """
    timer = Timer()
    timer.start()

    if control is None:
        control = GLMMControl()

    if isinstance(y, ModelSpec):
        if X is not None or spec_kwargs:
            raise TypeError("glmm() takes no design arguments together with a ModelSpec")
        spec = y
    else:
        spec = ModelSpec.build(y, X, **spec_kwargs)

    with timer.section('setup'):
        objective = JointObjective(spec)
        x0 = _start_values(spec, start)
        evaluator = LaplaceEvaluator(objective, control)
        logger.debug(
            "glmm: n=%d, %d outer parameters, %d random effects, family=%s",
            spec.n, spec.layout.size, spec.q, spec.family.name,
        )

    with timer.section('optimization'):
        opt_result, timed_out = _optimize(evaluator, x0, control)

    with timer.section('final_solve'):
        x_hat = np.asarray(opt_result.x, dtype=np.float64)
        if evaluator.best_x is not None and evaluator.best_value < opt_result.fun:
            x_hat = evaluator.best_x
        final = evaluator.evaluate(x_hat)
        if not final.converged and evaluator.best_x is not None:
            x_hat = evaluator.best_x
            evaluator.b = torch.as_tensor(evaluator.best_b, dtype=DTYPE)
            final = evaluator.evaluate(x_hat)
        n_failures = evaluator.n_failures

    grad_max = float(np.max(np.abs(final.gradient), initial=0.0))
    budget_hit = opt_result.nit >= control.max_iter
    converged = (
        final.converged and not timed_out and not budget_hit
        and (bool(opt_result.success) or grad_max < _STATIONARY_GRAD)
    )

    warn_list = []
    if not converged:
        reason = opt_result.message
        if timed_out:
            reason = f"time budget of {control.max_time} s exhausted"
        msg = (f"GLMM optimizer did not converge after {opt_result.nit} iterations. "
               f"Message: {reason}")
        warnings.warn(msg, RuntimeWarning, stacklevel=2)
        warn_list.append(msg)
    if n_failures:
        warn_list.append(
            f"Inner mode search failed at {n_failures} of {evaluator.n_evals} "
            f"evaluations: {evaluator.failure_messages[0]}"
        )

    with timer.section('inference'):
        hessian = None
        if control.compute_se and final.converged:
            hessian = _outer_hessian(evaluator, x_hat, final.b, control.hessian_step)
        vcov, pd_hessian = _invert_hessian(hessian, spec.layout.size)
        if control.compute_se and not pd_hessian:
            msg = ("Model convergence problem; non-positive-definite Hessian matrix. "
                   "Standard errors are unavailable.")
            warnings.warn(msg, RuntimeWarning, stacklevel=2)
            warn_list.append(msg)
        var_comps = _extract_var_components(spec, x_hat, vcov)

    with timer.section('model_fit'):
        par_t = torch.as_tensor(x_hat, dtype=DTYPE)
        with torch.no_grad():
            prior_penalty = float(objective.prior_nll(par_t))
        ll = -(final.value - prior_penalty)
        k = spec.layout.size
        aic = -2.0 * ll + 2.0 * k
        bic = -2.0 * ll + np.log(spec.n) * k

    for vc in var_comps:
        if vc.std_dev < _SINGULAR_SD:
            warn_list.append(
                f"Near-singular random-effect covariance: {vc.component} "
                f"{vc.group} {vc.name} std.dev. = {vc.std_dev:.3g}"
            )

    timer.stop()

    cond_re, zi_re = _extract_modes(spec, final.b)
    params = GLMMParams(
        par=x_hat,
        par_names=spec.layout.names,
        vcov=vcov,
        hessian=hessian,
        b=final.b,
        var_components=tuple(var_comps),
        random_effects=cond_re,
        zi_random_effects=zi_re,
        log_likelihood=float(ll),
        objective=float(final.value),
        prior_penalty=prior_penalty,
        aic=float(aic),
        bic=float(bic),
        n_obs=spec.n,
        n_params=k,
        n_groups={t.group_name: t.n_groups for t in spec.cond_terms + spec.zi_terms},
        converged=converged,
        pd_hessian=pd_hessian,
        n_iter=int(opt_result.nit),
        n_evals=evaluator.n_evals,
        grad_max=grad_max,
        optimizer_message=str(opt_result.message),
        family_name=spec.family.name,
        link_name=spec.family.link.name,
    )

    result = Result(
        params=params,
        info={
            'method': 'Laplace',
            'family': spec.family.name,
            'link': spec.family.link.name,
            'optimizer': control.optimizer,
            'converged': converged,
            'n_iter': int(opt_result.nit),
            'n_evals': evaluator.n_evals,
            'inner_failures': n_failures,
            'timed_out': timed_out,
            'grad_max': grad_max,
            'pd_hessian': pd_hessian,
            'objective': float(final.value),
        },
        timing=timer.result(),
        engine='torch_laplace',
        warnings=tuple(warn_list),
    )

    return GLMMSolution(_result=result, _spec=spec, _control=control)


def update(
    solution: GLMMSolution,
    *,
    control: GLMMControl | None = None,
    **changes: Any,
) -> GLMMSolution:
    """Refit a model with some ModelSpec.build arguments changed.

    The previous estimates are used as starting values for every
    parameter whose name is unchanged (e.g. after adding priors, or a
    covariate to the zero-inflation model).

    Args:
        solution: A previous fit.
        control: Optimizer settings; defaults to those of ``solution``.
        **changes: ModelSpec.build keyword arguments to replace.
    """
    args = dict(solution.spec.build_args)
    unknown = sorted(set(changes) - set(args))
    if unknown:
        raise TypeError(f"update() got unknown model arguments: {unknown}")
    args.update(changes)
    spec = ModelSpec.build(**args)

    previous = dict(zip(solution.params.par_names, solution.params.par))
    start = {name: previous[name] for name in spec.layout.names if name in previous}
    logger.debug("update: warm start for %d of %d parameters",
                 len(start), spec.layout.size)
    return glmm(spec, control=control or solution.control, start=start)


def fit_many(
    specs: Sequence[ModelSpec | Mapping[str, Any]],
    *,
    control: GLMMControl | None = None,
    n_jobs: int | None = None,
) -> list[GLMMSolution]:
    """Fit independent models concurrently.

    Each element is either a ModelSpec or a mapping of glmm() keyword
    arguments (y, X, groups, family, ...). Fits share no mutable state
    and run on a thread pool.

    Args:
        specs: Models to fit.
        control: Optimizer settings shared by all fits.
        n_jobs: Number of worker threads (joblib convention; None or 1
            runs sequentially, -1 uses all cores).

    Returns:
        Solutions in the order of ``specs``.
    """
    return Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_fit_one)(spec, control) for spec in specs
    )


# =====================================================================
# Helpers
# =====================================================================

def _fit_one(spec: ModelSpec | Mapping[str, Any], control: GLMMControl | None) -> GLMMSolution:
    if isinstance(spec, ModelSpec):
        return glmm(spec, control=control)
    return glmm(control=control, **spec)


def _start_values(spec: ModelSpec, start: Mapping[str, float] | ArrayLike | None) -> NDArray:
    """Heuristic starting point, overridden by user-supplied values.

    β starts at the least-squares fit of g(μ₀) on X where μ₀ is the
    family's initial mean; the dispersion intercept starts at the
    family's moment estimate; all other parameters start at zero
    (no zero-inflation signal, unit standard deviations, no correlation).
    """
    layout = spec.layout
    s = layout.slices
    fam = spec.family
    x0 = np.zeros(layout.size)

    mu0 = fam.initialize(spec.y, spec.trials)
    eta0 = fam.link.link(torch.as_tensor(mu0, dtype=DTYPE)).numpy() - spec.offset
    beta0, *_ = np.linalg.lstsq(spec.X, eta0, rcond=None)
    x0[s['beta']] = beta0

    if fam.has_dispersion and spec.X_disp.shape[1] and np.allclose(spec.X_disp[:, 0], 1.0):
        mu_fit = fam.link.linkinv(
            torch.as_tensor(spec.X @ beta0 + spec.offset, dtype=DTYPE)
        ).numpy()
        x0[s['betadisp'].start] = fam.disp_start(spec.y, mu_fit)

    for comp, terms in (('theta', spec.cond_terms), ('thetazi', spec.zi_terms)):
        for term, sl in zip(terms, layout.term_slices[comp]):
            x0[sl] = term.cov_struct.start(term.n_dims)
    x0[s['psi']] = fam.psi_start()

    if start is None:
        return x0
    if isinstance(start, Mapping):
        for name, value in start.items():
            if name not in layout.names:
                raise ValueError(
                    f"Unknown parameter in start: {name!r}. Available: {list(layout.names)}"
                )
            x0[layout.index(name)] = float(value)
        return x0
    arr = np.asarray(start, dtype=np.float64).ravel()
    if arr.shape != x0.shape:
        raise DimensionError(
            f"start: expected {x0.shape[0]} values, got {arr.shape[0]}"
        )
    return arr.copy()


def _optimize(evaluator: LaplaceEvaluator, x0: NDArray, control: GLMMControl):
    """Run scipy.optimize.minimize with the iteration and time budgets."""
    deadline = Deadline(control.max_time)
    state = {'timed_out': False}

    def callback(xk):
        if deadline.expired:
            state['timed_out'] = True
            raise StopIteration

    if control.optimizer == 'L-BFGS-B':
        options = {'maxiter': control.max_iter, 'ftol': control.ftol,
                   'gtol': control.grad_tol}
    else:
        options = {'maxiter': control.max_iter, 'gtol': control.grad_tol}

    opt_result = minimize(
        evaluator,
        x0,
        jac=True,
        method=control.optimizer,
        callback=callback,
        options=options,
    )
    logger.debug(
        "outer optimizer %s: nit=%d nfev=%d fun=%.8g message=%s",
        control.optimizer, opt_result.nit, opt_result.nfev, opt_result.fun,
        opt_result.message,
    )
    return opt_result, state['timed_out']


def _outer_hessian(
    evaluator: LaplaceEvaluator,
    x: NDArray,
    b_hat: NDArray,
    step: float,
) -> NDArray | None:
    """Central finite differences of the exact gradient, symmetrized.

    Returns None if the Laplace objective fails at any probe point.
    """
    k = x.shape[0]
    H = np.zeros((k, k))
    b_hat = torch.as_tensor(b_hat, dtype=DTYPE)
    for j in range(k):
        h = step * max(1.0, abs(x[j]))
        e = np.zeros(k)
        e[j] = h
        evaluator.b = b_hat
        plus = evaluator.evaluate(x + e)
        evaluator.b = b_hat
        minus = evaluator.evaluate(x - e)
        if not (plus.converged and minus.converged):
            logger.debug("outer Hessian probe %d failed", j)
            evaluator.b = b_hat
            return None
        H[:, j] = (plus.gradient - minus.gradient) / (2.0 * h)
    evaluator.b = b_hat
    return 0.5 * (H + H.T)


def _invert_hessian(hessian: NDArray | None, k: int) -> tuple[NDArray, bool]:
    """vcov = H⁻¹ if H is positive definite, else a NaN matrix."""
    if hessian is None or not np.all(np.isfinite(hessian)):
        return np.full((k, k), np.nan), False
    try:
        np.linalg.cholesky(hessian)
    except np.linalg.LinAlgError:
        return np.full((k, k), np.nan), False
    vcov = np.linalg.inv(hessian)
    return 0.5 * (vcov + vcov.T), True


def _extract_var_components(
    spec: ModelSpec,
    x: NDArray,
    vcov: NDArray,
) -> list[VarCompSummary]:
    """Variance, std. dev. (with delta-method SE) and correlation per term."""
    var_comps = []
    for comp, terms in (('cond', spec.cond_terms), ('zi', spec.zi_terms)):
        key = 'theta' if comp == 'cond' else 'thetazi'
        for term, sl in zip(terms, spec.layout.term_slices[key]):
            d = term.n_dims
            struct = term.cov_struct
            theta_k = torch.as_tensor(x[sl], dtype=DTYPE)
            sd, corr = struct.sd_corr(theta_k, d)
            jac = torch.autograd.functional.jacobian(
                lambda t: struct.sd_corr(t, d)[0], theta_k
            ).numpy()
            sd_se = np.sqrt(np.maximum(np.diag(jac @ vcov[sl, sl] @ jac.T), 0.0))
            sd = sd.detach().numpy()
            corr = corr.detach().numpy()

            for i, name in enumerate(term.term_labels):
                var_comps.append(VarCompSummary(
                    component=comp,
                    group=term.group_name,
                    name=name,
                    variance=float(sd[i] ** 2),
                    std_dev=float(sd[i]),
                    std_dev_se=float(sd_se[i]),
                    corr=float(np.clip(corr[i, i - 1], -1.0, 1.0)) if i > 0 else None,
                ))
    return var_comps


def _extract_modes(spec: ModelSpec, b: NDArray) -> tuple[dict[str, NDArray], dict[str, NDArray]]:
    """Conditional modes per grouping factor as (levels, terms) arrays.

    Each block of b is term-major: [term0_level0, term0_level1, ...,
    term1_level0, ...].
    """
    cond_sl, zi_sl = spec.b_slices
    cond = {t.group_name: b[sl].reshape(t.n_dims, t.n_groups).T.copy()
            for t, sl in zip(spec.cond_terms, cond_sl)}
    zi = {t.group_name: b[sl].reshape(t.n_dims, t.n_groups).T.copy()
          for t, sl in zip(spec.zi_terms, zi_sl)}
    return cond, zi
