"""
Laplace approximation of the marginal likelihood.

For fixed outer parameters the random effects are integrated out by

    −log L(par) ≈ f(par, b̂) + ½ log det H(par, b̂) − (q/2) log 2π,

where b̂ = argmin_b f(par, b) is found by damped Newton iterations on the
exact Hessian H = ∂²f/∂b².

The gradient of the approximation with respect to par is computed by
implicit differentiation rather than by unrolling the Newton iterations.
Writing g = ∂f/∂b and a = ∂(½ log det H)/∂b, and using g(par, b̂) = 0,

    dL/dpar = ∂f/∂par + ∂(½ log det H)/∂par − vᵀ ∂g/∂par,   v = H⁻¹ a,

with every partial taken at (par, b̂). The last term is a single
vector-Jacobian product of autograd.

Inner failures (no convergence within the iteration budget, or a
non-positive-definite Hessian at the candidate mode) are not raised: the
evaluation returns PENALTY_NLL and a warning string so the outer
optimizer backs away from that region.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
import torch

from pyglmm.core.exceptions import (
    ConvergenceError,
    NonFiniteError,
    NotPositiveDefiniteError,
    NumericalError,
)
from pyglmm.mixed._objective import JointObjective, DTYPE
from pyglmm.mixed._common import GLMMControl


logger = logging.getLogger(__name__)

# Objective value reported for outer trial points where the Laplace
# approximation is not defined.
PENALTY_NLL = 1e30

_ARMIJO = 1e-4
_MIN_STEP = 1e-10


@dataclass(frozen=True)
class ModeResult:
    """Outcome of the inner mode search."""
    b: torch.Tensor
    value: float
    grad_max: float
    n_iter: int


@dataclass(frozen=True)
class LaplaceEvaluation:
    """One evaluation of the Laplace objective at an outer parameter vector.

    Attributes:
        value: Laplace negative log marginal likelihood (including the
            prior penalty), or PENALTY_NLL on failure.
        gradient: Gradient with respect to the outer parameters (zeros on
            failure).
        b: Conditional mode b̂ (the warm start on failure).
        converged: Whether the inner problem was solved.
        warning: Description of the failure, or None.
        n_inner: Newton iterations used.
    """
    value: float
    gradient: NDArray
    b: NDArray
    converged: bool
    warning: str | None = None
    n_inner: int = 0


def _cholesky(H: torch.Tensor, name: str = 'random-effect Hessian') -> torch.Tensor:
    L, info = torch.linalg.cholesky_ex(H)
    if int(info) != 0:
        raise NotPositiveDefiniteError(
            f"{name} is not positive definite (leading minor {int(info)})",
            matrix_name=name,
        )
    return L


def _regularized_cholesky(H: torch.Tensor) -> torch.Tensor:
    """Cholesky factor of H + τI with the smallest τ from a doubling ladder."""
    L, info = torch.linalg.cholesky_ex(H)
    if int(info) == 0:
        return L
    eye = torch.eye(H.shape[0], dtype=DTYPE)
    tau = max(1e-8, 1e-6 * float(torch.max(torch.abs(torch.diagonal(H)))))
    for _ in range(60):
        L, info = torch.linalg.cholesky_ex(H + tau * eye)
        if int(info) == 0:
            return L
        tau *= 4.0
    raise NotPositiveDefiniteError(
        "random-effect Hessian could not be regularized",
        matrix_name='random-effect Hessian',
    )


def solve_mode(
    objective: JointObjective,
    par: torch.Tensor,
    b0: torch.Tensor,
    control: GLMMControl,
) -> ModeResult:
    """Minimize f(par, ·) over b by damped Newton with step halving.

    Converges when max|∂f/∂b| < control.inner_tol.

    Raises:
        ConvergenceError: If the iteration budget is exhausted or no
            descent step can be found.
        NotPositiveDefiniteError: If the Hessian at the mode is not
            positive definite.
    """
    par = par.detach()
    b = b0.detach().clone()
    f, g = objective.gradient_b(par, b)
    if not torch.isfinite(f):
        # warm start landed somewhere hopeless; restart from zero
        b = torch.zeros_like(b)
        f, g = objective.gradient_b(par, b)

    for it in range(control.inner_max_iter):
        grad_max = float(torch.max(torch.abs(g)))
        if grad_max < control.inner_tol:
            _cholesky(objective.hessian_b(par, b.requires_grad_(True)).detach())
            return ModeResult(b=b.detach(), value=float(f), grad_max=grad_max, n_iter=it)

        H = objective.hessian_b(par, b.detach().requires_grad_(True)).detach()
        L = _regularized_cholesky(H)
        step = torch.cholesky_solve(g[:, None], L).squeeze(1)
        slope = float(torch.dot(g, step))
        # below this decrease f cannot resolve the step; take it whole
        roundoff = slope < 1e-10 * (1.0 + abs(float(f)))

        t = 1.0
        while t > _MIN_STEP:
            b_new = b.detach() - t * step
            with torch.no_grad():
                f_new = objective.joint(par, b_new)
            if not torch.isfinite(f_new):
                t *= 0.5
                continue
            if roundoff or float(f_new) <= float(f) - _ARMIJO * t * slope:
                break
            t *= 0.5
        else:
            raise ConvergenceError(
                f"inner Newton line search failed (max|grad| = {grad_max:.3g})",
                iterations=it,
                max_grad=grad_max,
                reason='line_search',
                tol=control.inner_tol,
            )

        b = b_new
        f, g = objective.gradient_b(par, b)

    grad_max = float(torch.max(torch.abs(g)))
    if grad_max < control.inner_tol:
        _cholesky(objective.hessian_b(par, b.detach().requires_grad_(True)).detach())
        return ModeResult(b=b.detach(), value=float(f), grad_max=grad_max,
                          n_iter=control.inner_max_iter)
    raise ConvergenceError(
        f"inner Newton did not converge in {control.inner_max_iter} iterations "
        f"(max|grad| = {grad_max:.3g})",
        iterations=control.inner_max_iter,
        max_grad=grad_max,
        reason='max_iterations',
        tol=control.inner_tol,
    )


def laplace_value(objective: JointObjective, par: torch.Tensor, b: torch.Tensor) -> float:
    """Laplace negative log marginal likelihood at a known mode."""
    par = par.detach()
    b = b.detach()
    with torch.no_grad():
        f = objective.joint(par, b)
    if objective.q == 0:
        return float(f)
    H = objective.hessian_b(par, b.clone().requires_grad_(True)).detach()
    L = _cholesky(H)
    half_logdet = torch.sum(torch.log(torch.diagonal(L)))
    return float(f + half_logdet) - objective.log_2pi_term()


def laplace_gradient(objective: JointObjective, par: torch.Tensor, b: torch.Tensor) -> NDArray:
    """Implicit-differentiation gradient of the Laplace objective at b̂."""
    if objective.q == 0:
        p = par.detach().clone().requires_grad_(True)
        f = objective.joint(p, b.detach())
        grad, = torch.autograd.grad(f, p)
        return grad.numpy().copy()

    # ½ log det H and its partials in (par, b)
    p1 = par.detach().clone().requires_grad_(True)
    b1 = b.detach().clone().requires_grad_(True)
    H = objective.hessian_b(p1, b1, create_graph=True)
    L = _cholesky(H)
    half_logdet = torch.sum(torch.log(torch.diagonal(L)))
    a_par, a_b = torch.autograd.grad(half_logdet, (p1, b1), allow_unused=True)
    a_par = torch.zeros_like(p1) if a_par is None else a_par
    a_b = torch.zeros_like(b1) if a_b is None else a_b
    v = torch.cholesky_solve(a_b.detach()[:, None], L.detach()).squeeze(1)

    # ∂f/∂par − vᵀ ∂g/∂par
    p2 = par.detach().clone().requires_grad_(True)
    b2 = b.detach().clone().requires_grad_(True)
    f = objective.joint(p2, b2)
    g_b, = torch.autograd.grad(f, b2, create_graph=True)
    target = f - torch.dot(v, g_b)
    grad_f, = torch.autograd.grad(target, p2, allow_unused=True)
    grad_f = torch.zeros_like(p2) if grad_f is None else grad_f

    return (grad_f + a_par).detach().numpy().copy()


class LaplaceEvaluator:
    """
    Stateful Laplace objective for the outer optimizer.

    Keeps the last conditional mode as the warm start of the next inner
    solve and remembers the best successful evaluation.
    """

    def __init__(self, objective: JointObjective, control: GLMMControl,
                 b0: NDArray | None = None):
        self.objective = objective
        self.control = control
        q = objective.q
        self.b = torch.zeros(q, dtype=DTYPE) if b0 is None else torch.as_tensor(b0, dtype=DTYPE)
        self.n_evals = 0
        self.n_failures = 0
        self.failure_messages: list[str] = []
        self.best_value = np.inf
        self.best_x: NDArray | None = None
        self.best_b: NDArray | None = None

    def evaluate(self, x: NDArray) -> LaplaceEvaluation:
        """Value and gradient of the Laplace objective at x."""
        self.n_evals += 1
        par = torch.as_tensor(np.asarray(x, dtype=np.float64), dtype=DTYPE)
        obj = self.objective

        try:
            if obj.q:
                mode = solve_mode(obj, par, self.b, self.control)
                b_hat, n_inner = mode.b, mode.n_iter
            else:
                b_hat, n_inner = self.b, 0
            value = laplace_value(obj, par, b_hat)
            if not np.isfinite(value):
                raise NonFiniteError(
                    "Laplace objective is not finite", quantity='objective',
                )
            grad = laplace_gradient(obj, par, b_hat)
            if not np.all(np.isfinite(grad)):
                raise NonFiniteError(
                    "Laplace gradient is not finite", quantity='gradient',
                )
        except (ConvergenceError, NumericalError) as e:
            self.n_failures += 1
            msg = str(e)
            if msg not in self.failure_messages:
                self.failure_messages.append(msg)
            logger.debug("Laplace evaluation %d failed: %s", self.n_evals, msg)
            return LaplaceEvaluation(
                value=PENALTY_NLL,
                gradient=np.zeros(obj.n_par),
                b=self.b.numpy().copy(),
                converged=False,
                warning=msg,
            )

        self.b = b_hat.detach()
        if value < self.best_value:
            self.best_value = value
            self.best_x = np.array(x, dtype=np.float64)
            self.best_b = b_hat.numpy().copy()
        logger.debug(
            "Laplace evaluation %d: value=%.8g max|grad|=%.3g inner_iter=%d",
            self.n_evals, value, float(np.max(np.abs(grad), initial=0.0)), n_inner,
        )
        return LaplaceEvaluation(
            value=value,
            gradient=grad,
            b=b_hat.numpy().copy(),
            converged=True,
            n_inner=n_inner,
        )

    def __call__(self, x: NDArray) -> tuple[float, NDArray]:
        ev = self.evaluate(x)
        return ev.value, ev.gradient
