"""
Joint objective for the Laplace approximation.

For an outer parameter vector par = (β, β_zi, β_disp, θ, θ_zi, ψ) and a
random-effect vector b the joint negative log density is

    f(par, b) = −Σ_i w_i ℓ_i(y_i | η_i, η_zi,i, φ_i)
                − Σ_k log N(b_k | 0, Σ_k(θ_k))
                − log p(par)

with η = Xβ + offset + Z b_cond, η_zi = X_zi β_zi + Z_zi b_zi and
φ = exp(X_disp β_disp). Everything is evaluated with float64 torch
tensors so autograd supplies exact derivatives.

The Hessian with respect to b is assembled by the chain rule,

    H = Z̃ᵀ D Z̃ + blockdiag(Σ_k⁻¹ ⊗ I_{J_k}),

where D holds the per-observation second derivatives of −w_i ℓ_i with
respect to (η_i, η_zi,i), obtained from autograd on the separable sum.
Built with create_graph=True it stays differentiable in (par, b), which
the implicit outer gradient needs.
"""

from __future__ import annotations

import math

import numpy as np
from numpy.typing import NDArray
import torch

from pyglmm.mixed.design import ModelSpec
from pyglmm.mixed._covariance import mvn_neg_log_density


DTYPE = torch.float64


def _tensor(a: NDArray | None) -> torch.Tensor | None:
    if a is None:
        return None
    return torch.as_tensor(np.ascontiguousarray(a), dtype=DTYPE)


class JointObjective:
    """
    Differentiable joint negative log density f(par, b) of one ModelSpec.

    Parameters
    ----------
    spec : ModelSpec
        Validated model specification.
    """

    def __init__(self, spec: ModelSpec):
        self.spec = spec
        self.layout = spec.layout
        self.family = spec.family

        self.y = _tensor(spec.y)
        self.w = _tensor(spec.weights)
        self.offset = _tensor(spec.offset)
        self.trials = _tensor(spec.trials)
        self.X = _tensor(spec.X)
        self.X_zi = _tensor(spec.X_zi)
        self.X_disp = _tensor(spec.X_disp)
        self.Z = _tensor(spec.Z)
        self.Z_zi = _tensor(spec.Z_zi)

        self.q_cond = spec.q_cond
        self.q_zi = spec.q_zi
        self.q = spec.q
        self.n_par = spec.layout.size

        cond_b, zi_b = spec.b_slices
        sl = spec.layout.term_slices
        self._cond_blocks = list(zip(spec.cond_terms, cond_b, sl['theta']))
        self._zi_blocks = list(zip(spec.zi_terms, zi_b, sl['thetazi']))

        self._positive = self.y > 0
        self._zero = self.y == 0
        self._y_safe = torch.where(self._positive, self.y, torch.ones_like(self.y))

    # ------------------------------------------------------------------
    # Linear predictors
    # ------------------------------------------------------------------

    def predictors(self, par: torch.Tensor, b: torch.Tensor):
        """Return (η, η_zi, φ, ψ); η_zi / φ / ψ are None when absent."""
        s = self.layout.slices
        eta = self.X @ par[s['beta']] + self.offset
        if self.q_cond:
            eta = eta + self.Z @ b[:self.q_cond]

        eta_zi = None
        if self.spec.has_zi:
            eta_zi = self.X_zi @ par[s['betazi']]
            if self.q_zi:
                eta_zi = eta_zi + self.Z_zi @ b[self.q_cond:]

        phi = None
        if self.family.has_dispersion:
            phi = torch.exp(self.X_disp @ par[s['betadisp']])

        psi = par[s['psi']] if self.family.n_shape_params else None
        return eta, eta_zi, phi, psi

    # ------------------------------------------------------------------
    # Pieces of the objective
    # ------------------------------------------------------------------

    def obs_log_lik(self, eta, eta_zi, phi, psi) -> torch.Tensor:
        """Per-observation conditional log-likelihood ℓ_i."""
        fam = self.family
        if eta_zi is None:
            return fam.log_prob(self.y, eta, phi, psi, self.trials)

        log_p = torch.nn.functional.logsigmoid(eta_zi)
        log_1mp = torch.nn.functional.logsigmoid(-eta_zi)

        if fam.truncated:
            # hurdle: zeros come only from the binary part
            log_pos = fam.log_prob(self._y_safe, eta, phi, psi, self.trials)
            return torch.where(self._positive, log_1mp + log_pos, log_p)

        log_f = fam.log_prob(self.y, eta, phi, psi, self.trials)
        log_f0 = fam.log_prob_zero(eta, phi, psi, self.trials)
        log_zero = torch.logaddexp(log_p, log_1mp + log_f0)
        return torch.where(self._zero, log_zero, log_1mp + log_f)

    def data_nll(self, par: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        eta, eta_zi, phi, psi = self.predictors(par, b)
        return -torch.sum(self.w * self.obs_log_lik(eta, eta_zi, phi, psi))

    def ranef_nll(self, par: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        """−Σ_k log N(b_k | 0, Σ_k)."""
        total = torch.zeros((), dtype=DTYPE)
        for term, b_sl, th_sl in self._cond_blocks + self._zi_blocks:
            d, J = term.n_dims, term.n_groups
            L = term.cov_struct.cholesky(par[th_sl], d)
            B = b[b_sl].reshape(d, J).T
            total = total + mvn_neg_log_density(L, B)
        return total

    def prior_nll(self, par: torch.Tensor) -> torch.Tensor:
        total = torch.zeros((), dtype=DTYPE)
        for prior in self.spec.priors:
            total = total + prior.neg_log_density(par)
        return total

    def joint(self, par: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        """f(par, b)."""
        return self.data_nll(par, b) + self.ranef_nll(par, b) + self.prior_nll(par)

    # ------------------------------------------------------------------
    # Derivatives with respect to b
    # ------------------------------------------------------------------

    def precision_blocks(self, par: torch.Tensor) -> torch.Tensor:
        """blockdiag(Σ_k⁻¹ ⊗ I_{J_k}), shape (q, q)."""
        blocks = []
        for term, _, th_sl in self._cond_blocks + self._zi_blocks:
            d, J = term.n_dims, term.n_groups
            L = term.cov_struct.cholesky(par[th_sl], d)
            prec = torch.cholesky_inverse(L)
            blocks.append(torch.kron(prec, torch.eye(J, dtype=DTYPE)))
        return torch.block_diag(*blocks)

    def hessian_b(
        self,
        par: torch.Tensor,
        b: torch.Tensor,
        create_graph: bool = False,
    ) -> torch.Tensor:
        """Exact Hessian ∂²f/∂b², shape (q, q).

        ``b`` must require grad. With ``create_graph`` the result is
        differentiable with respect to (par, b).
        """
        eta, eta_zi, phi, psi = self.predictors(par, b)
        s = -torch.sum(self.w * self.obs_log_lik(eta, eta_zi, phi, psi))

        inputs = []
        if self.q_cond:
            inputs.append(eta)
        if self.q_zi:
            inputs.append(eta_zi)
        first = torch.autograd.grad(s, inputs, create_graph=True)

        H = self.precision_blocks(par)
        if self.q_cond and self.q_zi:
            g_c, g_z = first
            d_cc, d_cz = torch.autograd.grad(
                g_c.sum(), (eta, eta_zi), create_graph=create_graph,
                retain_graph=True, allow_unused=True,
            )
            d_zz, = torch.autograd.grad(
                g_z.sum(), eta_zi, create_graph=create_graph, allow_unused=True,
            )
            d_cc = _zeros_if_none(d_cc, eta)
            d_cz = _zeros_if_none(d_cz, eta)
            d_zz = _zeros_if_none(d_zz, eta)
            h_cc = self.Z.T @ (d_cc[:, None] * self.Z)
            h_cz = self.Z.T @ (d_cz[:, None] * self.Z_zi)
            h_zz = self.Z_zi.T @ (d_zz[:, None] * self.Z_zi)
            data_h = torch.cat([
                torch.cat([h_cc, h_cz], dim=1),
                torch.cat([h_cz.T, h_zz], dim=1),
            ], dim=0)
        else:
            target = inputs[0]
            Zt = self.Z if self.q_cond else self.Z_zi
            d2, = torch.autograd.grad(
                first[0].sum(), target, create_graph=create_graph, allow_unused=True,
            )
            d2 = _zeros_if_none(d2, target)
            data_h = Zt.T @ (d2[:, None] * Zt)
        return data_h + H

    def gradient_b(self, par: torch.Tensor, b: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """(f, ∂f/∂b) at (par, b), both detached."""
        b = b.detach().requires_grad_(True)
        f = self.joint(par, b)
        g, = torch.autograd.grad(f, b)
        return f.detach(), g

    def log_2pi_term(self) -> float:
        return 0.5 * self.q * math.log(2.0 * math.pi)


def _zeros_if_none(t: torch.Tensor | None, like: torch.Tensor) -> torch.Tensor:
    return torch.zeros_like(like) if t is None else t
