"""
Random-effect covariance structures.

Each structure maps an unconstrained real vector θ_k to the lower
Cholesky factor L of a d × d positive-definite covariance matrix
Σ = L Lᵀ. Every real θ_k is valid, so the outer optimizer never has to
reject a trial point on covariance grounds and no bounds are needed.

Structures (resolved by tag from a read-only registry):
    us    Unstructured log-Cholesky: d(d+1)/2 parameters. The first d
          are log L_ii, the remaining fill the strict lower triangle of L
          in row-major order.
    diag  Independent effects: d log standard deviations.
    cs    Compound symmetry: d log standard deviations and one
          correlation parameter mapped into (−1/(d−1), 1).
    ar1   First-order autoregressive: one common log standard deviation
          and one correlation parameter, ρ = tanh(x).

All maps are written with torch operations so that L, log det Σ and the
random-effect density stay differentiable in θ.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from types import MappingProxyType

import numpy as np
from numpy.typing import NDArray
import torch


class CovStruct(ABC):
    """Covariance structure of one random-effect term."""

    tag: str = ''

    @abstractmethod
    def n_params(self, d: int) -> int:
        """Number of θ parameters for a d-dimensional term."""
        ...

    @abstractmethod
    def cholesky(self, theta: torch.Tensor, d: int) -> torch.Tensor:
        """Lower Cholesky factor L(θ), shape (d, d)."""
        ...

    @abstractmethod
    def pack(self, cov: NDArray) -> NDArray:
        """Map a covariance matrix back to θ."""
        ...

    @abstractmethod
    def param_names(self, terms: tuple[str, ...]) -> list[str]:
        ...

    def start(self, d: int) -> NDArray:
        """Starting θ: unit standard deviations, no correlation."""
        return np.zeros(self.n_params(d))

    def covariance(self, theta: torch.Tensor, d: int) -> torch.Tensor:
        L = self.cholesky(theta, d)
        return L @ L.T

    def log_det(self, theta: torch.Tensor, d: int) -> torch.Tensor:
        """log det Σ = Σ 2·log L_ii."""
        L = self.cholesky(theta, d)
        return 2.0 * torch.sum(torch.log(torch.diagonal(L)))

    def sd_corr(self, theta: torch.Tensor, d: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Standard deviations (d,) and correlation matrix (d, d)."""
        cov = self.covariance(theta, d)
        sd = torch.sqrt(torch.diagonal(cov))
        return sd, cov / torch.outer(sd, sd)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Unstructured(CovStruct):
    """Unstructured covariance, log-Cholesky parameterization."""

    tag = 'us'

    def n_params(self, d: int) -> int:
        return d * (d + 1) // 2

    def cholesky(self, theta, d):
        L = torch.diag(torch.exp(theta[:d]))
        if d > 1:
            rows, cols = np.tril_indices(d, -1)
            L = L.index_put(
                (torch.as_tensor(rows), torch.as_tensor(cols)), theta[d:]
            )
        return L

    def pack(self, cov):
        cov = np.asarray(cov, dtype=np.float64)
        d = cov.shape[0]
        L = np.linalg.cholesky(cov)
        rows, cols = np.tril_indices(d, -1)
        return np.concatenate([np.log(np.diag(L)), L[rows, cols]])

    def param_names(self, terms):
        d = len(terms)
        rows, cols = np.tril_indices(d, -1)
        names = [f"log_sd({t})" for t in terms]
        names += [f"chol({terms[r]},{terms[c]})" for r, c in zip(rows, cols)]
        return names


class Diagonal(CovStruct):
    """Uncorrelated random effects with separate variances."""

    tag = 'diag'

    def n_params(self, d: int) -> int:
        return d

    def cholesky(self, theta, d):
        return torch.diag(torch.exp(theta[:d]))

    def pack(self, cov):
        return 0.5 * np.log(np.diag(np.asarray(cov, dtype=np.float64)))

    def param_names(self, terms):
        return [f"log_sd({t})" for t in terms]


class CompoundSymmetry(CovStruct):
    """Heterogeneous variances, one common correlation."""

    tag = 'cs'

    def n_params(self, d: int) -> int:
        return d + 1 if d > 1 else 1

    @staticmethod
    def rho(x: torch.Tensor, d: int) -> torch.Tensor:
        lower = -1.0 / (d - 1)
        return lower + (1.0 - lower) * torch.sigmoid(torch.clamp(x, -30.0, 30.0))

    def cholesky(self, theta, d):
        sd = torch.exp(theta[:d])
        if d == 1:
            return torch.diag(sd)
        rho = self.rho(theta[d], d)
        eye = torch.eye(d, dtype=theta.dtype)
        corr = (1.0 - rho) * eye + rho * torch.ones(d, d, dtype=theta.dtype)
        return sd[:, None] * torch.linalg.cholesky(corr)

    def pack(self, cov):
        cov = np.asarray(cov, dtype=np.float64)
        d = cov.shape[0]
        sd = np.sqrt(np.diag(cov))
        if d == 1:
            return np.log(sd)
        corr = cov / np.outer(sd, sd)
        rho = float(np.mean(corr[np.tril_indices(d, -1)]))
        lower = -1.0 / (d - 1)
        s = np.clip((rho - lower) / (1.0 - lower), 1e-10, 1.0 - 1e-10)
        return np.concatenate([np.log(sd), [math.log(s / (1.0 - s))]])

    def param_names(self, terms):
        names = [f"log_sd({t})" for t in terms]
        if len(terms) > 1:
            names.append("cs_rho")
        return names


class AR1(CovStruct):
    """Common variance, correlation ρ^|i−j| between dimensions i and j."""

    tag = 'ar1'

    def n_params(self, d: int) -> int:
        return 2 if d > 1 else 1

    def cholesky(self, theta, d):
        sd = torch.exp(theta[0])
        if d == 1:
            return sd.reshape(1, 1)
        rho = torch.tanh(theta[1])
        tail = torch.sqrt(1.0 - rho ** 2)

        # powers[k] = rho^k
        powers = [torch.ones((), dtype=theta.dtype)]
        for _ in range(d - 1):
            powers.append(powers[-1] * rho)

        zero = torch.zeros((), dtype=theta.dtype)
        rows = []
        for i in range(d):
            row = [powers[i]]
            row += [powers[i - j] * tail if j <= i else zero for j in range(1, d)]
            rows.append(torch.stack(row))
        return sd * torch.stack(rows)

    def pack(self, cov):
        cov = np.asarray(cov, dtype=np.float64)
        d = cov.shape[0]
        sd = np.sqrt(np.mean(np.diag(cov)))
        if d == 1:
            return np.array([np.log(sd)])
        lag1 = np.mean(np.diag(cov, -1)) / sd ** 2
        return np.array([np.log(sd), np.arctanh(np.clip(lag1, -0.999999, 0.999999))])

    def param_names(self, terms):
        return ["log_sd"] + (["ar1_rho"] if len(terms) > 1 else [])


_COV_STRUCTS = MappingProxyType({
    'us': Unstructured(),
    'diag': Diagonal(),
    'cs': CompoundSymmetry(),
    'ar1': AR1(),
})


def resolve_cov_struct(struct: str | CovStruct) -> CovStruct:
    """Resolve a covariance structure tag or instance.

    Raises:
        ValueError: If the tag is not registered.
    """
    if isinstance(struct, CovStruct):
        return struct
    cov = _COV_STRUCTS.get(str(struct).lower())
    if cov is None:
        valid = ', '.join(_COV_STRUCTS.keys())
        raise ValueError(f"Unknown covariance structure: {struct!r}. Valid: {valid}")
    return cov


def mvn_neg_log_density(L: torch.Tensor, B: torch.Tensor) -> torch.Tensor:
    """−Σ_j log N(B_j | 0, L Lᵀ) for the rows of B, shape (J, d).

    Uses the triangular solve L⁻¹ Bᵀ and log det Σ from the Cholesky
    diagonal.
    """
    J, d = B.shape
    white = torch.linalg.solve_triangular(L, B.T, upper=False)
    log_det = 2.0 * torch.sum(torch.log(torch.diagonal(L)))
    return (0.5 * torch.sum(white ** 2)
            + 0.5 * J * log_det
            + 0.5 * J * d * math.log(2.0 * math.pi))
