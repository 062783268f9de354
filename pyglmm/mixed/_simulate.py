"""
Simulation from a fitted GLMM.

Each draw samples new random effects from the fitted covariance of every
term, forms the linear predictors, samples the zero-inflation (or hurdle)
indicator and the response from the family. Draw i uses the i-th child of
numpy.random.SeedSequence(seed), so a sequence can be iterated any number
of times, or indexed, with identical results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import numpy as np
from numpy.typing import NDArray
from joblib import Parallel, delayed
import torch

from pyglmm.mixed.design import ModelSpec
from pyglmm.mixed._objective import DTYPE


@dataclass(frozen=True)
class _TermDraw:
    Z: NDArray
    L: NDArray          # Cholesky factor of the fitted covariance (d, d)
    n_groups: int
    n_dims: int


class SimulationSequence:
    """Lazy, finite, restartable sequence of simulated response vectors.

    Parameters
    ----------
    spec : ModelSpec
        Specification of the fitted model.
    par : NDArray
        Fitted outer parameter vector.
    seed : int or None
        Root seed. None draws fresh OS entropy once, at construction.
    n_draws : int
        Number of simulated datasets.
    """

    def __init__(self, spec: ModelSpec, par: NDArray, seed: int | None, n_draws: int):
        if n_draws < 1:
            raise ValueError(f"n_draws must be positive, got {n_draws}")
        self.n_draws = int(n_draws)
        self.seed = np.random.SeedSequence(seed).entropy

        self._family = spec.family
        self._has_zi = spec.has_zi
        self._trials = spec.trials
        self._n = spec.n

        s = spec.layout.slices
        self._eta_fixed = spec.X @ par[s['beta']] + spec.offset
        self._eta_zi_fixed = spec.X_zi @ par[s['betazi']] if spec.has_zi else None
        self._phi = np.exp(spec.X_disp @ par[s['betadisp']]) if spec.family.has_dispersion else None
        self._psi = par[s['psi']] if spec.family.n_shape_params else None

        self._cond = self._term_draws(spec.cond_terms, spec.layout.term_slices['theta'], par)
        self._zi = self._term_draws(spec.zi_terms, spec.layout.term_slices['thetazi'], par)

    @staticmethod
    def _term_draws(terms, slices, par) -> list[_TermDraw]:
        out = []
        for term, sl in zip(terms, slices):
            theta = torch.as_tensor(par[sl], dtype=DTYPE)
            L = term.cov_struct.cholesky(theta, term.n_dims).numpy()
            out.append(_TermDraw(term.Z_block, L, term.n_groups, term.n_dims))
        return out

    def __len__(self) -> int:
        return self.n_draws

    def __iter__(self) -> Iterator[NDArray]:
        children = np.random.SeedSequence(self.seed).spawn(self.n_draws)
        for child in children:
            yield self._draw(np.random.default_rng(child))

    def __getitem__(self, i: int) -> NDArray:
        if not -self.n_draws <= i < self.n_draws:
            raise IndexError(f"draw index {i} out of range for {self.n_draws} draws")
        child = np.random.SeedSequence(self.seed).spawn(self.n_draws)[i]
        return self._draw(np.random.default_rng(child))

    def draw_all(self, n_jobs: int | None = None) -> NDArray:
        """All draws as an (n_draws, n) array, optionally on a thread pool."""
        children = np.random.SeedSequence(self.seed).spawn(self.n_draws)
        draws = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(self._draw)(np.random.default_rng(child)) for child in children
        )
        return np.vstack(draws)

    @staticmethod
    def _random_part(terms: list[_TermDraw], n: int, rng: np.random.Generator) -> NDArray:
        total = np.zeros(n)
        for t in terms:
            B = rng.standard_normal((t.n_groups, t.n_dims)) @ t.L.T
            total += t.Z @ B.T.ravel()
        return total

    def _draw(self, rng: np.random.Generator) -> NDArray:
        fam = self._family
        eta = self._eta_fixed + self._random_part(self._cond, self._n, rng)
        with torch.no_grad():
            mu = fam.link.linkinv(torch.as_tensor(eta, dtype=DTYPE)).numpy()
        y = fam.sample(mu, self._phi, self._psi, self._trials, rng)
        if not self._has_zi:
            return y

        eta_zi = self._eta_zi_fixed + self._random_part(self._zi, self._n, rng)
        p_zero = 1.0 / (1.0 + np.exp(-eta_zi))
        structural = rng.random(self._n) < p_zero
        return np.where(structural, 0.0, y)
