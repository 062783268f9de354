"""
Predictions from a fitted GLMM.

Predictions are conditional on the estimated random-effect modes b̂
(set include_random=False for population-level predictions). Levels of a
grouping factor that were not seen during fitting get random effect 0.

Standard errors use the delta method: with J = ∂pred/∂par evaluated by
autograd, Var(pred) ≈ diag(J V Jᵀ) where V is the inverse outer Hessian.
b̂ is held fixed, so only fixed-effect (and shape) uncertainty enters.
"""

from __future__ import annotations

from typing import Any, Mapping

import numpy as np
from numpy.typing import NDArray
import torch

from pyglmm.core.exceptions import ModelSpecError, ValidationError
from pyglmm.core.validation import check_design_matrix, check_observation_vector
from pyglmm.mixed.design import ModelSpec
from pyglmm.mixed._objective import DTYPE
from pyglmm.mixed._random_effects import rebuild_z_block


PREDICT_TYPES = ('link', 'response', 'conditional', 'zlink', 'zprob', 'disp_link', 'disp')

_TYPE_ALIASES = {
    'linear': 'link',
    'zero_inflation_probability': 'zprob',
    'zero-inflation-probability': 'zprob',
}


def resolve_predict_type(type: str) -> str:
    key = _TYPE_ALIASES.get(type, type)
    if key not in PREDICT_TYPES:
        valid = ', '.join(PREDICT_TYPES + tuple(_TYPE_ALIASES))
        raise ValueError(f"Unknown prediction type {type!r}. Valid: {valid}")
    return key


class _Design:
    """Prediction-time design matrices (fitted data or new data)."""

    def __init__(self, spec: ModelSpec, new_data: Mapping[str, Any] | None,
                 include_random: bool):
        if new_data is None:
            self.n = spec.n
            self.X, self.X_zi, self.X_disp = spec.X, spec.X_zi, spec.X_disp
            self.offset = spec.offset
            self.trials = spec.trials
            self.Z = spec.Z if include_random else None
            self.Z_zi = spec.Z_zi if include_random else None
            return

        known = {'X', 'zi_X', 'disp_X', 'groups', 'random_data', 'offset', 'trials'}
        unknown = sorted(set(new_data) - known)
        if unknown:
            raise ValidationError(f"new_data: unknown keys {unknown}")

        self.n = self._n_rows(new_data)
        self.X = self._matrix(new_data.get('X'), spec.X, 'X', self.n)
        self.X_zi = self._matrix(new_data.get('zi_X'), spec.X_zi, 'zi_X', self.n)
        self.X_disp = self._matrix(new_data.get('disp_X'), spec.X_disp, 'disp_X', self.n)

        offset = new_data.get('offset')
        self.offset = (np.zeros(self.n) if offset is None
                       else check_observation_vector(offset, 'offset', self.n))
        trials = new_data.get('trials')
        self.trials = (None if trials is None
                       else check_observation_vector(trials, 'trials', self.n, nonnegative=True))

        self.Z = self.Z_zi = None
        if include_random:
            groups = new_data.get('groups') or {}
            random_data = new_data.get('random_data')
            self.Z = self._z(spec.cond_terms, groups, random_data)
            self.Z_zi = self._z(spec.zi_terms, groups, random_data)

    @staticmethod
    def _n_rows(new_data: Mapping[str, Any]) -> int:
        for key in ('X', 'zi_X', 'disp_X', 'offset', 'trials'):
            if new_data.get(key) is not None:
                return int(np.shape(new_data[key])[0])
        for key in ('groups', 'random_data'):
            for value in (new_data.get(key) or {}).values():
                return int(np.shape(value)[0])
        raise ValidationError("new_data: cannot determine the number of rows")

    @staticmethod
    def _matrix(value, fitted: NDArray, name: str, n: int) -> NDArray:
        p = fitted.shape[1]
        if value is None:
            if p == 0:
                return np.zeros((n, 0))
            if p == 1 and np.allclose(fitted[:, 0], 1.0):
                return np.ones((n, 1))
            raise ValidationError(f"new_data: '{name}' is required for prediction")
        return check_design_matrix(value, f"new_data['{name}']", n, n_cols=p)

    def _z(self, terms, groups, random_data) -> NDArray:
        if not terms:
            return np.zeros((self.n, 0))
        return np.hstack([rebuild_z_block(t, groups, random_data, self.n) for t in terms])


def predict(
    spec: ModelSpec,
    par: NDArray,
    b: NDArray,
    vcov: NDArray,
    new_data: Mapping[str, Any] | None = None,
    type: str = 'link',
    se_fit: bool = False,
    include_random: bool = True,
) -> NDArray | tuple[NDArray, NDArray]:
    """Evaluate a fitted sub-model on the fitted or new data.

    Types:
        link          conditional linear predictor η
        conditional   mean of the (untruncated) conditional distribution g⁻¹(η)
        response      expected response, accounting for zero-inflation,
                      hurdle and truncation
        zlink         zero-inflation linear predictor
        zprob         zero-inflation (hurdle) probability
        disp_link     dispersion linear predictor
        disp          dispersion parameter φ

    Returns:
        Predictions (n,), or (predictions, standard errors) if se_fit.
    """
    kind = resolve_predict_type(type)
    fam = spec.family
    if kind in ('zlink', 'zprob') and not spec.has_zi:
        raise ModelSpecError(
            f"prediction type {type!r} requires a zero-inflation model", component='zi',
        )
    if kind in ('disp_link', 'disp') and not fam.has_dispersion:
        raise ModelSpecError(
            f"prediction type {type!r}: {fam.name} family has no dispersion",
            component='disp',
        )

    design = _Design(spec, new_data, include_random)
    s = spec.layout.slices
    b_t = torch.as_tensor(b, dtype=DTYPE)
    X = torch.as_tensor(design.X, dtype=DTYPE)
    X_zi = torch.as_tensor(design.X_zi, dtype=DTYPE)
    X_disp = torch.as_tensor(design.X_disp, dtype=DTYPE)
    offset = torch.as_tensor(design.offset, dtype=DTYPE)
    trials = None if design.trials is None else torch.as_tensor(design.trials, dtype=DTYPE)
    Zb = Zb_zi = None
    if design.Z is not None and spec.q_cond:
        Zb = torch.as_tensor(design.Z, dtype=DTYPE) @ b_t[:spec.q_cond]
    if design.Z_zi is not None and spec.q_zi:
        Zb_zi = torch.as_tensor(design.Z_zi, dtype=DTYPE) @ b_t[spec.q_cond:]

    def evaluate(par_t: torch.Tensor) -> torch.Tensor:
        eta = X @ par_t[s['beta']] + offset
        if Zb is not None:
            eta = eta + Zb
        if kind == 'link':
            return eta

        eta_disp = X_disp @ par_t[s['betadisp']] if fam.has_dispersion else None
        if kind == 'disp_link':
            return eta_disp
        phi = None if eta_disp is None else torch.exp(eta_disp)
        if kind == 'disp':
            return phi

        eta_zi = None
        if spec.has_zi:
            eta_zi = X_zi @ par_t[s['betazi']]
            if Zb_zi is not None:
                eta_zi = eta_zi + Zb_zi
        if kind == 'zlink':
            return eta_zi
        if kind == 'zprob':
            return torch.sigmoid(eta_zi)

        mu = fam.link.linkinv(eta)
        if kind == 'conditional':
            return mu

        psi = par_t[s['psi']] if fam.n_shape_params else None
        mean = mu
        if fam.truncated:
            log_p0 = fam.log_prob_zero(eta, phi, psi, trials)
            mean = mu / -torch.expm1(log_p0)
        if eta_zi is not None:
            mean = mean * torch.sigmoid(-eta_zi)
        return mean

    par_t = torch.as_tensor(par, dtype=DTYPE)
    with torch.no_grad():
        fit = evaluate(par_t).numpy().copy()
    if not se_fit:
        return fit

    jac = torch.autograd.functional.jacobian(evaluate, par_t).numpy()
    var = np.einsum('ij,jk,ik->i', jac, vcov, jac)
    se = np.sqrt(np.maximum(var, 0.0))
    se[np.isnan(var)] = np.nan
    return fit, se
