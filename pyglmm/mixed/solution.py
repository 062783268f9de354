"""
Solution wrapper for fitted GLMMs.

GLMMSolution wraps Result[GLMMParams] together with the ModelSpec it was
fitted on. It provides R-style summary output, coefficient tables for
the conditional, zero-inflation and dispersion models, variance
components (VarCorr), predictions and simulation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import stats
import torch

from pyglmm.core.result import Result
from pyglmm.mixed._common import CoefTable, GLMMControl, GLMMParams, VarCompSummary
from pyglmm.mixed.design import ModelSpec
from pyglmm.mixed._predict import predict as _predict
from pyglmm.mixed._simulate import SimulationSequence


_COMPONENT_KEYS = {'cond': 'beta', 'zi': 'betazi', 'disp': 'betadisp'}

_COMPONENT_TITLES = {
    'cond': 'Conditional model',
    'zi': 'Zero-inflation model',
    'disp': 'Dispersion model',
}


def _significance_stars(p: float) -> str:
    """Return significance stars like R."""
    if np.isnan(p):
        return ' '
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.1:
        return '.'
    else:
        return ' '


def _format_pvalue(p: float) -> str:
    """Format p-value like R."""
    if np.isnan(p):
        return 'NA'
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


# =====================================================================
# VarCorr
# =====================================================================

@dataclass(frozen=True)
class VarCorrTerm:
    """Fitted covariance of one random-effect term."""
    group: str
    names: tuple[str, ...]
    cov: NDArray
    std_dev: NDArray
    corr: NDArray


@dataclass(frozen=True)
class VarCorr:
    """Random-effect covariances of the conditional and zero-inflation models.

    Attributes:
        cond: Group name → VarCorrTerm for the conditional model.
        zi: Group name → VarCorrTerm for the zero-inflation model.
        residual_sd: Residual standard deviation (Gaussian family with an
            intercept-only dispersion model), else None.
    """
    cond: dict[str, VarCorrTerm]
    zi: dict[str, VarCorrTerm]
    residual_sd: float | None = None

    def __getitem__(self, component: str) -> dict[str, NDArray]:
        """Covariance matrices by group, for 'cond' or 'zi'."""
        terms = {'cond': self.cond, 'zi': self.zi}[component]
        return {g: t.cov for g, t in terms.items()}

    def format(
        self,
        components: Sequence[str] | str = ('Std.Dev.',),
        digits: int = 4,
    ) -> str:
        """Tabulate variances and/or standard deviations with correlations.

        Args:
            components: Any of 'Variance' and 'Std.Dev.', in print order.
            digits: Significant digits.
        """
        if isinstance(components, str):
            components = (components,)
        for c in components:
            if c not in ('Variance', 'Std.Dev.'):
                raise ValueError(f"components must be 'Variance' or 'Std.Dev.', got {c!r}")

        blocks = []
        for title, terms, residual in (
            ('Conditional model', self.cond, self.residual_sd),
            ('Zero-inflation model', self.zi, None),
        ):
            if not terms:
                continue
            blocks.append(f"{title}:\n" + _format_terms(terms, residual, components, digits))
        return '\n\n'.join(blocks)

    def __str__(self) -> str:
        return self.format()


def _format_terms(terms, residual_sd, components, digits) -> str:
    def num(x: float) -> str:
        return f"{x:.{digits}g}"

    rows = []
    for t in terms.values():
        for i, name in enumerate(t.names):
            values = [num(t.std_dev[i] ** 2) if c == 'Variance' else num(t.std_dev[i])
                      for c in components]
            corr = [f"{t.corr[i, j]:.2f}" for j in range(i)]
            rows.append([t.group if i == 0 else '', name] + values + [corr])
    if residual_sd is not None:
        values = [num(residual_sd ** 2) if c == 'Variance' else num(residual_sd)
                  for c in components]
        rows.append(['Residual', ''] + values + [[]])

    n_val = len(components)
    header = ['Groups', 'Name'] + list(components)
    widths = [max(len(header[k]), *(len(r[k]) for r in rows)) for k in range(2 + n_val)]
    has_corr = any(r[-1] for r in rows)

    def line(cells, corr):
        parts = [f"{cells[0]:<{widths[0]}}", f"{cells[1]:<{widths[1]}}"]
        parts += [f"{cells[2 + k]:>{widths[2 + k]}}" for k in range(n_val)]
        text = ' ' + ' '.join(parts)
        if corr:
            text += ' ' + ' '.join(f"{c:>5}" for c in corr)
        return text.rstrip()

    out = [line(header, ['Corr'] if has_corr else [])]
    out += [line(r[:-1], r[-1]) for r in rows]
    return '\n'.join(out)


# =====================================================================
# GLMMSolution
# =====================================================================

class GLMMSolution:
    """Solution wrapper for a fitted generalized linear mixed model.

    Uses Wald z-statistics from the inverse outer Hessian for inference.
    """

    def __init__(self, _result: Result[GLMMParams], _spec: ModelSpec,
                 _control: GLMMControl | None = None):
        self._result = _result
        self._spec = _spec
        self._control = _control or GLMMControl()

    @property
    def params(self) -> GLMMParams:
        return self._result.params

    @property
    def result(self) -> Result[GLMMParams]:
        return self._result

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    @property
    def control(self) -> GLMMControl:
        return self._control

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Parameters ---

    def _block(self, key: str) -> slice:
        return self._spec.layout.slices[key]

    @property
    def vcov(self) -> NDArray:
        """Covariance of all outer parameter estimates (NaN if unavailable)."""
        return self.params.vcov

    def coef_table(self, component: str = 'cond') -> CoefTable:
        """Wald table for the 'cond', 'zi' or 'disp' fixed effects."""
        if component not in _COMPONENT_KEYS:
            raise ValueError(f"component must be one of {tuple(_COMPONENT_KEYS)}, got {component!r}")
        key = _COMPONENT_KEYS[component]
        sl = self._block(key)
        est = np.asarray(self.params.par[sl], dtype=np.float64)
        se = np.sqrt(np.maximum(np.diag(self.params.vcov)[sl], 0.0))
        se[np.isnan(np.diag(self.params.vcov)[sl])] = np.nan
        with np.errstate(divide='ignore', invalid='ignore'):
            z = est / se
        p = 2.0 * stats.norm.sf(np.abs(z))
        return CoefTable(
            component=component,
            names=self._spec.coef_names[key],
            estimate=est,
            se=se,
            z_values=z,
            p_values=p,
        )

    @property
    def coefficients(self) -> NDArray:
        return self.coef_table('cond').estimate

    @property
    def fixef(self) -> dict[str, dict[str, float]]:
        """Fixed effects by sub-model: {'cond': {...}, 'zi': {...}, 'disp': {...}}."""
        out = {}
        for comp, key in _COMPONENT_KEYS.items():
            names = self._spec.coef_names[key]
            out[comp] = dict(zip(names, (float(v) for v in self.params.par[self._block(key)])))
        return out

    @property
    def se(self) -> NDArray:
        return self.coef_table('cond').se

    @property
    def z_values(self) -> NDArray:
        """Wald z-statistics for the conditional fixed effects."""
        return self.coef_table('cond').z_values

    @property
    def p_values(self) -> NDArray:
        return self.coef_table('cond').p_values

    # --- Random effects ---

    @property
    def ranef(self) -> dict[str, dict[str, NDArray]]:
        """Conditional modes: {'cond': {group: (levels, terms)}, 'zi': {...}}."""
        return {'cond': self.params.random_effects, 'zi': self.params.zi_random_effects}

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    def var_corr(self) -> VarCorr:
        """Fitted random-effect covariance, std. dev. and correlation per term."""
        spec = self._spec

        def collect(key: str, terms) -> dict[str, VarCorrTerm]:
            out = {}
            for term, sl in zip(terms, spec.layout.term_slices[key]):
                theta = torch.as_tensor(self.params.par[sl], dtype=torch.float64)
                with torch.no_grad():
                    cov = term.cov_struct.covariance(theta, term.n_dims).numpy()
                    sd, corr = term.cov_struct.sd_corr(theta, term.n_dims)
                out[term.group_name] = VarCorrTerm(
                    group=term.group_name,
                    names=term.term_labels,
                    cov=cov,
                    std_dev=sd.numpy(),
                    corr=corr.numpy(),
                )
            return out

        residual = None
        if spec.family.name == 'gaussian' and self._intercept_only_disp():
            residual = float(np.sqrt(np.exp(self.params.par[self._block('betadisp')][0])))
        return VarCorr(
            cond=collect('theta', spec.cond_terms),
            zi=collect('thetazi', spec.zi_terms),
            residual_sd=residual,
        )

    def _intercept_only_disp(self) -> bool:
        X_disp = self._spec.X_disp
        return X_disp.shape[1] == 1 and bool(np.allclose(X_disp[:, 0], 1.0))

    # --- Model fit ---

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def n_params(self) -> int:
        return self.params.n_params

    @property
    def df_residual(self) -> int:
        return self.params.n_obs - self.params.n_params

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def pd_hessian(self) -> bool:
        return self.params.pd_hessian

    @property
    def fitted_values(self) -> NDArray:
        """Expected response (μ̂, accounting for zero-inflation)."""
        return self.predict(type='response')

    @property
    def linear_predictor(self) -> NDArray:
        """Conditional linear predictor (η̂ = Xβ̂ + offset + Zb̂)."""
        return self.predict(type='link')

    def residuals(self, type: str = 'response') -> NDArray:
        """Response or Pearson residuals.

        Binomial responses are taken as proportions y / trials.
        """
        spec = self._spec
        y = spec.y if spec.trials is None else spec.y / spec.trials
        resid = y - self.fitted_values
        if type == 'response':
            return resid
        if type != 'pearson':
            raise ValueError(f"type must be 'response' or 'pearson', got {type!r}")
        if spec.has_zi:
            raise NotImplementedError("Pearson residuals of zero-inflated models")
        mu = self.predict(type='conditional')
        phi = self.predict(type='disp') if spec.family.has_dispersion else None
        psi = self.params.par[self._block('psi')] if spec.family.n_shape_params else None
        var = spec.family.variance(mu, phi, psi)
        if spec.trials is not None:
            var = var / spec.trials
        return resid / np.sqrt(var)

    # --- Prediction and simulation ---

    def predict(
        self,
        new_data: Mapping[str, Any] | None = None,
        type: str = 'link',
        se_fit: bool = False,
        include_random: bool = True,
    ) -> NDArray | tuple[NDArray, NDArray]:
        """Predict from the fitted model.

        Args:
            new_data: None for the fitted data, or a mapping with keys
                'X', 'zi_X', 'disp_X', 'groups', 'random_data', 'offset',
                'trials'. Intercept-only designs may be omitted.
            type: 'link' (alias 'linear'), 'response', 'conditional',
                'zlink', 'zprob' (alias 'zero_inflation_probability'),
                'disp_link' or 'disp'.
            se_fit: Also return delta-method standard errors.
            include_random: Add the conditional modes of the random
                effects (unseen levels contribute 0).

        Returns:
            Predictions, or (predictions, standard errors) if se_fit.
        """
        return _predict(
            self._spec, self.params.par, self.params.b, self.params.vcov,
            new_data=new_data, type=type, se_fit=se_fit,
            include_random=include_random,
        )

    def simulate(self, seed: int | None = None, n_draws: int = 1) -> SimulationSequence:
        """Lazy, restartable sequence of n_draws simulated response vectors."""
        return SimulationSequence(self._spec, np.asarray(self.params.par), seed, n_draws)

    def update(self, *, control: GLMMControl | None = None, **changes: Any) -> 'GLMMSolution':
        """Refit with changed model arguments, warm-started from this fit."""
        from pyglmm.mixed.solvers import update
        return update(self, control=control, **changes)

    # --- Summary ---

    def summary(self) -> str:
        """R-style summary matching glmmTMB's summary()."""
        params = self.params
        spec = self._spec

        lines = []
        lines.append(
            "Generalized linear mixed model fit by maximum likelihood "
            "(Laplace Approximation)"
        )
        lines.append(f" Family: {params.family_name}  ( {params.link_name} )")
        if spec.has_zi:
            label = 'Hurdle' if spec.is_hurdle else 'Zero inflation'
            lines.append(f"{label}:  ( logit )")
        if spec.priors:
            lines.append("Priors: " + ', '.join(
                f"{p.label} ~ {p.dist}({', '.join(f'{v:g}' for v in p.params)})"
                for p in spec.priors
            ))
        lines.append("")
        lines.append(f" {'AIC':>10s} {'BIC':>10s} {'logLik':>10s} {'df.resid':>10s}")
        lines.append(
            f" {params.aic:10.1f} {params.bic:10.1f} "
            f"{params.log_likelihood:10.1f} {self.df_residual:10d}"
        )
        lines.append("")

        vc = self.var_corr()
        if vc.cond or vc.zi:
            lines.append("Random effects:")
            lines.append("")
            lines.append(vc.format(('Variance', 'Std.Dev.')))
            group_parts = ', '.join(
                f'{name}, {n}' for name, n in params.n_groups.items()
            )
            lines.append(f"Number of obs: {params.n_obs}, groups:  {group_parts}")
            lines.append("")

        disp = self._dispersion_line()
        if disp:
            lines.append(disp)
            lines.append("")

        for comp in ('cond', 'zi', 'disp'):
            table = self.coef_table(comp)
            if not len(table):
                continue
            if comp == 'disp' and disp:
                continue
            lines.append(f"{_COMPONENT_TITLES[comp]}:")
            lines.append(f" {'':>15s} {'Estimate':>10s} {'Std. Error':>10s} "
                         f"{'z value':>10s} {'Pr(>|z|)':>10s} {'':>4s}")
            for i, name in enumerate(table.names):
                p_str = _format_pvalue(table.p_values[i])
                stars = _significance_stars(table.p_values[i])
                lines.append(
                    f" {name:>15s} {table.estimate[i]:10.4f} "
                    f"{table.se[i]:10.4f} "
                    f"{table.z_values[i]:10.3f} {p_str:>10s} {stars}"
                )
            lines.append("")

        lines.append("---")
        lines.append("Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")

        if not params.converged:
            lines.append("")
            lines.append("WARNING: Model did not converge")
        if not params.pd_hessian:
            lines.append("WARNING: Hessian is not positive definite; "
                         "standard errors are unavailable")

        return '\n'.join(lines)

    def _dispersion_line(self) -> str | None:
        """glmmTMB-style one-line dispersion estimate for intercept-only models."""
        spec = self._spec
        if not spec.family.has_dispersion or not self._intercept_only_disp():
            return None
        phi = float(np.exp(self.params.par[self._block('betadisp')][0]))
        name = spec.family.name
        if name == 'gaussian':
            return f"Dispersion estimate for gaussian family (sigma^2): {phi:.3g}"
        if name in ('nbinom2', 'truncated_nbinom2', 'nbinom1'):
            return f"Dispersion parameter for {name} family (): {phi:.3g}"
        return f"Dispersion estimate for {name} family: {phi:.3g}"

    def __repr__(self) -> str:
        nfe = len(self._spec.coef_names['beta'])
        nre = len(self.params.var_components)
        return (
            f"GLMMSolution({self.params.family_name}({self.params.link_name}), "
            f"n={self.params.n_obs}, "
            f"fixed={nfe}, "
            f"random={nre} var components, "
            f"zi={'yes' if self._spec.has_zi else 'no'})"
        )
