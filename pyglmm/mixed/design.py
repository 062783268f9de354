"""
Design validation for GLMMs.

ModelSpec validates and organizes everything a fit needs: the response,
the fixed-effect design matrices of the conditional, zero-inflation and
dispersion models, the random-effect terms of the conditional and
zero-inflation models, the family, and the resolved priors. It is built
once and is read-only thereafter.

ParameterLayout describes the flat outer parameter vector

    beta | betazi | betadisp | theta | thetazi | psi

with one name per element, so estimates can be reported and matched
across refits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from pyglmm.core.exceptions import ModelSpecError, ValidationError
from pyglmm.core.validation import (
    check_column_rank,
    check_design_matrix,
    check_observation_vector,
    check_response,
)
from pyglmm.mixed.families import Family, Link, LogitLink, LogLink, resolve_family
from pyglmm.mixed._random_effects import RandomEffectTerm, parse_random_effects, stack_z
from pyglmm.mixed._priors import ResolvedPrior, resolve_priors


COMPONENTS = ('beta', 'betazi', 'betadisp', 'theta', 'thetazi', 'psi')


@dataclass(frozen=True)
class ParameterLayout:
    """Slices and names of the outer parameter vector.

    Attributes:
        slices: Component name → slice of the full vector.
        term_slices: 'theta' / 'thetazi' → one slice per random-effect term.
        names: Qualified name of every element, e.g. 'beta.(Intercept)',
            'theta.site.log_sd((Intercept))'.
    """
    slices: dict[str, slice]
    term_slices: dict[str, tuple[slice, ...]]
    names: tuple[str, ...]

    @property
    def size(self) -> int:
        return len(self.names)

    @staticmethod
    def build(
        coef_names: dict[str, tuple[str, ...]],
        cond_terms: list[RandomEffectTerm],
        zi_terms: list[RandomEffectTerm],
        n_psi: int,
    ) -> 'ParameterLayout':
        blocks = {
            'beta': [f"beta.{c}" for c in coef_names['beta']],
            'betazi': [f"betazi.{c}" for c in coef_names['betazi']],
            'betadisp': [f"betadisp.{c}" for c in coef_names['betadisp']],
            'theta': [f"theta.{t.group_name}.{p}"
                      for t in cond_terms for p in t.theta_names()],
            'thetazi': [f"thetazi.{t.group_name}.{p}"
                        for t in zi_terms for p in t.theta_names()],
            'psi': [f"psi.{k}" for k in range(n_psi)],
        }

        slices = {}
        names: list[str] = []
        for comp in COMPONENTS:
            start = len(names)
            names.extend(blocks[comp])
            slices[comp] = slice(start, len(names))

        term_slices = {}
        for comp, terms in (('theta', cond_terms), ('thetazi', zi_terms)):
            offset = slices[comp].start
            per_term = []
            for t in terms:
                per_term.append(slice(offset, offset + t.n_params))
                offset += t.n_params
            term_slices[comp] = tuple(per_term)

        return ParameterLayout(slices=slices, term_slices=term_slices, names=tuple(names))

    def index(self, name: str) -> int:
        return self.names.index(name)


@dataclass(frozen=True)
class ModelSpec:
    """Validated, immutable description of one GLMM fit.

    Attributes:
        y: Response vector (n,).
        X: Conditional fixed-effects design (n, p).
        X_zi: Zero-inflation / hurdle fixed-effects design (n, p_zi);
            p_zi = 0 when there is no zero-inflation.
        X_disp: Dispersion fixed-effects design (n, p_disp).
        weights: Prior weights (n,).
        offset: Offset added to the conditional linear predictor (n,).
        trials: Binomial trial counts (n,) or None.
        coef_names: Component → coefficient names for beta, betazi, betadisp.
        cond_terms: Random-effect terms of the conditional model.
        zi_terms: Random-effect terms of the zero-inflation model.
        Z: Conditional random-effects design, (n, q_cond).
        Z_zi: Zero-inflation random-effects design, (n, q_zi).
        family: Response family (carries the conditional link).
        zi_link: Link of the zero-inflation model (logit).
        disp_link: Link of the dispersion model (log).
        priors: Resolved prior penalties.
        layout: Outer parameter layout.
        build_args: Keyword arguments ModelSpec.build was called with,
            kept for update() and for prediction on new data.
    """
    y: NDArray
    X: NDArray
    X_zi: NDArray
    X_disp: NDArray
    weights: NDArray
    offset: NDArray
    trials: NDArray | None
    coef_names: dict[str, tuple[str, ...]]
    cond_terms: tuple[RandomEffectTerm, ...]
    zi_terms: tuple[RandomEffectTerm, ...]
    Z: NDArray
    Z_zi: NDArray
    family: Family
    zi_link: Link
    disp_link: Link
    priors: tuple[ResolvedPrior, ...]
    layout: ParameterLayout
    build_args: dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def n(self) -> int:
        return self.y.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]

    @property
    def has_zi(self) -> bool:
        return self.X_zi.shape[1] > 0

    @property
    def is_hurdle(self) -> bool:
        return self.has_zi and self.family.truncated

    @property
    def q_cond(self) -> int:
        return self.Z.shape[1]

    @property
    def q_zi(self) -> int:
        return self.Z_zi.shape[1]

    @property
    def q(self) -> int:
        return self.q_cond + self.q_zi

    @property
    def b_slices(self) -> tuple[tuple[slice, ...], tuple[slice, ...]]:
        """Per-term slices of the random-effect vector, (cond, zi)."""
        cond, offset = [], 0
        for t in self.cond_terms:
            cond.append(slice(offset, offset + t.n_coef))
            offset += t.n_coef
        zi = []
        for t in self.zi_terms:
            zi.append(slice(offset, offset + t.n_coef))
            offset += t.n_coef
        return tuple(cond), tuple(zi)

    @staticmethod
    def build(
        y: NDArray,
        X: NDArray | None = None,
        *,
        groups: dict[str, NDArray] | None = None,
        random_effects: dict[str, list[str]] | None = None,
        random_data: dict[str, NDArray] | None = None,
        cov_structs: dict[str, str] | None = None,
        zi_X: NDArray | None = None,
        zi_random_effects: dict[str, list[str]] | None = None,
        zi_cov_structs: dict[str, str] | None = None,
        disp_X: NDArray | None = None,
        family: str | Family = 'gaussian',
        link: str | Link | None = None,
        weights: NDArray | None = None,
        trials: NDArray | None = None,
        offset: NDArray | None = None,
        priors: list | None = None,
        coef_names: list[str] | None = None,
        zi_coef_names: list[str] | None = None,
        disp_coef_names: list[str] | None = None,
    ) -> 'ModelSpec':
        """Validate inputs and create a ModelSpec.

        Args:
            y: Response vector. For binomial counts pass successes in
               ``y`` and trial counts in ``trials``.
            X: Conditional fixed effects design matrix. If None, an
               intercept-only model. If 1-D, treated as a single column.
            groups: Dict mapping grouping factor names to label arrays.
            random_effects: Dict mapping group names to term lists for the
               conditional model. None gives a random intercept for every
               group in ``groups``.
            random_data: Dict mapping slope variable names to data arrays.
            cov_structs: Dict mapping group names to covariance structure
               tags ('us', 'diag', 'cs', 'ar1') for conditional terms.
            zi_X: Zero-inflation design. With a truncated family this is
               the hurdle (zero vs positive) model.
            zi_random_effects: Group → term lists for the zi model.
            zi_cov_structs: Covariance structures for zi terms.
            disp_X: Dispersion design. Defaults to an intercept for
               families with a dispersion parameter.
            family: Family name or instance.
            link: Conditional link overriding the family default.
            weights: Prior weights on the log-likelihood contributions.
            trials: Binomial trial counts.
            offset: Offset added to the conditional linear predictor.
            priors: Sequence of Prior objects or mappings.
            coef_names, zi_coef_names, disp_coef_names: Column names.

        Raises:
            ModelSpecError: On ill-posed model specifications.
            ValidationError: On malformed arrays.
        """
        build_args = dict(
            y=y, X=X, groups=groups, random_effects=random_effects,
            random_data=random_data, cov_structs=cov_structs, zi_X=zi_X,
            zi_random_effects=zi_random_effects, zi_cov_structs=zi_cov_structs,
            disp_X=disp_X, family=family, link=link, weights=weights,
            trials=trials, offset=offset, priors=priors, coef_names=coef_names,
            zi_coef_names=zi_coef_names, disp_coef_names=disp_coef_names,
        )

        y = check_response(y)
        n = y.shape[0]

        try:
            fam = resolve_family(family, link)
        except (ValueError, TypeError) as e:
            raise ModelSpecError(str(e), component='cond') from e

        X = _design_matrix(X, n, 'X', intercept=True)
        X_zi = _design_matrix(zi_X, n, 'zi_X', intercept=False)
        if disp_X is not None and not fam.has_dispersion:
            raise ModelSpecError(
                f"{fam.name} family has no dispersion parameter; "
                f"disp_X must be None",
                component='disp',
            )
        X_disp = _design_matrix(disp_X, n, 'disp_X', intercept=fam.has_dispersion)

        check_column_rank(X, 'X', component='cond')
        check_column_rank(X_zi, 'zi_X', component='zi')
        check_column_rank(X_disp, 'disp_X', component='disp')

        if trials is not None:
            if fam.name != 'binomial':
                raise ModelSpecError(
                    f"trials are only meaningful for the binomial family, "
                    f"got {fam.name}",
                    component='cond',
                )
            trials = check_observation_vector(trials, 'trials', n, nonnegative=True)

        if X_zi.shape[1] > 0 and not fam.zero_inflatable:
            raise ModelSpecError(
                f"{fam.name} family has no point mass at zero; "
                f"zero-inflation is not defined",
                component='zi',
            )
        hurdle = fam.truncated and X_zi.shape[1] > 0
        fam.validate_response(y, trials, hurdle)

        if weights is None:
            weights = np.ones(n)
        else:
            weights = check_observation_vector(weights, 'weights', n, nonnegative=True)

        if offset is None:
            offset = np.zeros(n)
        else:
            offset = check_observation_vector(offset, 'offset', n)

        cond_terms = parse_random_effects(
            groups, random_effects, random_data, cov_structs, n,
            component='cond', default_intercepts=True,
        )
        if zi_random_effects and X_zi.shape[1] == 0:
            raise ModelSpecError(
                "zi_random_effects given without a zero-inflation design zi_X",
                component='zi',
            )
        zi_terms = parse_random_effects(
            groups, zi_random_effects, random_data, zi_cov_structs, n,
            component='zi', default_intercepts=False,
        )

        names = {
            'beta': _coef_names(coef_names, X.shape[1], 'coef_names'),
            'betazi': _coef_names(zi_coef_names, X_zi.shape[1], 'zi_coef_names'),
            'betadisp': _coef_names(disp_coef_names, X_disp.shape[1], 'disp_coef_names'),
        }
        layout = ParameterLayout.build(names, cond_terms, zi_terms, fam.n_shape_params)
        resolved = resolve_priors(priors, layout, names, cond_terms, zi_terms)

        return ModelSpec(
            y=y,
            X=X,
            X_zi=X_zi,
            X_disp=X_disp,
            weights=weights,
            offset=offset,
            trials=trials,
            coef_names=names,
            cond_terms=tuple(cond_terms),
            zi_terms=tuple(zi_terms),
            Z=stack_z(cond_terms, n),
            Z_zi=stack_z(zi_terms, n),
            family=fam,
            zi_link=LogitLink(),
            disp_link=LogLink(),
            priors=resolved,
            layout=layout,
            build_args=build_args,
        )


def _design_matrix(X: NDArray | None, n: int, name: str, intercept: bool) -> NDArray:
    if X is None:
        return np.ones((n, 1)) if intercept else np.zeros((n, 0))
    return check_design_matrix(X, name, n)


def _coef_names(names: list[str] | None, p: int, arg: str) -> tuple[str, ...]:
    if names is None:
        return tuple(make_coef_names(p))
    names = tuple(str(c) for c in names)
    if len(names) != p:
        raise ValidationError(f"{arg}: expected {p} names, got {len(names)}")
    if len(set(names)) != p:
        raise ValidationError(f"{arg}: names must be unique")
    return names


def make_coef_names(p: int) -> list[str]:
    """Generate default coefficient names."""
    if p == 0:
        return []
    names = ['(Intercept)']
    for i in range(1, p):
        names.append(f'X{i}')
    return names
