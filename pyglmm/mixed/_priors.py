"""
Prior penalties for MAP estimation.

A prior is specified by a distribution string, a parameter class and an
optional coefficient selector, e.g.::

    Prior("normal(0, 3)", cls="fixef", coef="x")
    {"prior": "gamma(1e8, 2.5)", "class": "ranef"}

The negative log density of every resolved prior is added to the joint
objective. Priors only shift the optimum; they are not part of the
reported log-likelihood.

Classes and the quantities they apply to:
    fixef, fixef_zi, fixef_disp   coefficients of the conditional,
                                  zero-inflation and dispersion models
    ranef, ranef_zi               standard deviations of the random
                                  effects in the conditional / zi model

Distribution support for ranef classes: ``gamma`` is a density on the
standard deviation itself; ``normal``, ``t`` and ``cauchy`` apply to the
log standard deviation. No Jacobian term is added for either.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import torch
from torch.distributions import Cauchy, Gamma, Normal, StudentT

from pyglmm.core.exceptions import ModelSpecError


_PRIOR_PATTERN = re.compile(r'^\s*([A-Za-z_]\w*)\s*\((.*)\)\s*$')

# distribution → (number of parameters, parameter names)
_PRIOR_DISTRIBUTIONS = {
    'normal': (2, ('mean', 'sd')),
    't': (3, ('mean', 'sd', 'df')),
    'cauchy': (2, ('location', 'scale')),
    'gamma': (2, ('shape', 'scale')),
}

_FIXEF_CLASSES = {
    'fixef': 'beta',
    'fixef_zi': 'betazi',
    'fixef_disp': 'betadisp',
}

_RANEF_CLASSES = {
    'ranef': 'theta',
    'ranef_zi': 'thetazi',
}


@dataclass(frozen=True)
class Prior:
    """User-facing prior specification.

    Attributes:
        prior: Distribution string such as ``"normal(0, 3)"``.
        cls: Parameter class ('fixef', 'fixef_zi', 'fixef_disp', 'ranef',
            'ranef_zi').
        coef: Coefficient name (fixef classes), grouping-factor name
            (ranef classes), integer position within the class, or ''
            for the whole class.
    """
    prior: str
    cls: str = 'fixef'
    coef: str | int = ''

    @staticmethod
    def from_mapping(spec: Mapping[str, Any]) -> 'Prior':
        """Build a Prior from a mapping with keys prior, class, coef."""
        if 'prior' not in spec:
            raise ModelSpecError(
                f"prior mapping needs a 'prior' entry, got keys {sorted(spec)}",
                component='priors',
            )
        cls = spec.get('class', spec.get('cls', 'fixef'))
        coef = spec.get('coef', '')
        if coef is None:
            coef = ''
        return Prior(prior=str(spec['prior']), cls=str(cls), coef=coef)


def parse_prior(text: str) -> tuple[str, tuple[float, ...]]:
    """Parse ``"name(a, b, ...)"`` into a distribution name and parameters.

    Raises:
        ModelSpecError: On unknown distributions, wrong parameter counts
            or invalid parameter values.
    """
    match = _PRIOR_PATTERN.match(text)
    if match is None:
        raise ModelSpecError(
            f"Cannot parse prior {text!r}; expected e.g. 'normal(0, 3)'",
            component='priors',
        )
    dist = match.group(1).lower()
    if dist not in _PRIOR_DISTRIBUTIONS:
        valid = ', '.join(_PRIOR_DISTRIBUTIONS)
        raise ModelSpecError(
            f"Unknown prior distribution {dist!r}. Valid: {valid}",
            component='priors',
        )
    raw = [a for a in (s.strip() for s in match.group(2).split(',')) if a]
    try:
        params = tuple(float(a) for a in raw)
    except ValueError as e:
        raise ModelSpecError(
            f"Non-numeric parameter in prior {text!r}", component='priors',
        ) from e

    n_expected, names = _PRIOR_DISTRIBUTIONS[dist]
    if len(params) != n_expected:
        raise ModelSpecError(
            f"Prior {dist} takes {n_expected} parameters ({', '.join(names)}), "
            f"got {len(params)} in {text!r}",
            component='priors',
        )
    for name, value in zip(names, params):
        if name in ('sd', 'scale', 'df', 'shape') and not value > 0:
            raise ModelSpecError(
                f"Prior {dist}: {name} must be positive, got {value}",
                component='priors',
            )
    return dist, params


def log_density(dist: str, params: tuple[float, ...], x: torch.Tensor) -> torch.Tensor:
    """Elementwise log density of a prior distribution, in the dtype of x."""
    a, b, *rest = (torch.as_tensor(v, dtype=x.dtype) for v in params)
    if dist == 'normal':
        prior = Normal(a, b, validate_args=False)
    elif dist == 't':
        prior = StudentT(rest[0], a, b, validate_args=False)
    elif dist == 'cauchy':
        prior = Cauchy(a, b, validate_args=False)
    elif dist == 'gamma':
        prior = Gamma(a, 1.0 / b, validate_args=False)
    else:
        raise ValueError(f"Unknown prior distribution: {dist!r}")
    return prior.log_prob(x)


@dataclass(frozen=True)
class ResolvedPrior:
    """A prior bound to concrete positions of the outer parameter vector.

    Fixed-effect priors carry ``indices`` into the vector. Random-effect
    priors carry one ``(theta slice, covariance structure, dimension)``
    triple per targeted term.
    """
    dist: str
    params: tuple[float, ...]
    cls: str
    label: str
    indices: tuple[int, ...] = ()
    terms: tuple[tuple[slice, Any, int], ...] = ()

    def neg_log_density(self, par: torch.Tensor) -> torch.Tensor:
        total = torch.zeros((), dtype=par.dtype)
        if self.indices:
            values = par[list(self.indices)]
            total = total - torch.sum(log_density(self.dist, self.params, values))
        for sl, struct, d in self.terms:
            sd, _ = struct.sd_corr(par[sl], d)
            x = sd if self.dist == 'gamma' else torch.log(sd)
            total = total - torch.sum(log_density(self.dist, self.params, x))
        return total


def resolve_priors(
    priors: Sequence[Prior | Mapping[str, Any]] | None,
    layout,
    coef_names: Mapping[str, tuple[str, ...]],
    cond_terms: Sequence,
    zi_terms: Sequence,
) -> tuple[ResolvedPrior, ...]:
    """Bind prior specifications to the parameter layout of a model.

    Args:
        priors: Prior objects or mappings, or None.
        layout: ParameterLayout of the model.
        coef_names: Component ('beta', 'betazi', 'betadisp') → coefficient names.
        cond_terms: Conditional random-effect terms.
        zi_terms: Zero-inflation random-effect terms.

    Raises:
        ModelSpecError: On unknown classes, unknown coefficients, or
            priors on empty components.
    """
    if not priors:
        return ()

    resolved = []
    for item in priors:
        prior = item if isinstance(item, Prior) else Prior.from_mapping(item)
        dist, params = parse_prior(prior.prior)
        cls = prior.cls.lower()
        coef = prior.coef

        if cls in _FIXEF_CLASSES:
            component = _FIXEF_CLASSES[cls]
            names = tuple(coef_names.get(component, ()))
            offset = layout.slices[component].start
            if not names:
                raise ModelSpecError(
                    f"Prior on class {cls!r} but the model has no such coefficients",
                    component='priors',
                )
            if coef == '':
                positions = range(len(names))
            else:
                positions = [_select(coef, names, cls)]
            indices = tuple(offset + k for k in positions)
            label = cls if coef == '' else f"{cls}:{names[positions[0]]}"
            resolved.append(ResolvedPrior(
                dist=dist, params=params, cls=cls, label=label, indices=indices,
            ))
        elif cls in _RANEF_CLASSES:
            component = _RANEF_CLASSES[cls]
            terms = cond_terms if component == 'theta' else zi_terms
            slices = layout.term_slices[component]
            if not terms:
                raise ModelSpecError(
                    f"Prior on class {cls!r} but the model has no such random effects",
                    component='priors',
                )
            groups = tuple(t.group_name for t in terms)
            if coef == '':
                positions = range(len(terms))
            else:
                positions = [_select(coef, groups, cls)]
            targets = tuple(
                (slices[k], terms[k].cov_struct, terms[k].n_dims) for k in positions
            )
            label = cls if coef == '' else f"{cls}:{groups[positions[0]]}"
            resolved.append(ResolvedPrior(
                dist=dist, params=params, cls=cls, label=label, terms=targets,
            ))
        else:
            valid = ', '.join(list(_FIXEF_CLASSES) + list(_RANEF_CLASSES))
            raise ModelSpecError(
                f"Unknown prior class {prior.cls!r}. Valid: {valid}",
                component='priors',
            )
    return tuple(resolved)


def _select(coef: str | int, names: tuple[str, ...], cls: str) -> int:
    if isinstance(coef, int) and not isinstance(coef, bool):
        if not 0 <= coef < len(names):
            raise ModelSpecError(
                f"Prior coef index {coef} out of range for class {cls!r} "
                f"({len(names)} entries)",
                component='priors',
            )
        return coef
    if coef not in names:
        raise ModelSpecError(
            f"Prior coef {coef!r} not found in class {cls!r}. "
            f"Available: {list(names)}",
            component='priors',
        )
    return names.index(coef)
