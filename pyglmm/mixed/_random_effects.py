"""
Random effects specification and Z matrix construction.

This module handles:
1. Parsing user-provided grouping variables and random effect terms
2. Building the random effects design matrix Z for each term
3. Mapping new grouping labels onto fitted level codes for prediction

Z layout is term-major within each grouping factor: columns are
[term0_level0, term0_level1, ..., term1_level0, ...]. The matching block
of the random-effect vector b therefore reshapes to (d, J) and its
transpose holds one row of effects per level.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray

from pyglmm.core.exceptions import ModelSpecError
from pyglmm.mixed._covariance import CovStruct, resolve_cov_struct


@dataclass(frozen=True)
class RandomEffectTerm:
    """One random-effect term: a grouping factor with d effects per level.

    Attributes:
        group_name: Name of the grouping factor (e.g. 'site').
        group_ids: Integer level codes for each observation, shape (n,).
        levels: Level labels in code order, shape (J,).
        terms: Names of the effects (e.g. ('1',) or ('1', 'time')).
        Z_block: Design matrix block, shape (n, J*d), term-major.
        cov_struct: Covariance structure of the d effects.
        n_groups: Number of levels (J).
        n_dims: Number of effects per level (d).
    """
    group_name: str
    group_ids: NDArray
    levels: NDArray
    terms: tuple[str, ...]
    Z_block: NDArray
    cov_struct: CovStruct
    n_groups: int
    n_dims: int

    @property
    def n_params(self) -> int:
        return self.cov_struct.n_params(self.n_dims)

    @property
    def n_coef(self) -> int:
        return self.n_groups * self.n_dims

    @property
    def term_labels(self) -> tuple[str, ...]:
        return tuple('(Intercept)' if t == '1' else t for t in self.terms)

    def theta_names(self) -> list[str]:
        return self.cov_struct.param_names(self.term_labels)

    def codes_for(self, labels: NDArray) -> NDArray:
        """Level codes of new labels; unseen levels map to -1."""
        lookup = {level: k for k, level in enumerate(self.levels.tolist())}
        return np.array([lookup.get(v, -1) for v in np.asarray(labels).tolist()],
                        dtype=np.int64)


def parse_random_effects(
    groups: dict[str, NDArray] | None,
    random_effects: dict[str, list[str]] | None,
    random_data: dict[str, NDArray] | None,
    cov_structs: dict[str, str | CovStruct] | None,
    n: int,
    component: str = 'cond',
    default_intercepts: bool = True,
) -> list[RandomEffectTerm]:
    """Parse user input into RandomEffectTerm objects.

    Args:
        groups: Mapping of grouping factor name → group labels array (n,).
        random_effects: Mapping of group name → list of term names. Only
            the listed groups get random effects. If None and
            ``default_intercepts`` is set, every group gets a random
            intercept ('1').
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
        random_data: Mapping of variable name → data array (n,) for
            random slope variables.
        cov_structs: Mapping of group name → covariance structure tag
            ('us', 'diag', 'cs', 'ar1'). Defaults to 'us'.
        n: Number of observations.
        component: 'cond' or 'zi', carried by raised errors.
        default_intercepts: Whether None means "intercept per group".

    Raises:
        ModelSpecError: On unknown grouping factors, missing slope data
            or unknown covariance structures.
    """
    groups = groups or {}
    random_data = random_data or {}
    cov_structs = cov_structs or {}

    if random_effects is None:
        if not default_intercepts:
            return []
        random_effects = {name: ['1'] for name in groups}

    for name in list(random_effects) + list(cov_structs):
        if name not in groups:
            raise ModelSpecError(
                f"Random effect group '{name}' not found in groups. "
                f"Available: {list(groups.keys())}",
                component=component,
            )

    specs = []
    for group_name, term_list in random_effects.items():
        group_raw = np.asarray(groups[group_name])
        if group_raw.shape[0] != n:
            raise ModelSpecError(
                f"Group '{group_name}' has {group_raw.shape[0]} elements, "
                f"expected {n}",
                component=component,
            )
        terms = tuple(term_list)
        if not terms:
            raise ModelSpecError(
                f"Group '{group_name}' has an empty term list", component=component,
            )

        levels, group_ids = np.unique(group_raw, return_inverse=True)
        try:
            cov = resolve_cov_struct(cov_structs.get(group_name, 'us'))
        except ValueError as e:
            raise ModelSpecError(str(e), component=component) from e

        Z_block = build_z_block(
            group_ids, len(levels), terms, random_data, n, component,
        )
        specs.append(RandomEffectTerm(
            group_name=group_name,
            group_ids=group_ids.astype(np.int64),
            levels=levels,
            terms=terms,
            Z_block=Z_block,
            cov_struct=cov,
            n_groups=len(levels),
            n_dims=len(terms),
        ))
    return specs


def build_z_block(
    group_ids: NDArray,
    n_groups: int,
    terms: tuple[str, ...],
    random_data: dict[str, NDArray],
    n: int,
    component: str = 'cond',
) -> NDArray:
    """Build the Z matrix block for one grouping factor.

    For intercept ('1'): Z[i, t*J + j] = 1 if observation i is in level j.
    For slope (e.g. 'time'): Z[i, t*J + j] = time[i] if observation i is
    in level j. Observations with code -1 (unseen level) get a zero row.

    Returns:
        Z block of shape (n, J * d).
    """
    Z = np.zeros((n, n_groups * len(terms)), dtype=np.float64)
    rows = np.flatnonzero(group_ids >= 0)
    codes = group_ids[rows]

    for t_idx, term in enumerate(terms):
        col_offset = t_idx * n_groups
        if term == '1':
            Z[rows, col_offset + codes] = 1.0
            continue
        if term not in random_data:
            raise ModelSpecError(
                f"Random slope term '{term}' requires data in "
                f"random_data dict, but '{term}' was not found. "
                f"Available: {list(random_data.keys())}",
                component=component,
            )
        var_data = np.asarray(random_data[term], dtype=np.float64).ravel()
        if var_data.shape[0] != n:
            raise ModelSpecError(
                f"Random data '{term}' has {var_data.shape[0]} elements, "
                f"expected {n}",
                component=component,
            )
        Z[rows, col_offset + codes] = var_data[rows]

    return Z


def rebuild_z_block(
    term: RandomEffectTerm,
    groups: dict[str, NDArray],
    random_data: dict[str, NDArray] | None,
    n: int,
) -> NDArray:
    """Z block for new data, using the fitted term's levels."""
    if term.group_name not in groups:
        raise ModelSpecError(
            f"new data lacks grouping factor '{term.group_name}'",
        )
    codes = term.codes_for(groups[term.group_name])
    return build_z_block(codes, term.n_groups, term.terms, random_data or {}, n)


def stack_z(terms: list[RandomEffectTerm], n: int) -> NDArray:
    """Concatenate Z blocks column-wise; (n, 0) when there are no terms."""
    if not terms:
        return np.zeros((n, 0), dtype=np.float64)
    return np.hstack([t.Z_block for t in terms])
