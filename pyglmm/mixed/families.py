"""
Response families and link functions for GLMMs.

Each Link maps between the linear predictor η and the mean μ:
- g(μ) → η  (link)
- g⁻¹(η) → μ  (inverse link)
- dμ/dη  (derivative of inverse link)
- log g⁻¹(η) and log(1 − g⁻¹(η)) in a numerically stable form

Each Family defines:
- A per-observation log density log f(y | η, φ, ψ), written with torch
  operations so the joint objective can be differentiated by autograd
- A sampler used by simulate()
- A variance function V(μ) for Pearson residuals
- Support validation for the response and starting values

Links and families are looked up in read-only registries populated at
import time (resolve_link, resolve_family).

Dispersion conventions (φ = exp(X_disp β_disp)):
    gaussian           Var(y) = φ
    nbinom2            Var(y) = μ + μ²/φ
    nbinom1            Var(y) = μ(1 + φ)
    Gamma              shape = 1/φ, Var(y) = φμ²
    tweedie            Var(y) = φμ^p,  p = 1 + logistic(ψ)

References:
    McCullagh, P., & Nelder, J. A. (1989). Generalized Linear Models (2nd ed.)
    Brooks, M. E. et al. (2017). glmmTMB balances speed and flexibility
    among packages for zero-inflated generalized linear mixed modeling.
    The R Journal, 9(2), 378-400.
    Dunn, P. K., & Smyth, G. K. (2005). Series evaluation of Tweedie
    exponential dispersion model densities. Statistics and Computing, 15.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from types import MappingProxyType

import numpy as np
from numpy.typing import NDArray
import torch
from scipy import stats

from pyglmm.core.exceptions import ModelSpecError


# Linear predictors of exponential-type links are clamped to this
# magnitude before exponentiating: exp(300) ≈ 1.9e130 keeps μ² finite in
# float64 and exp(-300) keeps μ strictly positive.
ETA_CLAMP = 300.0

_TINY = 1e-300
_PROB_EPS = 1e-15

# Tweedie series terms further than this many nats below the largest
# term are dropped (e^-37 is below float64 resolution relative to 1).
_TWEEDIE_LOG_DROP = 37.0


# =====================================================================
# Link functions
# =====================================================================

class Link(ABC):
    """Abstract link function g(μ) mapping mean to linear predictor."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def link(self, mu: torch.Tensor) -> torch.Tensor:
        """g(μ) → η."""
        ...

    @abstractmethod
    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        """g⁻¹(η) → μ."""
        ...

    @abstractmethod
    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        """dμ/dη = (g⁻¹)'(η)."""
        ...

    def log_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        """log g⁻¹(η)."""
        return torch.log(torch.clamp(self.linkinv(eta), min=_TINY))

    def log1m_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        """log(1 − g⁻¹(η)), for links onto (0, 1)."""
        return torch.log(torch.clamp(1.0 - self.linkinv(eta), min=_TINY))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class IdentityLink(Link):
    """Identity link: g(μ) = μ. Default for the Gaussian family."""

    @property
    def name(self) -> str:
        return 'identity'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        return mu

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return eta

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.ones_like(eta)


class LogLink(Link):
    """Log link: g(μ) = log(μ). Default for count and positive families."""

    @property
    def name(self) -> str:
        return 'log'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        return torch.log(torch.clamp(mu, min=_TINY))

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.exp(torch.clamp(eta, -ETA_CLAMP, ETA_CLAMP))

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.exp(torch.clamp(eta, -ETA_CLAMP, ETA_CLAMP))

    def log_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.clamp(eta, -ETA_CLAMP, ETA_CLAMP)


class LogitLink(Link):
    """Logit link: g(μ) = log(μ/(1-μ)). Default for Binomial and zero-inflation."""

    @property
    def name(self) -> str:
        return 'logit'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        mu = torch.clamp(mu, _PROB_EPS, 1.0 - _PROB_EPS)
        return torch.log(mu) - torch.log1p(-mu)

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(eta)

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        p = torch.sigmoid(eta)
        return p * (1.0 - p)

    def log_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.nn.functional.logsigmoid(eta)

    def log1m_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.nn.functional.logsigmoid(-eta)


class ProbitLink(Link):
    """Probit link: g(μ) = Φ⁻¹(μ)."""

    @property
    def name(self) -> str:
        return 'probit'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        return torch.special.ndtri(torch.clamp(mu, _PROB_EPS, 1.0 - _PROB_EPS))

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.special.ndtr(eta)

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.exp(-0.5 * eta ** 2) / math.sqrt(2.0 * math.pi)

    def log_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.special.log_ndtr(eta)

    def log1m_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.special.log_ndtr(-eta)


class CloglogLink(Link):
    """Complementary log-log link: g(μ) = log(−log(1 − μ))."""

    @property
    def name(self) -> str:
        return 'cloglog'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        mu = torch.clamp(mu, _PROB_EPS, 1.0 - _PROB_EPS)
        return torch.log(-torch.log1p(-mu))

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return -torch.expm1(-torch.exp(torch.clamp(eta, max=30.0)))

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        eta = torch.clamp(eta, max=30.0)
        return torch.exp(eta - torch.exp(eta))

    def log_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return torch.log(torch.clamp(self.linkinv(eta), min=_TINY))

    def log1m_linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return -torch.exp(torch.clamp(eta, max=30.0))


class InverseLink(Link):
    """Inverse link: g(μ) = 1/μ."""

    @property
    def name(self) -> str:
        return 'inverse'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        return 1.0 / torch.clamp(mu, min=1e-10)

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return 1.0 / torch.clamp(eta, min=1e-10)

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        return -1.0 / torch.clamp(eta ** 2, min=1e-20)


class SqrtLink(Link):
    """Square-root link: g(μ) = √μ."""

    @property
    def name(self) -> str:
        return 'sqrt'

    def link(self, mu: torch.Tensor) -> torch.Tensor:
        return torch.sqrt(torch.clamp(mu, min=0.0))

    def linkinv(self, eta: torch.Tensor) -> torch.Tensor:
        return eta ** 2

    def mu_eta(self, eta: torch.Tensor) -> torch.Tensor:
        return 2.0 * eta


_LINK_CLASSES = MappingProxyType({
    'identity': IdentityLink,
    'log': LogLink,
    'logit': LogitLink,
    'probit': ProbitLink,
    'cloglog': CloglogLink,
    'inverse': InverseLink,
    'sqrt': SqrtLink,
})


def resolve_link(link: str | Link | None, default: Link | None = None) -> Link:
    """Resolve a link argument to a Link instance.

    Args:
        link: Link name, Link instance, or None (use ``default``).
        default: Link returned when ``link`` is None.

    Raises:
        ValueError: If the name is not registered.
        TypeError: If the argument is neither str nor Link.
    """
    if link is None:
        if default is None:
            raise ValueError("No link given and no default available")
        return default
    if isinstance(link, Link):
        return link
    if isinstance(link, str):
        cls = _LINK_CLASSES.get(link.lower())
        if cls is None:
            valid = ', '.join(sorted(_LINK_CLASSES.keys()))
            raise ValueError(f"Unknown link: {link!r}. Valid links: {valid}")
        return cls()
    raise TypeError(f"link must be str or Link, got {type(link).__name__}")


# =====================================================================
# Family base class
# =====================================================================

def _check_nonnegative_integer(y: NDArray, family: str) -> None:
    if np.any(y < 0):
        raise ModelSpecError(
            f"{family} family requires non-negative responses, "
            f"got minimum {float(np.min(y))}",
            component='cond',
        )
    if np.any(np.abs(y - np.round(y)) > 1e-8):
        raise ModelSpecError(
            f"{family} family requires integer responses",
            component='cond',
        )


class Family(ABC):
    """
    Response distribution for the conditional model.

    Subclasses implement log_prob() with torch operations only; the
    result must stay differentiable in η, φ and ψ.
    """

    has_dispersion: bool = False
    truncated: bool = False
    zero_inflatable: bool = True
    n_shape_params: int = 0

    def __init__(self, link: str | Link | None = None):
        self._link = resolve_link(link, self._default_link())

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def _default_link(self) -> Link:
        ...

    @property
    def link(self) -> Link:
        return self._link

    @abstractmethod
    def log_prob(
        self,
        y: torch.Tensor,
        eta: torch.Tensor,
        phi: torch.Tensor | None,
        psi: torch.Tensor | None,
        trials: torch.Tensor | None,
    ) -> torch.Tensor:
        """Per-observation log density log f(y_i | η_i, φ_i, ψ)."""
        ...

    @abstractmethod
    def sample(
        self,
        mu: NDArray,
        phi: NDArray | None,
        psi: NDArray | None,
        trials: NDArray | None,
        rng: np.random.Generator,
    ) -> NDArray:
        """Draw one response per observation given conditional means."""
        ...

    @abstractmethod
    def variance(self, mu: NDArray, phi: NDArray | None, psi: NDArray | None) -> NDArray:
        """Variance function V(μ) (including dispersion)."""
        ...

    def validate_response(
        self, y: NDArray, trials: NDArray | None, hurdle: bool
    ) -> None:
        """Raise ModelSpecError if y is outside the support of the family."""
        pass

    def initialize(self, y: NDArray, trials: NDArray | None) -> NDArray:
        """Starting means for the fixed-effect warm start."""
        return np.maximum(y, 0.1)

    def disp_start(self, y: NDArray, mu: NDArray) -> float:
        """Starting value of the dispersion intercept (log scale)."""
        return 0.0

    def psi_start(self) -> NDArray:
        return np.zeros(self.n_shape_params)

    def log_prob_zero(
        self,
        eta: torch.Tensor,
        phi: torch.Tensor | None,
        psi: torch.Tensor | None,
        trials: torch.Tensor | None,
    ) -> torch.Tensor:
        """log P(y = 0 | η) of the untruncated distribution.

        Used by the zero-inflation mixture and by response-scale
        predictions of truncated families.
        """
        if not self.zero_inflatable:
            raise NotImplementedError(f"{self.name} has no point mass at zero")
        return self.log_prob(torch.zeros_like(eta), eta, phi, psi, trials)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(link={self._link.name!r})"


# =====================================================================
# Concrete families
# =====================================================================

class Gaussian(Family):
    """Gaussian family. Default link: identity. Var(y) = φ."""

    has_dispersion = True
    zero_inflatable = False

    @property
    def name(self) -> str:
        return 'gaussian'

    def _default_link(self) -> Link:
        return IdentityLink()

    def log_prob(self, y, eta, phi, psi, trials):
        mu = self.link.linkinv(eta)
        return -0.5 * (torch.log(2.0 * math.pi * phi) + (y - mu) ** 2 / phi)

    def sample(self, mu, phi, psi, trials, rng):
        return rng.normal(mu, np.sqrt(phi))

    def variance(self, mu, phi, psi):
        return np.broadcast_to(phi, np.shape(mu)).astype(float)

    def initialize(self, y, trials):
        return y.copy()

    def disp_start(self, y, mu):
        return float(np.log(max(np.var(y - mu), 1e-8)))


class Poisson(Family):
    """Poisson family. Default link: log.

    log f(y) = y·log(μ) − μ − log(y!)
    """

    @property
    def name(self) -> str:
        return 'poisson'

    def _default_link(self) -> Link:
        return LogLink()

    def log_prob(self, y, eta, phi, psi, trials):
        log_mu = self.link.log_linkinv(eta)
        return y * log_mu - torch.exp(log_mu) - torch.lgamma(y + 1.0)

    def validate_response(self, y, trials, hurdle):
        _check_nonnegative_integer(y, self.name)

    def sample(self, mu, phi, psi, trials, rng):
        return rng.poisson(mu).astype(float)

    def variance(self, mu, phi, psi):
        return np.asarray(mu, dtype=float)


class TruncatedPoisson(Poisson):
    """Zero-truncated Poisson. Default link: log.

    log f(y) = Poisson(y; μ) − log(1 − exp(−μ)),  y ≥ 1.

    Used on its own for strictly positive counts, or as the count part of
    a hurdle model when a zero-inflation (hurdle) design is supplied.
    """

    truncated = True

    @property
    def name(self) -> str:
        return 'truncated_poisson'

    def log_prob(self, y, eta, phi, psi, trials):
        log_mu = self.link.log_linkinv(eta)
        mu = torch.exp(log_mu)
        log_pos = torch.log(torch.clamp(-torch.expm1(-mu), min=_TINY))
        return y * log_mu - mu - torch.lgamma(y + 1.0) - log_pos

    def log_prob_zero(self, eta, phi, psi, trials):
        return -self.link.linkinv(eta)

    def validate_response(self, y, trials, hurdle):
        _check_nonnegative_integer(y, self.name)
        if not hurdle and np.any(y == 0):
            raise ModelSpecError(
                f"truncated_poisson family requires strictly positive responses "
                f"({int(np.sum(y == 0))} zeros found); supply a hurdle (zi) "
                f"design to model zeros",
                component='cond',
            )

    def sample(self, mu, phi, psi, trials, rng):
        p0 = np.exp(-mu)
        u = p0 + (1.0 - p0) * rng.random(np.shape(mu))
        return np.maximum(stats.poisson.ppf(u, mu), 1.0)

    def variance(self, mu, phi, psi):
        p0 = np.exp(-mu)
        m = mu / (1.0 - p0)
        return m * (1.0 + mu - m)

    def initialize(self, y, trials):
        return np.maximum(y - 0.5, 0.1)


class Binomial(Family):
    """Binomial family with per-row trial counts. Default link: logit.

    log f(y) = log C(n, y) + y·log(μ) + (n − y)·log(1 − μ)

    With no trials supplied the response is Bernoulli (n = 1).
    """

    @property
    def name(self) -> str:
        return 'binomial'

    def _default_link(self) -> Link:
        return LogitLink()

    def log_prob(self, y, eta, phi, psi, trials):
        n = trials if trials is not None else torch.ones_like(y)
        log_choose = torch.lgamma(n + 1.0) - torch.lgamma(y + 1.0) - torch.lgamma(n - y + 1.0)
        return (log_choose
                + y * self.link.log_linkinv(eta)
                + (n - y) * self.link.log1m_linkinv(eta))

    def validate_response(self, y, trials, hurdle):
        if trials is None:
            if not np.all((y == 0) | (y == 1)):
                raise ModelSpecError(
                    "binomial family without trials requires 0/1 responses",
                    component='cond',
                )
            return
        if np.any(trials < 1) or np.any(np.abs(trials - np.round(trials)) > 1e-8):
            raise ModelSpecError(
                "binomial trials must be positive integers", component='cond',
            )
        _check_nonnegative_integer(y, self.name)
        if np.any(y > trials):
            raise ModelSpecError(
                "binomial responses exceed the number of trials", component='cond',
            )

    def sample(self, mu, phi, psi, trials, rng):
        n = np.ones_like(mu) if trials is None else trials
        return rng.binomial(n.astype(np.int64), np.clip(mu, 0.0, 1.0)).astype(float)

    def variance(self, mu, phi, psi):
        return mu * (1.0 - mu)

    def initialize(self, y, trials):
        n = np.ones_like(y) if trials is None else trials
        return (y + 0.5) / (n + 1.0)


def _nbinom_log_prob(y, log_mu, log_k):
    k = torch.exp(log_k)
    log_k_mu = torch.logaddexp(log_k, log_mu)
    return (torch.lgamma(y + k) - torch.lgamma(k) - torch.lgamma(y + 1.0)
            + k * (log_k - log_k_mu) + y * (log_mu - log_k_mu))


class NegativeBinomial2(Family):
    """Negative binomial, quadratic parameterization. Default link: log.

    Var(y) = μ + μ²/φ  (φ is the size parameter k).
    """

    has_dispersion = True

    @property
    def name(self) -> str:
        return 'nbinom2'

    def _default_link(self) -> Link:
        return LogLink()

    def _log_size(self, log_mu, phi):
        return torch.log(phi)

    def log_prob(self, y, eta, phi, psi, trials):
        log_mu = self.link.log_linkinv(eta)
        return _nbinom_log_prob(y, log_mu, self._log_size(log_mu, phi))

    def validate_response(self, y, trials, hurdle):
        _check_nonnegative_integer(y, self.name)

    def _size(self, mu, phi):
        return phi

    def sample(self, mu, phi, psi, trials, rng):
        k = np.broadcast_to(self._size(mu, phi), np.shape(mu))
        return rng.negative_binomial(k, k / (k + mu)).astype(float)

    def variance(self, mu, phi, psi):
        return mu + mu ** 2 / phi


class NegativeBinomial1(NegativeBinomial2):
    """Negative binomial, linear parameterization. Default link: log.

    Var(y) = μ(1 + φ)  (size k = μ/φ).
    """

    @property
    def name(self) -> str:
        return 'nbinom1'

    def _log_size(self, log_mu, phi):
        return log_mu - torch.log(phi)

    def _size(self, mu, phi):
        return mu / phi

    def variance(self, mu, phi, psi):
        return mu * (1.0 + phi)


class TruncatedNegativeBinomial2(NegativeBinomial2):
    """Zero-truncated negative binomial (quadratic). Count part of NB hurdles."""

    truncated = True

    @property
    def name(self) -> str:
        return 'truncated_nbinom2'

    def log_prob_zero(self, eta, phi, psi, trials):
        log_mu = self.link.log_linkinv(eta)
        log_k = torch.log(phi)
        return phi * (log_k - torch.logaddexp(log_k, log_mu))

    def log_prob(self, y, eta, phi, psi, trials):
        log_p0 = self.log_prob_zero(eta, phi, psi, trials)
        log_pos = torch.log(torch.clamp(-torch.expm1(log_p0), min=_TINY))
        log_mu = self.link.log_linkinv(eta)
        return _nbinom_log_prob(y, log_mu, torch.log(phi)) - log_pos

    def validate_response(self, y, trials, hurdle):
        _check_nonnegative_integer(y, self.name)
        if not hurdle and np.any(y == 0):
            raise ModelSpecError(
                f"truncated_nbinom2 family requires strictly positive responses "
                f"({int(np.sum(y == 0))} zeros found); supply a hurdle (zi) "
                f"design to model zeros",
                component='cond',
            )

    def sample(self, mu, phi, psi, trials, rng):
        k = np.broadcast_to(phi, np.shape(mu))
        p = k / (k + mu)
        p0 = p ** k
        u = p0 + (1.0 - p0) * rng.random(np.shape(mu))
        return np.maximum(stats.nbinom.ppf(u, k, p), 1.0)

    def variance(self, mu, phi, psi):
        p0 = (phi / (phi + mu)) ** phi
        m = mu / (1.0 - p0)
        second = (mu + mu ** 2 / phi + mu ** 2) / (1.0 - p0)
        return second - m ** 2

    def initialize(self, y, trials):
        return np.maximum(y - 0.5, 0.1)


class Gamma(Family):
    """Gamma family. Default link: log. shape = 1/φ, scale = μφ."""

    has_dispersion = True
    zero_inflatable = False

    @property
    def name(self) -> str:
        return 'Gamma'

    def _default_link(self) -> Link:
        return LogLink()

    def log_prob(self, y, eta, phi, psi, trials):
        log_mu = self.link.log_linkinv(eta)
        shape = 1.0 / phi
        log_scale = log_mu + torch.log(phi)
        return (-torch.lgamma(shape) - shape * log_scale
                + (shape - 1.0) * torch.log(y) - y * torch.exp(-log_scale))

    def validate_response(self, y, trials, hurdle):
        if np.any(y <= 0):
            raise ModelSpecError(
                "Gamma family requires strictly positive responses",
                component='cond',
            )

    def sample(self, mu, phi, psi, trials, rng):
        return rng.gamma(1.0 / phi, mu * phi)

    def variance(self, mu, phi, psi):
        return phi * mu ** 2

    def initialize(self, y, trials):
        return y.copy()


def _tweedie_log_series(y: torch.Tensor, phi: torch.Tensor, p: torch.Tensor) -> torch.Tensor:
    """log Σ_j W_j of the Dunn-Smyth series, one value per y > 0.

    log W_j is concave in j with its maximum near
    j_max = y^(2−p) / (φ(2−p)). Each row sums a window around its own
    j_max, widened in steps of ⌈√j_max⌉ until the terms at both ends are
    _TWEEDIE_LOG_DROP nats below the term at j_max.
    """
    alpha = (2.0 - p) / (1.0 - p)
    log_z = (-alpha * torch.log(y) + alpha * torch.log(p - 1.0)
             - (1.0 - alpha) * torch.log(phi) - torch.log(2.0 - p))

    def log_terms(j):
        return j * log_z[:, None] - torch.lgamma(1.0 + j) - torch.lgamma(-j * alpha)

    with torch.no_grad():
        j_max = torch.exp((2.0 - p) * torch.log(y)) / (phi * (2.0 - p))
        j_max = torch.clamp(torch.round(j_max * torch.ones_like(y)), min=1.0)
        step = torch.ceil(torch.sqrt(j_max))
        floor = log_terms(j_max[:, None])[:, 0] - _TWEEDIE_LOG_DROP

        hi = j_max.clone()
        while True:
            grow = log_terms(hi[:, None])[:, 0] > floor
            if not bool(grow.any()):
                break
            hi = torch.where(grow, hi + step, hi)

        lo = j_max.clone()
        while True:
            grow = (lo > 1.0) & (log_terms(lo[:, None])[:, 0] > floor)
            if not bool(grow.any()):
                break
            lo = torch.where(grow, torch.clamp(lo - step, min=1.0), lo)

        width = int(torch.max(hi - lo)) + 1
        j = lo[:, None] + torch.arange(width, dtype=y.dtype)[None, :]
        inside = j <= hi[:, None]

    terms = log_terms(j)
    return torch.logsumexp(torch.where(inside, terms, torch.full_like(terms, -math.inf)), dim=1)


class Tweedie(Family):
    """Tweedie compound Poisson-gamma family, 1 < p < 2. Default link: log.

    The power is p = 1 + logistic(ψ), estimated alongside the other
    parameters. The density of y > 0 is evaluated with the Dunn-Smyth
    series, summed over a window of terms centred on the mode of the
    series for each observation.
    """

    has_dispersion = True
    n_shape_params = 1

    @property
    def name(self) -> str:
        return 'tweedie'

    def _default_link(self) -> Link:
        return LogLink()

    @staticmethod
    def power(psi):
        return 1.0 + torch.sigmoid(psi[0]) if isinstance(psi, torch.Tensor) \
            else 1.0 + 1.0 / (1.0 + np.exp(-psi[0]))

    def log_prob(self, y, eta, phi, psi, trials):
        p = self.power(psi)
        log_mu = self.link.log_linkinv(eta)
        mu = torch.exp(log_mu)
        lam = torch.exp((2.0 - p) * log_mu) / (phi * (2.0 - p))

        positive = y > 0
        y_safe = torch.where(positive, y, torch.ones_like(y))
        log_w = _tweedie_log_series(y_safe, phi, p)

        theta_y = y_safe * torch.exp((1.0 - p) * log_mu) / (1.0 - p)
        log_pos = log_w - torch.log(y_safe) + (theta_y - mu ** (2.0 - p) / (2.0 - p)) / phi
        return torch.where(positive, log_pos, -lam)

    def validate_response(self, y, trials, hurdle):
        if np.any(y < 0):
            raise ModelSpecError(
                "tweedie family requires non-negative responses", component='cond',
            )

    def sample(self, mu, phi, psi, trials, rng):
        p = float(self.power(psi))
        lam = mu ** (2.0 - p) / (phi * (2.0 - p))
        shape = (2.0 - p) / (p - 1.0)
        scale = phi * (p - 1.0) * mu ** (p - 1.0)
        n_events = rng.poisson(lam)
        draws = rng.gamma(np.maximum(n_events, 1) * shape, scale)
        return np.where(n_events > 0, draws, 0.0)

    def variance(self, mu, phi, psi):
        return phi * mu ** float(self.power(psi))

    def initialize(self, y, trials):
        return np.maximum(y, 0.1)


# =====================================================================
# Family name → class mapping + resolver
# =====================================================================

_FAMILY_CLASSES = MappingProxyType({
    'gaussian': Gaussian,
    'normal': Gaussian,
    'poisson': Poisson,
    'truncated_poisson': TruncatedPoisson,
    'binomial': Binomial,
    'nbinom2': NegativeBinomial2,
    'nbinom1': NegativeBinomial1,
    'truncated_nbinom2': TruncatedNegativeBinomial2,
    'gamma': Gamma,
    'tweedie': Tweedie,
})


def resolve_family(family: str | Family, link: str | Link | None = None) -> Family:
    """Resolve a family argument to a Family instance.

    Args:
        family: Either a registered name ('poisson', 'nbinom2', ...)
                or a Family instance (passed through).
        link: Optional link overriding the family default. Ignored when
              ``family`` is already an instance.

    Returns:
        Family instance.

    Raises:
        ValueError: If string name is not recognized.
        TypeError: If argument is neither string nor Family.
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        cls = _FAMILY_CLASSES.get(family.lower())
        if cls is None:
            valid = ', '.join(
                sorted(k for k in _FAMILY_CLASSES.keys() if k != 'normal')
            )
            raise ValueError(
                f"Unknown family: {family!r}. Valid families: {valid}"
            )
        return cls(link)
    raise TypeError(f"family must be str or Family, got {type(family).__name__}")
