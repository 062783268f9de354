"""
Result envelope for a model fit.

A fit returns its parameter payload wrapped in Result, together with
optimizer metadata (info), wall-clock timings and the non-fatal warnings
collected on the way. Warnings are kept on the result as well as emitted
through the warnings module, so a fit run with warnings filtered still
records them.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TypeVar, Generic, Any, Mapping

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope.

    Attributes:
        params: Parameter payload (GLMMParams for glmm()).
        info: Optimizer metadata: 'optimizer', 'converged', 'n_iter',
            'n_evals', 'inner_failures', 'timed_out', 'grad_max', ...
        timing: Seconds per Timer section plus 'total_seconds', or None.
        engine: Name of the estimation engine.
        warnings: Non-fatal issues, in the order they were found.

    info and timing are stored as read-only mappings.
    """
    params: P
    info: Mapping[str, Any]
    timing: Mapping[str, float] | None = None
    engine: str = 'torch_laplace'
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, 'info', MappingProxyType(dict(self.info)))
        if self.timing is not None:
            object.__setattr__(self, 'timing', MappingProxyType(dict(self.timing)))
        object.__setattr__(self, 'warnings', tuple(self.warnings))

    def has_warning(self, substring: str) -> bool:
        """True if any recorded warning contains substring."""
        return any(substring in w for w in self.warnings)
