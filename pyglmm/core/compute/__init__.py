"""
Shared compute infrastructure for PyGLMM.

Submodules:
    timing: Section timer and wall-clock budget
"""

from pyglmm.core.compute.timing import Deadline, Timer

__all__ = [
    "Deadline",
    "Timer",
]
