"""
Wall-clock timing for model fits.

Timer accumulates named sections of a fit (setup, optimization, final
inner solve, inference, reporting) for Result.timing. Deadline is the
wall-clock budget checked between outer iterations when
GLMMControl.max_time is set.
"""

import time
from contextlib import contextmanager
from typing import Iterator


class Timer:
    """
    Accumulating section timer.

        timer = Timer()
        timer.start()
        with timer.section('optimization'):
            ...
        timer.stop()
        timer.result()   # {'total_seconds': ..., 'optimization': ...}

    Re-entering a section name adds to its total.
    """

    def __init__(self):
        self._t0: float | None = None
        self._total: float | None = None
        self._sections: dict[str, float] = {}

    def start(self) -> None:
        self._t0 = time.perf_counter()
        self._total = None

    def stop(self) -> None:
        if self._t0 is None:
            raise RuntimeError("Timer.stop() called before start()")
        self._total = time.perf_counter() - self._t0

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        t = time.perf_counter()
        try:
            yield
        finally:
            self._sections[name] = self._sections.get(name, 0.0) + time.perf_counter() - t

    def result(self) -> dict[str, float]:
        """Total and per-section seconds. Only valid after stop()."""
        if self._total is None:
            raise RuntimeError("Timer.result() called before stop()")
        return {'total_seconds': self._total, **self._sections}


class Deadline:
    """
    Wall-clock budget starting at construction.

    Args:
        seconds: Budget in seconds, or None for no limit.
    """

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._end = None if seconds is None else time.perf_counter() + seconds

    @property
    def expired(self) -> bool:
        return self._end is not None and time.perf_counter() > self._end
