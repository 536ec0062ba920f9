"""Lightweight named timers and counters attached to completion records."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(slots=True)
class _Timer:
    start: float
    elapsed: float | None = None


class Perf:
    """Collect elapsed times (scaled) and integer counters for one job.

    ``scale`` converts seconds into the reported unit: 1000 reports
    milliseconds, 1 reports seconds.
    """

    def __init__(self, *, scale: float = 1000, clock: Callable[[], float] = time.perf_counter):
        self.scale = scale
        self._clock = clock
        self._timers: dict[str, _Timer] = {}
        self._counters: dict[str, int] = {}

    def begin(self, name: str = "total") -> None:
        self._timers[name] = _Timer(start=self._clock())

    def end(self, name: str = "total") -> float:
        timer = self._timers.get(name)
        if timer is None:
            raise KeyError(f"Timer was never started: {name}")
        if timer.elapsed is None:
            timer.elapsed = self._clock() - timer.start
        return timer.elapsed * self.scale

    def set_elapsed(self, name: str, seconds: float) -> None:
        """Record an externally measured duration."""

        self._timers[name] = _Timer(start=0.0, elapsed=seconds)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        self.begin(name)
        try:
            yield
        finally:
            self.end(name)

    def count(self, name: str, amount: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + amount

    def metrics(self) -> dict[str, object]:
        """Return finished timers and counters as a JSON-safe mapping."""

        perf = {
            name: round(timer.elapsed * self.scale, 3)
            for name, timer in self._timers.items()
            if timer.elapsed is not None
        }
        return {"scale": self.scale, "perf": perf, "counters": dict(self._counters)}

    def summarize(self) -> str:
        """One-line human summary, e.g. ``total=12.5, wait=3.1, bytes=512``."""

        timings = self.metrics()["perf"]
        parts = [f"{name}={value}" for name, value in timings.items()]  # type: ignore[union-attr]
        parts.extend(f"{name}={value}" for name, value in self._counters.items())
        return ", ".join(parts)
