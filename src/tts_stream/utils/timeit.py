"""
Timing helper for provider calls, uploads and chunking.

Usage:
    with timeit("provider_call") as t:
        audio = provider.synthesize(text, voice, fmt)
    info(_LOG, "synthesized", seconds=t.timing.seconds)
"""
from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Optional


@dataclass
class Timing:
    """A finished measurement: label, duration and optional metadata."""
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None


class timeit:
    """
    Context manager that records wall-clock time of its block.

    The result is available as ``.timing`` after the block exits, even
    when the block raised.
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    def __enter__(self) -> "timeit":
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=perf_counter() - self._t0, meta=self.meta)

    @property
    def seconds(self) -> float:
        """Elapsed seconds so far (or final, once the block has exited)."""
        if self.timing is not None:
            return self.timing.seconds
        if self._t0 is None:
            return 0.0
        return perf_counter() - self._t0
