"""
Memory ceiling for snapshot generation.

A safety valve for pathological tenants, not a bound. Every ``check_every``
batches the guard compares the memory allocated through Python since tracing
started (normally when the guard is entered, via ``tracemalloc``) to
``threshold * limit``, runs a GC pass if it is over, and raises
``MemoryCeilingExceeded`` if it is still over afterwards. Allocations made
before tracing started and memory held outside the Python allocator (the DB
driver, the interpreter itself) are not counted, so this is not the process RSS.
"""

from __future__ import annotations

import gc
import tracemalloc
from typing import Callable, Optional

from . import config
from .errors import MemoryCeilingExceeded

UsageFn = Callable[[], int]


def _traced_usage() -> int:
    current, _ = tracemalloc.get_traced_memory()
    return current


class MemoryGuard:
    def __init__(
        self,
        *,
        limit_mb: Optional[int] = None,
        threshold: Optional[float] = None,
        check_every: Optional[int] = None,
        usage: Optional[UsageFn] = None,
    ) -> None:
        limit_mb = config.MEMORY_LIMIT_MB if limit_mb is None else limit_mb
        self.limit_bytes = max(int(limit_mb), 0) * 1024 * 1024
        self.threshold = config.MEMORY_THRESHOLD if threshold is None else threshold
        self.check_every = max(config.MEMORY_CHECK_EVERY if check_every is None else check_every, 1)
        self._usage = usage
        self._started_tracing = False
        self.peak_bytes = 0

    @property
    def enabled(self) -> bool:
        return self.limit_bytes > 0

    @property
    def ceiling_bytes(self) -> int:
        return int(self.limit_bytes * self.threshold)

    def __enter__(self) -> "MemoryGuard":
        if self.enabled and self._usage is None and not tracemalloc.is_tracing():
            tracemalloc.start()
            self._started_tracing = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._started_tracing:
            _, peak = tracemalloc.get_traced_memory()
            self.peak_bytes = max(self.peak_bytes, peak)
            tracemalloc.stop()
            self._started_tracing = False

    def current_usage(self) -> int:
        usage = self._usage() if self._usage is not None else _traced_usage()
        self.peak_bytes = max(self.peak_bytes, usage)
        return usage

    def check(self, batch_number: int) -> None:
        if not self.enabled or batch_number % self.check_every != 0:
            return
        if self.current_usage() <= self.ceiling_bytes:
            return
        gc.collect()
        usage = self.current_usage()
        if usage > self.ceiling_bytes:
            raise MemoryCeilingExceeded(usage, self.ceiling_bytes)
