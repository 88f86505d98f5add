# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Stage timer for one pipeline run.

Stages: cache_lookup -> extraction -> first_chunk -> remainder.
The total is what the classification responses report as processingTime.
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(slots=True)
class StageRecord:
    name: str
    start_ns: int
    end_ns: int = 0

    @property
    def elapsed_ms(self) -> int:
        return (self.end_ns - self.start_ns) // 1_000_000


class PipelineTimer:
    """Record stage transitions of a pipeline run."""

    __slots__ = ("_stages", "_current", "_start_ns", "_end_ns")

    def __init__(self) -> None:
        self._stages: list[StageRecord] = []
        self._current: StageRecord | None = None
        self._start_ns = time.monotonic_ns()
        self._end_ns = 0

    def stage(self, name: str) -> None:
        """Close the running stage (if any) and open *name*."""
        now = time.monotonic_ns()
        self._close(now)
        self._current = StageRecord(name=name, start_ns=now)

    def finalize(self) -> int:
        """Close the running stage and freeze the total. Returns total ms."""
        if not self._end_ns:
            self._end_ns = time.monotonic_ns()
            self._close(self._end_ns)
        return self.total_ms

    def _close(self, now: int) -> None:
        if self._current is not None:
            self._current.end_ns = now
            self._stages.append(self._current)
            self._current = None

    @property
    def current_stage(self) -> str | None:
        return self._current.name if self._current else None

    @property
    def total_ms(self) -> int:
        end = self._end_ns or time.monotonic_ns()
        return (end - self._start_ns) // 1_000_000

    def elapsed_per_stage(self) -> dict[str, int]:
        """Return {stage: elapsed_ms}; the running stage is measured up to now."""
        result = {s.name: s.elapsed_ms for s in self._stages}
        if self._current is not None:
            result[self._current.name] = (time.monotonic_ns() - self._current.start_ns) // 1_000_000
        return result
