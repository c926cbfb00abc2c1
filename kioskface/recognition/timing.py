"""Clock abstraction and the timing constants shared by both blink detectors."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class BlinkTiming:
    """Constants used identically by the landmark and EAR blink detectors."""

    poll_interval_ms: float = 60.0
    window_ms: float = 8000.0
    warmup_ms: float = 1200.0
    blink_min_ms: float = 80.0
    blink_max_ms: float = 700.0
    dropout_tolerance_ms: float = 200.0
    motion_threshold: float = 0.009
    # coarse descriptor sample cadence while FaceMesh drives the window
    descriptor_guard_ms: float = 500.0


DEFAULT_TIMING = BlinkTiming()


class Clock(Protocol):
    def now_ms(self) -> float: ...

    async def sleep(self, ms: float) -> None: ...


class SystemClock:
    """Monotonic wall clock backed by ``asyncio.sleep``."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(ms, 0.0) / 1000.0)
