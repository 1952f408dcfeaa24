"""
Per-phase timing

Accumulates wall-clock durations per named phase of the iteration loop
(halo exchange, stencil update, settling reductions, snapshot posting).
Only running totals are kept, so a long run costs the same memory as a
short one. Optionally synchronises the CUDA device around each measurement
so kernel time is attributed to the phase that queued it.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import torch


@dataclass
class PhaseStats:
    """Running statistics of one phase (Welford update for the variance)."""
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = 0.0
    mean: float = 0.0
    m2: float = 0.0

    def add(self, duration: float) -> None:
        self.count += 1
        self.total += duration
        self.minimum = min(self.minimum, duration)
        self.maximum = max(self.maximum, duration)
        delta = duration - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (duration - self.mean)

    @property
    def stdev(self) -> float:
        """Sample standard deviation, ``0.0`` below two samples."""
        return math.sqrt(self.m2 / (self.count - 1)) if self.count > 1 else 0.0


class Profiler:
    """
    Phase timer

    Usage::

        prof = Profiler()
        prof.start("halo")
        # ... exchange ...
        prof.end("halo")
        prof.print_summary()
    """

    def __init__(self, enabled: bool = True, device: Optional[torch.device] = None) -> None:
        """
        Args:
            enabled: when False every call is a no-op
            device: CUDA device to synchronise before reading the clock
        """
        self.enabled: bool = enabled
        self.device: Optional[torch.device] = (
            device if device is not None and device.type == "cuda" else None
        )
        self.stats: Dict[str, PhaseStats] = {}
        self.active_timers: Dict[str, float] = {}
        self.memory_snapshots: List[Tuple[str, float]] = []

    def _sync(self) -> None:
        if self.device is not None:
            torch.cuda.synchronize(self.device)

    # ==================== timing ====================

    def start(self, name: str) -> None:
        if not self.enabled:
            return
        self._sync()
        self.active_timers[name] = time.perf_counter()

    def end(self, name: str) -> float:
        """
        Stop the timer started for *name*.

        Returns:
            elapsed seconds, ``0.0`` when disabled or never started
        """
        if not self.enabled:
            return 0.0
        self._sync()
        if name not in self.active_timers:
            return 0.0

        duration: float = time.perf_counter() - self.active_timers.pop(name)
        self.stats.setdefault(name, PhaseStats()).add(duration)
        return duration

    # ==================== device memory ====================

    def record_memory(self, label: str) -> None:
        """Record allocated CUDA memory (MB) under *label*."""
        if not self.enabled or self.device is None:
            return
        memory_mb: float = torch.cuda.memory_allocated(self.device) / (1024 ** 2)
        self.memory_snapshots.append((label, memory_mb))

    # ==================== queries ====================

    def get_count(self, name: str) -> int:
        stats = self.stats.get(name)
        return stats.count if stats else 0

    def get_average(self, name: str) -> float:
        stats = self.stats.get(name)
        return stats.mean if stats else 0.0

    def get_total(self, name: str) -> float:
        stats = self.stats.get(name)
        return stats.total if stats else 0.0

    def reset(self) -> None:
        self.stats.clear()
        self.active_timers.clear()
        self.memory_snapshots.clear()

    # ==================== output ====================

    def print_summary(self, title: str = "Phase timings") -> None:
        if not self.enabled or not self.stats:
            return

        print("\n" + "=" * 60)
        print(title)
        print("=" * 60)

        for name, stats in self.stats.items():
            print(f"\n{name}:")
            print(f"  calls:   {stats.count}")
            print(f"  total:   {stats.total:.4f} s")
            print(f"  average: {stats.mean:.6f} s")
            print(f"  min/max: {stats.minimum:.6f} / {stats.maximum:.6f} s")
            if stats.count > 1:
                print(f"  stdev:   {stats.stdev:.6f} s")

        if self.memory_snapshots:
            print(f"\n{'─' * 40}")
            print("device memory:")
            for label, mem_mb in self.memory_snapshots:
                print(f"  {label}: {mem_mb:.1f} MB")

        print("\n" + "=" * 60, flush=True)
