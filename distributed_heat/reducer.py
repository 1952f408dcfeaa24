"""
Global convergence metric

Combines each worker's local maximum change into the global maximum with a
non-blocking ``MPI_Iallreduce(MAX)``. The reduction is started as soon as
the local value is known and only waited on when the value is needed, so
its latency hides behind the next halo exchange.
"""

from __future__ import annotations

from typing import Optional

from mpi4py import MPI

from .mpi_manager import MPIManager, PendingOperation


class ConvergenceReducer:
    """At most one reduction in flight per worker."""

    def __init__(self, mpi: MPIManager) -> None:
        self.mpi = mpi
        self._pending: Optional[PendingOperation] = None
        self.pending_iteration: Optional[int] = None
        self.last_value: Optional[float] = None

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    def start(self, local_change: float, iteration: Optional[int] = None) -> PendingOperation:
        """
        Begin reducing *local_change* across all workers.

        A reduction still outstanding from an earlier call is completed first.
        Collective: every worker must call this in the same iteration.
        """
        if self._pending is not None:
            self.settle()
        self._pending = self.mpi.iallreduce(
            float(local_change), op=MPI.MAX, name="Iallreduce(max_change)",
        )
        self.pending_iteration = iteration
        return self._pending

    def settle(self) -> Optional[float]:
        """Wait for the outstanding reduction; ``None`` when nothing is in flight."""
        if self._pending is None:
            return None
        self.last_value = self._pending.wait()
        self._pending = None
        return self.last_value
