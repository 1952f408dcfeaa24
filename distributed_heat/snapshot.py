"""
Periodic global snapshots

Every ``interval`` iterations each worker copies the owned rows of its slab
into a host staging buffer and posts an ``MPI_Igather`` into the
coordinator's R x C buffer. Ghost rows never leave the worker. The gather
is only waited on when its result is reported, and a skipped or late
gather affects nothing but progress output.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import torch

from .grid_store import WorkerSlab
from .mpi_manager import MPIManager, PendingOperation
from .partition import SlabPartition


class SnapshotCollector:
    """
    Gathers owned rows into the coordinator's snapshot buffer.

    Args:
        mpi: MPI manager of the run
        partition: this worker's rows
        interval: gather every *interval* iterations
        buffer: R x C coordinator buffer to reuse (e.g. the grid store's
            global buffer); allocated when omitted. Ignored on other workers.
    """

    def __init__(
        self,
        mpi: MPIManager,
        partition: SlabPartition,
        interval: int,
        buffer: Optional[np.ndarray] = None,
    ) -> None:
        if interval < 1:
            raise ValueError(f"snapshot interval must be >= 1, got {interval}")
        self.mpi = mpi
        self.partition = partition
        self.interval = interval

        rows = partition.owned_rows * mpi.get_size()
        self.buffer: Optional[np.ndarray] = None
        if mpi.is_master_process():
            self.buffer = buffer if buffer is not None else np.zeros(
                (rows, partition.columns), dtype=np.float64,
            )
        self._staging_np: np.ndarray = mpi.allocate_host_buffer(
            (partition.owned_rows, partition.columns)
        )
        self._staging = torch.from_numpy(self._staging_np)

        self._pending: Optional[PendingOperation] = None
        self.pending_iteration: Optional[int] = None

    def due(self, iteration: int) -> bool:
        return iteration % self.interval == 0

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    def start(self, slab: WorkerSlab, iteration: int) -> PendingOperation:
        """
        Post the gather of ``slab``'s owned rows for *iteration*.

        A gather still outstanding from an earlier call is completed first,
        since it reads the same staging buffer. Collective.
        """
        if self._pending is not None:
            self.settle()
        # device -> host, owned rows only
        self._staging.copy_(slab.owned)
        self._pending = self.mpi.igather_rows(
            self._staging_np, self.buffer, name=f"Igather(snapshot {iteration})",
        )
        self.pending_iteration = iteration
        return self._pending

    def settle(self) -> Optional[Tuple[int, Optional[np.ndarray]]]:
        """
        Wait for the outstanding gather.

        Returns:
            ``(iteration, grid)`` where *grid* is the assembled R x C buffer
            on the coordinator and ``None`` elsewhere, or ``None`` when no
            gather is in flight
        """
        if self._pending is None:
            return None
        grid = self._pending.wait()
        iteration = self.pending_iteration
        self._pending = None
        self.pending_iteration = None
        return iteration, grid
