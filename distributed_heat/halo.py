"""
Halo exchange

Refreshes the ghost rows of a slab from the boundary rows of the workers
above and below. Two deadlock-free protocols are provided:

- ``"sendrecv"``: two combined ``MPI_Sendrecv`` calls, one per direction
- ``"nonblocking"``: both receives and both sends posted with
  ``Irecv``/``Isend`` and completed together with ``Waitall``

Neighbours at the domain edge are ``MPI.PROC_NULL``; MPI completes traffic
with them immediately, so edge workers never block on a missing peer.
Transfers are staged through preallocated host buffers, pinned when the
slabs live on a GPU.
"""

from __future__ import annotations

import logging

import numpy as np
import torch

from .config import HALO_MODES, ConfigurationError
from .grid_store import WorkerSlab
from .mpi_manager import MPIManager
from .partition import SlabPartition

_logger = logging.getLogger("distributed_heat.halo")

# rows travelling down the domain carry tag 0, rows travelling up carry tag 1
_TAG_DOWN: int = 0
_TAG_UP: int = 1


class _HaloBuffers:
    """
    Preallocated host staging buffers for one worker.

    Every iteration exchanges the same four rows, so the buffers are created
    once and reused.
    """

    __slots__ = (
        "up_rank", "down_rank",
        "top_row_np", "bottom_row_np",
        "top_halo_np", "bottom_halo_np",
        "top_row", "bottom_row", "top_halo", "bottom_halo",
    )

    def __init__(self, mpi: MPIManager, partition: SlabPartition) -> None:
        columns = partition.columns
        self.up_rank = partition.above
        self.down_rank = partition.below
        self.top_row_np: np.ndarray = mpi.allocate_host_buffer((columns,))
        self.bottom_row_np: np.ndarray = mpi.allocate_host_buffer((columns,))
        self.top_halo_np: np.ndarray = mpi.allocate_host_buffer((columns,))
        self.bottom_halo_np: np.ndarray = mpi.allocate_host_buffer((columns,))
        # tensor views sharing memory with the numpy buffers
        self.top_row = torch.from_numpy(self.top_row_np)
        self.bottom_row = torch.from_numpy(self.bottom_row_np)
        self.top_halo = torch.from_numpy(self.top_halo_np)
        self.bottom_halo = torch.from_numpy(self.bottom_halo_np)


class HaloExchanger:
    """
    Ghost-row exchange between vertically adjacent workers.

    Args:
        mpi: MPI manager of the run
        partition: this worker's rows and neighbours
        mode: one of :data:`HALO_MODES`
    """

    def __init__(
        self,
        mpi: MPIManager,
        partition: SlabPartition,
        mode: str = "sendrecv",
    ) -> None:
        if mode not in HALO_MODES:
            raise ConfigurationError(f"unknown halo mode {mode!r}, expected one of {HALO_MODES}")
        self.mpi = mpi
        self.partition = partition
        self.mode = mode
        self._buffers = _HaloBuffers(mpi, partition)
        self.exchanges: int = 0
        _logger.debug(
            "[Rank %d] halo mode=%s above=%d below=%d",
            mpi.get_rank(), mode, partition.above, partition.below,
        )

    @property
    def is_noop(self) -> bool:
        """True when this worker has no neighbour on either side."""
        return not (self.partition.has_above or self.partition.has_below)

    def exchange(self, slab: WorkerSlab) -> None:
        """
        Refresh ``slab``'s ghost rows from the neighbours' boundary rows.

        Sends row 1 up and row ``owned_rows`` down; receives into row 0 from
        above and row ``owned_rows + 1`` from below. Returns once all data
        has landed in the slab. Every worker must call this in the same
        iteration.
        """
        if slab.columns != self.partition.columns:
            raise ValueError(
                f"slab has {slab.columns} columns, partition expects {self.partition.columns}"
            )
        self.exchanges += 1
        if self.is_noop:
            return

        bufs = self._buffers
        # device -> host before send
        if self.partition.has_above:
            bufs.top_row.copy_(slab.first_owned)
        if self.partition.has_below:
            bufs.bottom_row.copy_(slab.last_owned)

        if self.mode == "sendrecv":
            self._sendrecv(bufs)
        else:
            self._nonblocking(bufs)

        # host -> device after receive
        if self.partition.has_above:
            slab.ghost_above.copy_(bufs.top_halo)
        if self.partition.has_below:
            slab.ghost_below.copy_(bufs.bottom_halo)

    # ── protocols ───────────────────────────────────────────────

    def _sendrecv(self, bufs: _HaloBuffers) -> None:
        # downward: send last owned row down, receive the upper ghost row
        self.mpi.sendrecv_rows(
            bufs.bottom_row_np, bufs.down_rank,
            bufs.top_halo_np, bufs.up_rank,
            tag=_TAG_DOWN,
        )
        # upward: send first owned row up, receive the lower ghost row
        self.mpi.sendrecv_rows(
            bufs.top_row_np, bufs.up_rank,
            bufs.bottom_halo_np, bufs.down_rank,
            tag=_TAG_UP,
        )

    def _nonblocking(self, bufs: _HaloBuffers) -> None:
        mpi = self.mpi
        requests = [
            mpi.irecv_rows(bufs.top_halo_np, bufs.up_rank, tag=_TAG_DOWN),
            mpi.irecv_rows(bufs.bottom_halo_np, bufs.down_rank, tag=_TAG_UP),
            mpi.isend_rows(bufs.bottom_row_np, bufs.down_rank, tag=_TAG_DOWN),
            mpi.isend_rows(bufs.top_row_np, bufs.up_rank, tag=_TAG_UP),
        ]
        mpi.waitall(requests, name="Waitall(halo)")
