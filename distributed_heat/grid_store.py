"""
Per-worker grid storage

Each worker holds two slabs of shape ``(owned_rows + 2) x C``: row ``0`` and
row ``owned_rows + 1`` are ghost rows mirroring the neighbours' boundary
rows, the rows in between are owned data. The two slabs alternate between
the read role (source of the current iteration) and the write role
(destination) by generation, so a reader never sees a half-written slab.

The coordinator additionally owns the full R x C host buffer used for the
initial distribution and, afterwards, for snapshots.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import numpy as np
import torch

from .config import ConfigurationError
from .gpu_manager import GPUManager
from .mpi_manager import MPIManager
from .partition import SlabPartition

_logger = logging.getLogger("distributed_heat.grid")

ArrayLike = Union[np.ndarray, torch.Tensor]


class ResourceExhaustedError(MemoryError):
    """Slab buffers could not be allocated on this worker."""


# ══════════════════════════════════════════════════════════════════
#  Slabs
# ══════════════════════════════════════════════════════════════════

class WorkerSlab:
    """
    One ``(owned_rows + 2) x C`` buffer with its ghost rows kept apart.

    Only :attr:`owned` is authoritative. The ghost rows are borrowed copies
    refreshed by the halo exchange and must never be exported.
    """

    __slots__ = ("tensor",)

    def __init__(self, tensor: torch.Tensor) -> None:
        if tensor.dim() != 2 or tensor.shape[0] < 3:
            raise ValueError(f"slab needs at least one owned row, got shape {tuple(tensor.shape)}")
        self.tensor: torch.Tensor = tensor

    @property
    def owned_rows(self) -> int:
        return self.tensor.shape[0] - 2

    @property
    def columns(self) -> int:
        return self.tensor.shape[1]

    @property
    def device(self) -> torch.device:
        return self.tensor.device

    # ── labelled views ──────────────────────────────────────────

    @property
    def owned(self) -> torch.Tensor:
        return self.tensor[1:-1]

    @property
    def ghost_above(self) -> torch.Tensor:
        return self.tensor[0]

    @property
    def ghost_below(self) -> torch.Tensor:
        return self.tensor[-1]

    @property
    def first_owned(self) -> torch.Tensor:
        return self.tensor[1]

    @property
    def last_owned(self) -> torch.Tensor:
        return self.tensor[-2]


class SlabPair:
    """
    Double buffer selected by generation.

    At generation ``g`` slab ``g % 2`` is read and slab ``(g + 1) % 2`` is
    written. :meth:`advance` flips the roles once the write is complete.
    """

    def __init__(self, first: WorkerSlab, second: WorkerSlab, fixed: torch.Tensor) -> None:
        if first.tensor.shape != second.tensor.shape:
            raise ValueError("both slabs of a pair must have the same shape")
        if tuple(fixed.shape) != tuple(first.owned.shape):
            raise ValueError("fixed-source mask must match the owned rows")
        self._slabs: Tuple[WorkerSlab, WorkerSlab] = (first, second)
        self.fixed: torch.Tensor = fixed
        self.generation: int = 0

    @property
    def read(self) -> WorkerSlab:
        return self._slabs[self.generation % 2]

    @property
    def write(self) -> WorkerSlab:
        return self._slabs[(self.generation + 1) % 2]

    # names used in the algorithm description
    previous = read
    current = write

    def advance(self) -> None:
        self.generation += 1


# ══════════════════════════════════════════════════════════════════
#  Store
# ══════════════════════════════════════════════════════════════════

def _as_host_array(grid: ArrayLike) -> np.ndarray:
    if isinstance(grid, torch.Tensor):
        grid = grid.detach().cpu().numpy()
    return np.asarray(grid)


class GridStore:
    """
    Owns the slab pair of one worker and the coordinator's global buffer.

    Args:
        partition: rows owned by this worker
        mpi: MPI manager of the run
        gpu: device the slabs are allocated on
        max_temperature: value identifying fixed-source cells when no
            explicit mask is supplied
    """

    def __init__(
        self,
        partition: SlabPartition,
        mpi: MPIManager,
        gpu: GPUManager,
        max_temperature: float = 50.0,
    ) -> None:
        self.partition = partition
        self.mpi = mpi
        self.gpu = gpu
        self.max_temperature = max_temperature
        self.rows: int = partition.owned_rows * mpi.get_size()
        self.columns: int = partition.columns

        shape = partition.slab_shape
        if not gpu.can_fit(shape, shape, dtype=torch.float64):
            raise ResourceExhaustedError(
                f"[Rank {mpi.get_rank()}] two {shape[0]}x{shape[1]} slabs do not fit on {gpu.device} "
                f"({gpu.estimate_memory_requirement(shape, shape):.2f} GB needed)"
            )

        try:
            self.pair = SlabPair(
                WorkerSlab(torch.zeros(shape, dtype=torch.float64, device=gpu.device)),
                WorkerSlab(torch.zeros(shape, dtype=torch.float64, device=gpu.device)),
                torch.zeros((partition.owned_rows, self.columns), dtype=torch.bool, device=gpu.device),
            )
            self._block: np.ndarray = mpi.allocate_host_buffer((partition.owned_rows, self.columns))
            self.global_buffer: Optional[np.ndarray] = (
                np.zeros((self.rows, self.columns), dtype=np.float64)
                if mpi.is_master_process() else None
            )
        except (torch.cuda.OutOfMemoryError, MemoryError) as exc:
            raise ResourceExhaustedError(
                f"[Rank {mpi.get_rank()}] cannot allocate grid buffers: {exc}"
            ) from exc

    # ── distribution ────────────────────────────────────────────

    def _check_inputs(
        self,
        global_grid: Optional[ArrayLike],
        fixed_mask: Optional[ArrayLike],
    ) -> Optional[str]:
        expected = (self.rows, self.columns)
        if global_grid is None:
            return "no initial condition supplied on the coordinator"
        shape = tuple(np.shape(global_grid))
        if shape != expected:
            return f"initial condition has shape {shape}, expected {expected}"
        if fixed_mask is not None and tuple(np.shape(fixed_mask)) != expected:
            return f"fixed-source mask has shape {tuple(np.shape(fixed_mask))}, expected {expected}"
        return None

    def load_initial_condition(
        self,
        global_grid: Optional[ArrayLike] = None,
        fixed_mask: Optional[ArrayLike] = None,
    ) -> SlabPair:
        """
        Scatter the coordinator's R x C grid into every worker's read slab.

        Collective: every worker must call it. Non-coordinators pass nothing
        and block until their row block arrives. Afterwards the write slab is
        a copy of the read slab.

        Args:
            global_grid: initial temperatures (coordinator only)
            fixed_mask: boolean R x C mask of clamped cells (coordinator
                only); defaults to ``global_grid == max_temperature``

        Returns:
            the initialised :class:`SlabPair`

        Raises:
            ConfigurationError: the grid or mask has the wrong shape
                (raised on every worker)
        """
        mpi = self.mpi
        error: Optional[str] = None
        grid_np: Optional[np.ndarray] = None
        mask_np: Optional[np.ndarray] = None
        if mpi.is_master_process():
            error = self._check_inputs(global_grid, fixed_mask)
            if error is None:
                grid_np = np.ascontiguousarray(_as_host_array(global_grid), dtype=np.float64)
                if fixed_mask is None:
                    mask_np = (grid_np == self.max_temperature).astype(np.float64)
                else:
                    mask_np = _as_host_array(fixed_mask).astype(bool).astype(np.float64)
        mpi.check_root(error, exc_type=ConfigurationError)

        pair = self.pair
        mpi.scatter_rows(grid_np, self._block)
        pair.read.owned.copy_(torch.from_numpy(self._block))
        mpi.scatter_rows(mask_np, self._block)
        pair.fixed.copy_(torch.from_numpy(self._block) > 0.5)
        pair.write.tensor.copy_(pair.read.tensor)

        if self.global_buffer is not None and grid_np is not None:
            self.global_buffer[...] = grid_np

        _logger.debug(
            "[Rank %d] received rows [%d, %d), %d fixed-source cells",
            mpi.get_rank(), self.partition.row_start, self.partition.row_stop,
            int(pair.fixed.sum().item()),
        )
        return pair
