"""
Row-slab domain partitioning

The global R x C grid is cut into W equal horizontal slabs, one per worker.
Worker ``i`` owns global rows ``[i*R/W, (i+1)*R/W)`` and talks only to the
workers directly above (``i-1``) and below (``i+1``). At the top and bottom
of the domain the neighbour is ``MPI.PROC_NULL``, so halo traffic with it is
a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from mpi4py import MPI

from .config import ConfigurationError

NO_NEIGHBOR: int = MPI.PROC_NULL


@dataclass(frozen=True)
class SlabPartition:
    """Rows owned by one worker and the identities of its neighbours."""

    worker: int
    row_start: int
    row_stop: int
    columns: int
    above: int
    below: int

    @property
    def owned_rows(self) -> int:
        return self.row_stop - self.row_start

    @property
    def has_above(self) -> bool:
        return self.above != NO_NEIGHBOR

    @property
    def has_below(self) -> bool:
        return self.below != NO_NEIGHBOR

    @property
    def slab_shape(self) -> Tuple[int, int]:
        """Shape of a slab including one ghost row on each side."""
        return (self.owned_rows + 2, self.columns)


def partition_rows(rows: int, columns: int, workers: int) -> List[SlabPartition]:
    """
    Split an R x C grid into *workers* equal row slabs.

    Args:
        rows: global row count R
        columns: global column count C
        workers: worker count W (must divide R)

    Returns:
        one :class:`SlabPartition` per worker, ordered by worker index

    Raises:
        ConfigurationError: R not divisible by W, or non-positive sizes
    """
    if workers < 1:
        raise ConfigurationError(f"worker count must be >= 1, got {workers}")
    if rows < 1 or columns < 1:
        raise ConfigurationError(f"grid must be at least 1x1, got {rows}x{columns}")
    if rows % workers != 0:
        raise ConfigurationError(
            f"{rows} rows cannot be divided evenly across {workers} workers"
        )

    per_worker = rows // workers
    return [
        SlabPartition(
            worker=i,
            row_start=i * per_worker,
            row_stop=(i + 1) * per_worker,
            columns=columns,
            above=i - 1 if i > 0 else NO_NEIGHBOR,
            below=i + 1 if i < workers - 1 else NO_NEIGHBOR,
        )
        for i in range(workers)
    ]


def partition_for(worker: int, rows: int, columns: int, workers: int) -> SlabPartition:
    """Partition of a single worker."""
    if not 0 <= worker < workers:
        raise ConfigurationError(f"worker index {worker} outside [0, {workers})")
    return partition_rows(rows, columns, workers)[worker]
