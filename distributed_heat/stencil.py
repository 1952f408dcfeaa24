"""
Jacobi stencil update

Every owned, non-fixed cell of the write slab becomes the mean of its
neighbours in the read slab::

    interior        (up + down + left + right) / 4
    left column     (up + down + right) / 3
    right column    (up + down + left) / 3

The global top and bottom rows have no vertical neighbour on one side and
drop that term from both the sum and the count, the same way the column
edges do. Vertical terms are weighted per row (1 or 0) so one expression
covers slab-internal rows and domain-edge rows alike.

The three column regions (left edge, interior, right edge) read only the
read slab and write disjoint columns of the write slab. On a GPU each region
is queued on its own CUDA stream; on the CPU they run one after the other
with identical results.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import torch

from .gpu_manager import GPUManager
from .grid_store import SlabPair
from .partition import SlabPartition

_logger = logging.getLogger("distributed_heat.stencil")

COLUMN_REGIONS = ("left", "interior", "right")


class StencilEngine:
    """
    Applies one relaxation step from ``pair.read`` into ``pair.write``.

    Args:
        partition: this worker's rows; decides which vertical terms exist
        gpu: device manager providing the per-region streams
    """

    def __init__(self, partition: SlabPartition, gpu: GPUManager) -> None:
        columns = partition.columns
        if columns < 2:
            raise ValueError(f"the stencil needs at least 2 columns, got {columns}")
        self.partition = partition
        self.gpu = gpu
        rows = partition.owned_rows
        device = gpu.get_device()

        # ── per-row vertical weights ────────────────────────────
        up = torch.ones((rows, 1), dtype=torch.float64, device=device)
        down = torch.ones((rows, 1), dtype=torch.float64, device=device)
        if not partition.has_above:
            up[0] = 0.0
        if not partition.has_below:
            down[-1] = 0.0
        self._up_weight: torch.Tensor = up
        self._down_weight: torch.Tensor = down

        # ── regions ─────────────────────────────────────────────
        self._columns: Dict[str, slice] = {
            "left": slice(0, 1),
            "interior": slice(1, columns - 1),
            "right": slice(columns - 1, columns),
        }
        vertical = up + down
        self._counts: Dict[str, torch.Tensor] = {
            "left": vertical + 1.0,
            "interior": vertical + 2.0,
            "right": vertical + 1.0,
        }

        self._streams: List[Optional[torch.cuda.Stream]] = gpu.create_streams(len(COLUMN_REGIONS))
        _logger.debug(
            "worker %d: %d rows x %d columns on %s (%s)",
            partition.worker, rows, columns, device,
            "3 streams" if gpu.is_cuda else "sequential regions",
        )

    # ── region units ────────────────────────────────────────────

    def update_region(self, pair: SlabPair, region: str) -> None:
        """Compute one column region of ``pair.write`` from ``pair.read``."""
        cols = self._columns[region]
        if cols.start >= cols.stop:
            return
        src = pair.read.tensor
        rows = self.partition.owned_rows

        total = src[0:rows, cols] * self._up_weight + src[2:rows + 2, cols] * self._down_weight
        if region != "left":
            total = total + src[1:rows + 1, cols.start - 1:cols.stop - 1]
        if region != "right":
            total = total + src[1:rows + 1, cols.start + 1:cols.stop + 1]

        old = src[1:rows + 1, cols]
        updated = torch.where(pair.fixed[:, cols], old, total / self._counts[region])
        pair.write.tensor[1:rows + 1, cols] = updated

    def _launch(self, pair: SlabPair) -> None:
        if not self.gpu.is_cuda:
            for region in COLUMN_REGIONS:
                self.update_region(pair, region)
            return

        current = torch.cuda.current_stream(self.gpu.device)
        for region, stream in zip(COLUMN_REGIONS, self._streams):
            # ghost rows were copied on the current stream
            stream.wait_stream(current)
            with torch.cuda.stream(stream):
                self.update_region(pair, region)

    def join(self) -> None:
        """Make the current stream wait for all region streams."""
        if not self.gpu.is_cuda:
            return
        current = torch.cuda.current_stream(self.gpu.device)
        for stream in self._streams:
            current.wait_stream(stream)

    # ── full step ───────────────────────────────────────────────

    def update(self, pair: SlabPair) -> float:
        """
        Run all three regions, join them and return the local change.

        The ghost rows of ``pair.read`` must already be refreshed.

        Returns:
            ``max |write - read|`` over this worker's owned cells
        """
        self._launch(pair)
        self.join()
        return (pair.write.owned - pair.read.owned).abs().max().item()
