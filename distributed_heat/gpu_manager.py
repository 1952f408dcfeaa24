"""
Accelerator device manager

Resolves the device a worker's slabs live on, creates the CUDA streams used
to overlap the per-region stencil kernels, and answers memory questions
before slabs are allocated.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence

import torch

_logger = logging.getLogger("distributed_heat.gpu")

# ── constants ─────────────────────────────────────────────────
_GB: float = 1024.0 ** 3

_DTYPE_BYTES: Dict[torch.dtype, int] = {
    torch.float32: 4,
    torch.float64: 8,
    torch.bool: 1,
    torch.uint8: 1,
}


class GPUManager:
    """
    Device manager for one worker

    Responsibilities:
    - map the worker's GPU id (``-1`` for CPU) to a ``torch.device``
    - hand out ``torch.cuda.Stream`` objects for overlapped kernels
    - estimate slab memory and check it against free device memory
    """

    def __init__(self, gpu_id: int) -> None:
        """
        Args:
            gpu_id: CUDA device index, or ``-1`` to run on the CPU
        """
        self.gpu_id: int = gpu_id
        self.is_cuda: bool = gpu_id >= 0 and torch.cuda.is_available()
        self.device: torch.device = torch.device(
            f"cuda:{gpu_id}" if self.is_cuda else "cpu"
        )

        if self.is_cuda:
            self.props = torch.cuda.get_device_properties(gpu_id)
            self.name: str = self.props.name
            self.total_memory: int = self.props.total_memory
        else:
            self.props = None
            self.name = "CPU"
            self.total_memory = 0

        _logger.debug("device %s (%s)", self.device, self.name)

    # ── device queries ──────────────────────────────────────────

    def get_device(self) -> torch.device:
        return self.device

    def get_memory_info(self) -> Dict[str, float]:
        """
        Device memory usage in GB.

        Returns:
            dict with ``total``, ``used``, ``reserved``, ``free`` and
            ``usage_percent``; all zero on the CPU
        """
        if not self.is_cuda:
            return {"total": 0.0, "used": 0.0, "reserved": 0.0,
                    "free": 0.0, "usage_percent": 0.0}

        total = self.total_memory / _GB
        used = torch.cuda.memory_allocated(self.gpu_id) / _GB
        reserved = torch.cuda.memory_reserved(self.gpu_id) / _GB
        free = total - reserved

        return {
            "total": total,
            "used": used,
            "reserved": reserved,
            "free": free,
            "usage_percent": (used / total * 100.0) if total > 0 else 0.0,
        }

    # ── streams ─────────────────────────────────────────────────

    def create_streams(self, count: int) -> List[Optional[torch.cuda.Stream]]:
        """
        Create *count* independent CUDA streams on this device.

        On the CPU a list of ``None`` placeholders is returned so callers can
        iterate the same way and simply run the work inline.
        """
        if not self.is_cuda:
            return [None] * count
        return [torch.cuda.Stream(device=self.device) for _ in range(count)]

    def synchronize(self) -> None:
        """Wait for every queued kernel on this device."""
        if self.is_cuda:
            torch.cuda.synchronize(self.gpu_id)

    # ── memory estimates ────────────────────────────────────────

    @staticmethod
    def estimate_memory_requirement(
        *tensor_shapes: Sequence[int],
        dtype: torch.dtype = torch.float64,
    ) -> float:
        """
        Memory needed for tensors of the given shapes.

        Args:
            *tensor_shapes: tensor shapes such as ``(66, 1024)``
            dtype: element type

        Returns:
            required memory in GB
        """
        bytes_per_element = _DTYPE_BYTES.get(dtype, 8)
        total_bytes = sum(math.prod(shape) * bytes_per_element for shape in tensor_shapes)
        return total_bytes / _GB

    def can_fit(
        self,
        *tensor_shapes: Sequence[int],
        dtype: torch.dtype = torch.float64,
        safety_margin: float = 0.1,
    ) -> bool:
        """
        Check whether tensors of the given shapes fit in free device memory.

        Always ``True`` on the CPU, where allocation failures surface as
        ``MemoryError`` instead.
        """
        if not self.is_cuda:
            return True
        required = self.estimate_memory_requirement(*tensor_shapes, dtype=dtype)
        available = self.get_memory_info()["free"] * (1.0 - safety_margin)
        return required <= available
