"""Shared fixtures and helpers for the distributed_heat tests."""

import numpy as np
import pytest
import torch
from mpi4py import MPI

from distributed_heat.gpu_manager import GPUManager
from distributed_heat.grid_store import SlabPair, WorkerSlab
from distributed_heat.mpi_manager import MPIManager


requires_cuda = pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")


@pytest.fixture
def mpi_self():
    """Single-worker manager on COMM_SELF, independent of how pytest was launched."""
    return MPIManager(MPI.COMM_SELF)


@pytest.fixture
def mpi_world():
    return MPIManager(MPI.COMM_WORLD)


@pytest.fixture
def cpu():
    return GPUManager(-1)


@pytest.fixture(autouse=True)
def _clean_heat_env(monkeypatch):
    """Keep HEAT_* variables of the calling shell out of the tests."""
    import os
    for key in list(os.environ):
        if key.startswith("HEAT_"):
            monkeypatch.delenv(key)


def point_grid(rows, columns, cells, value=50.0):
    grid = np.zeros((rows, columns), dtype=np.float64)
    for r, c in cells:
        grid[r, c] = value
    return grid


def make_pair(block, fixed=None, device="cpu"):
    """Slab pair whose read slab holds *block* in its owned rows."""
    block = torch.as_tensor(block, dtype=torch.float64, device=device)
    rows, columns = block.shape
    first = torch.zeros((rows + 2, columns), dtype=torch.float64, device=device)
    first[1:-1] = block
    if fixed is None:
        fixed = torch.zeros((rows, columns), dtype=torch.bool)
    pair = SlabPair(
        WorkerSlab(first),
        WorkerSlab(first.clone()),
        torch.as_tensor(fixed, dtype=torch.bool).to(device),
    )
    return pair


def reference_step(grid, fixed):
    """Straightforward one-process relaxation step with reduced edges."""
    rows, columns = grid.shape
    out = grid.copy()
    for i in range(rows):
        for j in range(columns):
            if fixed[i, j]:
                continue
            neighbours = []
            if i > 0:
                neighbours.append(grid[i - 1, j])
            if i < rows - 1:
                neighbours.append(grid[i + 1, j])
            if j > 0:
                neighbours.append(grid[i, j - 1])
            if j < columns - 1:
                neighbours.append(grid[i, j + 1])
            out[i, j] = sum(neighbours) / len(neighbours)
    return out
