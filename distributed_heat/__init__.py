"""
Distributed 2D heat relaxation

Jacobi relaxation of a 2D temperature grid split into horizontal slabs
across MPI workers, with optional CUDA offload of the stencil.

Building blocks:
1. row-slab partitioning with ``MPI.PROC_NULL`` edge neighbours
2. double-buffered slabs with labelled ghost rows
3. deadlock-free halo exchange (``Sendrecv`` or ``Isend``/``Irecv``)
4. three-region stencil update overlapped on CUDA streams
5. non-blocking convergence reduction and snapshot gather
6. wall-clock bounded run controller
"""

from .config import ConfigurationError, HeatConfig
from .controller import ProgressRecord, RunAborted, RunController, RunPhase, RunSummary
from .gpu_manager import GPUManager
from .grid_store import GridStore, ResourceExhaustedError, SlabPair, WorkerSlab
from .halo import HALO_MODES, HaloExchanger
from .mpi_manager import MPIError, MPIManager, PendingOperation
from .partition import NO_NEIGHBOR, SlabPartition, partition_for, partition_rows
from .reducer import ConvergenceReducer
from .snapshot import SnapshotCollector
from .stencil import COLUMN_REGIONS, StencilEngine

__version__ = "0.1.0"
__all__ = [
    "ConfigurationError",
    "HeatConfig",
    "ProgressRecord",
    "RunAborted",
    "RunController",
    "RunPhase",
    "RunSummary",
    "GPUManager",
    "GridStore",
    "ResourceExhaustedError",
    "SlabPair",
    "WorkerSlab",
    "HALO_MODES",
    "HaloExchanger",
    "MPIError",
    "MPIManager",
    "PendingOperation",
    "NO_NEIGHBOR",
    "SlabPartition",
    "partition_for",
    "partition_rows",
    "ConvergenceReducer",
    "SnapshotCollector",
    "COLUMN_REGIONS",
    "StencilEngine",
]
