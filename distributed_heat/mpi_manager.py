"""
MPI communication manager

Owns the communicator, binds each worker to an accelerator when one is
requested, and wraps every MPI call so that failures surface as
:class:`MPIError` carrying the failing rank instead of a silent hang.

All transfers use the buffer-based (uppercase) mpi4py API on contiguous
``float64`` host buffers. When a CUDA device is in use the host buffers are
pinned so device<->host copies can use DMA.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, Optional, Sequence, Tuple, Type

import numpy as np
import torch
from mpi4py import MPI

_logger = logging.getLogger("distributed_heat.mpi")


# ══════════════════════════════════════════════════════════════════
#  Exceptions
# ══════════════════════════════════════════════════════════════════

class MPIError(RuntimeError):
    """MPI operation failure (carries the rank of the worker that saw it)."""

    def __init__(
        self,
        msg: str,
        rank: int = -1,
        original: Optional[Exception] = None,
    ) -> None:
        self.rank: int = rank
        self.original: Optional[Exception] = original
        super().__init__(f"[Rank {rank}] {msg}")


# ══════════════════════════════════════════════════════════════════
#  Non-blocking handles
# ══════════════════════════════════════════════════════════════════

class PendingOperation:
    """
    Handle for an in-flight non-blocking MPI operation.

    The value produced by the operation is only readable through
    :meth:`wait`, which completes the request first. Waiting twice is
    harmless and returns the same value.
    """

    __slots__ = ("_mpi", "name", "_request", "_result_fn", "_buffers", "_completed", "_result")

    def __init__(
        self,
        mpi: "MPIManager",
        name: str,
        request: MPI.Request,
        result_fn: Callable[[], Any],
        buffers: Tuple[Any, ...] = (),
    ) -> None:
        self._mpi = mpi
        self.name: str = name
        self._request = request
        self._result_fn = result_fn
        # buffers the request reads or writes; kept alive until completion
        self._buffers = buffers
        self._completed: bool = False
        self._result: Any = None

    @property
    def completed(self) -> bool:
        return self._completed

    def wait(self) -> Any:
        """Block until the operation completes and return its value."""
        if not self._completed:
            self._mpi._safe_call(f"Wait({self.name})", self._request.Wait)
            self._finish()
        return self._result

    def _finish(self) -> None:
        self._result = self._result_fn()
        self._completed = True
        self._buffers = ()


# ══════════════════════════════════════════════════════════════════
#  MPI manager
# ══════════════════════════════════════════════════════════════════

class MPIManager:
    """
    MPI communication manager

    Responsibilities:
    - hold the communicator, rank and size of this worker
    - bind the worker to a GPU (``rank % gpu_count``) when asked to
    - route every MPI call through :meth:`_safe_call`
    - allocate host staging buffers (pinned when CUDA is in use)

    Every collective below must be called by all workers in the same order.
    """

    # ── initialisation ─────────────────────────────────────────

    def __init__(
        self,
        comm: Optional[MPI.Comm] = None,
        use_accelerator: bool = False,
    ) -> None:
        self.comm: MPI.Comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank: int = self.comm.Get_rank()
        self.size: int = self.comm.Get_size()
        self.is_master: bool = (self.rank == 0)

        if use_accelerator and torch.cuda.is_available():
            self.gpu_count: int = torch.cuda.device_count()
            self.gpu_id: int = self.rank % self.gpu_count
            torch.cuda.set_device(self.gpu_id)
        else:
            self.gpu_count = torch.cuda.device_count() if torch.cuda.is_available() else 0
            self.gpu_id = -1
            if use_accelerator:
                _logger.warning(
                    "[Rank %d] accelerator requested but CUDA is unavailable, running on CPU",
                    self.rank,
                )

        if self.is_master:
            _logger.info(
                "MPI environment initialised: %d workers, %d GPUs", self.size, self.gpu_count
            )

    # ── internal: safe call wrapper ────────────────────────────

    def _safe_call(self, func_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run an MPI operation, converting any failure into :class:`MPIError`.

        The error is logged with the operation name so the failing worker
        and call can be identified from the job output.
        """
        try:
            return fn(*args, **kwargs)
        except MPI.Exception as exc:
            msg = f"MPI operation '{func_name}' failed: {exc}"
            _logger.error("[Rank %d] %s", self.rank, msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc
        except Exception as exc:
            msg = f"operation '{func_name}' raised: {exc}\n{traceback.format_exc()}"
            _logger.error("[Rank %d] %s", self.rank, msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc

    # ── state queries ──────────────────────────────────────────

    def get_rank(self) -> int:
        return self.rank

    def get_size(self) -> int:
        return self.size

    def is_master_process(self) -> bool:
        """True on the coordinating worker (rank 0)."""
        return self.is_master

    def get_gpu_id(self) -> int:
        """GPU bound to this worker, ``-1`` when running on CPU."""
        return self.gpu_id

    def wtime(self) -> float:
        return MPI.Wtime()

    def processor_name(self) -> str:
        return MPI.Get_processor_name()

    def node_rank(self) -> Tuple[int, int]:
        """
        Rank and size among the workers sharing this node.

        Collective: splits the communicator by shared-memory domain.
        """
        node = self._safe_call("Split_type", self.comm.Split_type, MPI.COMM_TYPE_SHARED)
        try:
            return node.Get_rank(), node.Get_size()
        finally:
            node.Free()

    # ── synchronisation ────────────────────────────────────────

    def barrier(self) -> None:
        """Synchronise all workers (MPI_Barrier)."""
        self._safe_call("Barrier", self.comm.Barrier)

    def abort(self, errorcode: int = 1) -> None:
        """Tear down every worker of the communicator."""
        _logger.error("[Rank %d] aborting all workers (code %d)", self.rank, errorcode)
        self.comm.Abort(errorcode)

    # ══════════════════════════════════════════════════════════════
    #  Collectives
    #  Every worker must call these
    # ══════════════════════════════════════════════════════════════

    def broadcast(self, data: Any, root: int = 0) -> Any:
        """Broadcast a picklable Python object from *root*."""
        return self._safe_call("bcast", self.comm.bcast, data, root=root)

    def broadcast_value(self, value: float, root: int = 0) -> float:
        """Broadcast one double from *root* (MPI_Bcast on a 1-element buffer)."""
        buf = np.array([value if self.rank == root else 0.0], dtype=np.float64)
        self._safe_call("Bcast", self.comm.Bcast, buf, root=root)
        return float(buf[0])

    def scatter_rows(
        self,
        global_rows: Optional[np.ndarray],
        local_rows: np.ndarray,
        root: int = 0,
    ) -> np.ndarray:
        """
        Scatter equal contiguous row blocks of *global_rows* into *local_rows*.

        Args:
            global_rows: full array on *root* (ignored elsewhere)
            local_rows: contiguous receive buffer of this worker's block shape
            root: source rank

        Returns:
            *local_rows*, filled with this worker's block
        """
        sendbuf = np.ascontiguousarray(global_rows) if self.rank == root else None
        self._safe_call("Scatter", self.comm.Scatter, sendbuf, local_rows, root=root)
        return local_rows

    def check_root(
        self,
        error_msg: Optional[str],
        root: int = 0,
        exc_type: Type[Exception] = MPIError,
    ) -> None:
        """
        Share a root-side validation result with every worker.

        Raising only on root would leave the others blocked inside the next
        collective, so the message is broadcast and every worker raises.
        """
        error_msg = self.broadcast(error_msg if self.rank == root else None, root=root)
        if error_msg is None:
            return
        if exc_type is MPIError:
            raise MPIError(error_msg, rank=self.rank)
        raise exc_type(error_msg)

    def iallreduce(
        self,
        value: float,
        op: MPI.Op = MPI.MAX,
        name: str = "Iallreduce",
    ) -> PendingOperation:
        """Start a non-blocking all-reduce of one double."""
        sendbuf = np.array([value], dtype=np.float64)
        recvbuf = np.zeros(1, dtype=np.float64)
        request = self._safe_call(name, self.comm.Iallreduce, sendbuf, recvbuf, op=op)
        return PendingOperation(
            self, name, request, lambda: float(recvbuf[0]), buffers=(sendbuf, recvbuf),
        )

    def igather_rows(
        self,
        local_rows: np.ndarray,
        global_rows: Optional[np.ndarray],
        root: int = 0,
        name: str = "Igather",
    ) -> PendingOperation:
        """
        Start a non-blocking gather of equal row blocks into *global_rows* on root.

        The returned handle yields *global_rows* on root and ``None`` elsewhere.
        *local_rows* must not be modified until the handle has been waited on.
        """
        recvbuf = global_rows if self.rank == root else None
        request = self._safe_call(name, self.comm.Igather, local_rows, recvbuf, root=root)
        return PendingOperation(
            self, name, request, lambda: recvbuf, buffers=(local_rows, recvbuf),
        )

    # ══════════════════════════════════════════════════════════════
    #  Point-to-point
    # ══════════════════════════════════════════════════════════════

    def sendrecv_rows(
        self,
        sendbuf: np.ndarray,
        dest: int,
        recvbuf: np.ndarray,
        source: int,
        tag: int = 0,
    ) -> None:
        """Combined send/receive; ``MPI.PROC_NULL`` on either side is a no-op."""
        self._safe_call(
            f"Sendrecv(tag={tag})", self.comm.Sendrecv,
            sendbuf=sendbuf, dest=dest, sendtag=tag,
            recvbuf=recvbuf, source=source, recvtag=tag,
        )

    def isend_rows(self, sendbuf: np.ndarray, dest: int, tag: int = 0) -> MPI.Request:
        return self._safe_call(f"Isend(tag={tag})", self.comm.Isend, sendbuf, dest=dest, tag=tag)

    def irecv_rows(self, recvbuf: np.ndarray, source: int, tag: int = 0) -> MPI.Request:
        return self._safe_call(f"Irecv(tag={tag})", self.comm.Irecv, recvbuf, source=source, tag=tag)

    def waitall(self, requests: Sequence[MPI.Request], name: str = "Waitall") -> None:
        self._safe_call(name, MPI.Request.Waitall, list(requests))

    # ══════════════════════════════════════════════════════════════
    #  Host buffers
    # ══════════════════════════════════════════════════════════════

    def allocate_host_buffer(self, shape: Tuple[int, ...]) -> np.ndarray:
        """
        Allocate a zeroed contiguous ``float64`` host buffer.

        Pinned through ``Tensor.pin_memory()`` when this worker is bound to a
        GPU, so the device copies feeding MPI can use DMA.
        """
        t = torch.zeros(shape, dtype=torch.float64)
        if self.gpu_id >= 0:
            t = t.pin_memory()
        return t.numpy()

    # ══════════════════════════════════════════════════════════════
    #  Output
    # ══════════════════════════════════════════════════════════════

    def print_master(self, message: str) -> None:
        """Print on the coordinator only."""
        if self.is_master:
            print(message, flush=True)
