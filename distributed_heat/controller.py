"""
Run controller

Drives one distributed relaxation run through its phases::

    INIT -> DISTRIBUTING -> ITERATING -> FINALIZING -> DONE

Each iteration exchanges halos, settles the previous iteration's reduction
and snapshot, updates the slab, posts the snapshot gather (when due) and the
convergence reduction, swaps the buffers and finally broadcasts the
coordinator's elapsed time. Every worker decides whether to continue from
that broadcast value, so all of them stop after the same iteration.

Any failure is fatal: it is re-raised as :class:`RunAborted` naming the
worker and the phase it happened in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
import psutil
import torch

from .config import HeatConfig
from .gpu_manager import GPUManager
from .grid_store import GridStore, SlabPair
from .halo import HaloExchanger
from .mpi_manager import MPIManager
from .partition import SlabPartition, partition_for
from .reducer import ConvergenceReducer
from .snapshot import SnapshotCollector
from .stencil import StencilEngine
from .utils.profiler import Profiler

_logger = logging.getLogger("distributed_heat.run")

ArrayLike = Union[np.ndarray, torch.Tensor]


# ---------------------------------------------------------------------------
# Phases & results
# ---------------------------------------------------------------------------

class RunPhase(Enum):
    """Lifecycle phase of a run"""
    INIT = "init"
    DISTRIBUTING = "distributing"
    ITERATING = "iterating"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class ProgressRecord:
    """Global convergence metric reported at a snapshot iteration."""
    iteration: int
    metric: float


@dataclass
class RunSummary:
    """Outcome of a completed run

    Attributes:
        elapsed_seconds: coordinator-measured wall-clock time of the loop
        iterations: number of completed iterations
        final_metric: global maximum change of the last iteration, ``None``
            when no iteration ran
        progress: metrics reported at snapshot iterations
    """
    elapsed_seconds: float
    iterations: int
    final_metric: Optional[float]
    progress: List[ProgressRecord] = field(default_factory=list)


class RunAborted(RuntimeError):
    """A run failed; carries the worker rank and the phase it failed in."""

    def __init__(self, rank: int, phase: RunPhase, original: BaseException) -> None:
        self.rank = rank
        self.phase = phase
        self.original = original
        super().__init__(
            f"[Rank {rank}] run failed during {phase.name}: {original}"
        )


def affinity_share(cpus: List[int], node_rank: int, node_size: int) -> List[int]:
    """
    CPUs one worker pins itself to out of the node's affinity list.

    With at least one CPU per worker the list is cut into equal contiguous
    shares (leftover CPUs stay unused); otherwise workers are spread over
    the CPUs round-robin, one CPU each.
    """
    share = len(cpus) // node_size
    if share >= 1:
        return list(cpus[node_rank * share:(node_rank + 1) * share])
    return [cpus[node_rank % len(cpus)]]


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class RunController:
    """
    One worker's view of a distributed relaxation run.

    Every worker of the communicator constructs a controller with the same
    configuration and calls :meth:`run`; only the coordinator passes the
    initial grid.

    Args:
        config: run parameters
        mpi: MPI manager; created on ``MPI.COMM_WORLD`` when omitted
    """

    def __init__(self, config: HeatConfig, mpi: Optional[MPIManager] = None) -> None:
        self.config = config
        self.mpi = mpi if mpi is not None else MPIManager(use_accelerator=config.use_accelerator)
        self.phase: RunPhase = RunPhase.INIT
        self.profiler = Profiler(enabled=config.profile)

        self.partition: Optional[SlabPartition] = None
        self.gpu: Optional[GPUManager] = None
        self.store: Optional[GridStore] = None
        self.pair: Optional[SlabPair] = None
        self.halo: Optional[HaloExchanger] = None
        self.engine: Optional[StencilEngine] = None
        self.reducer: Optional[ConvergenceReducer] = None
        self.collector: Optional[SnapshotCollector] = None

        self.progress: List[ProgressRecord] = []
        self.final_metric: Optional[float] = None
        self.latest_snapshot: Optional[np.ndarray] = None
        self.latest_snapshot_iteration: Optional[int] = None

    # ── public entry ────────────────────────────────────────────

    def run(
        self,
        global_grid: Optional[ArrayLike] = None,
        fixed_mask: Optional[ArrayLike] = None,
    ) -> RunSummary:
        """
        Execute the run to completion.

        Args:
            global_grid: R x C initial temperatures (coordinator only)
            fixed_mask: R x C boolean mask of clamped cells (coordinator
                only); cells equal to ``max_temperature`` when omitted

        Returns:
            :class:`RunSummary`, identical on every worker except that only
            the coordinator printed anything

        Raises:
            RunAborted: on any configuration, resource or communication
                failure
        """
        try:
            self.phase = RunPhase.INIT
            self._setup()

            self.phase = RunPhase.DISTRIBUTING
            self._distribute(global_grid, fixed_mask)

            self.phase = RunPhase.ITERATING
            elapsed, iterations = self._iterate()

            self.phase = RunPhase.FINALIZING
            summary = self._finalize(elapsed, iterations)

            self.phase = RunPhase.DONE
            return summary
        except RunAborted:
            raise
        except Exception as exc:
            _logger.error(
                "[Rank %d] run failed during %s: %s", self.mpi.get_rank(), self.phase.name, exc,
            )
            raise RunAborted(self.mpi.get_rank(), self.phase, exc) from exc

    # ── INIT ────────────────────────────────────────────────────

    def _apply_placement(self) -> None:
        cfg = self.config
        if cfg.num_threads is not None:
            torch.set_num_threads(cfg.num_threads)
        proc = psutil.Process()
        if cfg.cpu_affinity:
            # collective, so every worker takes part even where pinning is unsupported
            node_rank, node_size = self.mpi.node_rank()
            if hasattr(proc, "cpu_affinity"):
                proc.cpu_affinity(affinity_share(list(cfg.cpu_affinity), node_rank, node_size))
        affinity = proc.cpu_affinity() if hasattr(proc, "cpu_affinity") else None
        _logger.debug(
            "[Rank %d] host=%s affinity=%s threads=%d gpu=%d",
            self.mpi.get_rank(), self.mpi.processor_name(), affinity,
            torch.get_num_threads(), self.mpi.get_gpu_id(),
        )

    def _setup(self) -> None:
        cfg = self.config
        mpi = self.mpi
        cfg.validate(mpi.get_size())
        self._apply_placement()

        self.partition = partition_for(mpi.get_rank(), cfg.rows, cfg.columns, mpi.get_size())
        self.gpu = GPUManager(mpi.get_gpu_id())
        self.profiler = Profiler(enabled=cfg.profile, device=self.gpu.get_device())

        self.store = GridStore(self.partition, mpi, self.gpu, cfg.max_temperature)
        self.pair = self.store.pair
        self.halo = HaloExchanger(mpi, self.partition, cfg.halo_mode)
        self.engine = StencilEngine(self.partition, self.gpu)
        self.reducer = ConvergenceReducer(mpi)
        self.collector = SnapshotCollector(
            mpi, self.partition, cfg.snapshot_interval, buffer=self.store.global_buffer,
        )
        self.profiler.record_memory("slabs allocated")

    # ── DISTRIBUTING ────────────────────────────────────────────

    def _distribute(self, global_grid: Optional[ArrayLike], fixed_mask: Optional[ArrayLike]) -> None:
        mpi = self.mpi
        self.store.load_initial_condition(
            global_grid if mpi.is_master_process() else None,
            fixed_mask if mpi.is_master_process() else None,
        )
        mpi.print_master("Data acquisition complete.")
        # nobody exchanges halos before every worker holds its block
        mpi.barrier()

    # ── ITERATING ───────────────────────────────────────────────

    def _settle(self) -> None:
        """Complete the outstanding reduction and snapshot of the last iteration."""
        prof = self.profiler
        prof.start("settle")
        reduced_iteration = self.reducer.pending_iteration
        metric = self.reducer.settle()
        gathered = self.collector.settle()
        prof.end("settle")

        if metric is not None:
            self.final_metric = metric
        if gathered is None:
            return

        iteration, grid = gathered
        self.latest_snapshot_iteration = iteration
        if grid is not None:
            self.latest_snapshot = grid
        if metric is not None and reduced_iteration == iteration:
            self.progress.append(ProgressRecord(iteration, metric))
            self.mpi.print_master("Iteration %d: %.18f" % (iteration, metric))

    def _iterate(self) -> Tuple[float, int]:
        cfg = self.config
        mpi = self.mpi
        pair = self.pair
        prof = self.profiler

        iteration = 0
        elapsed = 0.0
        start = mpi.wtime()
        while elapsed < cfg.time_budget and (
            cfg.max_iterations is None or iteration < cfg.max_iterations
        ):
            prof.start("halo")
            self.halo.exchange(pair.read)
            prof.end("halo")

            self._settle()

            prof.start("update")
            local_change = self.engine.update(pair)
            prof.end("update")

            if self.collector.due(iteration):
                prof.start("snapshot")
                self.collector.start(pair.write, iteration)
                prof.end("snapshot")
            self.reducer.start(local_change, iteration)

            pair.advance()

            if mpi.is_master_process():
                elapsed = mpi.wtime() - start
            elapsed = mpi.broadcast_value(elapsed)
            iteration += 1

        # drain queued device work before the final settle and report
        self.gpu.synchronize()
        self._settle()
        return elapsed, iteration

    # ── FINALIZING ──────────────────────────────────────────────

    def _finalize(self, elapsed: float, iterations: int) -> RunSummary:
        mpi = self.mpi
        mpi.print_master(
            "The program took %.2f seconds in total and executed %d iterations."
            % (elapsed, iterations)
        )
        if mpi.is_master_process():
            _logger.info(
                "run finished: %d iterations in %.3f s, final metric %s",
                iterations, elapsed, self.final_metric,
            )
            self.profiler.print_summary()
        for name in ("halo", "settle", "update", "snapshot"):
            if self.profiler.get_count(name):
                _logger.debug(
                    "[Rank %d] %s: %d calls, %.4f s total",
                    mpi.get_rank(), name, self.profiler.get_count(name), self.profiler.get_total(name),
                )
        return RunSummary(
            elapsed_seconds=elapsed,
            iterations=iterations,
            final_metric=self.final_metric,
            progress=list(self.progress),
        )
