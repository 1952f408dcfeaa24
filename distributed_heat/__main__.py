"""
Command-line launcher

Run with::

    mpirun -n 4 python -m distributed_heat --rows 1024 --columns 2000 --time-budget 30
    mpirun -n 4 python -m distributed_heat --config run.yaml --accelerator

Configuration precedence: defaults < YAML file < ``HEAT_*`` environment
variables < command-line flags.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import Dict, List, Mapping, Optional

from mpi4py import MPI

from .config import HALO_MODES, HeatConfig
from .controller import RunController
from .initial_conditions import INITIAL_CONDITIONS, load_grid, make_initial_condition
from .mpi_manager import MPIManager

_logger = logging.getLogger("distributed_heat.cli")

# CLI destination -> HeatConfig field
_CLI_FIELDS = (
    "rows", "columns", "workers", "snapshot_interval", "time_budget",
    "max_iterations", "use_accelerator", "halo_mode", "max_temperature",
    "num_threads", "cpu_affinity", "profile",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="distributed-heat",
        description="Distributed 2D Jacobi heat relaxation over MPI row slabs",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--rows", type=int, help="global row count R")
    parser.add_argument("--columns", type=int, help="global column count C")
    parser.add_argument("--workers", type=int, help="expected worker count")
    parser.add_argument("--snapshot-interval", dest="snapshot_interval", type=int,
                        help="gather and report every N iterations")
    parser.add_argument("--time-budget", dest="time_budget", type=float,
                        help="wall-clock budget in seconds")
    parser.add_argument("--max-iterations", dest="max_iterations", type=int,
                        help="stop after this many iterations")
    parser.add_argument("--accelerator", dest="use_accelerator", action="store_true",
                        default=None, help="run the stencil on CUDA when available")
    parser.add_argument("--halo-mode", dest="halo_mode", choices=HALO_MODES)
    parser.add_argument("--max-temperature", dest="max_temperature", type=float,
                        help="temperature of the clamped source cells")
    parser.add_argument("--threads", dest="num_threads", type=int,
                        help="intra-op CPU threads per worker")
    parser.add_argument("--cpu-affinity", dest="cpu_affinity", type=int, nargs="+",
                        help="CPU ids per node, split among the workers on that node")
    parser.add_argument("--profile", action="store_true", default=None,
                        help="print per-phase timings at the end")
    parser.add_argument("--initial", choices=INITIAL_CONDITIONS, default="columns",
                        help="generated initial condition (default: columns)")
    parser.add_argument("--input", help="initial grid as a .npy file (overrides --initial)")
    parser.add_argument("--log-level", dest="log_level", default="WARNING",
                        choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def build_config(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
) -> HeatConfig:
    """Merge YAML, environment and command-line values into one config."""
    cli: Dict[str, object] = {
        name: getattr(args, name) for name in _CLI_FIELDS if getattr(args, name) is not None
    }
    if args.config:
        config = HeatConfig.from_yaml(args.config).with_env(environ)
    else:
        seed = {name: cli[name] for name in ("rows", "columns") if name in cli}
        config = HeatConfig.from_env(environ, **seed)
    return replace(config, **cli)


def _configure_logging(level: str, rank: int) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format=f"%(asctime)s [rank {rank}] %(name)s %(levelname)s: %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    world = MPI.COMM_WORLD
    _configure_logging(args.log_level, world.Get_rank())

    mpi: Optional[MPIManager] = None
    try:
        config = build_config(args)
        mpi = MPIManager(world, use_accelerator=config.use_accelerator)

        grid = None
        if mpi.is_master_process():
            if args.input:
                grid = load_grid(args.input)
            else:
                grid = make_initial_condition(
                    args.initial, config.rows, config.columns, config.max_temperature,
                )
        RunController(config, mpi).run(grid)
    except Exception as exc:
        # the other workers may already be blocked in a collective
        _logger.error("[Rank %d] %s: %s", world.Get_rank(), type(exc).__name__, exc)
        if world.Get_size() > 1:
            (mpi if mpi is not None else MPIManager(world)).abort(1)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
