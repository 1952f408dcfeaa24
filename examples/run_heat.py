#!/usr/bin/env python
"""
Heat relaxation example

Relaxes a grid with a hot cross through the library API instead of the
command-line launcher and prints the final temperature range.

Run with:
    mpirun -n 4 python examples/run_heat.py [rows] [columns] [seconds]

Example:
    mpirun -n 4 python examples/run_heat.py 512 512 5
"""

import sys

from distributed_heat import HeatConfig, MPIManager, RunController
from distributed_heat.initial_conditions import hot_cross


def main() -> None:
    rows = int(sys.argv[1]) if len(sys.argv) > 1 else 256
    columns = int(sys.argv[2]) if len(sys.argv) > 2 else 256
    seconds = float(sys.argv[3]) if len(sys.argv) > 3 else 2.0

    mpi = MPIManager()
    config = HeatConfig(
        rows=rows,
        columns=columns,
        time_budget=seconds,
        snapshot_interval=100,
        halo_mode="nonblocking",
    )

    grid = hot_cross(rows, columns) if mpi.is_master_process() else None
    controller = RunController(config, mpi)
    summary = controller.run(grid)

    if mpi.is_master_process() and controller.latest_snapshot is not None:
        snap = controller.latest_snapshot
        print(f"\n{'=' * 50}")
        print(f"grid {rows}x{columns} on {mpi.get_size()} workers")
        print(f"iterations: {summary.iterations}")
        print(f"last reported metric: {summary.final_metric}")
        print(f"temperature range at iteration {controller.latest_snapshot_iteration}: "
              f"[{snap.min():.4f}, {snap.max():.4f}]")
        print(f"{'=' * 50}")


if __name__ == "__main__":
    main()
