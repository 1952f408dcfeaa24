"""End-to-end tests of the run controller on a single worker."""

import re

import numpy as np
import psutil
import pytest

from distributed_heat.config import ConfigurationError, HeatConfig
from distributed_heat.controller import RunAborted, RunController, RunPhase, affinity_share
from distributed_heat.grid_store import ResourceExhaustedError

from conftest import point_grid


def _run(mpi, grid, **overrides):
    params = {
        "rows": grid.shape[0],
        "columns": grid.shape[1],
        "time_budget": 3600.0,
        "snapshot_interval": 1,
    }
    params.update(overrides)
    controller = RunController(HeatConfig(**params), mpi)
    return controller, controller.run(grid)


class TestEndToEnd:

    def test_one_iteration_of_four_by_four(self, mpi_self):
        grid = point_grid(4, 4, [(2, 2)])
        controller, summary = _run(mpi_self, grid, max_iterations=1)

        expected = grid.copy()
        expected[1, 2] = expected[2, 1] = 12.5
        expected[2, 3] = expected[3, 2] = 50.0 / 3.0
        np.testing.assert_array_equal(controller.latest_snapshot, expected)
        assert controller.latest_snapshot_iteration == 0
        assert summary.iterations == 1
        assert summary.final_metric == pytest.approx(50.0 / 3.0)
        assert controller.phase is RunPhase.DONE

    def test_converges_within_a_thousand_iterations(self, mpi_self):
        grid = point_grid(4, 4, [(2, 2)])
        controller, summary = _run(
            mpi_self, grid, max_iterations=1000, snapshot_interval=999,
        )
        assert summary.iterations == 1000
        assert summary.final_metric < 1e-6
        np.testing.assert_allclose(controller.pair.read.owned.numpy(), 50.0, atol=1e-5)

    def test_fixed_source_never_changes(self, mpi_self):
        grid = point_grid(5, 4, [(2, 2)])
        controller = RunController(
            HeatConfig(rows=5, columns=4, time_budget=3600.0, max_iterations=30, snapshot_interval=1),
            mpi_self,
        )
        seen = []
        original_settle = controller._settle

        def settle_and_record():
            original_settle()
            if controller.latest_snapshot is not None:
                seen.append(controller.latest_snapshot[2, 2])

        controller._settle = settle_and_record
        controller.run(grid)
        assert len(seen) >= 30
        assert all(value == 50.0 for value in seen)

    def test_symmetric_two_hot_cells(self, mpi_self):
        grid = point_grid(6, 6, [(1, 1), (4, 4)])
        controller, summary = _run(
            mpi_self, grid, max_iterations=2000, snapshot_interval=1000,
        )
        assert summary.final_metric < 1e-6
        final = controller.pair.read.owned.numpy()
        np.testing.assert_allclose(final, np.rot90(final, 2), atol=1e-9)

    def test_metric_trends_to_zero(self, mpi_self):
        grid = point_grid(6, 6, [(1, 1), (4, 4)])
        _, summary = _run(mpi_self, grid, max_iterations=300, snapshot_interval=50)
        metrics = [record.metric for record in summary.progress]
        assert [record.iteration for record in summary.progress] == [0, 50, 100, 150, 200, 250]
        assert metrics[-1] < metrics[0]
        assert all(m >= 0.0 for m in metrics)


class TestReporting:

    def test_progress_and_termination_lines(self, mpi_self, capsys):
        grid = point_grid(4, 4, [(2, 2)])
        _, summary = _run(mpi_self, grid, max_iterations=25, snapshot_interval=10)
        out = capsys.readouterr().out.splitlines()

        assert out[0] == "Data acquisition complete."
        progress = [line for line in out if line.startswith("Iteration")]
        assert [line.split(":")[0] for line in progress] == [
            "Iteration 0", "Iteration 10", "Iteration 20",
        ]
        assert re.fullmatch(r"Iteration 0: 16\.6666666666666\d{5}", progress[0])
        assert re.fullmatch(
            r"The program took \d+\.\d{2} seconds in total and executed 25 iterations\.",
            out[-1],
        )
        assert [r.iteration for r in summary.progress] == [0, 10, 20]

    def test_zero_budget_runs_no_iterations(self, mpi_self, capsys):
        grid = point_grid(4, 4, [(2, 2)])
        _, summary = _run(mpi_self, grid, time_budget=0.0)
        assert summary.iterations == 0
        assert summary.final_metric is None
        assert summary.progress == []
        assert "executed 0 iterations." in capsys.readouterr().out

    def test_time_budget_stops_the_loop(self, mpi_self):
        grid = point_grid(8, 8, [(2, 2)])
        _, summary = _run(mpi_self, grid, time_budget=0.2, snapshot_interval=100)
        assert summary.iterations > 0
        assert summary.elapsed_seconds >= 0.2

    @pytest.mark.parametrize("mode", ["sendrecv", "nonblocking"])
    def test_halo_modes_agree(self, mpi_self, mode):
        grid = point_grid(4, 6, [(1, 4)])
        controller, _ = _run(mpi_self, grid, max_iterations=20, halo_mode=mode)
        assert controller.halo.exchanges == 20

    def test_profile_prints_phase_summary(self, mpi_self, capsys):
        grid = point_grid(4, 4, [(2, 2)])
        controller, _ = _run(mpi_self, grid, max_iterations=5, profile=True)
        out = capsys.readouterr().out
        assert "halo:" in out
        assert "update:" in out
        assert controller.profiler.get_count("update") == 5


class TestFailures:

    def test_invalid_configuration_aborts_in_init(self, mpi_self):
        grid = point_grid(4, 4, [(2, 2)])
        with pytest.raises(RunAborted) as info:
            _run(mpi_self, grid, snapshot_interval=0)
        assert info.value.phase is RunPhase.INIT
        assert isinstance(info.value.original, ConfigurationError)
        assert str(info.value).startswith("[Rank 0] run failed during INIT")

    def test_wrong_grid_aborts_in_distribution(self, mpi_self):
        controller = RunController(HeatConfig(rows=4, columns=4, max_iterations=1), mpi_self)
        with pytest.raises(RunAborted) as info:
            controller.run(np.zeros((4, 5)))
        assert info.value.phase is RunPhase.DISTRIBUTING
        assert isinstance(info.value.original, ConfigurationError)

    def test_allocation_failure_aborts_in_init(self, mpi_self, monkeypatch):
        from distributed_heat import gpu_manager

        monkeypatch.setattr(gpu_manager.GPUManager, "can_fit", lambda self, *s, **kw: False)
        with pytest.raises(RunAborted) as info:
            _run(mpi_self, point_grid(4, 4, [(2, 2)]), max_iterations=1)
        assert info.value.phase is RunPhase.INIT
        assert isinstance(info.value.original, ResourceExhaustedError)


class TestPlacement:

    def test_affinity_split_into_contiguous_shares(self):
        cpus = list(range(8))
        shares = [affinity_share(cpus, rank, 4) for rank in range(4)]
        assert shares == [[0, 1], [2, 3], [4, 5], [6, 7]]

    def test_affinity_leftover_cpus_unused(self):
        assert affinity_share([0, 1, 2, 3, 4], 1, 2) == [2, 3]

    def test_affinity_round_robin_when_oversubscribed(self):
        assert [affinity_share([4, 5], rank, 5) for rank in range(5)] == [[4], [5], [4], [5], [4]]

    @pytest.mark.skipif(not hasattr(psutil.Process(), "cpu_affinity"),
                        reason="CPU affinity not supported on this platform")
    def test_single_worker_takes_whole_list(self, mpi_self):
        proc = psutil.Process()
        current = proc.cpu_affinity()
        try:
            _run(mpi_self, point_grid(4, 4, [(2, 2)]), max_iterations=1, cpu_affinity=current[:1])
            assert proc.cpu_affinity() == current[:1]
        finally:
            proc.cpu_affinity(current)

    def test_device_work_drained_before_report(self, mpi_self, monkeypatch):
        from distributed_heat import gpu_manager

        calls = []
        monkeypatch.setattr(gpu_manager.GPUManager, "synchronize", lambda self: calls.append(1))
        _run(mpi_self, point_grid(4, 4, [(2, 2)]), max_iterations=3)
        assert calls == [1]
