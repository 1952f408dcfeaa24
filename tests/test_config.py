"""Tests for run configuration and initial-condition helpers."""

import numpy as np
import pytest

from distributed_heat.config import ConfigurationError, HeatConfig
from distributed_heat.initial_conditions import (
    hot_columns,
    hot_cross,
    load_grid,
    make_initial_condition,
    point_sources,
)


class TestValidate:

    def test_defaults_are_valid(self):
        HeatConfig(rows=8, columns=4).validate(2)

    @pytest.mark.parametrize("overrides,message", [
        ({"rows": 0}, "rows"),
        ({"columns": 1}, "columns"),
        ({"rows": 9}, "evenly"),
        ({"workers": 4}, "configured for 4 workers"),
        ({"snapshot_interval": 0}, "snapshot_interval"),
        ({"time_budget": -1.0}, "time_budget"),
        ({"max_iterations": -5}, "max_iterations"),
        ({"halo_mode": "blocking"}, "halo mode"),
        ({"num_threads": 0}, "num_threads"),
    ])
    def test_invalid_values(self, overrides, message):
        params = {"rows": 8, "columns": 4}
        params.update(overrides)
        with pytest.raises(ConfigurationError, match=message):
            HeatConfig(**params).validate(2)

    def test_zero_workers(self):
        with pytest.raises(ConfigurationError):
            HeatConfig(rows=8, columns=4).validate(0)


class TestSources:

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="colour"):
            HeatConfig.from_dict({"rows": 4, "columns": 4, "colour": "red"})

    def test_from_dict_missing_required(self):
        with pytest.raises(ConfigurationError):
            HeatConfig.from_dict({"rows": 4})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(
            "rows: 16\ncolumns: 32\nsnapshot_interval: 5\n"
            "halo_mode: nonblocking\ncpu_affinity: [0, 1]\n"
        )
        cfg = HeatConfig.from_yaml(str(path))
        assert (cfg.rows, cfg.columns) == (16, 32)
        assert cfg.snapshot_interval == 5
        assert cfg.halo_mode == "nonblocking"
        assert cfg.cpu_affinity == [0, 1]

    def test_from_yaml_requires_mapping(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            HeatConfig.from_yaml(str(path))

    def test_env_overrides(self):
        env = {
            "HEAT_TIME_BUDGET": "2.5",
            "HEAT_USE_ACCELERATOR": "yes",
            "HEAT_MAX_ITERATIONS": "100",
            "HEAT_CPU_AFFINITY": "2,3",
        }
        cfg = HeatConfig(rows=4, columns=4).with_env(env)
        assert cfg.time_budget == 2.5
        assert cfg.use_accelerator is True
        assert cfg.max_iterations == 100
        assert cfg.cpu_affinity == [2, 3]

    def test_env_bad_value(self):
        with pytest.raises(ConfigurationError, match="HEAT_ROWS"):
            HeatConfig(rows=4, columns=4).with_env({"HEAT_ROWS": "four"})

    def test_env_bad_bool(self):
        with pytest.raises(ConfigurationError):
            HeatConfig(rows=4, columns=4).with_env({"HEAT_PROFILE": "maybe"})

    def test_from_env(self):
        cfg = HeatConfig.from_env({"HEAT_ROWS": "8", "HEAT_COLUMNS": "6", "HEAT_WORKERS": "2"})
        assert (cfg.rows, cfg.columns, cfg.workers) == (8, 6, 2)

    def test_from_env_uses_defaults(self):
        cfg = HeatConfig.from_env({"HEAT_COLUMNS": "6"}, rows=4)
        assert (cfg.rows, cfg.columns) == (4, 6)

    def test_from_env_requires_dimensions(self):
        with pytest.raises(ConfigurationError, match="HEAT_ROWS"):
            HeatConfig.from_env({})


class TestInitialConditions:

    def test_hot_columns(self):
        grid = hot_columns(3, 1201)
        assert np.flatnonzero(grid[0]).tolist() == [0, 500, 1000]
        assert (grid[:, 500] == 50.0).all()
        assert grid.sum() == 3 * 3 * 50.0

    def test_hot_cross(self):
        grid = hot_cross(5, 7, max_temperature=10.0)
        assert (grid[2] == 10.0).all()
        assert (grid[:, 3] == 10.0).all()
        assert np.count_nonzero(grid) == 5 + 7 - 1

    def test_point_sources(self):
        grid = point_sources(4, 4, [(2, 2)])
        assert grid[2, 2] == 50.0
        assert np.count_nonzero(grid) == 1

    def test_point_outside_grid(self):
        with pytest.raises(ConfigurationError):
            point_sources(4, 4, [(4, 0)])

    def test_load_grid(self, tmp_path):
        path = tmp_path / "grid.npy"
        np.save(path, np.eye(3, dtype=np.float32))
        grid = load_grid(str(path))
        assert grid.dtype == np.float64
        np.testing.assert_array_equal(grid, np.eye(3))

    def test_load_grid_rejects_3d(self, tmp_path):
        path = tmp_path / "cube.npy"
        np.save(path, np.zeros((2, 2, 2)))
        with pytest.raises(ConfigurationError, match="2D"):
            load_grid(str(path))

    def test_load_grid_rejects_non_npy(self, tmp_path):
        path = tmp_path / "grid.npy"
        path.write_text("1 2 3\n4 5 6\n")
        with pytest.raises(ConfigurationError, match="readable"):
            load_grid(str(path))

    def test_make_by_name(self):
        assert make_initial_condition("point", 4, 4)[2, 2] == 50.0
        with pytest.raises(ConfigurationError):
            make_initial_condition("spiral", 4, 4)
