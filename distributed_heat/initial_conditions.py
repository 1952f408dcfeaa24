"""
Initial conditions for the launcher

Small generators for the reference datasets plus a ``.npy`` loader. All of
them return an R x C ``float64`` array that is zero except for the clamped
source cells, which hold ``max_temperature``.
"""

from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np

from .config import ConfigurationError

INITIAL_CONDITIONS = ("columns", "cross", "point")


def hot_columns(
    rows: int,
    columns: int,
    max_temperature: float = 50.0,
    spacing: int = 500,
) -> np.ndarray:
    """Every *spacing*-th column (column 0 included) held at *max_temperature*."""
    grid = np.zeros((rows, columns), dtype=np.float64)
    grid[:, ::spacing] = max_temperature
    return grid


def hot_cross(rows: int, columns: int, max_temperature: float = 50.0) -> np.ndarray:
    """The middle row and middle column held at *max_temperature*."""
    grid = np.zeros((rows, columns), dtype=np.float64)
    grid[rows // 2, :] = max_temperature
    grid[:, columns // 2] = max_temperature
    return grid


def point_sources(
    rows: int,
    columns: int,
    cells: Iterable[Tuple[int, int]],
    max_temperature: float = 50.0,
) -> np.ndarray:
    """Individual clamped cells at the given ``(row, column)`` positions."""
    grid = np.zeros((rows, columns), dtype=np.float64)
    for row, col in cells:
        if not (0 <= row < rows and 0 <= col < columns):
            raise ConfigurationError(f"source cell ({row}, {col}) outside a {rows}x{columns} grid")
        grid[row, col] = max_temperature
    return grid


def load_grid(path: str) -> np.ndarray:
    """Load a 2D grid saved with ``numpy.save``.

    Raises:
        ConfigurationError: the file is not a plain ``.npy`` array or not 2D
        OSError: the file cannot be read
    """
    try:
        grid = np.load(path, allow_pickle=False)
    except ValueError as exc:
        raise ConfigurationError(f"{path}: not a readable .npy array: {exc}") from exc
    if not isinstance(grid, np.ndarray):
        raise ConfigurationError(f"{path}: expected a single .npy array")
    if grid.ndim != 2:
        raise ConfigurationError(f"{path}: expected a 2D array, got {grid.ndim}D")
    return np.ascontiguousarray(grid, dtype=np.float64)


def make_initial_condition(
    kind: str,
    rows: int,
    columns: int,
    max_temperature: float = 50.0,
) -> np.ndarray:
    """Build one of :data:`INITIAL_CONDITIONS` by name."""
    if kind == "columns":
        return hot_columns(rows, columns, max_temperature)
    if kind == "cross":
        return hot_cross(rows, columns, max_temperature)
    if kind == "point":
        return point_sources(rows, columns, [(rows // 2, columns // 2)], max_temperature)
    raise ConfigurationError(
        f"unknown initial condition {kind!r}, expected one of {INITIAL_CONDITIONS}"
    )
