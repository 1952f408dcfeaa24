"""
Run configuration

All launch-time parameters of a distributed heat run live in one
:class:`HeatConfig` dataclass. Values can come from defaults, a YAML file,
``HEAT_*`` environment variables and finally the command line, in that
order of precedence.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional

import yaml


HALO_MODES = ("sendrecv", "nonblocking")

_ENV_PREFIX = "HEAT_"


class ConfigurationError(ValueError):
    """Invalid grid dimensions, worker topology or run parameters."""


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"cannot interpret {value!r} as a boolean")


def _parse_int_list(value: str) -> List[int]:
    return [int(part) for part in value.replace(",", " ").split()]


@dataclass
class HeatConfig:
    """Configuration of one distributed relaxation run.

    Attributes:
        rows: global grid row count R
        columns: global grid column count C
        workers: expected worker count (checked against the communicator)
        snapshot_interval: gather a global snapshot every N iterations
        time_budget: wall-clock budget in seconds for the iteration loop
        max_iterations: optional hard cap on iterations
        use_accelerator: run the stencil on a CUDA device when available
        halo_mode: ``"sendrecv"`` or ``"nonblocking"``
        max_temperature: value of the fixed-source cells
        num_threads: intra-op thread count hint for CPU kernels
        cpu_affinity: CPU ids of one node, shared out among the workers
            running on it (see ``controller.affinity_share``)
        profile: record per-phase timings
    """

    rows: int
    columns: int
    workers: Optional[int] = None
    snapshot_interval: int = 10
    time_budget: float = 10.0
    max_iterations: Optional[int] = None
    use_accelerator: bool = False
    halo_mode: str = "sendrecv"
    max_temperature: float = 50.0
    num_threads: Optional[int] = None
    cpu_affinity: Optional[List[int]] = field(default=None)
    profile: bool = False

    # ── validation ────────────────────────────────────────────────

    def validate(self, num_workers: int) -> None:
        """Check the configuration against the actual worker count.

        Raises:
            ConfigurationError: on any invalid value
        """
        if self.rows < 1:
            raise ConfigurationError(f"rows must be >= 1, got {self.rows}")
        if self.columns < 2:
            raise ConfigurationError(f"columns must be >= 2, got {self.columns}")
        if num_workers < 1:
            raise ConfigurationError(f"worker count must be >= 1, got {num_workers}")
        if self.workers is not None and self.workers != num_workers:
            raise ConfigurationError(
                f"configured for {self.workers} workers but {num_workers} are running"
            )
        if self.rows % num_workers != 0:
            raise ConfigurationError(
                f"{self.rows} rows cannot be divided evenly across {num_workers} workers"
            )
        if self.snapshot_interval < 1:
            raise ConfigurationError(
                f"snapshot_interval must be >= 1, got {self.snapshot_interval}"
            )
        if self.time_budget < 0:
            raise ConfigurationError(f"time_budget must be >= 0, got {self.time_budget}")
        if self.max_iterations is not None and self.max_iterations < 0:
            raise ConfigurationError(
                f"max_iterations must be >= 0, got {self.max_iterations}"
            )
        if self.halo_mode not in HALO_MODES:
            raise ConfigurationError(
                f"unknown halo mode {self.halo_mode!r}, expected one of {HALO_MODES}"
            )
        if self.num_threads is not None and self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be >= 1, got {self.num_threads}")

    # ── construction ──────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HeatConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        try:
            return cls(**dict(data))
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc

    @classmethod
    def from_yaml(cls, path: str) -> "HeatConfig":
        """Load a config from a YAML mapping file."""
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: expected a mapping at the top level")
        return cls.from_dict(data)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "HeatConfig":
        """Return a copy overridden by ``HEAT_<FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(self):
            raw = environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = _coerce(f.name, raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"{_ENV_PREFIX}{f.name.upper()}={raw!r}: {exc}"
                ) from exc
        return replace(self, **overrides)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **defaults: Any,
    ) -> "HeatConfig":
        """Build a config purely from the environment (plus keyword defaults)."""
        environ = os.environ if environ is None else environ
        seed = dict(defaults)
        for name in ("rows", "columns"):
            raw = environ.get(_ENV_PREFIX + name.upper())
            if raw is not None:
                try:
                    seed[name] = int(raw)
                except ValueError as exc:
                    raise ConfigurationError(
                        f"{_ENV_PREFIX}{name.upper()}={raw!r}: {exc}"
                    ) from exc
            if name not in seed:
                raise ConfigurationError(f"{_ENV_PREFIX}{name.upper()} is not set")
        return cls.from_dict(seed).with_env(environ)


_INT_FIELDS = {"rows", "columns", "workers", "snapshot_interval", "max_iterations", "num_threads"}
_FLOAT_FIELDS = {"time_budget", "max_temperature"}
_BOOL_FIELDS = {"use_accelerator", "profile"}


def _coerce(name: str, raw: str) -> Any:
    if name in _INT_FIELDS:
        return int(raw)
    if name in _FLOAT_FIELDS:
        return float(raw)
    if name in _BOOL_FIELDS:
        return _parse_bool(raw)
    if name == "cpu_affinity":
        return _parse_int_list(raw)
    return raw
