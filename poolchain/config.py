"""
Configuration for poolchain calibration runs.

Settings are read once from a `config.toml` file and frozen into a
`CalibrationConfig`. The file controls:

1.  **Paths**: results, stage-cache and log directories, the observation table.
2.  **Solver**: LSODA tolerances and the per-candidate step budget.
3.  **Calibration**: shared input duration, subsample size, seed, reporting grid.
4.  **Pools**: one `[[pools]]` table per pool with its parameter grids.

Each grid is either an explicit list of values or a sweep table
``{start = .., stop = .., num = .., scale = "log" | "linear"}``.
Decay rates are swept as turnover time (the reciprocal of the decay rate).
"""
from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from poolchain.errors import ConfigError

REPLICATE_KINDS = ("min", "mean", "max")

_GRID_KEYS = ("turnover_time", "initial_concentration", "input_magnitude", "transfer_fraction")

_KNOWN_KEYS = {
    "general": {"observations", "results_dir", "cache_dir", "log_dir", "cores", "verbose", "app_name", "version"},
    "solver": {"absolute_tolerance", "relative_tolerance", "max_timesteps"},
    "calibration": {"input_duration", "subsample_size", "seed", "replicate_kinds", "report_time_max",
                    "report_time_step"},
    "pools": {"name", *_GRID_KEYS},
}


def _check_keys(section, table):
    unknown = sorted(set(table) - _KNOWN_KEYS[section])
    if unknown:
        raise ConfigError(f"unknown keys in [{section}]: {unknown}")


@dataclass(frozen=True)
class PoolGrid:
    """Candidate values searched for one pool. All arrays are sorted and unique."""
    name: str
    turnover_time: np.ndarray
    initial_concentration: np.ndarray
    input_magnitude: np.ndarray
    transfer_fraction: np.ndarray

    @property
    def decay_rate(self) -> np.ndarray:
        return 1.0 / self.turnover_time


@dataclass(frozen=True)
class CalibrationConfig:
    pools: tuple[PoolGrid, ...]
    input_duration: float

    subsample_size: int = 50
    seed: int = 42
    replicate_kinds: tuple[str, ...] = REPLICATE_KINDS

    report_time_max: float = 1000.0
    report_time_step: float = 1.0

    ode_abs_tol: float = 1e-8
    ode_rel_tol: float = 1e-6
    ode_max_steps: int = 5000

    cores: int = 1
    observations: str | Path | None = None
    results_dir: str | Path = "results"
    cache_dir: str | Path = "results/stage_cache"
    log_dir: str | Path = "results/logs"

    app_name: str = "poolchain"
    version: str = "0.1.0"
    extra: dict = field(default_factory=dict)

    @property
    def n_pools(self) -> int:
        return len(self.pools)


def _as_bool(x):
    """
    Safely converts various input types into a boolean.
    Handles strings ('true', 'yes', '1'), integers, and native booleans.
    """
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        return x.lower() in {"1", "true", "yes", "on"}
    return bool(x)


def parse_grid(value, key="grid"):
    """
    Expand a grid specification into a sorted, de-duplicated float array.

    Args:
        value: a scalar, a list of numbers, or a sweep table with
            ``start``, ``stop``, ``num`` and optional ``scale`` ("linear" or "log").
        key (str): Name used in error messages.

    Returns:
        np.ndarray: The grid values.
    """
    if isinstance(value, dict):
        try:
            start = float(value["start"])
            stop = float(value["stop"])
            num = int(value["num"])
        except KeyError as e:
            raise ConfigError(f"{key}: sweep table is missing {e}") from e
        scale = str(value.get("scale", "linear")).lower()
        if num < 1:
            raise ConfigError(f"{key}: sweep needs num >= 1, got {num}")
        if scale == "log":
            if start <= 0 or stop <= 0:
                raise ConfigError(f"{key}: log sweep needs positive bounds, got [{start}, {stop}]")
            arr = np.geomspace(start, stop, num)
        elif scale == "linear":
            arr = np.linspace(start, stop, num)
        else:
            raise ConfigError(f"{key}: unknown sweep scale '{scale}'")
    elif isinstance(value, (list, tuple, np.ndarray)):
        arr = np.asarray(value, dtype=float)
    elif isinstance(value, (int, float)):
        arr = np.asarray([value], dtype=float)
    else:
        raise ConfigError(f"{key}: expected a number, list or sweep table, got {value!r}")

    arr = np.unique(arr.ravel())
    if arr.size == 0:
        raise ConfigError(f"{key}: grid is empty")
    if not np.all(np.isfinite(arr)):
        raise ConfigError(f"{key}: grid contains non-finite values")
    return arr


def make_pool_grid(name, turnover_time, initial_concentration, input_magnitude, transfer_fraction=(0.0,)):
    """Build and validate a `PoolGrid` from raw grid specifications."""
    grids = {
        "turnover_time": parse_grid(turnover_time, f"{name}.turnover_time"),
        "initial_concentration": parse_grid(initial_concentration, f"{name}.initial_concentration"),
        "input_magnitude": parse_grid(input_magnitude, f"{name}.input_magnitude"),
        "transfer_fraction": parse_grid(transfer_fraction, f"{name}.transfer_fraction"),
    }
    if np.any(grids["turnover_time"] <= 0):
        raise ConfigError(f"{name}.turnover_time must be strictly positive")
    if np.any(grids["initial_concentration"] < 0):
        raise ConfigError(f"{name}.initial_concentration must be >= 0")
    if np.any(grids["input_magnitude"] < 0):
        raise ConfigError(f"{name}.input_magnitude must be >= 0")
    tf = grids["transfer_fraction"]
    if np.any(tf < 0) or np.any(tf > 1):
        raise ConfigError(f"{name}.transfer_fraction must lie in [0, 1]")
    return PoolGrid(name=str(name), **grids)


def validate_config(cfg: CalibrationConfig) -> CalibrationConfig:
    """Raise `ConfigError` for any setting the calibration cannot run with."""
    if cfg.n_pools < 1:
        raise ConfigError("at least one [[pools]] entry is required")
    if not cfg.input_duration > 0:
        raise ConfigError(f"input_duration must be > 0, got {cfg.input_duration}")
    if cfg.subsample_size < 1:
        raise ConfigError(f"subsample_size must be >= 1, got {cfg.subsample_size}")
    if not cfg.report_time_step > 0 or not cfg.report_time_max > 0:
        raise ConfigError("report_time_max and report_time_step must be > 0")
    if not cfg.ode_abs_tol > 0 or not cfg.ode_rel_tol > 0:
        raise ConfigError("solver tolerances must be > 0")
    if cfg.ode_max_steps < 1:
        raise ConfigError(f"max_timesteps must be >= 1, got {cfg.ode_max_steps}")
    unknown = set(cfg.replicate_kinds) - set(REPLICATE_KINDS)
    if unknown or not cfg.replicate_kinds:
        raise ConfigError(f"replicate_kinds must be a non-empty subset of {REPLICATE_KINDS}, got {cfg.replicate_kinds}")
    names = [p.name for p in cfg.pools]
    if len(set(names)) != len(names):
        raise ConfigError(f"pool names must be unique, got {names}")
    return cfg


def load_config_toml(path: str | Path) -> CalibrationConfig:
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")

    with path.open("rb") as f:
        try:
            cfg = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"cannot parse {path}: {e}") from e

    general = cfg.get("general", {}) or {}
    solver = cfg.get("solver", {}) or {}
    calib = cfg.get("calibration", {}) or {}
    pools_raw = cfg.get("pools", []) or []

    unknown_sections = sorted(set(cfg) - set(_KNOWN_KEYS))
    if unknown_sections:
        raise ConfigError(f"unknown sections: {unknown_sections}")
    for section, table in (("general", general), ("solver", solver), ("calibration", calib)):
        _check_keys(section, table)
    for p in pools_raw:
        _check_keys("pools", p)

    if "input_duration" not in calib:
        raise ConfigError("calibration.input_duration is required")

    pools = []
    for i, p in enumerate(pools_raw, start=1):
        missing = [k for k in _GRID_KEYS[:3] if k not in p]
        if missing:
            raise ConfigError(f"pools[{i}] is missing {missing}")
        pools.append(make_pool_grid(
            p.get("name", f"pool_{i}"),
            turnover_time=p["turnover_time"],
            initial_concentration=p["initial_concentration"],
            input_magnitude=p["input_magnitude"],
            transfer_fraction=p.get("transfer_fraction", 0.0),
        ))

    results_dir = general.get("results_dir", "results")

    config = CalibrationConfig(
        pools=tuple(pools),
        input_duration=float(calib["input_duration"]),
        subsample_size=int(calib.get("subsample_size", 50)),
        seed=int(calib.get("seed", 42)),
        replicate_kinds=tuple(calib.get("replicate_kinds", REPLICATE_KINDS)),
        report_time_max=float(calib.get("report_time_max", 1000.0)),
        report_time_step=float(calib.get("report_time_step", 1.0)),
        ode_abs_tol=float(solver.get("absolute_tolerance", 1e-8)),
        ode_rel_tol=float(solver.get("relative_tolerance", 1e-6)),
        ode_max_steps=int(solver.get("max_timesteps", 5000)),
        cores=int(general.get("cores", 1)),
        observations=general.get("observations"),
        results_dir=results_dir,
        cache_dir=general.get("cache_dir", str(Path(results_dir) / "stage_cache")),
        log_dir=general.get("log_dir", str(Path(results_dir) / "logs")),
        app_name=general.get("app_name", "poolchain"),
        version=general.get("version", "0.1.0"),
        extra={"verbose": _as_bool(general.get("verbose", False))},
    )
    return validate_config(config)
