import logging

import numpy as np
import pandas as pd

from poolchain.config import REPLICATE_KINDS
from poolchain.errors import ObservationError
from poolchain.utils import _normcols, _find_col

logger = logging.getLogger("poolchain.io")

OBS_COLUMNS = ["time", "pool_id", "concentration", "horizon_id", "replicate_kind"]


def _pool_column(df, pool_id, name):
    """Find the wide-format column carrying pool `pool_id` (1-based)."""
    norm = str(name).strip().lower().replace(" ", "_")
    return _find_col(df, [norm, f"pool_{pool_id}", f"pool{pool_id}", f"c{pool_id}", str(pool_id)])


def tidy_observations(df, pool_names, replicate_kinds=REPLICATE_KINDS):
    """
    Normalise an observation table to the tidy layout.

    Accepts either a wide table (time, horizon_id, replicate_kind and one concentration
    column per pool) or a tidy one (time, pool_id, concentration, horizon_id,
    replicate_kind). Pool columns in a wide table are matched by pool name,
    ``pool_<i>``, ``c<i>`` or the bare index.

    Args:
        df (pd.DataFrame): raw table.
        pool_names (sequence of str): configured pool names, in chain order.
        replicate_kinds (sequence of str): replicate rows to keep.

    Returns:
        pd.DataFrame: columns `OBS_COLUMNS`, pool_id as 1-based int, sorted by time.
    """
    df = _normcols(df)
    tcol = _find_col(df, ["time", "t", "age", "year"])
    if tcol is None:
        raise ObservationError("observation table has no time column", context={"columns": list(df.columns)})
    hcol = _find_col(df, ["horizon_id", "horizon", "depth"])
    rcol = _find_col(df, ["replicate_kind", "replicate", "kind", "stat"])

    pcol = _find_col(df, ["pool_id", "pool"])
    ccol = _find_col(df, ["concentration", "value", "conc"])

    n_pools = len(pool_names)
    if pcol is not None and ccol is not None:
        tidy = pd.DataFrame({
            "time": df[tcol],
            "pool_id": df[pcol],
            "concentration": df[ccol],
        })
        name_map = {str(n).strip().lower(): i for i, n in enumerate(pool_names, start=1)}
        ids = pd.to_numeric(tidy["pool_id"], errors="coerce")
        by_name = tidy["pool_id"].astype(str).str.strip().str.lower().map(name_map)
        tidy["pool_id"] = ids.fillna(by_name)
    else:
        parts = []
        for i, name in enumerate(pool_names, start=1):
            col = _pool_column(df, i, name)
            if col is None:
                raise ObservationError(f"no concentration column for pool {i} ('{name}')",
                                       context={"columns": list(df.columns)})
            parts.append(pd.DataFrame({
                "time": df[tcol],
                "pool_id": i,
                "concentration": df[col],
                "horizon_id": df[hcol] if hcol else "all",
                "replicate_kind": df[rcol] if rcol else "mean",
                "_row": np.arange(len(df)),
            }))
        tidy = pd.concat(parts, ignore_index=True)

    if "horizon_id" not in tidy.columns:
        tidy["horizon_id"] = df[hcol].to_numpy() if hcol else "all"
        tidy["replicate_kind"] = df[rcol].to_numpy() if rcol else "mean"

    tidy["time"] = pd.to_numeric(tidy["time"], errors="coerce")
    tidy["concentration"] = pd.to_numeric(tidy["concentration"], errors="coerce")
    tidy["replicate_kind"] = tidy["replicate_kind"].astype(str).str.strip().str.lower()
    tidy["horizon_id"] = tidy["horizon_id"].astype(str).str.strip()

    n_raw = len(tidy)
    tidy = tidy.dropna(subset=["time", "pool_id", "concentration"])
    if len(tidy) < n_raw:
        logger.warning(f"[Data] Dropped {n_raw - len(tidy)} observation rows with missing time/pool/concentration")

    if (tidy["time"] < 0).any():
        raise ObservationError("observation times must be non-negative")

    pool_ids = tidy["pool_id"].astype(np.float64)
    if (pool_ids % 1 != 0).any():
        bad = sorted(pool_ids[pool_ids % 1 != 0].unique().tolist())
        raise ObservationError("pool_id values must be whole numbers", context={"pool_id": bad})
    tidy["pool_id"] = pool_ids.astype(np.int64)
    tidy = tidy[tidy["pool_id"].between(1, n_pools)]
    tidy = tidy[tidy["replicate_kind"].isin(replicate_kinds)]

    sort_cols = ["time", "pool_id"] + (["_row"] if "_row" in tidy.columns else [])
    tidy = tidy.sort_values(sort_cols, kind="mergesort")[OBS_COLUMNS].reset_index(drop=True)

    present = set(tidy["pool_id"].unique())
    absent = [i for i in range(1, n_pools + 1) if i not in present]
    if absent:
        raise ObservationError(f"no observations for pools {absent}",
                               context={"replicate_kinds": list(replicate_kinds)})
    return tidy


def load_observations(path, pool_names, replicate_kinds=REPLICATE_KINDS):
    """Read an observation CSV and return it in tidy layout (see `tidy_observations`)."""
    logger.info(f"[Data] Loading observations: {path}")
    try:
        raw = pd.read_csv(path)
    except FileNotFoundError as e:
        raise ObservationError(f"observation file not found: {path}") from e
    if raw.empty:
        raise ObservationError(f"observation file is empty: {path}")
    obs = tidy_observations(raw, pool_names, replicate_kinds)
    logger.info(f"[Data] {len(obs)} observation rows, {obs['time'].nunique()} time points, "
                f"{obs['horizon_id'].nunique()} horizons")
    return obs


def observed_series(obs, pool_id):
    """
    Observation rows of one pool.

    Returns:
        tuple: (times, concentrations) as float64 arrays in row order; times may repeat
        across horizons and replicates.
    """
    sub = obs[obs["pool_id"] == pool_id]
    return (np.ascontiguousarray(sub["time"].to_numpy(), dtype=np.float64),
            np.ascontiguousarray(sub["concentration"].to_numpy(), dtype=np.float64))
