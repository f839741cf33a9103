"""
Stage Cache.

Each calibration stage writes exactly one table, keyed by stage name, as a flat CSV in
the cache directory. A later run that finds the key loads the table verbatim instead of
recomputing it, so an interrupted calibration resumes where it stopped and a finished
one can be re-selected without any integration.

Next to each table sits a small JSON file holding the fingerprint of the inputs the
table was computed from (grids, seed, subsample size, solver settings, observations and
the upstream tables). A table whose stored fingerprint differs from the one requested
is treated as a miss, so a changed configuration or a recomputed upstream stage never
picks up a stale table.

Writes go to a temporary file in the same directory followed by `os.replace`, so a
reader only ever sees a complete file. Floats are written with 17 significant digits
and read back with the round-trip parser, so a reloaded table is bit-identical to the
one that was saved.

A file that cannot be parsed or does not match the stage schema is reported as a
cache miss. The stage is then recomputed and the bad file overwritten.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd

from poolchain.errors import CacheCorruption
from poolchain.params import STAGE_COLUMNS

logger = logging.getLogger("poolchain.cache")

_INT_COLUMNS = ("stage_index", "parent_index")
_REQUIRED_FINITE = ("decay_rate", "turnover_time", "initial_concentration", "input_magnitude",
                    "input_duration", "rmse")


def stage_key(stage, n_pools):
    """Cache key for stage `stage` of an `n_pools` chain."""
    return f"stage{int(stage)}_of{int(n_pools)}"


def frame_digest(df):
    """SHA-256 of a frame's values, row order included, index ignored."""
    hashed = pd.util.hash_pandas_object(df, index=False).to_numpy()
    return hashlib.sha256(hashed.tobytes()).hexdigest()


def validate_stage_table(df, key="stage"):
    """
    Check a stage table against the schema and return it with canonical dtypes.

    Raises:
        CacheCorruption: a column is missing, the table is empty, a required value is
            missing or non-finite, or stage_index is not dense 1..M.
    """
    missing = [c for c in STAGE_COLUMNS if c not in df.columns]
    if missing:
        raise CacheCorruption(f"[Cache] {key}: missing columns", context={"missing": missing})
    if df.empty:
        raise CacheCorruption(f"[Cache] {key}: table is empty")

    df = df[STAGE_COLUMNS].copy()
    for c in _INT_COLUMNS:
        if df[c].isna().any():
            raise CacheCorruption(f"[Cache] {key}: '{c}' has missing values")
        df[c] = df[c].astype(np.int64)
    for c in STAGE_COLUMNS:
        if c not in _INT_COLUMNS:
            df[c] = df[c].astype(np.float64)

    if not np.all(np.isfinite(df[list(_REQUIRED_FINITE)].to_numpy())):
        raise CacheCorruption(f"[Cache] {key}: non-finite parameter or rmse values")

    expected = np.arange(1, len(df) + 1, dtype=np.int64)
    if not np.array_equal(np.sort(df["stage_index"].to_numpy()), expected):
        raise CacheCorruption(f"[Cache] {key}: stage_index is not dense 1..{len(df)}")

    return df.sort_values("stage_index").reset_index(drop=True)


def _atomic_write(path, write):
    """Call `write(handle)` on a temp file beside `path`, then move it into place."""
    tmp_handle = None
    tmp_path = None
    try:
        tmp_handle, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(tmp_handle, "w", encoding="utf-8", newline="") as handle:
            tmp_handle = None
            write(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_handle is not None:
            os.close(tmp_handle)
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)


class StageCache:
    """File-backed store of stage tables, one CSV (plus fingerprint) per stage key."""

    def __init__(self, cache_dir):
        self.cache_dir = Path(cache_dir)

    def path(self, key) -> Path:
        return self.cache_dir / f"{key}.csv"

    def meta_path(self, key) -> Path:
        return self.cache_dir / f"{key}.json"

    def exists(self, key) -> bool:
        return self.path(key).is_file()

    def read(self, key) -> pd.DataFrame:
        """
        Read and validate a stage table.

        Raises:
            FileNotFoundError: the key has no cache file.
            CacheCorruption: the file exists but is unreadable or off-schema.
        """
        path = self.path(key)
        if not path.is_file():
            raise FileNotFoundError(path)
        try:
            df = pd.read_csv(path, float_precision="round_trip")
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as e:
            raise CacheCorruption(f"[Cache] {key}: unreadable", context={"error": str(e)}) from e
        try:
            return validate_stage_table(df, key)
        except (TypeError, ValueError) as e:
            raise CacheCorruption(f"[Cache] {key}: bad dtypes", context={"error": str(e)}) from e

    def fingerprint(self, key) -> str | None:
        """Stored input fingerprint for `key`, or None if absent or unreadable."""
        meta = self.meta_path(key)
        if not meta.is_file():
            return None
        try:
            return json.loads(meta.read_text(encoding="utf-8"))["fingerprint"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"[Cache] {key}: unreadable fingerprint ({e})")
            return None

    def load(self, key, fingerprint=None) -> pd.DataFrame | None:
        """
        Return the cached table for `key`, or None on a miss.

        A corrupt file is a miss. When `fingerprint` is given, a table stored under a
        different (or no) fingerprint is a miss as well.
        """
        if not self.exists(key):
            logger.debug(f"[Cache] Miss: {key}")
            return None
        if fingerprint is not None and self.fingerprint(key) != fingerprint:
            logger.info(f"[Cache] Stale {key}: inputs changed since it was written -> recomputing")
            return None
        try:
            df = self.read(key)
        except CacheCorruption as e:
            logger.warning(f"{e.log_message()} -> recomputing")
            return None
        logger.info(f"[Cache] Loaded {key}: {len(df)} candidates from {self.path(key)}")
        return df

    def save(self, key, df, fingerprint=None) -> Path:
        """
        Validate and atomically write a stage table and its fingerprint.

        The old fingerprint is removed first, so an interrupted save never leaves a
        fingerprint next to a table it does not describe.
        """
        df = validate_stage_table(df, key)
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        self.meta_path(key).unlink(missing_ok=True)
        _atomic_write(path, lambda handle: df.to_csv(handle, index=False, float_format="%.17g"))
        if fingerprint is not None:
            meta = {"key": key, "fingerprint": fingerprint, "rows": len(df)}
            _atomic_write(self.meta_path(key), lambda handle: json.dump(meta, handle, indent=2))

        logger.info(f"[Cache] Saved {key}: {len(df)} candidates -> {path}")
        return path

    def clear(self):
        """Remove every stage table (and fingerprint) in the cache directory."""
        if not self.cache_dir.is_dir():
            return 0
        removed = 0
        for p in self.cache_dir.glob("stage*_of*.csv"):
            p.unlink()
            removed += 1
        for p in self.cache_dir.glob("stage*_of*.json"):
            p.unlink()
        logger.info(f"[Cache] Cleared {removed} stage tables from {self.cache_dir}")
        return removed
