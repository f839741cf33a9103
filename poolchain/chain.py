"""
Chain assembly.

Every stage table row points at its parent in the previous stage through
``parent_index``. Walking those keys from the last table back to the first yields one
complete, ordered parameter chain per row of the last table. The join is done with
`pandas.merge`, one level at a time, and produces a wide frame with per-pool columns
suffixed by the pool number (``decay_rate_1``, ``decay_rate_2``, ...).

The same routine serves two callers: the stage engine, which needs the fixed upstream
chain for every surviving parent, and the best-fit selector, which needs the full
N-pool ensemble.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from poolchain.buildmat import build_cascade_matrix, build_forcing
from poolchain.errors import PoolChainError
from poolchain.params import PoolParams

logger = logging.getLogger("poolchain.chain")

# Per-pool columns carried into the assembled frame.
CHAIN_FIELDS = ["stage_index", "parent_index", "turnover_time", "decay_rate", "initial_concentration",
                "input_magnitude", "input_duration", "transfer_fraction", "rmse"]


def _suffixed(df, pool):
    return df[CHAIN_FIELDS].rename(columns={c: f"{c}_{pool}" for c in CHAIN_FIELDS})


def assemble_chains(stage_tables):
    """
    Join stage tables 1..k on their parent keys.

    Args:
        stage_tables (list[pd.DataFrame]): validated stage tables in pool order.

    Returns:
        pd.DataFrame: one row per row of the last table, ordered by its stage_index, with
        per-pool columns and ``aggregate_rmse`` (sum of the stage-local RMSEs).

    Raises:
        PoolChainError: a parent_index has no matching row in the previous stage.
    """
    if not stage_tables:
        raise ValueError("assemble_chains needs at least one stage table")

    k = len(stage_tables)
    chains = _suffixed(stage_tables[-1], k)
    for pool in range(k - 1, 0, -1):
        parent = _suffixed(stage_tables[pool - 1], pool)
        n_before = len(chains)
        chains = chains.merge(
            parent,
            how="inner",
            left_on=f"parent_index_{pool + 1}",
            right_on=f"stage_index_{pool}",
            validate="many_to_one",
        )
        if len(chains) != n_before:
            raise PoolChainError(
                f"[Chain] stage {pool + 1} references missing parents in stage {pool}",
                context={"rows": n_before, "joined": len(chains)},
            )

    ordered = [f"{c}_{p}" for p in range(1, k + 1) for c in CHAIN_FIELDS]
    chains = chains[ordered].copy()
    chains["aggregate_rmse"] = chains[[f"rmse_{p}" for p in range(1, k + 1)]].sum(axis=1)
    return chains.sort_values(f"stage_index_{k}", kind="mergesort").reset_index(drop=True)


@dataclass(frozen=True)
class Chain:
    """An ordered parameter assignment for pools 1..k."""
    pools: tuple[PoolParams, ...]
    aggregate_rmse: float = np.nan
    terminal_index: int = 0

    @classmethod
    def from_row(cls, row, n_pools):
        pools = tuple(
            PoolParams(
                decay_rate=float(row[f"decay_rate_{p}"]),
                initial_concentration=float(row[f"initial_concentration_{p}"]),
                transfer_fraction=float(row[f"transfer_fraction_{p}"]),
                input_magnitude=float(row[f"input_magnitude_{p}"]),
                input_duration=float(row[f"input_duration_{p}"]),
            )
            for p in range(1, n_pools + 1)
        )
        return cls(
            pools=pools,
            aggregate_rmse=float(row.get("aggregate_rmse", np.nan)),
            terminal_index=int(row[f"stage_index_{n_pools}"]),
        )

    @property
    def n_pools(self) -> int:
        return len(self.pools)

    def decay_rates(self):
        return np.array([p.decay_rate for p in self.pools], dtype=np.float64)

    def transfer_fractions(self):
        # Edge i -> i+1 only; the last pool has no outgoing edge.
        return np.array([p.transfer_fraction for p in self.pools[:-1]], dtype=np.float64)

    def initial_state(self):
        return np.array([p.initial_concentration for p in self.pools], dtype=np.float64)

    def cascade_matrix(self):
        return build_cascade_matrix(self.decay_rates(), self.transfer_fractions())

    def forcing(self):
        return build_forcing([p.input_magnitude for p in self.pools],
                             [p.input_duration for p in self.pools])

    def as_records(self):
        """Per-pool parameter dicts, for export."""
        return [
            {
                "pool": i,
                "decay_rate": p.decay_rate,
                "turnover_time": p.turnover_time,
                "initial_concentration": p.initial_concentration,
                "input_magnitude": p.input_magnitude,
                "input_duration": p.input_duration,
                "transfer_fraction": None if np.isnan(p.transfer_fraction) else p.transfer_fraction,
            }
            for i, p in enumerate(self.pools, start=1)
        ]

