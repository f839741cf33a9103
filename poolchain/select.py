import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from poolchain.chain import Chain, assemble_chains
from poolchain.simulate import simulate_cascade
from poolchain.utils import time_grid

logger = logging.getLogger("poolchain.select")

SUMMARY_FIELDS = ["turnover_time", "initial_concentration", "input_magnitude", "transfer_fraction"]


@dataclass(frozen=True)
class BestFit:
    """The selected chain and its projection over the reporting grid."""
    chain: Chain
    aggregate_rmse: float
    tied: bool
    n_tied: int
    simulation: pd.DataFrame


def select_best_chain(chains, n_pools):
    """
    Pick the chain with the lowest aggregate RMSE.

    `chains` must be in canonical order (terminal stage_index ascending); among tied
    chains the first one wins.

    Returns:
        tuple: (Chain, n_tied)
    """
    if chains.empty:
        raise ValueError("no chains to select from")
    agg = chains["aggregate_rmse"].to_numpy()
    best_pos = int(np.argmin(agg))
    n_tied = int(np.sum(agg == agg[best_pos]))
    chain = Chain.from_row(chains.iloc[best_pos], n_pools)
    if n_tied > 1:
        tied_ids = chains.loc[agg == agg[best_pos], f"stage_index_{n_pools}"].tolist()
        logger.warning(f"[Select] {n_tied} chains tie on aggregate RMSE {agg[best_pos]:.6g} "
                       f"(terminal indices {tied_ids}); keeping index {chain.terminal_index}")
    return chain, n_tied


def simulate_chain(chain, times, rtol, atol, mxstep):
    """Re-simulate a chain and return a time x pool table."""
    M = chain.cascade_matrix()
    mags, durs = chain.forcing()
    ys = simulate_cascade(chain.initial_state(), times, M, mags, durs, rtol=rtol, atol=atol, mxstep=mxstep)
    df = pd.DataFrame(ys, columns=[f"pool_{i}" for i in range(1, chain.n_pools + 1)])
    df.insert(0, "time", np.asarray(times, dtype=np.float64))
    return df


def select_best_fit(stage_tables, config, chains=None):
    """
    Select the best chain and project it over the reporting grid.

    Args:
        stage_tables (list[pd.DataFrame]): tables of stages 1..N.
        config (CalibrationConfig): reporting grid and solver settings.
        chains (pd.DataFrame, optional): pre-assembled ensemble.

    Returns:
        BestFit
    """
    if chains is None:
        chains = assemble_chains(stage_tables)
    n_pools = len(stage_tables)
    chain, n_tied = select_best_chain(chains, n_pools)

    times = time_grid(config.report_time_max, config.report_time_step)
    simulation = simulate_chain(chain, times, config.ode_rel_tol, config.ode_abs_tol,
                                config.ode_max_steps)

    logger.info(f"[Select] Best chain: terminal index {chain.terminal_index}, "
                f"aggregate RMSE {chain.aggregate_rmse:.6g} ({len(chains)} chains)")
    return BestFit(chain=chain, aggregate_rmse=chain.aggregate_rmse, tied=n_tied > 1,
                   n_tied=n_tied, simulation=simulation)


def summarize_pools(stage_tables, best_fit):
    """
    Per-pool parameter ranges over each stage's surviving ensemble.

    For pool k the transfer fraction reported is the one feeding pool k from pool k-1,
    taken from the stage k-1 table; pool 1 has none.

    Returns:
        pd.DataFrame: one row per (pool, parameter) with min, max and best.
    """
    rows = []
    for k, table in enumerate(stage_tables, start=1):
        best = best_fit.chain.pools[k - 1]
        for field in SUMMARY_FIELDS:
            if field == "transfer_fraction":
                if k == 1:
                    continue
                values = stage_tables[k - 2][field].to_numpy()
                best_value = best_fit.chain.pools[k - 2].transfer_fraction
            else:
                values = table[field].to_numpy()
                best_value = getattr(best, field)
            rows.append({
                "pool": k,
                "parameter": field,
                "min": float(np.min(values)),
                "max": float(np.max(values)),
                "best": float(best_value),
                "n_candidates": len(values),
            })
    summary = pd.DataFrame(rows, columns=["pool", "parameter", "min", "max", "best", "n_candidates"])
    summary["n_tied"] = best_fit.n_tied
    return summary
