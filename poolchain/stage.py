"""
Stage search engine.

Stage k introduces pool k into the chain. Its candidates are the Cartesian product of
pool k's own parameter grid with every surviving candidate of stage k-1 (whose
parameters stay fixed). Each candidate is simulated as a k-pool cascade and scored on
pool k only.

Processing order per stage:

1.  Evaluate every combination, in parallel when ``cores > 1``.
2.  Drop candidates whose integration failed.
3.  Keep candidates passing the regression acceptance rule.
4.  Keep candidates with RMSE at or below the median of the accepted set.
5.  Drop duplicate parameter tuples.
6.  Non-terminal stages only: draw a seeded subsample over the canonically sorted set,
    always keeping the minimum-RMSE candidate.
7.  Number the survivors 1..M and persist them to the stage cache.

The transfer fraction of pool k only governs the edge into pool k+1, so it does not
change the stage-k trajectory. Each (parent, decay, initial, input) combination is
therefore simulated once and then crossed with the transfer-fraction grid.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np
import pandas as pd
from tqdm import tqdm

from poolchain.buildmat import build_cascade_matrix, build_forcing
from poolchain.cache import frame_digest, stage_key, validate_stage_table
from poolchain.chain import assemble_chains
from poolchain.errors import IntegrationFailure, NoCandidatesSurvive, ObservationError
from poolchain.io import observed_series
from poolchain.lossfn import acceptance_mask, score
from poolchain.params import DIAG_COLUMNS, KEY_COLUMNS, PARAM_COLUMNS, STAGE_COLUMNS, own_pool_grid
from poolchain.simulate import simulate_cascade
from poolchain.utils import format_duration

logger = logging.getLogger("poolchain.stage")

_SIM_COLUMNS = ["decay_rate", "initial_concentration", "input_magnitude", "input_duration"]
_GRID_FIELDS = ("turnover_time", "initial_concentration", "input_magnitude", "transfer_fraction")


def _evaluate_one(task):
    """
    Simulate and score one candidate.

    Runs in a worker process. Integration failures are returned as a marker rather than
    raised, so one bad candidate never takes down the pool.

    Returns:
        tuple: (task_id, rmse, (intercept, intercept_se, slope, slope_se), error or None)
    """
    (task_id, decay_rates, transfer_fractions, y0, mags, durs,
     t_unique, inverse, observed, rtol, atol, mxstep) = task
    try:
        M = build_cascade_matrix(decay_rates, transfer_fractions)
        m, d = build_forcing(mags, durs)
        ys = simulate_cascade(y0, t_unique, M, m, d, rtol=rtol, atol=atol, mxstep=mxstep)
    except IntegrationFailure as e:
        return task_id, np.nan, (np.nan,) * 4, e.log_message()

    simulated = ys[inverse, -1]
    err, diag = score(observed, simulated)
    return task_id, err, (diag.intercept, diag.intercept_se, diag.slope, diag.slope_se), None


def _run_tasks(tasks, cores, desc):
    """Evaluate tasks serially or on a process pool; results come back in task order."""
    results = [None] * len(tasks)
    if cores <= 1 or len(tasks) <= 1:
        for task in tqdm(tasks, total=len(tasks), desc=desc, leave=False):
            res = _evaluate_one(task)
            results[res[0]] = res
        return results

    with ProcessPoolExecutor(max_workers=cores) as executor:
        futures = {executor.submit(_evaluate_one, t): t[0] for t in tasks}
        for fut in tqdm(as_completed(futures), total=len(tasks), desc=desc, leave=False):
            res = fut.result()
            results[res[0]] = res
    return results


def _upstream(stage_tables):
    """
    Fixed upstream parameters for each surviving parent.

    Returns a list of (parent_index, decay_rates, transfer_fractions, y0, mags, durs)
    for pools 1..k-1, or a single empty parent for stage 1.
    """
    if not stage_tables:
        empty = np.empty(0, dtype=np.float64)
        return [(0, empty, empty, empty, empty, empty)]

    k = len(stage_tables)
    chains = assemble_chains(stage_tables)
    out = []
    for _, row in chains.iterrows():
        out.append((
            int(row[f"stage_index_{k}"]),
            np.array([row[f"decay_rate_{p}"] for p in range(1, k + 1)], dtype=np.float64),
            np.array([row[f"transfer_fraction_{p}"] for p in range(1, k + 1)], dtype=np.float64),
            np.array([row[f"initial_concentration_{p}"] for p in range(1, k + 1)], dtype=np.float64),
            np.array([row[f"input_magnitude_{p}"] for p in range(1, k + 1)], dtype=np.float64),
            np.array([row[f"input_duration_{p}"] for p in range(1, k + 1)], dtype=np.float64),
        ))
    return out


def evaluate_candidates(stage, config, observations, stage_tables=()):
    """
    Build and score every candidate of one stage.

    Args:
        stage (int): pool index k (1-based).
        config (CalibrationConfig): grids, solver settings and worker count.
        observations (pd.DataFrame): tidy observation table.
        stage_tables (sequence[pd.DataFrame]): tables of stages 1..k-1.

    Returns:
        pd.DataFrame: one row per candidate with ``STAGE_COLUMNS`` minus stage_index,
        plus a boolean ``failed`` column.
    """
    k = int(stage)
    terminal = k == config.n_pools
    grid = own_pool_grid(config.pools[k - 1], config.input_duration, terminal)

    times, observed = observed_series(observations, k)
    if times.size == 0:
        raise ObservationError(f"[Stage {k}] no observations for pool {k}")
    t_unique, inverse = np.unique(times, return_inverse=True)

    # One simulation per own-pool combination, independent of transfer fraction.
    sim_grid = grid[_SIM_COLUMNS].drop_duplicates().reset_index(drop=True)
    parents = _upstream(list(stage_tables))

    tasks = []
    keys = []
    for parent_index, rates, tfs, y0, mags, durs in parents:
        for row in sim_grid.itertuples(index=False):
            tasks.append((
                len(tasks),
                np.append(rates, row.decay_rate),
                tfs,
                np.append(y0, row.initial_concentration),
                np.append(mags, row.input_magnitude),
                np.append(durs, row.input_duration),
                t_unique,
                inverse,
                observed,
                config.ode_rel_tol,
                config.ode_abs_tol,
                config.ode_max_steps,
            ))
            keys.append((parent_index, row.decay_rate, row.initial_concentration,
                         row.input_magnitude, row.input_duration))

    logger.info(f"[Stage {k}] {len(parents)} parents x {len(sim_grid)} own combinations "
                f"= {len(tasks)} simulations ({len(parents) * len(grid)} candidates)")

    results = _run_tasks(tasks, config.cores, desc=f"Stage {k}/{config.n_pools}")

    records = []
    for key, (task_id, err, diag, failure) in zip(keys, results):
        if failure is not None:
            logger.debug(f"[Stage {k}] candidate {task_id} failed: {failure}")
        records.append(key + (err,) + tuple(diag) + (failure is not None,))

    evaluated = pd.DataFrame(records, columns=["parent_index"] + _SIM_COLUMNS + ["rmse"] + DIAG_COLUMNS + ["failed"])
    evaluated["parent_index"] = evaluated["parent_index"].astype(np.int64)

    # Cross every simulated combination with its transfer-fraction values.
    table = evaluated.merge(grid, on=_SIM_COLUMNS, how="inner")
    return table[["parent_index", "turnover_time"] + PARAM_COLUMNS + ["rmse"] + DIAG_COLUMNS + ["failed"]]


def canonical_order(df):
    """Sort candidates by ancestry and parameter tuple; ties keep their original order."""
    return df.sort_values(KEY_COLUMNS, kind="mergesort").reset_index(drop=True)


def filter_accepted(df):
    """Candidates whose diagnostic passes the acceptance rule."""
    mask = acceptance_mask(df["intercept"], df["intercept_se"], df["slope"], df["slope_se"])
    return df[mask].reset_index(drop=True)


def below_median(df):
    """Candidates whose RMSE is at or below the median RMSE of `df`."""
    if df.empty:
        return df
    return df[df["rmse"] <= np.median(df["rmse"].to_numpy())].reset_index(drop=True)


def deduplicate(df):
    """Drop repeated parameter tuples, keeping the first in canonical order."""
    return canonical_order(df).drop_duplicates(subset=KEY_COLUMNS, keep="first").reset_index(drop=True)


def subsample_candidates(df, size, rng):
    """
    Draw `size` candidates without replacement, always keeping the best one.

    The draw is taken over the canonical ordering of `df`, so the result depends only on
    the candidate set and the generator state. If the minimum-RMSE candidate (first in
    canonical order among ties) is not drawn it is added, giving `size` + 1 rows.

    Args:
        df (pd.DataFrame): deduplicated candidates.
        size (int): number of candidates to draw.
        rng (np.random.Generator): seeded generator.

    Returns:
        pd.DataFrame: the subsample in canonical order.
    """
    ordered = canonical_order(df)
    n = len(ordered)
    if n <= size:
        return ordered

    picked = rng.choice(n, size=size, replace=False)
    best = int(np.argmin(ordered["rmse"].to_numpy()))
    if best not in picked:
        picked = np.append(picked, best)
    return deduplicate(ordered.iloc[np.sort(picked)])


def assign_indices(df, stage):
    """Number candidates 1..M in canonical order and return the stage table layout."""
    out = canonical_order(df)
    out.insert(0, "stage_index", np.arange(1, len(out) + 1, dtype=np.int64))
    return validate_stage_table(out[STAGE_COLUMNS], key=f"stage {stage}")


def stage_rng(seed, stage):
    return np.random.default_rng([int(seed), int(stage)])


def select_candidates(evaluated, stage, n_pools, subsample_size, seed):
    """
    Apply the filter chain to evaluated candidates.

    Returns:
        tuple: (stage table, stats dict)

    Raises:
        NoCandidatesSurvive: no candidate passes the acceptance rule.
    """
    k = int(stage)
    stats = {"evaluated": len(evaluated)}

    ok = evaluated[~evaluated["failed"]].drop(columns="failed")
    stats["failed"] = len(evaluated) - len(ok)

    accepted = filter_accepted(ok)
    stats["accepted"] = len(accepted)
    if accepted.empty:
        raise NoCandidatesSurvive(k, stats, "no candidate passes the acceptance rule")

    kept = below_median(accepted)
    stats["below_median"] = len(kept)

    kept = deduplicate(kept)
    stats["deduplicated"] = len(kept)

    if k < n_pools:
        kept = subsample_candidates(kept, subsample_size, stage_rng(seed, k))
    stats["kept"] = len(kept)

    if kept.empty:
        raise NoCandidatesSurvive(k, stats, "threshold filters removed every candidate")

    return assign_indices(kept, k), stats


def stage_fingerprint(stage, config, observations, stage_tables=()):
    """
    Digest of every input that determines the stage-`stage` table.

    Covers the grids of pools 1..k, the shared input duration, seed, subsample size,
    solver settings, pool k's observations and the tables of stages 1..k-1.
    """
    k = int(stage)
    times, observed = observed_series(observations, k)
    payload = {
        "stage": k,
        "n_pools": config.n_pools,
        "pools": [
            {"name": p.name, **{g: getattr(p, g).tolist() for g in _GRID_FIELDS}}
            for p in config.pools[:k]
        ],
        "input_duration": float(config.input_duration),
        "seed": int(config.seed),
        "subsample_size": int(config.subsample_size),
        "solver": [float(config.ode_rel_tol), float(config.ode_abs_tol), int(config.ode_max_steps)],
        "observations": hashlib.sha256(times.tobytes() + observed.tobytes()).hexdigest(),
        "upstream": [frame_digest(t) for t in stage_tables],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def load_stage(stage, config, observations, stage_tables, cache):
    """Cached table for this stage if its fingerprint still matches, else None."""
    k = int(stage)
    fingerprint = stage_fingerprint(k, config, observations, stage_tables)
    return cache.load(stage_key(k, config.n_pools), fingerprint=fingerprint)


def run_stage(stage, config, observations, stage_tables=(), cache=None, resume=True):
    """
    Run (or resume) one calibration stage.

    If `resume` is set and `cache` holds a table for this stage computed from the same
    inputs, it is returned verbatim. Otherwise the stage is evaluated, filtered,
    written to the cache and returned.

    Args:
        stage (int): pool index k (1-based).
        config (CalibrationConfig): run configuration.
        observations (pd.DataFrame): tidy observations.
        stage_tables (sequence[pd.DataFrame]): tables of stages 1..k-1.
        cache (StageCache | None): where to look for and persist the table.
        resume (bool): allow a cached table to be reused.

    Returns:
        pd.DataFrame: the stage table.
    """
    k = int(stage)
    stage_tables = list(stage_tables)
    if cache is not None and resume:
        cached = load_stage(k, config, observations, stage_tables, cache)
        if cached is not None:
            return cached

    start = time.time()
    logger.info(f"[Stage {k}] Searching pool '{config.pools[k - 1].name}' ({k}/{config.n_pools})")
    evaluated = evaluate_candidates(k, config, observations, stage_tables)
    table, stats = select_candidates(evaluated, k, config.n_pools, config.subsample_size, config.seed)

    logger.info(
        f"[Stage {k}] evaluated={stats['evaluated']} failed={stats['failed']} "
        f"accepted={stats['accepted']} below_median={stats['below_median']} "
        f"deduplicated={stats['deduplicated']} kept={stats['kept']}"
    )
    best = table.loc[table["rmse"].idxmin()]
    logger.info(f"[Stage {k}] Best RMSE {best['rmse']:.4g} "
                f"(tau={best['turnover_time']:.4g}, C0={best['initial_concentration']:.4g}, "
                f"input={best['input_magnitude']:.4g}) in {format_duration(time.time() - start)}")

    if cache is not None:
        cache.save(stage_key(k, config.n_pools), table,
                   fingerprint=stage_fingerprint(k, config, observations, stage_tables))
    return table
