import argparse
import dataclasses
import logging
import os
import sys
import time

from poolchain.cache import StageCache
from poolchain.chain import assemble_chains
from poolchain.config import load_config_toml, validate_config
from poolchain.errors import PoolChainError
from poolchain.export import export_results
from poolchain.io import load_observations
from poolchain.logconf import setup_logger
from poolchain.select import select_best_fit, summarize_pools
from poolchain.stage import load_stage, run_stage
from poolchain.utils import format_duration, ensure_output_directory

logger = logging.getLogger("poolchain.runner")


def calibrate(config, observations, cache=None):
    """
    Run stages 1..N in order, each joined to the tables before it.

    Cached tables are reused only up to the first stage that has to be recomputed;
    every stage after it is recomputed as well.

    Returns:
        list[pd.DataFrame]: the stage tables in pool order.
    """
    stage_tables = []
    resume = cache is not None
    for k in range(1, config.n_pools + 1):
        table = load_stage(k, config, observations, stage_tables, cache) if resume else None
        if table is None:
            if resume and k > 1:
                logger.info(f"[Cache] Stage {k} onwards will be recomputed")
            resume = False
            table = run_stage(k, config, observations, stage_tables, cache=cache, resume=False)
        stage_tables.append(table)
    return stage_tables


def run(config, observations, cache=None):
    """
    Calibrate, assemble and select.

    Returns:
        tuple: (stage_tables, chains, best_fit, summary)
    """
    stage_tables = calibrate(config, observations, cache=cache)
    chains = assemble_chains(stage_tables)
    best_fit = select_best_fit(stage_tables, config, chains=chains)
    summary = summarize_pools(stage_tables, best_fit)
    return stage_tables, chains, best_fit, summary


def apply_overrides(config, args):
    """Return `config` with command-line values substituted where given."""
    changes = {}
    if args.observations is not None:
        changes["observations"] = args.observations
    if args.output_dir is not None:
        changes["results_dir"] = args.output_dir
        if args.cache_dir is None:
            changes["cache_dir"] = os.path.join(args.output_dir, "stage_cache")
        changes["log_dir"] = os.path.join(args.output_dir, "logs")
    if args.cache_dir is not None:
        changes["cache_dir"] = args.cache_dir
    if args.cores is not None:
        changes["cores"] = args.cores
    if args.seed is not None:
        changes["seed"] = args.seed
    if args.subsample_size is not None:
        changes["subsample_size"] = args.subsample_size
    return validate_config(dataclasses.replace(config, **changes)) if changes else config


def build_parser():
    parser = argparse.ArgumentParser(
        prog="poolchain",
        description="Staged grid-search calibration of a chained multi-pool decay model.",
    )
    parser.add_argument("--config", default="config.toml")
    parser.add_argument("--observations", default=None)
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--cache-dir", default=None)
    parser.add_argument("--cores", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--subsample-size", type=int, default=None)
    parser.add_argument("--fresh", action="store_true", help="Clear cached stage tables before running.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(load_config_toml(args.config), args)
    except PoolChainError as e:
        print(f"[Config] {e.log_message()}", file=sys.stderr)
        return 1

    ensure_output_directory(config.results_dir)
    console_level = logging.DEBUG if config.extra.get("verbose") else logging.INFO
    logger = setup_logger(log_dir=config.log_dir, console_level=console_level)

    logger.info(f"[Args] Config: {args.config}")
    logger.info(f"[Args] Observations: {config.observations}")
    logger.info(f"[Args] Output directory: {config.results_dir}")
    logger.info(f"[Args] Stage cache: {config.cache_dir}")
    logger.info(f"[Args] Number of cores: {config.cores}")
    logger.info(f"[Args] Seed: {config.seed}")
    logger.info(f"[Args] Subsample size: {config.subsample_size}")
    logger.info(f"[Args] Pools: {', '.join(p.name for p in config.pools)}")

    start = time.time()
    try:
        if config.observations is None:
            raise PoolChainError("no observation table given (set general.observations or --observations)")
        observations = load_observations(config.observations, [p.name for p in config.pools],
                                         config.replicate_kinds)

        cache = StageCache(config.cache_dir)
        if args.fresh:
            cache.clear()

        stage_tables, chains, best_fit, summary = run(config, observations, cache=cache)
        export_results(best_fit, summary, chains, config.results_dir)
    except PoolChainError as e:
        logger.error(e.log_message())
        return 1

    if best_fit.tied:
        logger.warning(f"[Done] Best fit is one of {best_fit.n_tied} tied chains")
    logger.info(f"[Done] {config.n_pools} stages, {len(chains)} chains, "
                f"best aggregate RMSE {best_fit.aggregate_rmse:.6g} in {format_duration(time.time() - start)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
