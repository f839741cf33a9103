import json
import logging
import os

import numpy as np

from poolchain.utils import ensure_output_directory

logger = logging.getLogger("poolchain.export")


def export_results(best_fit, summary, chains, output_dir):
    """
    Write the calibration outputs.

    Files:
        best_fit_simulation.csv: time x pool concentration of the selected chain.
        pool_summary.csv: per-pool min / max / best of each calibrated parameter.
        chains.csv: the assembled chain ensemble with aggregate RMSE.
        best_fit_params.json: the selected chain's parameters and tie information.

    Returns:
        dict: artifact name -> path.
    """
    ensure_output_directory(output_dir)
    paths = {
        "simulation": os.path.join(output_dir, "best_fit_simulation.csv"),
        "summary": os.path.join(output_dir, "pool_summary.csv"),
        "chains": os.path.join(output_dir, "chains.csv"),
        "params": os.path.join(output_dir, "best_fit_params.json"),
    }

    logger.info("[Output] Exporting best-fit trajectory...")
    best_fit.simulation.to_csv(paths["simulation"], index=False)

    summary.to_csv(paths["summary"], index=False)
    chains.to_csv(paths["chains"], index=False)

    payload = {
        "aggregate_rmse": float(best_fit.aggregate_rmse),
        "terminal_index": int(best_fit.chain.terminal_index),
        "tied": bool(best_fit.tied),
        "n_tied": int(best_fit.n_tied),
        "n_chains": int(len(chains)),
        "pools": best_fit.chain.as_records(),
    }
    if not np.isfinite(payload["aggregate_rmse"]):
        payload["aggregate_rmse"] = None
    with open(paths["params"], "w") as f:
        json.dump(payload, f, indent=2)

    logger.info(f"[Output] Exports saved to {output_dir}")
    return paths
