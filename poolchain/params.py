import itertools
from dataclasses import dataclass

import numpy as np
import pandas as pd

# Own-pool parameter columns of a stage table, in canonical sort order.
PARAM_COLUMNS = ["decay_rate", "initial_concentration", "input_magnitude", "input_duration", "transfer_fraction"]
DIAG_COLUMNS = ["intercept", "intercept_se", "slope", "slope_se"]
STAGE_COLUMNS = (["stage_index", "parent_index", "turnover_time"] + PARAM_COLUMNS + ["rmse"] + DIAG_COLUMNS)

# Identity of a candidate within a stage: its ancestry plus its own parameters.
KEY_COLUMNS = ["parent_index"] + PARAM_COLUMNS


@dataclass(frozen=True)
class PoolParams:
    decay_rate: float
    initial_concentration: float
    transfer_fraction: float
    input_magnitude: float
    input_duration: float

    @property
    def turnover_time(self) -> float:
        return 1.0 / self.decay_rate


def own_pool_grid(grid, input_duration, terminal):
    """
    Cartesian product of one pool's own parameter grid.

    Args:
        grid (PoolGrid): grid values for the pool.
        input_duration (float): the shared input duration.
        terminal (bool): the last pool in the chain has no outgoing edge, so its
            transfer fraction is NaN instead of a grid.

    Returns:
        pd.DataFrame: one row per combination, sorted canonically.
    """
    tfs = [np.nan] if terminal else list(grid.transfer_fraction)
    rows = [
        (1.0 / tau, c0, mag, float(input_duration), tf)
        for tau, c0, mag, tf in itertools.product(
            grid.turnover_time, grid.initial_concentration, grid.input_magnitude, tfs
        )
    ]
    df = pd.DataFrame(rows, columns=PARAM_COLUMNS)
    df.insert(0, "turnover_time", 1.0 / df["decay_rate"])
    return df.sort_values(PARAM_COLUMNS, kind="mergesort").reset_index(drop=True)
