import os

import numpy as np


def ensure_output_directory(directory):
    """
    Ensure the output directory exists. If it doesn't, create it.

    Args:
        directory (str): Path to the output directory.
    """
    os.makedirs(directory, exist_ok=True)


def format_duration(seconds):
    """
    Format a duration in seconds into a human-readable string.

    Args:
        seconds (float): Duration in seconds.
    Returns:
        str: Formatted duration string.
    """
    if seconds < 60:
        return f"{seconds:.2f} sec"
    elif seconds < 3600:
        return f"{seconds / 60:.2f} min"
    else:
        return f"{seconds / 3600:.2f} hr"


def _normcols(df):
    df = df.copy()
    df.columns = [str(c).strip().lower().replace(" ", "_") for c in df.columns]
    return df


def _find_col(df, cands):
    for c in cands:
        if c in df.columns:
            return c
    return None


def time_grid(t_max, step, t0=0.0):
    """
    Inclusive, evenly spaced grid from `t0` to `t_max`.

    `np.arange` drops the end point through float round-off for steps that do not
    divide the span exactly, so the count is computed first.
    """
    n = int(np.floor((t_max - t0) / step + 1e-9)) + 1
    return t0 + step * np.arange(n, dtype=np.float64)
