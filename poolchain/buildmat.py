import numpy as np


def build_cascade_matrix(decay_rates, transfer_fractions):
    """
    Lower-bidiagonal cascade matrix for a chain of k pools.

    The diagonal holds -decay_rate_i. Entry (i+1, i) holds decay_rate_i * transfer_fraction_i,
    the share of pool i's decayed mass that enters pool i+1. Every other entry is 0.

    Args:
        decay_rates (array-like): k decay rates.
        transfer_fractions (array-like): at least k-1 fractions; entry i governs the
            edge i -> i+1. Extra trailing entries (the last pool's own fraction) are ignored.

    Returns:
        np.ndarray: (k, k) float64 matrix.
    """
    k_rates = np.asarray(decay_rates, dtype=np.float64)
    tf = np.asarray(transfer_fractions, dtype=np.float64)
    n = k_rates.size
    if tf.size < n - 1:
        raise ValueError(f"Need {n - 1} transfer fractions for {n} pools, got {tf.size}")

    M = np.diag(-k_rates)
    for i in range(n - 1):
        M[i + 1, i] = k_rates[i] * tf[i]
    return np.ascontiguousarray(M)


def build_forcing(input_magnitudes, input_duration):
    """
    Per-pool forcing arrays for the root-zone input.

    Args:
        input_magnitudes (array-like): k input magnitudes (value of the input at t=0).
        input_duration (float or array-like): shared or per-pool duration after which the
            input is zero.

    Returns:
        tuple: (magnitudes, durations), both contiguous float64 arrays of length k.
    """
    mags = np.ascontiguousarray(input_magnitudes, dtype=np.float64).ravel()
    durs = np.broadcast_to(np.asarray(input_duration, dtype=np.float64), mags.shape)
    return mags, np.ascontiguousarray(durs)
