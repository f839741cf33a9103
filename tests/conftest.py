import numpy as np
import pandas as pd
import pytest

from poolchain.buildmat import build_cascade_matrix, build_forcing
from poolchain.config import CalibrationConfig, make_pool_grid
from poolchain.simulate import simulate_cascade

INPUT_DURATION = 50.0


def simulate_truth(decay_rates, initial, transfer_fractions, magnitudes, times):
    M = build_cascade_matrix(decay_rates, transfer_fractions)
    mags, durs = build_forcing(magnitudes, INPUT_DURATION)
    return simulate_cascade(initial, times, M, mags, durs)


def replicate_observations(times, trajectory, spread=1.0):
    """
    Tidy observations with min/mean/max rows at sim - spread, sim, sim + spread.

    The symmetric replicates give an OLS of observed on the true simulation an exact
    slope of 1 and intercept of 0 with non-zero standard errors.
    """
    rows = []
    for pool in range(trajectory.shape[1]):
        for t, c in zip(times, trajectory[:, pool]):
            for kind, offset in (("min", -spread), ("mean", 0.0), ("max", spread)):
                rows.append((float(t), pool + 1, float(c + offset), "h1", kind))
    return pd.DataFrame(rows, columns=["time", "pool_id", "concentration", "horizon_id", "replicate_kind"])


@pytest.fixture
def fit_times():
    return np.arange(0.0, 501.0, 20.0)


@pytest.fixture
def one_pool_observations(fit_times):
    # tau = 100, C0 = 100, no input
    traj = simulate_truth([0.01], [100.0], [], [0.0], fit_times)
    return replicate_observations(fit_times, traj)


@pytest.fixture
def two_pool_observations(fit_times):
    # pool 1: tau = 100, C0 = 100, tf = 0.5; pool 2: tau = 50, C0 = 10
    traj = simulate_truth([0.01, 0.02], [100.0, 10.0], [0.5], [0.0, 0.0], fit_times)
    return replicate_observations(fit_times, traj)


@pytest.fixture
def make_config(tmp_path):
    def _make(pools, **overrides):
        kwargs = dict(
            pools=tuple(pools),
            input_duration=INPUT_DURATION,
            subsample_size=50,
            seed=42,
            report_time_max=200.0,
            report_time_step=10.0,
            cores=1,
            results_dir=str(tmp_path / "results"),
            cache_dir=str(tmp_path / "cache"),
            log_dir=str(tmp_path / "logs"),
        )
        kwargs.update(overrides)
        return CalibrationConfig(**kwargs)
    return _make


@pytest.fixture
def two_pool_grids():
    return [
        make_pool_grid("fast", turnover_time=[100.0, 10000.0], initial_concentration=[50.0, 100.0],
                       input_magnitude=[0.0], transfer_fraction=[0.5, 0.75]),
        make_pool_grid("slow", turnover_time=[50.0, 1000.0], initial_concentration=[10.0, 20.0],
                       input_magnitude=[0.0]),
    ]
