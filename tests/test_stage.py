import numpy as np
import pandas as pd
import pytest

from poolchain.cache import StageCache, stage_key
from poolchain.config import make_pool_grid
from poolchain.errors import IntegrationFailure, NoCandidatesSurvive
from poolchain.lossfn import acceptance_mask
from poolchain.params import PARAM_COLUMNS, STAGE_COLUMNS
from poolchain import stage as stage_mod
from poolchain.stage import (below_median, deduplicate, evaluate_candidates, run_stage, select_candidates,
                             stage_rng, subsample_candidates)


def _evaluated(n, accept=True, seed=0):
    """Synthetic evaluated-candidate frame with distinct parameter tuples."""
    rng = np.random.default_rng(seed)
    tau = np.linspace(1.0, 1000.0, n)
    return pd.DataFrame({
        "parent_index": 1,
        "turnover_time": tau,
        "decay_rate": 1.0 / tau,
        "initial_concentration": rng.choice([10.0, 20.0], n),
        "input_magnitude": 0.0,
        "input_duration": 50.0,
        "transfer_fraction": 0.5,
        "rmse": rng.uniform(0.0, 10.0, n),
        "intercept": 0.0,
        "intercept_se": 1.0,
        "slope": 1.0 if accept else 5.0,
        "slope_se": 0.1,
        "failed": False,
    })


def test_single_acceptable_candidate_survives(make_config, one_pool_observations):
    grids = [
        make_pool_grid("p1", turnover_time=[100.0, 10000.0], initial_concentration=[50.0, 100.0],
                       input_magnitude=[0.0], transfer_fraction=[0.5]),
        make_pool_grid("p2", turnover_time=[10.0], initial_concentration=[1.0], input_magnitude=[0.0]),
    ]
    config = make_config(grids)

    table = run_stage(1, config, one_pool_observations)
    assert len(table) == 1
    row = table.iloc[0]
    assert row["stage_index"] == 1
    assert row["parent_index"] == 0
    assert row["turnover_time"] == pytest.approx(100.0)
    assert row["initial_concentration"] == 100.0
    assert row["transfer_fraction"] == 0.5
    assert list(table.columns) == STAGE_COLUMNS


def test_every_survivor_passes_acceptance(make_config, two_pool_grids, two_pool_observations):
    config = make_config(two_pool_grids)
    t1 = run_stage(1, config, two_pool_observations)
    t2 = run_stage(2, config, two_pool_observations, [t1])
    for table in (t1, t2):
        assert acceptance_mask(table["intercept"], table["intercept_se"],
                               table["slope"], table["slope_se"]).all()
        assert (table["rmse"] >= 0).all()
        np.testing.assert_array_equal(table["stage_index"], np.arange(1, len(table) + 1))
    assert set(t2["parent_index"]) <= set(t1["stage_index"])
    assert t2["transfer_fraction"].isna().all()


def test_transfer_fraction_grid_is_crossed_after_simulation(make_config, two_pool_grids, two_pool_observations):
    config = make_config(two_pool_grids)
    evaluated = evaluate_candidates(1, config, two_pool_observations)
    assert len(evaluated) == 2 * 2 * 1 * 2
    by_tf = evaluated.groupby("transfer_fraction")["rmse"].apply(list)
    assert by_tf[0.5] == by_tf[0.75]


def test_worker_count_does_not_change_results(make_config, two_pool_grids, two_pool_observations):
    serial = make_config(two_pool_grids, cores=1)
    parallel = make_config(two_pool_grids, cores=2)
    t1 = run_stage(1, serial, two_pool_observations)
    pd.testing.assert_frame_equal(evaluate_candidates(2, serial, two_pool_observations, [t1]),
                                  evaluate_candidates(2, parallel, two_pool_observations, [t1]))


def test_stage_is_loaded_from_cache(make_config, two_pool_grids, two_pool_observations, tmp_path, monkeypatch):
    config = make_config(two_pool_grids)
    cache = StageCache(tmp_path / "stages")
    first = run_stage(1, config, two_pool_observations, cache=cache)
    assert cache.exists(stage_key(1, 2))

    def _fail(*args, **kwargs):
        raise AssertionError("stage was recomputed")

    monkeypatch.setattr(stage_mod, "evaluate_candidates", _fail)
    again = run_stage(1, config, two_pool_observations, cache=cache)
    pd.testing.assert_frame_equal(first, again, check_exact=True)


@pytest.mark.parametrize("seed", range(12))
def test_subsample_keeps_best(seed):
    df = deduplicate(_evaluated(40, seed=seed).drop(columns="failed"))
    for size in (1, 2, 5, 17, 39):
        sub = subsample_candidates(df, size, stage_rng(seed, 1))
        assert size <= len(sub) <= size + 1
        assert sub["rmse"].min() == df["rmse"].min()
        assert not sub.duplicated(subset=PARAM_COLUMNS).any()


def test_subsample_is_reproducible_and_order_independent():
    df = _evaluated(30).drop(columns="failed")
    a = subsample_candidates(df, 8, stage_rng(42, 1))
    b = subsample_candidates(df.sample(frac=1.0, random_state=5), 8, stage_rng(42, 1))
    pd.testing.assert_frame_equal(a, b)
    c = subsample_candidates(df, 8, stage_rng(42, 2))
    assert not a.equals(c)


def test_terminal_stage_keeps_every_deduplicated_candidate():
    evaluated = _evaluated(60)
    table, stats = select_candidates(evaluated, 2, 2, subsample_size=5, seed=42)
    assert stats["kept"] == stats["deduplicated"] == stats["below_median"] == len(table)
    assert len(table) == int(np.sum(evaluated["rmse"] <= np.median(evaluated["rmse"])))


def test_non_terminal_stage_is_subsampled():
    table, stats = select_candidates(_evaluated(60), 1, 2, subsample_size=5, seed=42)
    assert stats["kept"] in (5, 6)
    assert len(table) == stats["kept"]
    assert table["rmse"].min() == pytest.approx(below_median(_evaluated(60))["rmse"].min())


def test_failed_candidates_are_dropped():
    evaluated = _evaluated(10)
    evaluated.loc[:3, "failed"] = True
    evaluated.loc[:3, ["rmse", "intercept", "intercept_se", "slope", "slope_se"]] = np.nan
    table, stats = select_candidates(evaluated, 1, 1, subsample_size=50, seed=1)
    assert stats["failed"] == 4
    assert stats["accepted"] == 6


def test_no_acceptable_candidates_is_fatal():
    with pytest.raises(NoCandidatesSurvive) as info:
        select_candidates(_evaluated(10, accept=False), 3, 4, subsample_size=5, seed=0)
    assert info.value.stage == 3
    assert info.value.stats["accepted"] == 0
    assert info.value.stats["evaluated"] == 10


@pytest.fixture
def one_pool_grids():
    return [
        make_pool_grid("p1", turnover_time=[100.0, 10000.0], initial_concentration=[50.0, 100.0],
                       input_magnitude=[0.0], transfer_fraction=[0.5]),
        make_pool_grid("p2", turnover_time=[10.0], initial_concentration=[1.0], input_magnitude=[0.0]),
    ]


def test_integration_failures_are_marked_not_raised(make_config, one_pool_grids, one_pool_observations):
    config = make_config(one_pool_grids, ode_max_steps=3)
    evaluated = evaluate_candidates(1, config, one_pool_observations)
    assert len(evaluated) == 4
    assert evaluated["failed"].all()
    assert evaluated["rmse"].isna().all()

    with pytest.raises(NoCandidatesSurvive) as info:
        run_stage(1, config, one_pool_observations)
    assert info.value.stats["failed"] == info.value.stats["evaluated"] == 4


def test_stage_continues_past_failed_candidates(make_config, one_pool_grids, one_pool_observations, monkeypatch):
    real_simulate = stage_mod.simulate_cascade

    def _slow_pool_fails(y0, times, M, *args, **kwargs):
        if np.isclose(M[-1, -1], -1e-4):
            raise IntegrationFailure("[ODE] step budget exhausted")
        return real_simulate(y0, times, M, *args, **kwargs)

    monkeypatch.setattr(stage_mod, "simulate_cascade", _slow_pool_fails)
    config = make_config(one_pool_grids)

    evaluated = evaluate_candidates(1, config, one_pool_observations)
    np.testing.assert_array_equal(evaluated["failed"], np.isclose(evaluated["turnover_time"], 10000.0))

    table = run_stage(1, config, one_pool_observations)
    assert len(table) == 1
    assert table.loc[0, "turnover_time"] == pytest.approx(100.0)
    assert table.loc[0, "initial_concentration"] == 100.0
