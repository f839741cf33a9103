import numpy as np
import pandas as pd
import pytest

from poolchain.cache import StageCache, stage_key, validate_stage_table
from poolchain.errors import CacheCorruption
from poolchain.params import STAGE_COLUMNS


@pytest.fixture
def stage_table():
    rng = np.random.default_rng(3)
    n = 5
    tau = rng.uniform(1.0, 1e4, n)
    return pd.DataFrame({
        "stage_index": np.arange(1, n + 1),
        "parent_index": [1, 1, 2, 3, 3],
        "turnover_time": tau,
        "decay_rate": 1.0 / tau,
        "initial_concentration": rng.uniform(0, 100, n),
        "input_magnitude": [0.0, 0.1, 1.0 / 3.0, 2.0, 0.0],
        "input_duration": 50.0,
        "transfer_fraction": [0.1, np.nan, 0.7, np.pi / 10, 1.0],
        "rmse": rng.uniform(0, 5, n),
        "intercept": rng.normal(size=n),
        "intercept_se": rng.uniform(0.5, 1.0, n),
        "slope": rng.normal(1.0, 0.1, n),
        "slope_se": rng.uniform(0.1, 0.2, n),
    })[STAGE_COLUMNS]


def test_stage_key():
    assert stage_key(2, 3) == "stage2_of3"


def test_save_then_load_is_bit_identical(tmp_path, stage_table):
    cache = StageCache(tmp_path / "cache")
    key = stage_key(1, 2)
    assert cache.load(key) is None

    path = cache.save(key, stage_table)
    assert path.is_file()
    assert not [p for p in path.parent.iterdir() if p.suffix == ".tmp"]

    loaded = cache.load(key)
    pd.testing.assert_frame_equal(loaded, validate_stage_table(stage_table), check_exact=True)


def test_corrupt_file_is_a_miss(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    key = stage_key(1, 1)
    cache.path(key).write_text("stage_index,rmse\n1,0.5\n")
    with pytest.raises(CacheCorruption):
        cache.read(key)
    assert cache.load(key) is None

    cache.save(key, stage_table)
    assert cache.load(key) is not None


def test_non_dense_index_rejected(stage_table):
    bad = stage_table.copy()
    bad.loc[2, "stage_index"] = 9
    with pytest.raises(CacheCorruption, match="dense"):
        validate_stage_table(bad)


def test_empty_table_rejected():
    with pytest.raises(CacheCorruption):
        validate_stage_table(pd.DataFrame(columns=STAGE_COLUMNS))


def test_save_refuses_invalid_table(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    bad = stage_table.drop(columns="rmse")
    with pytest.raises(CacheCorruption):
        cache.save("stage1_of1", bad)
    assert not cache.exists("stage1_of1")


def test_clear_removes_stage_tables(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    cache.save(stage_key(1, 2), stage_table)
    cache.save(stage_key(2, 2), stage_table)
    (tmp_path / "notes.csv").write_text("x\n1\n")
    assert cache.clear() == 2
    assert not cache.exists(stage_key(1, 2))
    assert (tmp_path / "notes.csv").exists()


def test_fingerprint_mismatch_is_a_miss(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    key = stage_key(1, 2)
    cache.save(key, stage_table, fingerprint="a1")
    assert cache.fingerprint(key) == "a1"
    assert cache.load(key, fingerprint="a1") is not None
    assert cache.load(key, fingerprint="b2") is None
    assert cache.load(key) is not None

    cache.save(key, stage_table)
    assert cache.fingerprint(key) is None
    assert cache.load(key, fingerprint="a1") is None


def test_unreadable_fingerprint_is_a_miss(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    key = stage_key(2, 2)
    cache.save(key, stage_table, fingerprint="a1")
    cache.meta_path(key).write_text("{not json")
    assert cache.load(key, fingerprint="a1") is None


def test_failed_write_keeps_previous_table(tmp_path, stage_table, monkeypatch):
    cache = StageCache(tmp_path)
    key = stage_key(1, 2)
    path = cache.save(key, stage_table, fingerprint="a1")
    before = path.read_bytes()

    def _interrupted_to_csv(self, handle, *args, **kwargs):
        handle.write("stage_index,parent_index,turnover_time\n1,1,")
        raise OSError("disk full")

    monkeypatch.setattr(pd.DataFrame, "to_csv", _interrupted_to_csv)
    with pytest.raises(OSError, match="disk full"):
        cache.save(key, stage_table.assign(rmse=0.0), fingerprint="b2")
    monkeypatch.undo()

    assert path.read_bytes() == before
    assert not list(tmp_path.glob(".stage*.tmp"))
    # The old table survives but no longer vouches for any inputs.
    assert cache.load(key, fingerprint="a1") is None
    pd.testing.assert_frame_equal(cache.load(key), validate_stage_table(stage_table), check_exact=True)


def test_clear_removes_fingerprints(tmp_path, stage_table):
    cache = StageCache(tmp_path)
    cache.save(stage_key(1, 1), stage_table, fingerprint="a1")
    assert cache.clear() == 1
    assert not cache.meta_path(stage_key(1, 1)).exists()
