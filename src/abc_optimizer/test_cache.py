"""
Tests for the two-tier cache.

Testing Framework: pytest + Hypothesis
"""

import os
import tempfile

import numpy as np
import pytest
from hypothesis import given, strategies as st, settings

from abc_optimizer import cache as cache_module
from abc_optimizer.cache import (
    BYTES_PER_MB,
    FAST_TIER,
    SLOW_TIER,
    TieredCache,
    CacheIOFailure,
    estimate_size,
    safe_filename,
)


@pytest.fixture
def cache(tmp_path):
    with TieredCache(str(tmp_path / "cache"), max_memory_mb=1.0) as c:
        yield c


def test_fast_tier_round_trip(cache):
    payload = np.arange(100, dtype=np.float64)
    assert cache.store("history", payload) == FAST_TIER
    assert np.array_equal(cache.load("history"), payload)
    assert cache.current_memory_bytes == payload.nbytes


def test_quota_overflow_goes_to_slow_tier(cache):
    big = np.zeros(BYTES_PER_MB // 8 + 1)
    assert cache.store("big", big) == SLOW_TIER
    assert cache.current_memory_bytes == 0
    assert np.array_equal(cache.load("big"), big)


def test_forced_slow_tier(cache):
    payload = {"positions": [[0.1, 0.2]], "costs": [3.0]}
    assert cache.store("window", payload, force_slow_tier=True) == SLOW_TIER
    assert cache.location("window") == SLOW_TIER
    assert cache.load("window") == payload


def test_zero_quota_sends_everything_to_disk(tmp_path):
    with TieredCache(str(tmp_path / "c"), max_memory_mb=0) as c:
        assert c.store("a", [1, 2, 3]) == SLOW_TIER
        assert c.load("a") == [1, 2, 3]
        assert c.get_status()["utilisation_percent"] == 0.0


def test_unknown_key_raises_key_error(cache):
    with pytest.raises(KeyError):
        cache.load("missing")


def test_cleanup_evicts_fast_entries_only(cache):
    cache.store("fast", np.ones(10))
    cache.store("slow", np.ones(10), force_slow_tier=True)

    cache.cleanup()

    assert cache.current_memory_bytes == 0
    with pytest.raises(KeyError):
        cache.load("fast")
    assert np.array_equal(cache.load("slow"), np.ones(10))


def test_overwrite_replaces_entry_and_accounting(cache):
    cache.store("key", np.zeros(100))
    cache.store("key", np.zeros(10))
    assert cache.current_memory_bytes == np.zeros(10).nbytes
    assert len(cache) == 1

    cache.store("key", np.zeros(10), force_slow_tier=True)
    assert cache.current_memory_bytes == 0
    assert cache.location("key") == SLOW_TIER


def test_remove(cache):
    cache.store("fast", np.zeros(10))
    cache.store("slow", np.zeros(10), force_slow_tier=True)
    slow_file = cache._entries["slow"].file_path

    cache.remove("fast")
    cache.remove("slow")
    cache.remove("never-stored")

    assert cache.current_memory_bytes == 0
    assert not os.path.exists(slow_file)
    assert "fast" not in cache and "slow" not in cache


def test_get_status(cache):
    cache.store("fast", np.zeros(1024))
    cache.store("slow", [1], force_slow_tier=True)
    status = cache.get_status()
    assert status["num_cached_items"] == 2
    assert status["num_fast_items"] == 1
    assert status["num_slow_items"] == 1
    assert status["max_memory_mb"] == pytest.approx(1.0)
    assert status["current_memory_mb"] == pytest.approx(8192 / BYTES_PER_MB)
    assert sorted(status["keys"]) == ["fast", "slow"]


def test_slow_write_failure_falls_back_to_fast_tier(cache, monkeypatch):
    def broken_dump(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(cache_module.dill, "dump", broken_dump)
    assert cache.store("window", [1, 2], force_slow_tier=True) == FAST_TIER
    assert cache.load("window") == [1, 2]
    assert not [f for f in os.listdir(cache.cache_dir) if f.endswith(".tmp")]


def test_slow_write_failure_without_room_raises(tmp_path, monkeypatch):
    def broken_dump(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(cache_module.dill, "dump", broken_dump)
    with TieredCache(str(tmp_path / "c"), max_memory_mb=0) as c:
        with pytest.raises(CacheIOFailure):
            c.store("window", [1, 2])
        assert "window" not in c


def test_slow_read_failure_raises(cache):
    cache.store("slow", [1, 2, 3], force_slow_tier=True)
    os.remove(cache._entries["slow"].file_path)
    with pytest.raises(CacheIOFailure):
        cache.load("slow")


def test_owned_temporary_directory_removed_on_close():
    c = TieredCache(max_memory_mb=0)
    cache_dir = c.cache_dir
    c.store("a", 1)
    assert os.path.isdir(cache_dir)
    c.close()
    assert not os.path.exists(cache_dir)


def test_existing_directory_is_kept(tmp_path):
    with TieredCache(str(tmp_path), max_memory_mb=0) as c:
        c.store("a", 1)
    assert os.path.isdir(tmp_path)
    assert os.listdir(tmp_path) == []


def test_safe_filename_distinguishes_similar_keys():
    assert safe_filename("a/b") != safe_filename("a_b")
    assert "/" not in safe_filename("a/b")


def test_estimate_size_uses_nbytes():
    assert estimate_size(np.zeros(16)) == 128
    assert estimate_size({"a": 1}) > 0


# =============================================================================
# Property: the fast tier never exceeds its quota
# =============================================================================

@settings(max_examples=50, deadline=None)
@given(
    quota_kb=st.integers(min_value=0, max_value=64),
    sizes=st.lists(st.integers(min_value=1, max_value=2048), min_size=1, max_size=20),
)
def test_property_fast_tier_within_quota(quota_kb, sizes):
    with tempfile.TemporaryDirectory() as tmp:
        with TieredCache(tmp, max_memory_mb=quota_kb / 1024) as c:
            for i, n in enumerate(sizes):
                c.store(f"key_{i % 5}", np.zeros(n))
                assert c.current_memory_bytes <= c.max_memory_bytes
            for i, n in list(enumerate(sizes))[-5:]:
                assert c.load(f"key_{i % 5}").shape == (n,)
