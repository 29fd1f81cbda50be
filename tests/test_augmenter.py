from __future__ import annotations

import math

import pytest

from conftest import make_window
from data_loader.augmenter import FEATURE_SCHEMA_V1, CLIP, atr_of, compute_features, efficiency_ratio
from data_loader.loader import InstrumentInfo, SnapshotCache


def test_identical_window_gives_identical_vector():
    a = compute_features(make_window(n=40))
    b = compute_features(make_window(n=40))
    assert a == b
    assert a.values == b.values


def test_vector_follows_schema_and_is_bounded():
    fv = compute_features(make_window(n=40))
    assert fv.names == tuple(FEATURE_SCHEMA_V1)
    assert len(fv.values) == len(FEATURE_SCHEMA_V1)
    assert all(math.isfinite(v) and -CLIP <= v <= CLIP for v in fv.values)
    assert fv.schema_version == "v1"
    assert not fv.cold_start
    assert fv.get("ret_5") > 0                # rising line


def test_short_history_is_flagged_cold_start():
    fv = compute_features(make_window(n=5), min_window=20)
    assert fv.cold_start
    assert len(fv.values) == len(FEATURE_SCHEMA_V1)


def test_non_finite_input_is_sanitized_with_lower_quality():
    win = make_window(n=30, ema5=float("inf"), ema21=100.0)
    fv = compute_features(win)
    assert fv.sanitized
    assert fv.get("venue_momentum") == 0.0
    assert fv.quality == pytest.approx(0.8)


def test_empty_window_is_rejected():
    with pytest.raises(ValueError):
        compute_features([])


def test_atr_prefers_venue_value_then_falls_back():
    assert atr_of(make_window(n=5, atr=2.5)) == 2.5
    no_venue = make_window(n=30, atr=0)
    assert atr_of(no_venue) > 0
    single = make_window(n=1, atr=0)
    assert atr_of(single) == pytest.approx(single[0].price * 0.001)


def test_efficiency_ratio_straight_line_is_one():
    assert efficiency_ratio([1.0, 2.0, 3.0, 4.0]) == pytest.approx(1.0)
    assert efficiency_ratio([1.0, 2.0, 1.0]) == pytest.approx(0.0)


def test_cache_keeps_order_and_capacity():
    cache = SnapshotCache(capacity=10)
    win = make_window(n=15)
    for snap in win:
        assert cache.append(snap)
    assert len(cache.window("ES")) == 10
    assert cache.window("ES")[0] == win[5]
    assert not cache.append(win[0])           # older than newest
    assert cache.window("ES")[-1] == win[-1]


def test_cache_registry_and_bootstrap():
    cache = SnapshotCache(capacity=50)
    cache.register(InstrumentInfo("NQ", tick_size=0.25, point_value=20.0))
    assert cache.info("NQ").point_value == 20.0
    assert cache.info("UNKNOWN").tick_size == 0.0

    def load(sym, n):
        if sym == "BAD":
            raise ConnectionError("store down")
        return list(reversed(make_window(instrument=sym, n=12)))

    assert cache.bootstrap(["ES", "BAD"], load) == 12
    assert [s.timestamp for s in cache.window("ES")] == sorted(s.timestamp for s in cache.window("ES"))
