#!/usr/bin/env python3

from __future__ import annotations

import os

import pandas as pd
import pytest

from hlsdrought.phenology import runner as runner_mod
from hlsdrought.phenology.checkpoint import CheckpointStore, checkpoint_path_for
from hlsdrought.phenology.pixel_year import (
    DERIVATIVE_COLUMNS,
    SPLINE_COLUMNS,
    PixelYearProcessor,
    Product,
)
from hlsdrought.phenology.runner import BatchDerivativeRunner, ResultBuffer, RunState, run_product
from hlsdrought.timeseries import TimeseriesError, read_table

KEYS = ["pixel_id", "year", "yday"]

_sweep = runner_mod.sweep_pixel


def _exit_on_p1(pixel_series, pixel_id, config, product):
    # worker task that kills its process outright for one pixel
    if pixel_id == "P1":
        os._exit(1)
    return _sweep(pixel_series, pixel_id, config, product)


def _sorted(df: pd.DataFrame) -> pd.DataFrame:
    return df.sort_values(KEYS).reset_index(drop=True)


def _assert_same(a: pd.DataFrame, b: pd.DataFrame) -> None:
    pd.testing.assert_frame_equal(_sorted(a), _sorted(b), check_dtype=False)


def test_fresh_run_writes_output_and_clears_checkpoint(tmp_path, timeseries, fast_config):
    out = tmp_path / "derivs.parquet"
    runner = BatchDerivativeRunner(fast_config, output_path=out)
    results = runner.run(timeseries)

    assert runner.state is RunState.DONE
    assert list(results.columns) == DERIVATIVE_COLUMNS
    assert len(results) == 3 * 3 * 365
    assert out.exists()
    assert not checkpoint_path_for(out).exists()
    _assert_same(read_table(out), results)

    stats = runner.stats
    assert stats.processed == 3 and stats.failed == 0 and stats.skipped == 0
    assert stats.year_status == {"ok": 9}
    assert stats.n_records == len(results)
    assert 0.0 < stats.pct_significant < 100.0


def test_no_duplicate_pixel_year_days(timeseries, fast_config):
    results = BatchDerivativeRunner(fast_config).run(timeseries)
    assert not results.duplicated(KEYS).any()


def test_resume_after_interruption_matches_fresh_run(tmp_path, timeseries, fast_config, monkeypatch):
    fresh = BatchDerivativeRunner(fast_config).run(timeseries)

    out = tmp_path / "derivs.csv"
    original = PixelYearProcessor.process_pixel
    calls = {"n": 0}

    def _dies_on_third(self, series, pixel_id):
        calls["n"] += 1
        if calls["n"] == 3:
            raise KeyboardInterrupt
        return original(self, series, pixel_id)

    monkeypatch.setattr(PixelYearProcessor, "process_pixel", _dies_on_third)
    with pytest.raises(KeyboardInterrupt):
        BatchDerivativeRunner(fast_config, output_path=out).run(timeseries)
    monkeypatch.setattr(PixelYearProcessor, "process_pixel", original)

    ck = CheckpointStore.for_output(out)
    assert CheckpointStore.processed_pixels(ck.load()) == {"P1", "P2"}
    assert not out.exists()

    runner = BatchDerivativeRunner(fast_config, output_path=out)
    resumed = runner.run(timeseries)
    assert runner.stats.n_pixels_resumed == 2
    assert runner.stats.processed == 1
    _assert_same(resumed, fresh)
    assert not ck.exists()


def test_complete_checkpoint_goes_straight_to_output(tmp_path, timeseries, fast_config, monkeypatch):
    out = tmp_path / "derivs.parquet"
    done = BatchDerivativeRunner(fast_config).run(timeseries)
    CheckpointStore.for_output(out).save(done)

    def _never(*args, **kwargs):
        raise AssertionError("no pixel should be processed")

    monkeypatch.setattr(PixelYearProcessor, "process_pixel", _never)
    runner = BatchDerivativeRunner(fast_config, output_path=out)
    results = runner.run(timeseries)
    assert runner.stats.processed == 0
    assert runner.stats.n_pixels_resumed == 3
    _assert_same(results, done)
    assert out.exists()
    assert not checkpoint_path_for(out).exists()


def test_no_resume_ignores_checkpoint(tmp_path, timeseries, fast_config):
    out = tmp_path / "derivs.parquet"
    partial = BatchDerivativeRunner(fast_config).run(timeseries[timeseries["pixel_id"] == "P1"])
    CheckpointStore.for_output(out).save(partial)

    cfg = fast_config.with_overrides(resume_from_checkpoint=False)
    runner = BatchDerivativeRunner(cfg, output_path=out)
    runner.run(timeseries)
    assert runner.stats.n_pixels_resumed == 0
    assert runner.stats.processed == 3


def test_failing_pixel_is_counted_and_others_continue(timeseries, fast_config, monkeypatch):
    original = PixelYearProcessor.process_pixel

    def _p2_breaks(self, series, pixel_id):
        if pixel_id == "P2":
            raise RuntimeError("worker blew up")
        return original(self, series, pixel_id)

    monkeypatch.setattr(PixelYearProcessor, "process_pixel", _p2_breaks)
    runner = BatchDerivativeRunner(fast_config)
    results = runner.run(timeseries)
    assert runner.stats.failed == 1
    assert runner.stats.processed == 2
    assert set(results["pixel_id"]) == {"P1", "P3"}
    assert not runner.all_failed


def test_all_failed_flag(timeseries, fast_config, monkeypatch):
    def _boom(self, series, pixel_id):
        raise RuntimeError("nope")

    monkeypatch.setattr(PixelYearProcessor, "process_pixel", _boom)
    runner = BatchDerivativeRunner(fast_config)
    results = runner.run(timeseries)
    assert results.empty
    assert runner.all_failed


def test_pixels_without_enough_data_are_skipped(timeseries, make_series, fast_config):
    sparse = make_series("P9", step=40)
    runner = BatchDerivativeRunner(fast_config)
    results = runner.run(pd.concat([timeseries, sparse], ignore_index=True))
    assert runner.stats.skipped == 1
    assert "P9" not in set(results["pixel_id"])
    assert runner.stats.year_status["insufficient_data"] == 3


def test_empty_timeseries_is_fatal(fast_config):
    with pytest.raises(TimeseriesError):
        BatchDerivativeRunner(fast_config).run(pd.DataFrame(columns=["pixel_id", "year", "yday", "ndvi"]))


def test_parallel_matches_sequential(timeseries, fast_config):
    sequential = BatchDerivativeRunner(fast_config).run(timeseries)
    parallel = BatchDerivativeRunner(fast_config.with_overrides(n_cores=2)).run(timeseries)
    _assert_same(parallel, sequential)


def test_dead_worker_does_not_take_siblings_down(timeseries, fast_config, monkeypatch):
    monkeypatch.setattr(runner_mod, "sweep_pixel", _exit_on_p1)
    runner = BatchDerivativeRunner(fast_config.with_overrides(n_cores=3))
    results = runner.run(timeseries)
    assert runner.stats.failed == 1
    assert runner.stats.processed == 2
    assert set(results["pixel_id"]) == {"P2", "P3"}
    assert len(results) == 2 * 3 * 365


def test_splines_product(tmp_path, timeseries, fast_config):
    out = tmp_path / "splines.csv"
    results, stats = run_product(timeseries, fast_config, Product.SPLINES, output_path=out)
    assert list(results.columns) == SPLINE_COLUMNS
    assert len(results) == 3 * 3 * 365
    assert stats.pct_significant is None
    assert out.exists()


def test_result_buffer_materializes_once():
    buf = ResultBuffer(["a"])
    assert buf.materialize().empty
    buf.append(pd.DataFrame({"a": [1, 2]}))
    buf.append(pd.DataFrame({"a": [3]}))
    first = buf.materialize()
    assert first["a"].tolist() == [1, 2, 3]
    assert buf.materialize() is first
