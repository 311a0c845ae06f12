#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from hlsdrought.phenology.pixel_year import (
    DERIVATIVE_COLUMNS,
    SPLINE_COLUMNS,
    PixelYearProcessor,
    PixelYearStatus,
    Product,
)


def _sparse_year(n_obs: int, year: int = 2014, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    yday = np.linspace(5, 360, n_obs).round().astype(int)
    ndvi = 0.4 - 0.3 * np.cos(2 * np.pi * yday / 365.0) + rng.normal(0, 0.02, n_obs)
    return pd.DataFrame({"pixel_id": "X", "year": year, "yday": yday, "ndvi": ndvi})


def test_interior_year_emits_365_days(make_series, fast_config):
    outcome = PixelYearProcessor(fast_config).process(make_series(seed=4), "P1", 2014)
    assert outcome.ok
    assert outcome.basis_size == 12
    table = outcome.records
    assert list(table.columns) == DERIVATIVE_COLUMNS
    assert len(table) == 365
    assert table["yday"].tolist() == list(range(1, 366))
    assert (table["pixel_id"] == "P1").all()
    assert (table["year"] == 2014).all()


def test_boundary_years_use_reduced_basis(make_series, fast_config):
    proc = PixelYearProcessor(fast_config)
    series = make_series(seed=5)
    assert proc.process(series, "P1", 2013).basis_size == 11
    assert proc.process(series, "P1", 2015).basis_size == 11
    assert proc.process(series, "P1", 2013).ok


def test_observation_gate(fast_config):
    cfg = fast_config.with_overrides(target_years=(2014,))
    proc = PixelYearProcessor(cfg)

    short = proc.process(_sparse_year(cfg.min_observations - 1), "X", 2014)
    assert short.status is PixelYearStatus.INSUFFICIENT_DATA
    assert short.records is None
    assert short.n_target_obs == cfg.min_observations - 1

    enough = proc.process(_sparse_year(cfg.min_observations), "X", 2014)
    assert enough.ok
    assert len(enough.records) == 365


def test_padding_does_not_count_toward_gate(make_series, fast_config):
    # only the adjacent years have data; the target year is empty
    series = make_series(years=(2013, 2015), seed=6)
    outcome = PixelYearProcessor(fast_config).process(series, "P1", 2014)
    assert outcome.status is PixelYearStatus.INSUFFICIENT_DATA
    assert outcome.n_target_obs == 0


def test_degenerate_days_are_fit_errors(fast_config):
    # enough observations, too few distinct days for the basis
    series = pd.DataFrame({
        "pixel_id": "D",
        "year": 2014,
        "yday": np.repeat([50, 100, 150, 200, 250], 4),
        "ndvi": np.linspace(0.2, 0.6, 20),
    })
    outcome = PixelYearProcessor(fast_config.with_overrides(edge_padding_days=0)).process(series, "D", 2014)
    assert outcome.status is PixelYearStatus.FIT_ERROR
    assert outcome.records is None


def test_seasonal_derivative_shape(make_series, fast_config):
    table = PixelYearProcessor(fast_config).process(make_series(seed=7), "P1", 2014).records
    mean = table.set_index("yday")["deriv_mean"]
    sig = table.set_index("yday")["sig"]

    assert 60 <= mean.idxmax() <= 120
    assert 240 <= mean.idxmin() <= 300
    # greenup and senescence are detected
    assert (sig.loc[80:100] == "*").all()
    assert (sig.loc[265:285] == "*").all()
    assert (mean.loc[80:100] > 0).all()
    assert (mean.loc[265:285] < 0).all()
    # the curve turns over once in mid-summer
    assert mean.loc[150] > 0 and mean.loc[215] < 0
    # flat at the peak and at the winter trough
    assert (sig.loc[150:215] == "").any()
    assert (sig.loc[1:10] == "").any()
    assert (sig.loc[356:365] == "").any()

    lwr, upr = table["deriv_lwr"], table["deriv_upr"]
    assert ((lwr <= table["deriv_mean"]) & (table["deriv_mean"] <= upr)).all()
    assert ((table["sig"] == "*") == ((lwr > 0) | (upr < 0))).all()


def test_results_do_not_depend_on_call_order(make_series, fast_config):
    proc = PixelYearProcessor(fast_config)
    a, b = make_series("A", seed=8), make_series("B", seed=9)
    first = proc.process(a, "A", 2014).records
    proc.process(b, "B", 2014)
    again = proc.process(a, "A", 2014).records
    pd.testing.assert_frame_equal(first, again)


def test_splines_product(make_series, fast_config):
    outcome = PixelYearProcessor(fast_config, Product.SPLINES).process(make_series(seed=10), "P1", 2014)
    table = outcome.records
    assert list(table.columns) == SPLINE_COLUMNS
    assert len(table) == 365
    assert (table["year_se"] > 0).all()
    # peak greenness mid-year
    assert 150 <= table.set_index("yday")["year_mean"].idxmax() <= 215


def test_process_pixel_sweeps_all_years(make_series, fast_config):
    series = make_series(seed=12)
    # remove most of 2015 so it fails the gate
    series = series[~((series["year"] == 2015) & (series["yday"] > 60))]
    result = PixelYearProcessor(fast_config).process_pixel(series, "P1")
    assert result.status_counts == {"ok": 2, "insufficient_data": 1}
    assert result.n_years_ok == 2
    assert sorted(result.records["year"].unique()) == [2013, 2014]
    assert len(result.records) == 2 * 365


def test_process_pixel_with_too_few_rows(fast_config):
    series = _sparse_year(5)
    result = PixelYearProcessor(fast_config).process_pixel(series, "X")
    assert result.records is None
    assert result.status_counts == {"insufficient_data": len(fast_config.target_years)}


@pytest.mark.parametrize("basis", ["tp", "ps"])
def test_both_bases_run(make_series, fast_config, basis):
    cfg = fast_config.with_overrides(gam_basis=basis)
    assert PixelYearProcessor(cfg).process(make_series(seed=13), "P1", 2014).ok


def _single_year(ndvi_fn) -> pd.DataFrame:
    yday = np.arange(1, 366, 8)
    return pd.DataFrame({"pixel_id": "L", "year": 2014, "yday": yday, "ndvi": ndvi_fn(yday)})


def test_constant_slope_is_significant(fast_config):
    cfg = fast_config.with_overrides(edge_padding_days=0)
    rng = np.random.default_rng(14)
    series = _single_year(lambda d: 0.1 + 0.001 * d + rng.normal(0, 0.02, d.size))
    table = PixelYearProcessor(cfg).process(series, "L", 2014).records
    assert (table["sig"] == "*").mean() > 0.9
    assert table["deriv_mean"].between(0.0005, 0.0015).mean() > 0.9


def test_flat_series_is_not_significant(fast_config):
    cfg = fast_config.with_overrides(edge_padding_days=0)
    series = _single_year(lambda d: 0.4 + 0.02 * (-1.0) ** np.arange(d.size))
    table = PixelYearProcessor(cfg).process(series, "L", 2014).records
    assert (table["sig"] == "").mean() > 0.9
