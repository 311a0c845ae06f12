#!/usr/bin/env python3

from __future__ import annotations

import pandas as pd
import pytest

from hlsdrought.phenology.pixel_year import DERIVATIVE_COLUMNS, SPLINE_COLUMNS
from hlsdrought.phenology.summary import summarize, summarize_derivatives, summarize_splines, totals


def _derivs() -> pd.DataFrame:
    rows = [
        ("a", 2014, 1, 0.002, 0.001, 0.003, "*"),
        ("a", 2014, 2, -0.002, -0.003, -0.001, "*"),
        ("b", 2014, 1, 0.000, -0.001, 0.001, ""),
        ("b", 2014, 2, 0.001, -0.001, 0.002, ""),
        ("a", 2015, 1, 0.004, 0.002, 0.006, "*"),
    ]
    return pd.DataFrame(rows, columns=DERIVATIVE_COLUMNS)


def test_summarize_derivatives_by_year():
    s = summarize_derivatives(_derivs()).set_index("year")
    assert s.loc[2014, "n_pixels"] == 2
    assert s.loc[2014, "n_days"] == 4
    assert s.loc[2014, "pct_sig"] == pytest.approx(50.0)
    assert s.loc[2014, "pct_sig_greening"] == pytest.approx(25.0)
    assert s.loc[2014, "pct_sig_browning"] == pytest.approx(25.0)
    assert s.loc[2015, "pct_sig"] == pytest.approx(100.0)
    assert s.loc[2014, "mean_deriv"] == pytest.approx(0.00025)


def test_summarize_splines_by_year():
    df = pd.DataFrame(
        [("a", 2014, 1, 0.3, 0.01, 0.28, 0.32), ("b", 2014, 1, 0.5, 0.03, 0.44, 0.56)],
        columns=SPLINE_COLUMNS,
    )
    s = summarize_splines(df).set_index("year")
    assert s.loc[2014, "n_pixels"] == 2
    assert s.loc[2014, "mean_ndvi"] == pytest.approx(0.4)
    assert s.loc[2014, "median_se"] == pytest.approx(0.02)


def test_dispatch_and_errors():
    assert "pct_sig" in summarize(_derivs()).columns
    with pytest.raises(ValueError):
        summarize(pd.DataFrame({"x": [1]}))
    with pytest.raises(ValueError, match="missing columns"):
        summarize_derivatives(_derivs().drop(columns=["sig"]))


def test_totals():
    t = totals(_derivs())
    assert t == {
        "records": 5,
        "pixels": 2,
        "pixel_years": 3,
        "significant": 3,
        "pct_significant": pytest.approx(60.0),
    }
