#!/usr/bin/env python3
"""summary.py

Per-year roll-ups of phenology outputs for quick sanity checks.

- derivatives: pixels, pixel-days, mean derivative, share of significant days,
  share of significant greening (*, mean > 0) and browning (*, mean < 0)
- splines: pixels, mean / sd of the fitted year curve, median and 95th
  percentile of its standard error
"""

from __future__ import annotations

from typing import List

import pandas as pd

from hlsdrought.phenology.pixel_year import DERIVATIVE_COLUMNS, SPLINE_COLUMNS


def _require(df: pd.DataFrame, columns: List[str], what: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing columns {missing}")


def summarize_derivatives(df: pd.DataFrame) -> pd.DataFrame:
    _require(df, DERIVATIVE_COLUMNS, "Derivatives")
    d = df.assign(
        _sig=(df["sig"] == "*"),
        _up=(df["sig"] == "*") & (df["deriv_mean"] > 0),
        _down=(df["sig"] == "*") & (df["deriv_mean"] < 0),
    )
    g = d.groupby("year")
    out = pd.DataFrame({
        "n_pixels": g["pixel_id"].nunique(),
        "n_days": g.size(),
        "mean_deriv": g["deriv_mean"].mean(),
        "pct_sig": 100.0 * g["_sig"].mean(),
        "pct_sig_greening": 100.0 * g["_up"].mean(),
        "pct_sig_browning": 100.0 * g["_down"].mean(),
    })
    return out.reset_index()


def summarize_splines(df: pd.DataFrame) -> pd.DataFrame:
    _require(df, SPLINE_COLUMNS, "Year splines")
    g = df.groupby("year")
    out = pd.DataFrame({
        "n_pixels": g["pixel_id"].nunique(),
        "mean_ndvi": g["year_mean"].mean(),
        "sd_ndvi": g["year_mean"].std(),
        "median_se": g["year_se"].median(),
        "p95_se": g["year_se"].quantile(0.95),
    })
    return out.reset_index()


def summarize(df: pd.DataFrame) -> pd.DataFrame:
    """Dispatch on the table's columns."""
    if "deriv_mean" in df.columns:
        return summarize_derivatives(df)
    if "year_mean" in df.columns:
        return summarize_splines(df)
    raise ValueError(f"Not a derivatives or year-spline table: {list(df.columns)}")


def totals(df: pd.DataFrame) -> dict:
    """Whole-table counts printed under the by-year summary."""
    out = {
        "records": int(len(df)),
        "pixels": int(df["pixel_id"].nunique()) if len(df) else 0,
        "pixel_years": int(df[["pixel_id", "year"]].drop_duplicates().shape[0]) if len(df) else 0,
    }
    if "sig" in df.columns:
        n_sig = int((df["sig"] == "*").sum())
        out["significant"] = n_sig
        out["pct_significant"] = 100.0 * n_sig / len(df) if len(df) else 0.0
    return out
