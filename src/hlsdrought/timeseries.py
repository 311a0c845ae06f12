#!/usr/bin/env python3
"""hlsdrought.timeseries

Read and write the long-form NDVI tables exchanged between pipeline phases.

Input (from the 4 km aggregation phase): one row per pixel-year-day
observation with columns

    pixel_id, year, date, yday, ndvi

Column names vary between upstream exports (NDVI vs ndvi, day_of_year vs
yday); they are normalized here once so the rest of the package only ever
sees the canonical names. `yday` and `year` are derived from `date` when the
export omits them.

Outputs (derivatives, year splines, checkpoints) are written as CSV or parquet
depending on the file extension. Writes go to a temporary sibling first and
are renamed into place, so a killed process never leaves a truncated table.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class TimeseriesError(ValueError):
    """Fatal problem with the input timeseries (missing, empty, malformed)."""


# Upstream column name -> canonical name
COLUMN_ALIASES: Dict[str, str] = {
    "NDVI": "ndvi",
    "ndvi": "ndvi",
    "day_of_year": "yday",
    "doy": "yday",
    "DOY": "yday",
    "yday": "yday",
    "pixel_id": "pixel_id",
    "pixel": "pixel_id",
    "year": "year",
    "date": "date",
}

CANONICAL_COLUMNS = ["pixel_id", "year", "yday", "ndvi"]

PARQUET_SUFFIXES = {".parquet", ".pq"}


def _is_parquet(path: Path) -> bool:
    return path.suffix.lower() in PARQUET_SUFFIXES


def read_table(path: Path) -> pd.DataFrame:
    """Read a CSV or parquet table by extension."""
    if _is_parquet(path):
        return pd.read_parquet(path)
    return pd.read_csv(path)


def write_table(df: pd.DataFrame, path: Path, **kwargs: Any) -> None:
    """Write a CSV or parquet table atomically (temp file + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    if _is_parquet(path):
        df.to_parquet(tmp, index=False, **kwargs)
    else:
        df.to_csv(tmp, index=False, **kwargs)
    os.replace(tmp, path)


def normalize_timeseries(df: pd.DataFrame) -> pd.DataFrame:
    """Rename aliases, derive year/yday from date, and drop invalid NDVI rows."""
    renames = {c: COLUMN_ALIASES[c] for c in df.columns if c in COLUMN_ALIASES and COLUMN_ALIASES[c] != c}
    out = df.rename(columns=renames)
    out = out.loc[:, ~out.columns.duplicated()]

    if "pixel_id" not in out.columns or "ndvi" not in out.columns:
        raise TimeseriesError(f"Timeseries needs 'pixel_id' and 'ndvi' columns, got {list(df.columns)}")

    if "date" in out.columns:
        out["date"] = pd.to_datetime(out["date"], errors="coerce")
        if "year" not in out.columns:
            out["year"] = out["date"].dt.year
        if "yday" not in out.columns:
            out["yday"] = out["date"].dt.dayofyear

    missing = [c for c in ("year", "yday") if c not in out.columns]
    if missing:
        raise TimeseriesError(f"Timeseries lacks {missing} and has no 'date' column to derive them from")

    out["ndvi"] = pd.to_numeric(out["ndvi"], errors="coerce")
    valid = (
        np.isfinite(out["ndvi"].to_numpy(dtype=float))
        & out["ndvi"].between(-1.0, 1.0)
        & out["year"].notna()
        & out["yday"].notna()
        & out["pixel_id"].notna()
    )
    n_dropped = int((~valid).sum())
    if n_dropped:
        logger.info("Dropped %d rows with missing/invalid NDVI, year, or yday", n_dropped)
    out = out.loc[valid].copy()

    out["year"] = out["year"].astype(int)
    out["yday"] = out["yday"].astype(int)
    out = out[(out["yday"] >= 1) & (out["yday"] <= 366)]
    return out.reset_index(drop=True)


def load_timeseries(path: Path) -> pd.DataFrame:
    """Load the upstream NDVI timeseries.

    Raises TimeseriesError when the file is missing, empty, or unusable; this
    is the only fatal error in a phenology run.
    """
    path = Path(path)
    if not path.exists():
        raise TimeseriesError(f"Timeseries not found: {path}")
    try:
        raw = read_table(path)
    except pd.errors.EmptyDataError as e:
        raise TimeseriesError(f"Timeseries is empty: {path}") from e
    if raw.empty:
        raise TimeseriesError(f"Timeseries is empty: {path}")

    df = normalize_timeseries(raw)
    if df.empty:
        raise TimeseriesError(f"Timeseries has no valid NDVI observations: {path}")

    logger.info(
        "Loaded %d observations for %d pixels (%s) from %s",
        len(df), df["pixel_id"].nunique(),
        ", ".join(str(y) for y in sorted(df["year"].unique())), path,
    )
    return df


def describe_timeseries(df: pd.DataFrame, target_years, min_observations: int) -> Dict[str, Any]:
    """Summarize a timeseries against the configured year range and QC gate."""
    in_range = df[df["year"].isin(list(target_years))]
    per_pixel_year = (
        in_range[(in_range["yday"] >= 1) & (in_range["yday"] <= 365)]
        .groupby(["pixel_id", "year"])
        .size()
    )
    n_possible = df["pixel_id"].nunique() * len(list(target_years))
    return {
        "n_observations": int(len(df)),
        "n_pixels": int(df["pixel_id"].nunique()),
        "years_present": [int(y) for y in sorted(df["year"].unique())],
        "n_pixel_years_possible": int(n_possible),
        "n_pixel_years_with_data": int(per_pixel_year.size),
        "n_pixel_years_fittable": int((per_pixel_year >= min_observations).sum()),
        "median_obs_per_pixel_year": float(per_pixel_year.median()) if per_pixel_year.size else 0.0,
    }
