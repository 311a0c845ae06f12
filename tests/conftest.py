#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from hlsdrought.config import PhenologyConfig

YEARS = (2013, 2014, 2015)


def seasonal_ndvi(yday: np.ndarray) -> np.ndarray:
    """Greenup peaking mid-year: slope maximal near day 91, minimal near day 274."""
    return 0.4 - 0.3 * np.cos(2.0 * np.pi * np.asarray(yday, dtype=float) / 365.0)


def seasonal_slope(yday: np.ndarray) -> np.ndarray:
    return 0.3 * (2.0 * np.pi / 365.0) * np.sin(2.0 * np.pi * np.asarray(yday, dtype=float) / 365.0)


@pytest.fixture
def make_series():
    """Factory for one pixel's synthetic 8-day NDVI series."""

    def _make(pixel_id="P1", years=YEARS, step=8, noise=0.02, seed=0, start_day=1):
        rng = np.random.default_rng(seed)
        rows = []
        for year in years:
            yday = np.arange(start_day, 366, step)
            ndvi = seasonal_ndvi(yday) + rng.normal(0.0, noise, yday.size)
            rows.append(pd.DataFrame({"pixel_id": pixel_id, "year": year, "yday": yday, "ndvi": ndvi}))
        return pd.concat(rows, ignore_index=True)

    return _make


@pytest.fixture
def timeseries(make_series) -> pd.DataFrame:
    """Three pixels over 2013-2015 with different noise draws and sampling offsets."""
    return pd.concat(
        [
            make_series("P1", seed=1),
            make_series("P2", seed=2, start_day=3),
            make_series("P3", seed=3, start_day=5),
        ],
        ignore_index=True,
    )


@pytest.fixture
def fast_config() -> PhenologyConfig:
    return PhenologyConfig(
        target_years=YEARS,
        n_posterior_sims=200,
        checkpoint_interval=1,
        progress_interval=1,
    )
