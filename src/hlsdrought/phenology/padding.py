#!/usr/bin/env python3
"""padding.py

Cross-year edge padding for year-specific fits.

A spline fitted to one calendar year is poorly constrained at its ends. To
reduce that end effect, the window for a target year borrows:
- the trailing days of the previous year, relabelled to yday <= 0
  (yday - 366, so Dec 31 of a common year lands on -1), and
- the leading days of the next year, relabelled to yday > 365
  (yday + 365, so Jan 1 lands on 366).

At the edges of the monitored period the adjacent year simply has no rows
and that side of the window is empty; this is not an error.

Target-year rows on yday 366 (Dec 31 of a leap year) are left out so the
target rows stay in [1, 365] and never collide with the borrowed Jan 1.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

TARGET = "target"
PREVIOUS = "prev"
NEXT = "next"


@dataclass(frozen=True)
class PaddedWindow:
    """Observations used to fit one pixel-year.

    `frame` has columns yday, ndvi, segment (target / prev / next). Borrowed
    rows carry shifted yday values strictly outside [1, 365].
    """

    target_year: int
    frame: pd.DataFrame

    @property
    def yday(self) -> np.ndarray:
        return self.frame["yday"].to_numpy(dtype=float)

    @property
    def ndvi(self) -> np.ndarray:
        return self.frame["ndvi"].to_numpy(dtype=float)

    def _count(self, segment: str) -> int:
        return int((self.frame["segment"] == segment).sum())

    @property
    def n_target(self) -> int:
        return self._count(TARGET)

    @property
    def n_previous(self) -> int:
        return self._count(PREVIOUS)

    @property
    def n_next(self) -> int:
        return self._count(NEXT)

    def __len__(self) -> int:
        return len(self.frame)


class EdgePadder:
    """Build PaddedWindows for a fixed padding length."""

    def __init__(self, padding_days: int = 31):
        if padding_days < 0:
            raise ValueError(f"padding_days must be >= 0, got {padding_days}")
        self.padding_days = int(padding_days)

    def pad(self, pixel_series: pd.DataFrame, target_year: int) -> PaddedWindow:
        """Return the padded window of one pixel's series for target_year."""
        year = pixel_series["year"].to_numpy()
        yday = pixel_series["yday"].to_numpy()

        target = pixel_series.loc[(year == target_year) & (yday >= 1) & (yday <= 365), ["yday", "ndvi"]]
        target = target.assign(segment=TARGET)

        borrow = self.padding_days > 0
        prev = pixel_series.loc[
            borrow & (year == target_year - 1) & (yday > 365 - self.padding_days), ["yday", "ndvi"]
        ]
        prev = prev.assign(yday=prev["yday"] - 366, segment=PREVIOUS)

        nxt = pixel_series.loc[
            borrow & (year == target_year + 1) & (yday <= self.padding_days), ["yday", "ndvi"]
        ]
        nxt = nxt.assign(yday=nxt["yday"] + 365, segment=NEXT)

        frame = pd.concat([prev, target, nxt], ignore_index=True)
        frame = frame.sort_values("yday", kind="mergesort").reset_index(drop=True)
        return PaddedWindow(target_year=int(target_year), frame=frame)
