#!/usr/bin/env python3
"""pixel_year.py

Fit one pixel-year and shape its output rows.

For each (pixel, target year):
1. Build the padded window (EdgePadder).
2. Gate on the number of target-year observations (yday 1..365).
3. Pick the basis size: gam_knots for interior years, reduced by
   boundary_knot_reduction for the first and last configured years.
4. Fit the seasonal smoother; reject fits that raise or do not converge.
5. Evaluate the product on yday 1..365 and stamp pixel_id / year.

Every pixel-year ends in a PixelYearOutcome. Skips never raise: insufficient
data, non-convergence and fit errors are recorded as statuses so the runner
can count them separately, even though all three emit no rows.

Products (resolved once per processor):
- Product.DERIVATIVES: pixel_id, year, yday, deriv_mean, deriv_lwr, deriv_upr, sig
- Product.SPLINES:     pixel_id, year, yday, year_mean, year_se, year_lwr, year_upr
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from hlsdrought.config import PhenologyConfig
from hlsdrought.gam.posterior import PosteriorCurveEstimator, PosteriorDerivativeEstimator
from hlsdrought.gam.smoother import FittedSmoother, SeasonalSmoother, SmootherFitError
from hlsdrought.phenology.padding import EdgePadder

logger = logging.getLogger(__name__)

EVALUATION_DAYS = np.arange(1, 366)

DERIVATIVE_COLUMNS = ["pixel_id", "year", "yday", "deriv_mean", "deriv_lwr", "deriv_upr", "sig"]
SPLINE_COLUMNS = ["pixel_id", "year", "yday", "year_mean", "year_se", "year_lwr", "year_upr"]


class Product(str, Enum):
    DERIVATIVES = "derivatives"
    SPLINES = "splines"

    @property
    def columns(self) -> List[str]:
        return DERIVATIVE_COLUMNS if self is Product.DERIVATIVES else SPLINE_COLUMNS

    @property
    def tag(self) -> str:
        return "[DERIV]" if self is Product.DERIVATIVES else "[SPLINES]"


class PixelYearStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    NOT_CONVERGED = "not_converged"
    FIT_ERROR = "fit_error"


@dataclass
class PixelYearOutcome:
    pixel_id: object
    year: int
    status: PixelYearStatus
    records: Optional[pd.DataFrame] = None
    n_target_obs: int = 0
    basis_size: int = 0
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is PixelYearStatus.OK


@dataclass
class PixelResult:
    """All target years of one pixel, as returned by a worker."""

    pixel_id: object
    records: Optional[pd.DataFrame]
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def n_years_ok(self) -> int:
        return self.status_counts.get(PixelYearStatus.OK.value, 0)


class PixelYearProcessor:
    """Fit and evaluate pixel-years for one product under one configuration."""

    def __init__(self, config: PhenologyConfig, product: Product = Product.DERIVATIVES):
        self.config = config
        self.product = Product(product)
        self.padder = EdgePadder(config.edge_padding_days)
        self._derivatives = PosteriorDerivativeEstimator(
            n_simulations=config.n_posterior_sims,
            alpha=config.alpha_level,
            seed=config.posterior_seed,
        )
        self._curve = PosteriorCurveEstimator(
            n_simulations=config.n_posterior_sims,
            alpha=config.alpha_level,
            seed=config.posterior_seed,
        )
        evaluators: Dict[Product, Callable[[FittedSmoother], pd.DataFrame]] = {
            Product.DERIVATIVES: lambda m: self._derivatives.estimate(m, EVALUATION_DAYS),
            Product.SPLINES: lambda m: self._curve.estimate(m, EVALUATION_DAYS),
        }
        self._evaluate = evaluators[self.product]

    def process(self, pixel_series: pd.DataFrame, pixel_id, target_year: int) -> PixelYearOutcome:
        """Fit one pixel-year. Returns an outcome; records is None unless OK."""
        cfg = self.config
        window = self.padder.pad(pixel_series, target_year)
        n_target = window.n_target
        k = cfg.knots_for_year(target_year)

        def _skip(status: PixelYearStatus, detail: str) -> PixelYearOutcome:
            logger.debug("pixel %s year %s skipped (%s): %s", pixel_id, target_year, status.value, detail)
            return PixelYearOutcome(pixel_id, target_year, status, None, n_target, k, detail)

        if n_target < cfg.min_observations:
            return _skip(
                PixelYearStatus.INSUFFICIENT_DATA,
                f"{n_target} target-year observations < {cfg.min_observations}",
            )

        smoother = SeasonalSmoother(basis_size=k, basis_kind=cfg.gam_basis)
        try:
            model = smoother.fit(window.yday, window.ndvi)
        except (SmootherFitError, np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
            return _skip(PixelYearStatus.FIT_ERROR, str(e))

        if not model.converged:
            return _skip(
                PixelYearStatus.NOT_CONVERGED,
                f"edf={model.edf:.2f} n={model.n_obs} log_lambda={model.log_lambda:.2f}",
            )

        try:
            table = self._evaluate(model)
        except (np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
            return _skip(PixelYearStatus.FIT_ERROR, f"posterior simulation failed: {e}")

        table.insert(0, "year", int(target_year))
        table.insert(0, "pixel_id", pixel_id)
        return PixelYearOutcome(
            pixel_id, target_year, PixelYearStatus.OK, table[self.product.columns], n_target, k
        )

    def process_pixel(self, pixel_series: pd.DataFrame, pixel_id) -> PixelResult:
        """Sweep every configured year for one pixel."""
        counts: Counter = Counter()
        blocks: List[pd.DataFrame] = []

        if len(pixel_series) < self.config.min_observations:
            counts[PixelYearStatus.INSUFFICIENT_DATA.value] = len(self.config.target_years)
            return PixelResult(pixel_id, None, dict(counts))

        for target_year in self.config.target_years:
            outcome = self.process(pixel_series, pixel_id, target_year)
            counts[outcome.status.value] += 1
            if outcome.ok:
                blocks.append(outcome.records)

        records = pd.concat(blocks, ignore_index=True) if blocks else None
        return PixelResult(pixel_id, records, dict(counts))
