#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest

from hlsdrought.gam.smoother import BasisKind, SeasonalSmoother, SmootherFitError
from hlsdrought.phenology.padding import EdgePadder

from conftest import seasonal_ndvi, seasonal_slope


@pytest.fixture
def window(make_series):
    return EdgePadder(31).pad(make_series(seed=11), 2014)


@pytest.mark.parametrize("kind", [BasisKind.THIN_PLATE, BasisKind.P_SPLINE])
def test_recovers_seasonal_curve(window, kind):
    model = SeasonalSmoother(12, kind).fit(window.yday, window.ndvi)
    assert model.converged
    days = np.arange(1, 366)
    assert np.max(np.abs(model.predict(days) - seasonal_ndvi(days))) < 0.03
    interior = np.arange(30, 336)
    assert np.max(np.abs(model.predict_derivative(interior) - seasonal_slope(interior))) < 0.0015
    assert 2.0 <= model.edf <= 12.0


@pytest.mark.parametrize("kind", [BasisKind.THIN_PLATE, BasisKind.P_SPLINE])
def test_derivative_matrix_matches_finite_difference(window, kind):
    model = SeasonalSmoother(12, kind).fit(window.yday, window.ndvi)
    x = np.array([-20.0, 1.0, 45.5, 180.0, 300.0, 380.0])
    h = 1e-3
    fd = (model.lpmatrix(x + h) - model.lpmatrix(x - h)) / (2 * h)
    np.testing.assert_allclose(model.lpmatrix_derivative(x), fd, atol=1e-6)


def test_covariance_is_symmetric_and_usable(window):
    model = SeasonalSmoother(12).fit(window.yday, window.ndvi)
    V = model.covariance
    assert V.shape == (12, 12)
    np.testing.assert_allclose(V, V.T)
    assert np.all(np.linalg.eigvalsh(V) > -1e-12)
    se = model.standard_error(np.arange(1, 366))
    assert np.all(se > 0)
    assert np.all(se < 0.05)


def test_predict_is_lpmatrix_times_coefficients(window):
    model = SeasonalSmoother(10, BasisKind.P_SPLINE).fit(window.yday, window.ndvi)
    x = np.arange(1, 366)
    np.testing.assert_allclose(model.predict(x), model.lpmatrix(x) @ model.coefficients)
    assert model.lpmatrix(x).shape == (365, 10)


def test_too_few_unique_days():
    x = np.repeat(np.arange(1, 8), 3).astype(float)
    y = np.linspace(0.2, 0.5, x.size)
    with pytest.raises(SmootherFitError):
        SeasonalSmoother(12).fit(x, y)
    with pytest.raises(SmootherFitError):
        SeasonalSmoother(12, BasisKind.P_SPLINE).fit(x, y)


def test_non_finite_input():
    x = np.arange(1, 40, dtype=float)
    y = np.full(x.size, 0.3)
    y[4] = np.nan
    with pytest.raises(SmootherFitError):
        SeasonalSmoother(8).fit(x, y)
