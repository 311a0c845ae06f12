#!/usr/bin/env python3
"""smoother.py

One-dimensional penalized regression smoother for NDVI ~ s(day_of_year).

This module fits the seasonal curve for a single padded pixel-year. The model
is a penalized regression spline in the mgcv tradition:

    ndvi = X(yday) @ beta + noise,    penalty = lambda * beta' S beta

with the smoothing parameter lambda chosen by GCV over log(lambda). The fitted
object exposes the pieces the posterior simulation needs: coefficients, the
Bayesian covariance Vp = sigma^2 (X'X + lambda S)^-1, and analytic design
matrices for both the curve and its first derivative.

Supported bases (BasisKind):
- THIN_PLATE ("tp"): knot-based cubic thin plate regression spline
  (radial |x - knot|^3 terms plus an unpenalized linear null space).
- P_SPLINE ("ps"): cubic B-splines on equally spaced knots with a second-order
  difference penalty.

Neither basis is cyclic. The padded window already carries continuity across
the December/January boundary.

Failure signalling:
- SmootherFitError is raised for inputs that cannot be fitted at all (too few
  unique days for the basis size, non-finite values).
- A fit that runs but does not settle (optimizer failure, non-finite
  covariance, no residual degrees of freedom) returns with converged=False.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from scipy import linalg
from scipy.interpolate import BSpline
from scipy.optimize import minimize_scalar


class SmootherFitError(RuntimeError):
    """Raised when a smoother cannot be fitted to the supplied points."""


class BasisKind(str, Enum):
    THIN_PLATE = "tp"
    P_SPLINE = "ps"


# -----------------------------------------------------------------------------
# Bases
# -----------------------------------------------------------------------------

def _tps_kernel(r: np.ndarray) -> np.ndarray:
    """Thin plate radial function for d=1, m=2: eta(r) = r^3 / 12."""
    return r ** 3 / 12.0


class ThinPlateBasis:
    """Knot-based cubic thin plate regression spline.

    Knots sit at evenly spaced quantiles of the unique covariate values. The
    radial coefficients are constrained orthogonal to the linear null space
    (T' delta = 0) by absorbing the constraint through a QR decomposition, so
    the basis has exactly k columns: intercept, slope, and k - 2 radial terms.

    Covariates are rescaled to [0, 1] internally to keep r^3 well conditioned.
    """

    def __init__(self, x: np.ndarray, k: int):
        ux = np.unique(x)
        if ux.size < k:
            raise SmootherFitError(
                f"Thin plate basis with k={k} needs at least {k} unique covariate values, got {ux.size}"
            )
        self.k = k
        self.lo = float(ux[0])
        self.span = float(ux[-1] - ux[0])
        if self.span <= 0:
            raise SmootherFitError("Covariate has zero range")

        u = self._scale(ux)
        self.knots = np.quantile(u, np.linspace(0.0, 1.0, k))

        T = np.column_stack([np.ones(k), self.knots])
        q, _ = np.linalg.qr(T, mode="complete")
        self._Z = q[:, 2:]

        E = _tps_kernel(np.abs(self.knots[:, None] - self.knots[None, :]))
        radial = self._Z.T @ E @ self._Z
        S = np.zeros((k, k))
        S[2:, 2:] = 0.5 * (radial + radial.T)
        self.penalty = S

    def _scale(self, x: np.ndarray) -> np.ndarray:
        return (np.asarray(x, dtype=float) - self.lo) / self.span

    def design(self, x: np.ndarray) -> np.ndarray:
        u = self._scale(x)
        E = _tps_kernel(np.abs(u[:, None] - self.knots[None, :]))
        return np.column_stack([np.ones_like(u), u, E @ self._Z])

    def design_derivative(self, x: np.ndarray) -> np.ndarray:
        u = self._scale(x)
        d = u[:, None] - self.knots[None, :]
        dE = d * np.abs(d) / 4.0
        X = np.column_stack([np.zeros_like(u), np.ones_like(u), dE @ self._Z])
        # chain rule through the [0, 1] rescaling
        return X / self.span


class PSplineBasis:
    """Cubic B-spline basis with a second-order difference penalty (Eilers & Marx)."""

    degree = 3

    def __init__(self, x: np.ndarray, k: int):
        ux = np.unique(x)
        if ux.size < k:
            raise SmootherFitError(
                f"P-spline basis with k={k} needs at least {k} unique covariate values, got {ux.size}"
            )
        if k <= self.degree:
            raise SmootherFitError(f"P-spline basis needs k > {self.degree}, got {k}")
        self.k = k
        lo, hi = float(ux[0]), float(ux[-1])
        if hi <= lo:
            raise SmootherFitError("Covariate has zero range")

        n_intervals = k - self.degree
        h = (hi - lo) / n_intervals
        t = lo + h * np.arange(-self.degree, n_intervals + self.degree + 1)
        self._spline = BSpline(t, np.eye(k), self.degree, extrapolate=True)
        self._deriv = self._spline.derivative()

        D = np.diff(np.eye(k), n=2, axis=0)
        self.penalty = D.T @ D

    def design(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(self._spline(np.asarray(x, dtype=float)))

    def design_derivative(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(self._deriv(np.asarray(x, dtype=float)))


_BASES: Dict[BasisKind, Callable[[np.ndarray, int], object]] = {
    BasisKind.THIN_PLATE: ThinPlateBasis,
    BasisKind.P_SPLINE: PSplineBasis,
}


# -----------------------------------------------------------------------------
# Fitted model
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FittedSmoother:
    """A fitted NDVI ~ s(yday) model. Never mutated after fitting."""

    basis: object
    basis_kind: BasisKind
    basis_size: int
    coefficients: np.ndarray
    covariance: np.ndarray
    sigma2: float
    edf: float
    log_lambda: float
    gcv_score: float
    n_obs: int
    converged: bool

    def lpmatrix(self, x) -> np.ndarray:
        """Linear predictor matrix: predict(x) == lpmatrix(x) @ coefficients."""
        return self.basis.design(np.atleast_1d(np.asarray(x, dtype=float)))

    def lpmatrix_derivative(self, x) -> np.ndarray:
        """First-derivative design matrix with respect to day of year."""
        return self.basis.design_derivative(np.atleast_1d(np.asarray(x, dtype=float)))

    def predict(self, x) -> np.ndarray:
        return self.lpmatrix(x) @ self.coefficients

    def predict_derivative(self, x) -> np.ndarray:
        return self.lpmatrix_derivative(x) @ self.coefficients

    def standard_error(self, x) -> np.ndarray:
        """Bayesian standard error of the fitted curve at x."""
        X = self.lpmatrix(x)
        return np.sqrt(np.maximum(np.einsum("ij,jk,ik->i", X, self.covariance, X), 0.0))


# -----------------------------------------------------------------------------
# Fitting
# -----------------------------------------------------------------------------

class SeasonalSmoother:
    """Fit NDVI against day-of-year with a penalized, non-cyclic spline.

    Args:
        basis_size: basis dimension k (mgcv's `k`).
        basis_kind: BasisKind.THIN_PLATE or BasisKind.P_SPLINE.
        log_lambda_bounds: search interval for log(lambda) under GCV.
    """

    def __init__(
        self,
        basis_size: int = 12,
        basis_kind: BasisKind = BasisKind.THIN_PLATE,
        *,
        log_lambda_bounds: Tuple[float, float] = (-15.0, 15.0),
        max_iter: int = 200,
    ):
        self.basis_size = int(basis_size)
        self.basis_kind = BasisKind(basis_kind)
        self.log_lambda_bounds = log_lambda_bounds
        self.max_iter = max_iter

    def fit(self, x, y) -> FittedSmoother:
        x = np.asarray(x, dtype=float).ravel()
        y = np.asarray(y, dtype=float).ravel()
        if x.shape != y.shape:
            raise SmootherFitError(f"x and y lengths differ: {x.size} vs {y.size}")
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            raise SmootherFitError("Non-finite values in smoother input")

        basis = _BASES[self.basis_kind](x, self.basis_size)
        X = basis.design(x)
        n, p = X.shape

        XtX = X.T @ X
        Xty = X.T @ y

        # Put the penalty on the same scale as X'X so the lambda search
        # interval means the same thing for every pixel.
        s_norm = np.linalg.norm(basis.penalty)
        S = basis.penalty * (np.linalg.norm(XtX) / s_norm) if s_norm > 0 else basis.penalty

        def _solve(rho: float) -> Optional[Tuple[np.ndarray, float, float, tuple]]:
            A = XtX + np.exp(rho) * S
            try:
                factor = linalg.cho_factor(A, lower=False, check_finite=False)
            except linalg.LinAlgError:
                return None
            beta = linalg.cho_solve(factor, Xty, check_finite=False)
            edf = float(np.trace(linalg.cho_solve(factor, XtX, check_finite=False)))
            resid = y - X @ beta
            return beta, edf, float(resid @ resid), factor

        def _gcv(rho: float) -> float:
            solved = _solve(rho)
            if solved is None:
                return np.inf
            _, edf, rss, _ = solved
            denom = n - edf
            if denom <= 0 or not np.isfinite(rss):
                return np.inf
            return n * rss / denom ** 2

        opt = minimize_scalar(
            _gcv,
            bounds=self.log_lambda_bounds,
            method="bounded",
            options={"xatol": 1e-3, "maxiter": self.max_iter},
        )
        rho = float(opt.x)
        solved = _solve(rho)
        if solved is None:
            raise SmootherFitError("Penalized normal equations are singular")
        beta, edf, rss, factor = solved

        resid_df = n - edf
        converged = bool(opt.success) and np.isfinite(opt.fun) and resid_df > 0
        sigma2 = rss / resid_df if resid_df > 0 else np.nan

        Vp = linalg.cho_solve(factor, np.eye(p), check_finite=False) * sigma2
        Vp = 0.5 * (Vp + Vp.T)
        if not (np.all(np.isfinite(beta)) and np.all(np.isfinite(Vp))):
            converged = False

        return FittedSmoother(
            basis=basis,
            basis_kind=self.basis_kind,
            basis_size=self.basis_size,
            coefficients=beta,
            covariance=Vp,
            sigma2=float(sigma2),
            edf=edf,
            log_lambda=rho,
            gcv_score=float(opt.fun),
            n_obs=n,
            converged=converged,
        )
