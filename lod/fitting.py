"""Least-squares segment fitting for two-channel traces.

This module provides the per-segment fitting used by the tree builder:
- fit_segment: cubic fit of both channels against normalized time, with the
  worst-case and RMS residual converted to pixels
- eval_fit: vectorised evaluation of a PolynomialFit at normalized times

Ranges that cannot carry a cubic (zero time span, fewer than four distinct
timestamps) and solves that produce non-finite coefficients degrade to a
lower-degree fit instead of failing.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from shared.models import SampleSequence

logger = logging.getLogger(__name__)

CUBIC_DEGREE = 3
MIN_CUBIC_TIMES = CUBIC_DEGREE + 1
# Relative singular-value cutoff for the SVD solve.
SVD_RCOND = 1e-10


class FitKind(enum.Enum):
    CUBIC = "cubic"
    LOW_DEGREE = "low_degree"
    DEGENERATE = "degenerate"
    FALLBACK = "fallback"

    @property
    def forces_leaf(self) -> bool:
        """Zero-span ranges, which no split can improve."""
        return self is FitKind.DEGENERATE


@dataclass(frozen=True)
class PolynomialFit:
    """
    Polynomial in the normalized parameter u ∈ [0, 1] for a single channel.

    `coeffs` are in ascending powers and always hold four entries; a fit of
    lower degree is zero-padded.
    """

    coeffs: Tuple[float, float, float, float]
    degree: int
    max_residual: float

    def __post_init__(self) -> None:
        coeffs = tuple(float(c) for c in self.coeffs)
        if len(coeffs) != CUBIC_DEGREE + 1:
            raise ValueError("coeffs must hold exactly four values")
        if not 0 <= self.degree <= CUBIC_DEGREE:
            raise ValueError("degree must be between 0 and 3")
        if self.max_residual < 0:
            raise ValueError("max_residual must be non-negative")
        object.__setattr__(self, "coeffs", coeffs)

    def eval(self, u):
        return eval_fit(self, u)


@dataclass(frozen=True)
class SegmentFit:
    fit_ch1: PolynomialFit
    fit_ch2: PolynomialFit
    error_px: float
    rmse_px: float
    kind: FitKind
    distinct_times: int = 1


def eval_fit(fit: PolynomialFit, u) -> np.ndarray:
    u_arr = np.asarray(u, dtype=np.float64)
    a0, a1, a2, a3 = fit.coeffs
    return ((a3 * u_arr + a2) * u_arr + a1) * u_arr + a0


def _design_matrix(u: np.ndarray, degree: int) -> np.ndarray:
    # Rows are [1, u, u^2, ...]
    return np.vander(u, degree + 1, increasing=True)


def _solve(u: np.ndarray, values: np.ndarray, degree: int) -> np.ndarray:
    coeffs, _, _, _ = np.linalg.lstsq(_design_matrix(u, degree), values, rcond=SVD_RCOND)
    return coeffs


def _pad(coeffs: np.ndarray) -> np.ndarray:
    padded = np.zeros(CUBIC_DEGREE + 1, dtype=np.float64)
    padded[: coeffs.size] = coeffs
    return padded


def _channel_fallback(u: np.ndarray, y: np.ndarray, degree: int) -> Tuple[np.ndarray, int]:
    """Retry a single channel at decreasing degree until the solve is finite."""
    for deg in range(degree - 1, -1, -1):
        try:
            coeffs = _solve(u, y, deg)
        except np.linalg.LinAlgError:
            continue
        if np.all(np.isfinite(coeffs)):
            return _pad(coeffs), deg
    return _pad(np.array([float(np.mean(y))])), 0


def fit_segment(samples: SampleSequence, start: int, end: int, px_scale: float) -> SegmentFit:
    """
    Fit both channels of `samples[start:end]` against normalized time.

    The caller guarantees `0 <= start < end <= len(samples)`.
    """
    t = samples.t[start:end]
    values = np.column_stack((samples.ch1[start:end], samples.ch2[start:end]))
    span = int(t[-1] - t[0])

    if span <= 0:
        means = values.mean(axis=0)
        fit_a, fit_b = (PolynomialFit((float(m), 0.0, 0.0, 0.0), 0, 0.0) for m in means)
        logger.debug("Zero time span in [%d, %d); using a constant fit", start, end)
        return SegmentFit(fit_a, fit_b, error_px=0.0, rmse_px=0.0, kind=FitKind.DEGENERATE)

    u = (t - t[0]).astype(np.float64) / float(span)
    distinct = samples.distinct_times(start, end)
    if distinct < MIN_CUBIC_TIMES:
        degree = distinct - 1
        kind = FitKind.LOW_DEGREE
        logger.debug("Only %d distinct times in [%d, %d); fitting degree %d", distinct, start, end, degree)
    else:
        degree = CUBIC_DEGREE
        kind = FitKind.CUBIC

    try:
        joint = _solve(u, values, degree)
    except np.linalg.LinAlgError:
        joint = np.full((degree + 1, 2), np.nan)

    columns = []
    degrees = []
    for col in range(2):
        coeffs = joint[:, col]
        if np.all(np.isfinite(coeffs)):
            columns.append(_pad(coeffs))
            degrees.append(degree)
            continue
        padded, used = _channel_fallback(u, values[:, col], degree)
        logger.debug("Non-finite solve for channel %d in [%d, %d); fell back to degree %d", col + 1, start, end, used)
        columns.append(padded)
        degrees.append(used)
        if kind is FitKind.CUBIC:
            kind = FitKind.FALLBACK

    coeff_matrix = np.column_stack(columns)
    predicted = _design_matrix(u, CUBIC_DEGREE) @ coeff_matrix
    residual = np.abs(predicted - values)
    max_residual = residual.max(axis=0)

    fit_a = PolynomialFit(tuple(columns[0]), degrees[0], float(max_residual[0]))
    fit_b = PolynomialFit(tuple(columns[1]), degrees[1], float(max_residual[1]))
    error_px = float(max_residual.max()) * px_scale
    rmse_px = float(np.sqrt(np.mean(residual * residual))) * px_scale
    return SegmentFit(fit_a, fit_b, error_px=error_px, rmse_px=rmse_px, kind=kind, distinct_times=distinct)


__all__ = [
    "CUBIC_DEGREE",
    "MIN_CUBIC_TIMES",
    "FitKind",
    "PolynomialFit",
    "SegmentFit",
    "eval_fit",
    "fit_segment",
]
