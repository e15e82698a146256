"""Timing statistics for captured traces.

Provides:
- timing_stats: report rate and inter-sample interval statistics
- recommend_settings: LOD build parameters suited to a device's report rate

Devices with very high report rates produce dense, noisy traces that need a
larger minimum segment; slow or power-saving devices leave irregular gaps and
tolerate a looser build tolerance.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from shared.app_settings import LodSettings
from shared.models import SampleSequence

HIGH_RATE_HZ = 8000.0
STANDARD_RATE_HZ = 1000.0


@dataclass(frozen=True)
class TimingStats:
    count: int
    span_sec: float
    report_rate_hz: float
    delta_min_ms: float
    delta_max_ms: float
    delta_mean_ms: float
    delta_median_ms: float
    delta_std_ms: float
    duplicate_times: int

    @property
    def jitter_ratio(self) -> float:
        """Standard deviation over mean of the intervals; lower is steadier."""
        if self.delta_mean_ms <= 0:
            return 0.0
        return self.delta_std_ms / self.delta_mean_ms


def timing_stats(samples: SampleSequence) -> TimingStats:
    count = len(samples)
    if count < 2:
        return TimingStats(count, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0)

    t = samples.t
    span_sec = float(t[-1] - t[0]) / 1_000_000.0
    deltas_us = np.diff(t)
    duplicates = int(np.count_nonzero(deltas_us == 0))
    deltas_ms = deltas_us[deltas_us > 0].astype(np.float64) / 1000.0
    rate = count / span_sec if span_sec > 0 else 0.0
    if deltas_ms.size == 0:
        return TimingStats(count, span_sec, rate, 0.0, 0.0, 0.0, 0.0, 0.0, duplicates)

    return TimingStats(
        count=count,
        span_sec=span_sec,
        report_rate_hz=rate,
        delta_min_ms=float(np.min(deltas_ms)),
        delta_max_ms=float(np.max(deltas_ms)),
        delta_mean_ms=float(np.mean(deltas_ms)),
        delta_median_ms=float(np.median(deltas_ms)),
        delta_std_ms=float(np.std(deltas_ms)),
        duplicate_times=duplicates,
    )


def recommend_settings(stats: TimingStats, base: Optional[LodSettings] = None) -> LodSettings:
    base = base or LodSettings()
    rate = stats.report_rate_hz
    if rate >= HIGH_RATE_HZ:
        min_pts, tol_px = 10, 0.75
    elif rate >= STANDARD_RATE_HZ:
        min_pts, tol_px = 6, 1.25
    else:
        min_pts, tol_px = 5, 1.75
    max_pts = max(base.max_pts, min_pts + 1)
    return replace(base, min_pts=min_pts, max_pts=max_pts, tol_px=tol_px)


__all__ = ["TimingStats", "timing_stats", "recommend_settings"]
