"""
Discharge statistics - windowed rates, segment history and trend detection.

All functions are pure and work on a sequence of SampleRecord. Samples
without a battery value are ignored for rate math. Too little data yields
None (or a stable trend), never an exception.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import (
    RATE_CHANGE_TOLERANCE,
    SEGMENT_MINUTES,
    STOP_THRESHOLD,
    TREND_SLOPE_THRESHOLD,
    TrackerConfig,
)
from .models import LiveSession, SampleRecord

# Lookback windows reported for live rates
RATE_WINDOWS = (
    ("15m", timedelta(minutes=15)),
    ("1h", timedelta(hours=1)),
    ("3h", timedelta(hours=3)),
    ("12h", timedelta(hours=12)),
    ("48h", timedelta(hours=48)),
)

MIN_WINDOW_SECONDS = 60
MIN_SEGMENT_SAMPLES = 10
MIN_SEGMENTS = 3
SEGMENT_SEARCH_DIVISOR = 50

# Segment acceptance relative to the target duration
SEGMENT_MIN_FACTOR = 0.5
SEGMENT_MAX_FACTOR = 1.2
SEGMENT_SEARCH_FACTOR = 1.5

DISCHARGE_EPSILON = 0.01  # %/hr; slower segments count as idle or charging
NEGLIGIBLE_RATE = 0.05  # %/hr
MIN_SESSION_HOURS = 0.1


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class RateChange(str, Enum):
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


@dataclass(frozen=True)
class WindowRate:
    """Discharge over one lookback window."""

    window: timedelta
    rate_per_hour: float
    hours_per_percent: float
    drop: int
    elapsed_hours: float
    sample_count: int


@dataclass(frozen=True)
class Segment:
    start: datetime
    end: datetime
    drop: int
    hours: float

    @property
    def rate(self) -> float:
        return self.drop / self.hours


@dataclass(frozen=True)
class SegmentStats:
    """Summary of per-segment discharge rates across the sample history."""

    segment_count: int
    rates: Tuple[float, ...]
    filtered_rates: Tuple[float, ...]
    mean: float
    minimum: float
    maximum: float
    stddev: float
    range: float
    trend_slope: float
    recent_rate: float


@dataclass(frozen=True)
class LifeEstimate:
    rate_per_hour: float
    hours_per_percent: float
    remaining_hours: float
    total_hours: float


@dataclass(frozen=True)
class StatisticsBundle:
    """Everything the reports need, computed in one pass."""

    windows: Dict[str, Optional[WindowRate]] = field(default_factory=dict)
    segments: Optional[SegmentStats] = None
    trend: Trend = Trend.STABLE
    rate_change: RateChange = RateChange.FLAT
    session_rate: Optional[float] = None
    estimate: Optional[LifeEstimate] = None


def battery_samples(samples: Sequence[SampleRecord]) -> List[SampleRecord]:
    """Samples carrying a battery value, sorted by timestamp."""
    return sorted((s for s in samples if s.battery is not None), key=lambda s: s.timestamp)


def window_rate(
    samples: Sequence[SampleRecord], window: timedelta, now: datetime
) -> Optional[WindowRate]:
    """
    Discharge rate over ``[now - window, now]``.

    Args:
        samples: Sample history in any order.
        window: Lookback duration.
        now: End of the window.

    Returns:
        WindowRate, or None when there are fewer than two readings, they
        span a minute or less, or the battery did not go down.
    """
    start = now - window
    points = [s for s in battery_samples(samples) if start <= s.timestamp <= now]
    if len(points) < 2:
        return None

    elapsed = (points[-1].timestamp - points[0].timestamp).total_seconds()
    if elapsed <= MIN_WINDOW_SECONDS:
        return None

    drop = points[0].battery - points[-1].battery
    if drop <= 0:
        return None

    hours = elapsed / 3600.0
    rate = drop / hours
    return WindowRate(
        window=window,
        rate_per_hour=rate,
        hours_per_percent=1.0 / rate,
        drop=drop,
        elapsed_hours=hours,
        sample_count=len(points),
    )


def find_segments(samples: Sequence[SampleRecord], segment_minutes=SEGMENT_MINUTES) -> List[Segment]:
    """
    Slice the battery history into roughly ``segment_minutes`` long segments.

    Start points advance by ``max(1, N // 50)`` samples. From each start the
    first sample at or past the target duration closes the segment; if none
    exists within 1.5x the target, the furthest sample inside that bound
    does. A segment is kept when it spans 0.5x to 1.2x the target.
    """
    points = battery_samples(samples)
    n = len(points)
    target = segment_minutes * 60.0
    step = max(1, n // SEGMENT_SEARCH_DIVISOR)

    segments = []
    for i in range(0, n, step):
        t0 = points[i].timestamp
        end = None
        for j in range(i + 1, n):
            elapsed = (points[j].timestamp - t0).total_seconds()
            if elapsed > target * SEGMENT_SEARCH_FACTOR:
                break
            end = j
            if elapsed >= target:
                break
        if end is None:
            continue

        elapsed = (points[end].timestamp - t0).total_seconds()
        if target * SEGMENT_MIN_FACTOR <= elapsed <= target * SEGMENT_MAX_FACTOR:
            segments.append(
                Segment(
                    start=t0,
                    end=points[end].timestamp,
                    drop=points[i].battery - points[end].battery,
                    hours=elapsed / 3600.0,
                )
            )
    return segments


def trend_slope(hours, rates) -> float:
    """Least-squares slope of rate against time, in (%/hr) per hour."""
    x = np.asarray(hours, dtype=float)
    y = np.asarray(rates, dtype=float)
    if x.size < 2 or np.var(x) < 1e-12:
        return 0.0
    slope, _intercept = np.polyfit(x, y, 1)
    return float(slope)


def segment_statistics(
    samples: Sequence[SampleRecord],
    segment_minutes=SEGMENT_MINUTES,
    session_start: Optional[datetime] = None,
) -> Optional[SegmentStats]:
    """
    Historical discharge statistics over fixed-duration segments.

    Needs at least 10 battery samples and 3 accepted segments. Segments
    discharging slower than 0.01 %/hr are left out of the central statistics
    and the trend, unless fewer than 3 would remain.
    """
    points = battery_samples(samples)
    if len(points) < MIN_SEGMENT_SAMPLES:
        return None

    segments = find_segments(points, segment_minutes)
    if len(segments) < MIN_SEGMENTS:
        return None

    origin = session_start or points[0].timestamp
    rates = np.array([s.rate for s in segments], dtype=float)
    hours = np.array([(s.end - origin).total_seconds() / 3600.0 for s in segments])

    discharging = rates > DISCHARGE_EPSILON
    if np.count_nonzero(discharging) >= MIN_SEGMENTS:
        central, central_hours = rates[discharging], hours[discharging]
    else:
        central, central_hours = rates, hours

    return SegmentStats(
        segment_count=len(segments),
        rates=tuple(float(r) for r in rates),
        filtered_rates=tuple(float(r) for r in rates[discharging]),
        mean=float(np.mean(central)),
        minimum=float(np.min(central)),
        maximum=float(np.max(central)),
        stddev=float(np.std(central)),
        range=float(np.max(central) - np.min(central)),
        trend_slope=trend_slope(central_hours, central),
        recent_rate=float(np.mean(rates[-MIN_SEGMENTS:])),
    )


def classify_trend(slope: float, recent_rate=None, threshold=TREND_SLOPE_THRESHOLD) -> Trend:
    """Classify a rate slope; negligible recent discharge is always stable."""
    if recent_rate is not None and recent_rate < NEGLIGIBLE_RATE:
        return Trend.STABLE
    if slope > threshold:
        return Trend.INCREASING
    if slope < -threshold:
        return Trend.DECREASING
    return Trend.STABLE


def compare_rates(current, previous, tolerance=RATE_CHANGE_TOLERANCE) -> RateChange:
    """Flat when ``current`` is within ``tolerance`` (relative) of ``previous``."""
    if current is None or previous is None:
        return RateChange.FLAT
    if previous <= 0:
        return RateChange.UP if current > 0 else RateChange.FLAT
    change = (current - previous) / previous
    if abs(change) <= tolerance:
        return RateChange.FLAT
    return RateChange.UP if change > 0 else RateChange.DOWN


def session_rate(session: LiveSession) -> Optional[float]:
    """Average %/hr over the session's accrued time, once it means something."""
    hours = session.accumulated_seconds / 3600.0
    used = session.battery_used
    if used <= 0 or hours <= MIN_SESSION_HOURS:
        return None
    return used / hours


def estimate_life(session: LiveSession, rate_per_hour, stop_threshold=STOP_THRESHOLD) -> Optional[LifeEstimate]:
    """
    Estimate time left and total life at ``rate_per_hour``.

    Remaining covers the current level down to the stop threshold; total
    covers the session's start level down to the stop threshold.
    """
    if not rate_per_hour or rate_per_hour <= 0:
        return None
    hours_per_percent = 1.0 / rate_per_hour
    return LifeEstimate(
        rate_per_hour=rate_per_hour,
        hours_per_percent=hours_per_percent,
        remaining_hours=max(0, session.last_battery - stop_threshold) * hours_per_percent,
        total_hours=max(0, session.battery_start - stop_threshold) * hours_per_percent,
    )


def compute_statistics(
    session: Optional[LiveSession],
    samples: Sequence[SampleRecord],
    now: datetime,
    config: Optional[TrackerConfig] = None,
) -> StatisticsBundle:
    """Build the full statistics bundle for the reports."""
    config = config or TrackerConfig()
    if session is not None:
        samples = [s for s in samples if s.timestamp >= session.started_at]

    windows = {label: window_rate(samples, span, now) for label, span in RATE_WINDOWS}
    segments = segment_statistics(
        samples,
        segment_minutes=config.segment_minutes,
        session_start=session.started_at if session else None,
    )

    if segments is not None:
        trend = classify_trend(
            segments.trend_slope, segments.recent_rate, config.trend_slope_threshold
        )
    else:
        trend = Trend.STABLE

    short, long = windows.get("1h"), windows.get("12h")
    rate_change = compare_rates(
        short.rate_per_hour if short else None,
        long.rate_per_hour if long else None,
        config.rate_change_tolerance,
    )

    average = session_rate(session) if session else None
    estimate = None
    if session is not None:
        fallback = next(
            (windows[label] for label, _ in reversed(RATE_WINDOWS) if windows[label]), None
        )
        rate = average or (fallback.rate_per_hour if fallback else None)
        estimate = estimate_life(session, rate, config.stop_threshold)

    return StatisticsBundle(
        windows=windows,
        segments=segments,
        trend=trend,
        rate_change=rate_change,
        session_rate=average,
        estimate=estimate,
    )
