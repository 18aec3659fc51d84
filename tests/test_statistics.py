import statistics
from datetime import timedelta

import pytest
from factories import at, live_session, sample

from kbtrack.statistics import (
    RateChange,
    Trend,
    classify_trend,
    compare_rates,
    compute_statistics,
    estimate_life,
    find_segments,
    segment_statistics,
    session_rate,
    trend_slope,
    window_rate,
)


def steady_samples(count=31, spacing=10, start_battery=90):
    """One percent lost every ``spacing`` minutes."""
    return [sample(k * spacing, start_battery - k) for k in range(count)]


def accelerating_samples():
    """6 %/hr for two hours, then 12 %/hr for two hours, 10 minutes apart."""
    samples = []
    for k in range(25):
        battery = 95 - k if k <= 12 else 83 - 2 * (k - 12)
        samples.append(sample(k * 10, battery))
    return samples


def test_window_rate_one_hour():
    samples = [sample(0, 80), sample(60, 70)]

    rate = window_rate(samples, timedelta(hours=1), at(60))

    assert rate.rate_per_hour == pytest.approx(10.0)
    assert rate.hours_per_percent == pytest.approx(0.1)
    assert rate.drop == 10
    assert rate.sample_count == 2


@pytest.mark.parametrize("end_battery", [80, 85])
def test_window_rate_without_discharge_is_none(end_battery):
    samples = [sample(0, 80), sample(60, end_battery)]
    assert window_rate(samples, timedelta(hours=1), at(60)) is None


def test_window_rate_needs_more_than_a_minute():
    samples = [sample(0, 80), sample(1, 79)]
    assert window_rate(samples, timedelta(hours=1), at(1)) is None


def test_window_rate_needs_two_samples():
    assert window_rate([sample(0, 80)], timedelta(hours=1), at(0)) is None
    assert window_rate([], timedelta(hours=1), at(0)) is None


def test_window_rate_only_uses_samples_inside_window():
    samples = [sample(0, 80), sample(50, 78), sample(60, 76)]

    rate = window_rate(samples, timedelta(minutes=15), at(60))

    assert rate.drop == 2
    assert rate.rate_per_hour == pytest.approx(12.0)


def test_window_rate_ignores_samples_without_battery():
    samples = [sample(0, 80), sample(30, None), sample(60, 70)]

    rate = window_rate(samples, timedelta(hours=1), at(60))

    assert rate.sample_count == 2


def test_window_rate_sorts_samples():
    samples = [sample(60, 70), sample(0, 80)]
    assert window_rate(samples, timedelta(hours=1), at(60)).rate_per_hour == pytest.approx(10.0)


def test_find_segments_on_even_spacing():
    segments = find_segments(steady_samples())

    # starts 0-24 close at 60 min; 25-27 are partial but at least 30 min
    assert len(segments) == 28
    assert all(s.rate == pytest.approx(6.0) for s in segments)
    assert segments[0].end == at(60)


def test_segment_statistics_steady_discharge():
    stats = segment_statistics(steady_samples())

    assert stats.segment_count == 28
    assert stats.mean == pytest.approx(6.0)
    assert stats.stddev == pytest.approx(0.0, abs=1e-9)
    assert stats.range == pytest.approx(0.0, abs=1e-9)
    assert abs(stats.trend_slope) < 1e-6
    assert classify_trend(stats.trend_slope, stats.recent_rate) is Trend.STABLE


def test_segment_statistics_detects_accelerating_discharge():
    stats = segment_statistics(accelerating_samples())

    assert stats.minimum == pytest.approx(6.0)
    assert stats.maximum == pytest.approx(12.0)
    assert stats.trend_slope > 0.03
    assert stats.recent_rate == pytest.approx(12.0)
    assert classify_trend(stats.trend_slope, stats.recent_rate) is Trend.INCREASING


def test_segment_statistics_uses_population_stddev():
    stats = segment_statistics(accelerating_samples())

    assert stats.stddev == pytest.approx(statistics.pstdev(stats.filtered_rates))
    assert stats.stddev != pytest.approx(statistics.stdev(stats.filtered_rates))


def test_segment_statistics_needs_ten_samples():
    assert segment_statistics(steady_samples(count=9, spacing=30)) is None


def test_segment_statistics_needs_three_segments():
    # twelve samples a minute apart never span half an hour
    assert segment_statistics([sample(m, 90 - m) for m in range(12)]) is None


def test_idle_history_falls_back_to_unfiltered_rates():
    samples = [sample(k * 10, 70) for k in range(31)]

    stats = segment_statistics(samples)

    assert stats.filtered_rates == ()
    assert stats.mean == 0.0
    assert classify_trend(stats.trend_slope, stats.recent_rate) is Trend.STABLE


def test_trend_slope():
    assert trend_slope([0, 1, 2], [1, 2, 3]) == pytest.approx(1.0)
    assert trend_slope([1, 1, 1], [1, 2, 3]) == 0.0
    assert trend_slope([1], [1]) == 0.0


@pytest.mark.parametrize(
    "slope, recent, expected",
    [
        (0.05, None, Trend.INCREASING),
        (-0.05, None, Trend.DECREASING),
        (0.03, None, Trend.STABLE),
        (-0.03, 2.0, Trend.STABLE),
        (0.5, 0.04, Trend.STABLE),
        (-0.5, 0.01, Trend.STABLE),
    ],
)
def test_classify_trend(slope, recent, expected):
    assert classify_trend(slope, recent) is expected


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (10.0, 10.0, RateChange.FLAT),
        (11.4, 10.0, RateChange.FLAT),
        (8.6, 10.0, RateChange.FLAT),
        (12.0, 10.0, RateChange.UP),
        (8.0, 10.0, RateChange.DOWN),
        (None, 10.0, RateChange.FLAT),
        (1.0, 0.0, RateChange.UP),
    ],
)
def test_compare_rates(current, previous, expected):
    assert compare_rates(current, previous) is expected


def test_estimate_life():
    session = live_session(battery=50, start=90)

    estimate = estimate_life(session, 2.0, stop_threshold=5)

    assert estimate.hours_per_percent == pytest.approx(0.5)
    assert estimate.remaining_hours == pytest.approx(22.5)
    assert estimate.total_hours == pytest.approx(42.5)
    assert estimate_life(session, None) is None
    assert estimate_life(session, 0.0) is None


def test_session_rate():
    assert session_rate(live_session(battery=50, start=90, accumulated_seconds=36000)) == pytest.approx(4.0)
    assert session_rate(live_session(battery=90, start=90)) is None
    assert session_rate(live_session(battery=80, start=90, accumulated_seconds=300)) is None


def test_compute_statistics_ignores_samples_before_session():
    session = live_session(battery=80, start=90, started_at=at(0), accumulated_seconds=3600)
    samples = [sample(-600, 100)] + [sample(m, 90 - m // 6) for m in range(61)]

    bundle = compute_statistics(session, samples, at(60))

    assert set(bundle.windows) == {"15m", "1h", "3h", "12h", "48h"}
    assert bundle.windows["48h"].rate_per_hour == pytest.approx(10.0)
    assert bundle.windows["1h"].rate_per_hour == pytest.approx(10.0)
    assert bundle.session_rate == pytest.approx(10.0)
    assert bundle.estimate.remaining_hours == pytest.approx(7.5)
    assert bundle.rate_change is RateChange.FLAT


def test_compute_statistics_without_data():
    bundle = compute_statistics(None, [], at(0))

    assert all(rate is None for rate in bundle.windows.values())
    assert bundle.segments is None
    assert bundle.trend is Trend.STABLE
    assert bundle.estimate is None
