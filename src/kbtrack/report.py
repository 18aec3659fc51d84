"""
Plain-text status and history reports.
"""

from typing import Optional, Sequence

from .config import TrackerConfig
from .models import CompletedSession, LiveSession, format_duration
from .statistics import RATE_WINDOWS, StatisticsBundle

RULE = "=" * 60

_CHANGE_SYMBOLS = {"up": "^", "down": "v", "flat": "="}


def _format_hours(hours: float) -> str:
    return format_duration(hours * 3600)


def format_status(
    session: Optional[LiveSession],
    bundle: StatisticsBundle,
    config: Optional[TrackerConfig] = None,
    device_label: str = "Keyboard",
) -> str:
    """Render the live session with rates and life estimates."""
    config = config or TrackerConfig()
    if session is None:
        return "No active tracking session\n"

    state = "Connected" if session.is_connected else "Disconnected"
    lines = [
        RULE,
        f"{device_label}: {state} [{session.status.value}]",
        RULE,
        "",
        "Current Status:",
        f"  Battery: {session.last_battery}% (started at {session.battery_start}%)",
        f"  Used: {session.battery_used}%",
        f"  Lowest: {session.lowest_battery}%",
        f"  Connected time: {format_duration(session.accumulated_seconds)}",
        f"  Started: {session.started_at.isoformat(timespec='seconds')}",
        f"  Samples: {session.samples}",
    ]
    if session.last_issue is not None:
        lines.append(f"  Last issue: {session.last_issue.value}")

    estimate = bundle.estimate
    if estimate is not None:
        lines += [
            "",
            "Discharge Rate:",
            f"  {estimate.rate_per_hour:.2f}% per hour",
            f"  {estimate.hours_per_percent:.1f} hours per 1%",
            "",
            "Estimates:",
            f"  Remaining: ~{_format_hours(estimate.remaining_hours)} "
            f"({session.last_battery}% -> {config.stop_threshold}%)",
            f"  Total life: ~{_format_hours(estimate.total_hours)} "
            f"({session.battery_start}% -> {config.stop_threshold}%)",
        ]
        if estimate.total_hours >= 24:
            lines.append(f"  (~{estimate.total_hours / 24.0:.1f} days)")
    else:
        lines += ["", "Gathering data... (estimates available after some battery usage)"]

    rate_lines = []
    for label, _ in RATE_WINDOWS:
        rate = bundle.windows.get(label)
        if rate is None:
            rate_lines.append(f"  {label:>4}: stable")
        else:
            rate_lines.append(
                f"  {label:>4}: {rate.rate_per_hour:.2f}%/hr "
                f"(-{rate.drop}% over {_format_hours(rate.elapsed_hours)})"
            )
    lines += ["", "Recent Rates:"] + rate_lines
    lines.append(f"  1h vs 12h: {_CHANGE_SYMBOLS[bundle.rate_change.value]} {bundle.rate_change.value}")

    segments = bundle.segments
    lines += ["", "History:"]
    if segments is None:
        lines.append("  Insufficient data")
    else:
        lines += [
            f"  Segments: {segments.segment_count}",
            f"  Mean: {segments.mean:.2f}%/hr (min {segments.minimum:.2f}, max {segments.maximum:.2f})",
            f"  Std dev: {segments.stddev:.2f}  Range: {segments.range:.2f}",
            f"  Trend: {bundle.trend.value} ({segments.trend_slope:+.3f} %/hr per hour)",
        ]

    return "\n".join(lines) + "\n"


def format_history(sessions: Sequence[CompletedSession]) -> str:
    """Render completed sessions, newest first."""
    if not sessions:
        return "No completed sessions yet"

    lines = ["Completed Battery Cycles:", RULE]
    for session in sorted(sessions, key=lambda s: s.session_num, reverse=True):
        start_date = session.started_at.date().isoformat()
        end_date = session.ended_at.date().isoformat()
        lines += [
            f"Session {session.session_num}: {start_date} -> {end_date}",
            f"  Time: {session.formatted}",
            f"  Battery: {session.battery_start}% -> {session.battery_end}% "
            f"({session.battery_used}% used)",
            f"  Reason: {session.stop_reason.value}",
            "",
        ]
    return "\n".join(lines)
