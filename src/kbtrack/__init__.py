"""
kbtrack - Battery life tracking for a Bluetooth keyboard across charge cycles.

This package provides:
- A session state machine fed by one probe reading per scheduled run
- Sample logging with bounded retention
- Windowed and historical discharge-rate statistics with trend detection
- A history of completed charge cycles
- Status and history reports for the command line
"""

__version__ = "1.0.0"
__author__ = "Alfonso"

from .config import TrackerConfig, load_config
from .models import (
    CompletedSession,
    ConnectivityAssessment,
    ConnectivityIssue,
    ConnectivitySource,
    LiveSession,
    ProbeResult,
    SampleRecord,
    SessionStatus,
    StopReason,
)
from .session import CycleOutcome, advance
from .statistics import (
    StatisticsBundle,
    classify_trend,
    compare_rates,
    compute_statistics,
    segment_statistics,
    window_rate,
)
from .tracker import Tracker

__all__ = [
    "TrackerConfig",
    "load_config",
    "CompletedSession",
    "ConnectivityAssessment",
    "ConnectivityIssue",
    "ConnectivitySource",
    "LiveSession",
    "ProbeResult",
    "SampleRecord",
    "SessionStatus",
    "StopReason",
    "CycleOutcome",
    "advance",
    "StatisticsBundle",
    "classify_trend",
    "compare_rates",
    "compute_statistics",
    "segment_statistics",
    "window_rate",
    "Tracker",
]
