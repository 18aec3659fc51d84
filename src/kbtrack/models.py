"""
Data model shared by the state machine, the stores and the reports.

Every persisted type knows how to serialize itself to a JSON-ready dict and
back. Decoding accepts the current schema first and falls back to the
camelCase schema written by the first version of the tool.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional

SCHEMA_VERSION = 2


class SessionStatus(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    PAUSED = "paused"
    BLOCKED = "blocked"


class ConnectivityIssue(str, Enum):
    """Failure classes reported by the device probe."""

    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    PERIPHERAL_NOT_FOUND = "peripheral_not_found"
    UNKNOWN = "unknown"

    @property
    def is_bluetooth_error(self) -> bool:
        """True for errors in the host Bluetooth layer rather than the peripheral."""
        return self is not ConnectivityIssue.PERIPHERAL_NOT_FOUND


class ConnectivitySource(str, Enum):
    PRIMARY = "primary"  # battery characteristic read
    SECONDARY = "secondary"  # device seen by the scanner
    TERTIARY = "tertiary"  # host reports the device connected


class StopReason(str, Enum):
    BATTERY_DEPLETED = "battery_depleted"
    CHARGING_DETECTED = "charging_detected"
    OFFLINE_DROP = "offline_drop"
    MANUAL_RESET = "manual_reset"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string; naive values and a trailing 'Z' are read as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_duration(seconds) -> str:
    """Format seconds as 'Xh Ym'."""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"


@dataclass(frozen=True)
class ConnectivityAssessment:
    """How sure the probe is that the peripheral is reachable."""

    is_connected: bool
    confidence: float
    sources: FrozenSet[ConnectivitySource] = frozenset()
    issue: Optional[ConnectivityIssue] = None

    @classmethod
    def offline(cls, issue=None) -> "ConnectivityAssessment":
        return cls(is_connected=False, confidence=0.0, sources=frozenset(), issue=issue)


@dataclass(frozen=True)
class ProbeResult:
    """One resolved read of the peripheral."""

    battery: Optional[int]
    connectivity: ConnectivityAssessment


@dataclass
class LiveSession:
    """The single in-progress tracking session."""

    status: SessionStatus
    started_at: datetime
    battery_start: int
    last_battery: int
    lowest_battery: int
    last_sample_at: Optional[datetime] = None
    last_connected_at: Optional[datetime] = None
    accumulated_seconds: int = 0
    samples: int = 0
    pending_charge_gain: int = 0
    consecutive_increase_samples: int = 0
    consecutive_unavailable_samples: int = 0
    is_connected: bool = True
    last_issue: Optional[ConnectivityIssue] = None
    device_address: Optional[str] = None

    @classmethod
    def start(cls, battery: int, now: datetime, device_address=None) -> "LiveSession":
        """Open a session at ``battery`` percent."""
        return cls(
            status=SessionStatus.TRACKING,
            started_at=now,
            battery_start=battery,
            last_battery=battery,
            lowest_battery=battery,
            last_sample_at=now,
            last_connected_at=now,
            accumulated_seconds=0,
            samples=1,
            is_connected=True,
            device_address=device_address,
        )

    @property
    def battery_used(self) -> int:
        return self.battery_start - self.last_battery

    def to_dict(self) -> dict:
        return {
            "version": SCHEMA_VERSION,
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "last_sample_at": format_timestamp(self.last_sample_at),
            "last_connected_at": format_timestamp(self.last_connected_at),
            "battery_start": self.battery_start,
            "last_battery": self.last_battery,
            "lowest_battery": self.lowest_battery,
            "accumulated_seconds": self.accumulated_seconds,
            "samples": self.samples,
            "pending_charge_gain": self.pending_charge_gain,
            "consecutive_increase_samples": self.consecutive_increase_samples,
            "consecutive_unavailable_samples": self.consecutive_unavailable_samples,
            "is_connected": self.is_connected,
            "last_issue": self.last_issue.value if self.last_issue else None,
            "device_address": self.device_address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LiveSession":
        """
        Decode a persisted session.

        Raises:
            KeyError, ValueError, TypeError: if the data matches neither schema.
        """
        if "version" not in data and "batteryStart" in data:
            return cls._from_legacy(data)

        issue = data.get("last_issue")
        return cls(
            status=SessionStatus(data["status"]),
            started_at=parse_timestamp(data["started_at"]),
            battery_start=int(data["battery_start"]),
            last_battery=int(data["last_battery"]),
            lowest_battery=int(data["lowest_battery"]),
            last_sample_at=parse_timestamp(data.get("last_sample_at")),
            last_connected_at=parse_timestamp(data.get("last_connected_at")),
            accumulated_seconds=int(data.get("accumulated_seconds", 0)),
            samples=int(data.get("samples", 0)),
            pending_charge_gain=int(data.get("pending_charge_gain", 0)),
            consecutive_increase_samples=int(data.get("consecutive_increase_samples", 0)),
            consecutive_unavailable_samples=int(data.get("consecutive_unavailable_samples", 0)),
            is_connected=bool(data.get("is_connected", False)),
            last_issue=ConnectivityIssue(issue) if issue else None,
            device_address=data.get("device_address"),
        )

    @classmethod
    def _from_legacy(cls, data: dict) -> "LiveSession":
        # v1 had no sample timestamps; accrual resumes from the next cycle.
        # batteryCurrent was written as 0 on failed reads, batteryPrevious was not.
        battery_start = int(data["batteryStart"])
        current = int(data.get("batteryPrevious") or data.get("batteryCurrent") or battery_start)
        status = data.get("status", "tracking")
        if status not in SessionStatus._value2member_map_:
            status = SessionStatus.TRACKING.value
        return cls(
            status=SessionStatus(status),
            started_at=parse_timestamp(data["startedAt"]),
            battery_start=battery_start,
            last_battery=current,
            lowest_battery=min(battery_start, current),
            accumulated_seconds=int(data.get("accumulatedSeconds", 0)),
            is_connected=bool(data.get("connected", False)),
            device_address=data.get("keyboardAddress"),
        )


@dataclass(frozen=True)
class CompletedSession:
    """An archived session. Never mutated after it is written."""

    session_num: int
    started_at: datetime
    ended_at: datetime
    stop_reason: StopReason
    battery_start: int
    battery_end: int
    total_seconds: int
    formatted: str
    samples: int = 0
    lowest_battery: Optional[int] = None

    @classmethod
    def from_live(
        cls,
        session: LiveSession,
        session_num: int,
        stop_reason: StopReason,
        battery_end: int,
        ended_at: datetime,
    ) -> "CompletedSession":
        lowest = min(session.lowest_battery, battery_end)
        return cls(
            session_num=session_num,
            started_at=session.started_at,
            ended_at=ended_at,
            stop_reason=stop_reason,
            battery_start=session.battery_start,
            battery_end=battery_end,
            total_seconds=session.accumulated_seconds,
            formatted=format_duration(session.accumulated_seconds),
            samples=session.samples,
            lowest_battery=lowest,
        )

    @property
    def battery_used(self) -> int:
        return self.battery_start - self.battery_end

    @property
    def hours(self) -> float:
        return self.total_seconds / 3600.0

    def to_dict(self) -> dict:
        return {
            "session_num": self.session_num,
            "started_at": format_timestamp(self.started_at),
            "ended_at": format_timestamp(self.ended_at),
            "stop_reason": self.stop_reason.value,
            "battery_start": self.battery_start,
            "battery_end": self.battery_end,
            "total_seconds": self.total_seconds,
            "formatted": self.formatted,
            "samples": self.samples,
            "lowest_battery": self.lowest_battery,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompletedSession":
        if "sessionNum" in data:
            return cls._from_legacy(data)
        lowest = data.get("lowest_battery")
        return cls(
            session_num=int(data["session_num"]),
            started_at=parse_timestamp(data["started_at"]),
            ended_at=parse_timestamp(data["ended_at"]),
            stop_reason=StopReason(data["stop_reason"]),
            battery_start=int(data["battery_start"]),
            battery_end=int(data["battery_end"]),
            total_seconds=int(data["total_seconds"]),
            formatted=data.get("formatted") or format_duration(data["total_seconds"]),
            samples=int(data.get("samples", 0)),
            lowest_battery=int(lowest) if lowest is not None else None,
        )

    @classmethod
    def _from_legacy(cls, data: dict) -> "CompletedSession":
        total = int(data["totalSeconds"])
        start = int(data["batteryStart"])
        end = int(data["batteryEnd"])
        return cls(
            session_num=int(data["sessionNum"]),
            started_at=parse_timestamp(data["started"]),
            ended_at=parse_timestamp(data["ended"]),
            stop_reason=StopReason(data["stopReason"]),
            battery_start=start,
            battery_end=end,
            total_seconds=total,
            formatted=data.get("formatted") or format_duration(total),
            lowest_battery=min(start, end),
        )


@dataclass(frozen=True)
class SampleRecord:
    """One cycle's observation as written to the sample log."""

    timestamp: datetime
    battery: Optional[int]
    is_connected: bool
    confidence: float
    elapsed_seconds: int = 0
    sources: FrozenSet[ConnectivitySource] = field(default_factory=frozenset)
    issue: Optional[ConnectivityIssue] = None
    status: SessionStatus = SessionStatus.IDLE

    def to_dict(self) -> dict:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "battery": self.battery,
            "is_connected": self.is_connected,
            "confidence": float(self.confidence),
            "elapsed_seconds": self.elapsed_seconds,
            "sources": sorted(s.value for s in self.sources),
            "issue": self.issue.value if self.issue else None,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SampleRecord":
        battery = data.get("battery")
        issue = data.get("issue")
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            battery=int(battery) if battery is not None else None,
            is_connected=bool(data.get("is_connected", False)),
            confidence=float(data.get("confidence", 0.0)),
            elapsed_seconds=int(data.get("elapsed_seconds", 0)),
            sources=frozenset(ConnectivitySource(s) for s in data.get("sources", ())),
            issue=ConnectivityIssue(issue) if issue else None,
            status=SessionStatus(data.get("status", SessionStatus.IDLE.value)),
        )
