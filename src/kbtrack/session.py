"""
Session state machine.

Turns one probe result into the next live-session state. ``advance`` is a
pure transform: it takes the current session (or None), the probe result,
the current time and the config, and returns a CycleOutcome describing what
the caller has to persist. It never touches the filesystem.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .config import TrackerConfig
from .models import (
    ConnectivityAssessment,
    ConnectivityIssue,
    LiveSession,
    ProbeResult,
    SampleRecord,
    SessionStatus,
    StopReason,
)

logger = logging.getLogger(__name__)

DEGRADED_STATES = (SessionStatus.PAUSED, SessionStatus.BLOCKED)


@dataclass(frozen=True)
class Completion:
    """A session that ended this cycle and has to be archived."""

    session: LiveSession
    stop_reason: StopReason
    battery_end: int
    ended_at: datetime


@dataclass(frozen=True)
class CycleOutcome:
    """Everything one cycle decided.

    ``session`` is the live session to persist, or None when it has to be
    deleted. ``completion`` is set when a session terminated; ``session``
    may then hold a fresh session opened in the same cycle.
    """

    session: Optional[LiveSession]
    sample: Optional[SampleRecord]
    completion: Optional[Completion] = None
    accrued: bool = False
    accrued_seconds: int = 0
    started: bool = False


def elapsed_since_last_sample(session: LiveSession, now: datetime) -> int:
    """Whole seconds since the session's previous sample, never negative."""
    if session.last_sample_at is None:
        return 0
    return max(0, int(round((now - session.last_sample_at).total_seconds())))


def _sample(now, battery, connectivity: ConnectivityAssessment, elapsed, status) -> SampleRecord:
    return SampleRecord(
        timestamp=now,
        battery=battery,
        is_connected=connectivity.is_connected,
        confidence=connectivity.confidence,
        elapsed_seconds=elapsed,
        sources=frozenset(connectivity.sources),
        issue=connectivity.issue,
        status=status,
    )


def advance(
    session: Optional[LiveSession],
    probe: ProbeResult,
    now: datetime,
    config: Optional[TrackerConfig] = None,
) -> CycleOutcome:
    """
    Apply one probe result to the live session.

    Args:
        session: Current live session, or None when nothing is being tracked.
        probe: Resolved probe result for this cycle.
        now: Timestamp of this cycle.
        config: Thresholds; defaults apply when omitted.

    Returns:
        CycleOutcome with the next session, the sample to log, and the
        completion to archive if the session ended.
    """
    config = config or TrackerConfig()
    battery = probe.battery

    if session is None:
        return _advance_without_session(battery, probe.connectivity, now, config)

    # Work on a copy so the caller's session is left as it was
    session = replace(session)

    if battery is not None and battery <= 0:
        return _reject_noise(session, probe.connectivity, now)
    if battery is not None:
        return _apply_reading(session, battery, probe.connectivity, now, config)
    return _apply_missing_reading(session, probe.connectivity, now, config)


def _advance_without_session(battery, connectivity, now, config) -> CycleOutcome:
    if battery is None or battery <= 0:
        return CycleOutcome(session=None, sample=None)

    if battery >= config.start_threshold:
        logger.info("Starting new session at %d%%", battery)
        fresh = LiveSession.start(battery, now, device_address=config.device_address)
        return CycleOutcome(
            session=fresh,
            sample=_sample(now, battery, connectivity, 0, fresh.status),
            started=True,
        )

    logger.info(
        "No session active, %d%% is below start threshold %d%%",
        battery,
        config.start_threshold,
    )
    return CycleOutcome(
        session=None,
        sample=_sample(now, battery, connectivity, 0, SessionStatus.IDLE),
    )


def _reject_noise(session, connectivity, now) -> CycleOutcome:
    # A 0% read is a sensor glitch: neither depletion nor a failed cycle
    logger.info("Ignoring 0%% reading as sensor noise")
    session.consecutive_unavailable_samples = 0
    return CycleOutcome(
        session=session,
        sample=_sample(now, None, connectivity, 0, session.status),
    )


def _apply_reading(session, battery, connectivity, now, config) -> CycleOutcome:
    session.consecutive_unavailable_samples = 0
    session.is_connected = True
    session.last_issue = connectivity.issue

    if session.status in DEGRADED_STATES:
        drop = session.last_battery - battery
        if drop > config.offline_drop_tolerance and battery > config.stop_threshold:
            logger.info(
                "Battery dropped %d%% while %s (%d%% -> %d%%), closing session",
                drop,
                session.status.value,
                session.last_battery,
                battery,
            )
            completion = Completion(session, StopReason.OFFLINE_DROP, battery, now)
            fresh = LiveSession.start(battery, now, device_address=session.device_address)
            logger.info("Starting new session at %d%%", battery)
            return CycleOutcome(
                session=fresh,
                sample=_sample(now, battery, connectivity, 0, fresh.status),
                completion=completion,
                started=True,
            )

        logger.info("Reconnected at %d%% after %s", battery, session.status.value)
        session.pending_charge_gain = 0
        session.consecutive_increase_samples = 0

    elapsed = elapsed_since_last_sample(session, now)
    session.accumulated_seconds += elapsed
    session.samples += 1
    session.last_sample_at = now
    session.last_connected_at = now
    session.status = SessionStatus.TRACKING
    sample = _sample(now, battery, connectivity, elapsed, session.status)

    if battery <= config.stop_threshold:
        logger.info("Battery depleted (%d%%), stopping session", battery)
        session.lowest_battery = min(session.lowest_battery, battery)
        session.last_battery = battery
        completion = Completion(session, StopReason.BATTERY_DEPLETED, battery, now)
        return CycleOutcome(
            session=None,
            sample=sample,
            completion=completion,
            accrued=True,
            accrued_seconds=elapsed,
        )

    previous = session.last_battery
    if battery > previous:
        session.pending_charge_gain += battery - previous
        session.consecutive_increase_samples += 1
        if _charging_confirmed(session, battery, config):
            logger.info(
                "Charging detected (+%d%% over %d samples, %d%% -> %d%%), stopping session",
                session.pending_charge_gain,
                session.consecutive_increase_samples,
                session.lowest_battery,
                battery,
            )
            session.last_battery = battery
            completion = Completion(session, StopReason.CHARGING_DETECTED, battery, now)
            return CycleOutcome(
                session=None,
                sample=sample,
                completion=completion,
                accrued=True,
                accrued_seconds=elapsed,
            )
    elif battery < previous:
        session.pending_charge_gain = 0
        session.consecutive_increase_samples = 0
        session.lowest_battery = min(session.lowest_battery, battery)
    else:
        session.consecutive_increase_samples = 0

    session.last_battery = battery
    return CycleOutcome(
        session=session,
        sample=sample,
        accrued=True,
        accrued_seconds=elapsed,
    )


def _charging_confirmed(session, battery, config) -> bool:
    """Require cumulative gain, a streak of two, and distance from the low point."""
    tolerance = config.charge_tolerance
    return (
        session.pending_charge_gain >= tolerance
        and session.consecutive_increase_samples >= 2
        and battery - session.lowest_battery >= tolerance
    )


def _apply_missing_reading(session, connectivity, now, config) -> CycleOutcome:
    session.consecutive_unavailable_samples += 1
    session.is_connected = connectivity.is_connected
    session.last_issue = connectivity.issue

    elapsed = elapsed_since_last_sample(session, now)
    within_grace = session.consecutive_unavailable_samples <= config.failure_grace_cycles
    confident = connectivity.confidence >= config.accrual_confidence_threshold

    if confident and within_grace:
        logger.info(
            "No battery reading, connectivity confidence %.2f; accruing %ds (%d/%d)",
            connectivity.confidence,
            elapsed,
            session.consecutive_unavailable_samples,
            config.failure_grace_cycles,
        )
        session.accumulated_seconds += elapsed
        session.samples += 1
        session.last_sample_at = now
        if connectivity.is_connected:
            session.last_connected_at = now
        return CycleOutcome(
            session=session,
            sample=_sample(now, None, connectivity, elapsed, session.status),
            accrued=True,
            accrued_seconds=elapsed,
        )

    # The gap is not accrued, so the next accrual measures from here
    session.last_sample_at = now
    if not within_grace:
        _degrade(session, connectivity.issue)
    else:
        logger.info(
            "No battery reading, confidence %.2f too low; pausing timer (%d/%d)",
            connectivity.confidence,
            session.consecutive_unavailable_samples,
            config.failure_grace_cycles,
        )

    return CycleOutcome(
        session=session,
        sample=_sample(now, None, connectivity, 0, session.status),
    )


def _degrade(session: LiveSession, issue: Optional[ConnectivityIssue]):
    previous = session.status
    if issue is not None and issue.is_bluetooth_error:
        session.status = SessionStatus.BLOCKED
    else:
        session.status = SessionStatus.PAUSED
        if issue is ConnectivityIssue.PERIPHERAL_NOT_FOUND:
            session.last_connected_at = None
            session.pending_charge_gain = 0
            session.consecutive_increase_samples = 0

    if session.status is not previous:
        logger.info(
            "Session %s -> %s (issue: %s, %d cycles without reading)",
            previous.value,
            session.status.value,
            issue.value if issue else "low confidence",
            session.consecutive_unavailable_samples,
        )


def manual_completion(session: LiveSession, now: datetime, reason=StopReason.MANUAL_RESET) -> Completion:
    """Completion for a forced stop: last known battery, nothing accrued."""
    return Completion(session, StopReason(reason), session.last_battery, now)
