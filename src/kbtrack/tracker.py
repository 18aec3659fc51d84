"""
Tracker - runs one probe-decide-persist cycle and serves the read side.

Wires the state machine to the files in the data directory. The cycle and
the manual reset run under the cycle lock; the accessors only read.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .config import (
    CONFIG_FILENAME,
    CURRENT_FILENAME,
    LOCK_FILENAME,
    SAMPLES_FILENAME,
    SESSIONS_FILENAME,
    TrackerConfig,
    get_data_dir,
    load_config,
)
from .models import CompletedSession, LiveSession, ProbeResult, SampleRecord, StopReason, utcnow
from .samples import SampleStore
from .session import CycleOutcome, advance, manual_completion
from .statistics import StatisticsBundle, compute_statistics
from .storage import HistoryArchive, SessionFile, cycle_lock, finalize_session, load_live_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleResult:
    probe: ProbeResult
    outcome: CycleOutcome
    completed: Optional[CompletedSession] = None


class Tracker:
    """
    Battery session tracker bound to one data directory.

    Args:
        data_dir: Directory holding the state files; defaults to
            $KBTRACK_DATA_DIR or ~/.local/share/kbtrack.
        config: Thresholds; read from config.yaml in the data dir if omitted.
        probe: Callable returning a ProbeResult; a BleakProbe by default.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, data_dir=None, config: Optional[TrackerConfig] = None, probe=None, clock=utcnow):
        self.data_dir = get_data_dir(data_dir)
        if config is None:
            config = load_config(self.data_dir / CONFIG_FILENAME)
        self.config = config
        self.session_file = SessionFile(self.data_dir / CURRENT_FILENAME)
        self.archive = HistoryArchive(self.data_dir / SESSIONS_FILENAME)
        self.sample_store = SampleStore(
            self.data_dir / SAMPLES_FILENAME, max_records=config.sample_retention
        )
        self.lock_path = self.data_dir / LOCK_FILENAME
        self._probe = probe
        self._clock = clock

    @property
    def probe(self):
        if self._probe is None:
            # Deferred so read-only commands never import the Bluetooth stack
            from .probe import BleakProbe

            self._probe = BleakProbe(self.config)
        return self._probe

    def run_cycle(self) -> CycleResult:
        """
        Probe the device once and persist the resulting state.

        Raises:
            TrackerBusyError: if another invocation holds the lock.
            OSError: if a state file cannot be written.
        """
        with cycle_lock(self.lock_path):
            logger.info("=== Daemon cycle started ===")
            result = self.probe()
            now = self._clock()
            logger.info(
                "Read result - battery: %s, connected: %s, confidence: %.2f, issue: %s",
                f"{result.battery}%" if result.battery is not None else "n/a",
                result.connectivity.is_connected,
                result.connectivity.confidence,
                result.connectivity.issue.value if result.connectivity.issue else "none",
            )

            session = load_live_session(self.session_file, self.archive)
            outcome = advance(session, result, now, self.config)
            completed = self._persist(outcome)

            if outcome.session is not None:
                logger.info(
                    "Session %s at %d%%, accumulated %ds",
                    outcome.session.status.value,
                    outcome.session.last_battery,
                    outcome.session.accumulated_seconds,
                )
            logger.info("=== Daemon cycle completed ===")
            return CycleResult(probe=result, outcome=outcome, completed=completed)

    def _persist(self, outcome: CycleOutcome) -> Optional[CompletedSession]:
        # Archive before anything replaces the live session file
        completed = None
        if outcome.completion is not None:
            c = outcome.completion
            completed = finalize_session(
                self.session_file, self.archive, c.session, c.stop_reason, c.battery_end, c.ended_at
            )
        if outcome.session is not None:
            self.session_file.save(outcome.session)
        if outcome.sample is not None:
            self.sample_store.append(outcome.sample)
        return completed

    def reset_session(self, reason=StopReason.MANUAL_RESET, now: Optional[datetime] = None) -> Optional[CompletedSession]:
        """Force-stop the live session. Returns the archived record, or None."""
        with cycle_lock(self.lock_path):
            session = load_live_session(self.session_file, self.archive)
            if session is None:
                logger.info("No active session to reset")
                return None
            c = manual_completion(session, now or self._clock(), reason)
            return finalize_session(
                self.session_file, self.archive, c.session, c.stop_reason, c.battery_end, c.ended_at
            )

    def live_session(self) -> Optional[LiveSession]:
        return load_live_session(self.session_file, self.archive, discard=False)

    def samples(self, limit: Optional[int] = None) -> List[SampleRecord]:
        return self.sample_store.read(limit)

    def history(self) -> List[CompletedSession]:
        return sorted(self.archive.load(), key=lambda s: s.session_num)

    def statistics(self, now: Optional[datetime] = None) -> StatisticsBundle:
        return compute_statistics(
            self.live_session(), self.samples(), now or self._clock(), self.config
        )
