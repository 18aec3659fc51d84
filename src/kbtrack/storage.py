"""
On-disk state: the live session file, the history archive and the cycle lock.

Every write goes to a temporary file in the same directory and is moved into
place with os.replace, so a crash mid-write leaves the previous version
intact. Unreadable files load as empty state.
"""

import errno
import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

from .exceptions import TrackerBusyError
from .models import CompletedSession, LiveSession

logger = logging.getLogger(__name__)


def atomic_write_text(path, text: str):
    """Write ``text`` to ``path`` via a fsynced temp file and os.replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path, data, sort_keys=True):
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=sort_keys) + "\n")


def _read_json(path: Path):
    """Return parsed JSON, or None if the file is missing or corrupt."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Cannot read %s, treating as empty: %s", path, e)
        return None


class SessionFile:
    """The single live session record."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[LiveSession]:
        data = _read_json(self.path)
        if data is None:
            return None
        try:
            return LiveSession.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Corrupt session file %s, ignoring: %s", self.path, e)
            return None

    def save(self, session: LiveSession):
        atomic_write_json(self.path, session.to_dict())

    def delete(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class HistoryArchive:
    """Append-only list of completed sessions, rewritten wholesale on append."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> List[CompletedSession]:
        data = _read_json(self.path)
        if data is None:
            return []
        # v1 wrapped the list in {"sessions": [...]}
        if isinstance(data, dict):
            data = data.get("sessions", [])
        if not isinstance(data, list):
            logger.warning("Unexpected history format in %s, treating as empty", self.path)
            return []

        sessions = []
        for entry in data:
            try:
                sessions.append(CompletedSession.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping unreadable history entry: %s", e)
        return sessions

    def next_session_num(self) -> int:
        return max((s.session_num for s in self.load()), default=0) + 1

    def append(self, session: CompletedSession):
        sessions = self.load()
        sessions.append(session)
        atomic_write_json(self.path, [s.to_dict() for s in sessions])

    def latest(self) -> Optional[CompletedSession]:
        sessions = self.load()
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.session_num)


def finalize_session(
    session_file: SessionFile,
    archive: HistoryArchive,
    live: LiveSession,
    stop_reason,
    battery_end: int,
    ended_at,
) -> CompletedSession:
    """
    Archive ``live`` and delete the live session file.

    The archive is written first. If the process dies before the delete,
    ``load_live_session`` recognises the leftover by its start time and
    discards it.
    """
    completed = CompletedSession.from_live(
        live,
        session_num=archive.next_session_num(),
        stop_reason=stop_reason,
        battery_end=battery_end,
        ended_at=ended_at,
    )
    archive.append(completed)
    session_file.delete()
    logger.info(
        "Session %d saved: %s, %d%% -> %d%% in %s",
        completed.session_num,
        completed.stop_reason.value,
        completed.battery_start,
        completed.battery_end,
        completed.formatted,
    )
    return completed


def load_live_session(
    session_file: SessionFile, archive: HistoryArchive, discard=True
) -> Optional[LiveSession]:
    """
    Load the live session, ignoring one that was already archived.

    Args:
        discard: Also delete such a leftover file.
    """
    live = session_file.load()
    if live is None:
        return None
    latest = archive.latest()
    if latest is not None and latest.started_at == live.started_at:
        if discard:
            logger.warning(
                "Live session started %s is already archived as session %d, discarding",
                live.started_at.isoformat(),
                latest.session_num,
            )
            session_file.delete()
        return None
    return live


@contextmanager
def cycle_lock(path):
    """
    Hold an exclusive, non-blocking lock for one read-decide-write cycle.

    The lock file records the holder's PID for diagnostics.

    Raises:
        TrackerBusyError: if another process holds the lock.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+", encoding="utf-8") as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise
            f.seek(0)
            holder = f.read().strip()
            raise TrackerBusyError(path, int(holder) if holder.isdigit() else None) from e

        try:
            f.seek(0)
            f.truncate()
            f.write(str(os.getpid()))
            f.flush()
            yield
        finally:
            f.seek(0)
            f.truncate()
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
