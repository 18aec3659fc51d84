"""Exceptions raised by the tracker outside of normal state transitions."""


class KbtrackError(Exception):
    """Base class for kbtrack errors."""


class ConfigError(KbtrackError, ValueError):
    """Raised when a configuration value is out of range or malformed."""


class TrackerBusyError(KbtrackError):
    """Raised when another invocation already holds the cycle lock."""

    def __init__(self, lock_path, pid=None):
        self.lock_path = lock_path
        self.pid = pid
        holder = f" (held by PID {pid})" if pid else ""
        super().__init__(f"Tracker lock {lock_path} is busy{holder}")
