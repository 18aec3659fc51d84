"""
Command-line entry point.

    kbtrack daemon   - Run one monitoring cycle (called by the scheduler)
    kbtrack status   - Show current tracking status
    kbtrack history  - Show completed sessions
    kbtrack reset    - Force stop the current session
"""

import argparse
import logging
import sys

from .config import LOG_FILENAME, get_data_dir
from .exceptions import ConfigError, TrackerBusyError
from .report import format_history, format_status
from .tracker import Tracker

logger = logging.getLogger("kbtrack")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kbtrack", description="Track keyboard battery life across charge cycles."
    )
    parser.add_argument("--data-dir", help="State directory (default: $KBTRACK_DATA_DIR or ~/.local/share/kbtrack)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("daemon", help="Run one monitoring cycle")
    sub.add_parser("status", help="Show current tracking status")
    sub.add_parser("history", help="Show completed sessions")
    sub.add_parser("reset", help="Force stop the current session")
    return parser


def configure_logging(command: str, data_dir, verbose=False):
    """Daemon cycles log to daemon.log; interactive commands log to stderr."""
    level = logging.DEBUG if verbose else logging.INFO
    if command == "daemon":
        data_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(data_dir / LOG_FILENAME, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
        if not verbose:
            level = logging.WARNING
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    data_dir = get_data_dir(args.data_dir)
    configure_logging(args.command, data_dir, args.verbose)

    try:
        tracker = Tracker(data_dir)

        if args.command == "daemon":
            tracker.run_cycle()
        elif args.command == "status":
            print(format_status(tracker.live_session(), tracker.statistics(), tracker.config), end="")
        elif args.command == "history":
            print(format_history(tracker.history()))
        elif args.command == "reset":
            completed = tracker.reset_session()
            if completed is None:
                print("No active session to reset")
            else:
                print(f"Session {completed.session_num} reset and saved to history")
    except TrackerBusyError as e:
        logger.warning("%s", e)
        print(f"kbtrack: {e}", file=sys.stderr)
        return 1
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        print(f"kbtrack: invalid configuration: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.exception("Storage failure")
        print(f"kbtrack: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
