"""
Sample store - newline-delimited JSON log of every cycle's reading.

Records are appended newest-last. Once the log grows past the retention
limit the newest records are rewritten into a fresh file and swapped in
atomically, so readers only ever see complete records.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import SAMPLE_RETENTION
from .models import SampleRecord
from .storage import atomic_write_text

logger = logging.getLogger(__name__)


class SampleStore:
    """Append-only sample log with bounded retention."""

    def __init__(self, path, max_records: int = SAMPLE_RETENTION):
        if max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {max_records}")
        self.path = Path(path)
        self.max_records = max_records

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return [line for line in f.read().splitlines() if line.strip()]
        except OSError as e:
            logger.warning("Cannot read sample log %s: %s", self.path, e)
            return []

    def _ends_with_newline(self) -> bool:
        """True for a missing or empty log, or one whose last byte is a newline."""
        try:
            with open(self.path, "rb") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return True
                f.seek(-1, os.SEEK_END)
                return f.read(1) == b"\n"
        except FileNotFoundError:
            return True

    def append(self, record: SampleRecord):
        """Append one record, pruning the oldest beyond the retention limit."""
        line = json.dumps(record.to_dict(), sort_keys=True)
        lines = self._read_lines()

        if len(lines) + 1 > self.max_records:
            keep = lines[-(self.max_records - 1):] if self.max_records > 1 else []
            keep.append(line)
            atomic_write_text(self.path, "\n".join(keep) + "\n")
            logger.debug("Pruned sample log to %d records", len(keep))
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Terminate a partial last line left by a crash so it stays on its own
        if not self._ends_with_newline():
            line = "\n" + line
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def read(self, limit: Optional[int] = None) -> List[SampleRecord]:
        """
        Return stored records in order, oldest first.

        Args:
            limit: Only return the newest ``limit`` records.
        """
        records = []
        for number, line in enumerate(self._read_lines(), start=1):
            try:
                records.append(SampleRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping malformed sample on line %d: %s", number, e)
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def read_since(self, since: datetime) -> List[SampleRecord]:
        return [r for r in self.read() if r.timestamp >= since]

    def __len__(self):
        return len(self._read_lines())
