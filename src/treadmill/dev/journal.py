# src/treadmill/dev/journal.py
"""
Treadmill ProgressJournal
-------------------------
Append-only, human-readable audit trail of a run.  One line per entry::

    [2026-10-19T08:15:02+00:00] [3] Iteration completed successfully

Writes are serialised by an in-process RLock *and* a `filelock.FileLock`
on ``<progress>.lock`` so an operator tailing or archiving from another
shell never sees a torn line.
"""

from __future__ import annotations

import os
import re
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Optional

from filelock import FileLock

_LINE_RE = re.compile(r"^\[(?P<ts>[^\]]+)\] (?P<msg>.*)$")


@dataclass(frozen=True, slots=True)
class ProgressEntry:
    timestamp: Optional[str]
    message: str

    def render(self) -> str:
        return f"[{self.timestamp}] {self.message}"

    @staticmethod
    def parse(line: str) -> "ProgressEntry":
        m = _LINE_RE.match(line)
        if m is None:
            return ProgressEntry(None, line)
        return ProgressEntry(m.group("ts"), m.group("msg"))


class ProgressJournal:
    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._flock = FileLock(str(self.path) + ".lock")

    @property
    def lock_path(self) -> Path:
        return Path(str(self.path) + ".lock")

    # ------------------------------------------------------------------ #
    # Writers
    # ------------------------------------------------------------------ #
    def append(self, message: str) -> ProgressEntry:
        """Append one timestamped entry; newlines in *message* are flattened."""
        flat = " | ".join(part for part in message.splitlines() if part.strip()) or message.strip()
        entry = ProgressEntry(self._now(), flat)
        with self._flock, self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(entry.render() + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        return entry

    def touch(self) -> None:
        with self._flock, self._lock:
            self.path.touch(exist_ok=True)

    def archive(self) -> Optional[Path]:
        """
        Copy the journal to ``<progress>.backup.<timestamp>`` and truncate it.
        Returns the backup path, or None if there was no journal to back up.
        """
        with self._flock, self._lock:
            backup: Optional[Path] = None
            if self.path.exists():
                stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
                backup = self.path.with_name(f"{self.path.name}.backup.{stamp}")
                shutil.copy2(self.path, backup)
            with self.path.open("w", encoding="utf-8"):
                pass
            return backup

    # ------------------------------------------------------------------ #
    # Readers
    # ------------------------------------------------------------------ #
    def entries(self) -> List[ProgressEntry]:
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        return [ProgressEntry.parse(line) for line in lines if line.strip()]

    def tail(self, n: int = 50) -> List[ProgressEntry]:
        """Last *n* entries, oldest first.  Empty if the journal is absent."""
        if n <= 0:
            return []
        return self.entries()[-n:]

    def count(self) -> int:
        return len(self.entries())

    def search(self, pattern: str) -> List[ProgressEntry]:
        rx = re.compile(pattern, re.I)
        return [e for e in self.entries() if rx.search(e.message)]

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat(timespec="seconds")
