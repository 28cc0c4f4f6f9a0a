from __future__ import annotations

import hashlib
import json
import os
import time
from pathlib import Path
from threading import RLock
from typing import Any, Dict

from filelock import FileLock

MAX_BYTES = int(os.getenv("TREADMILL_AGENT_LOG_ROLL_MB", "50")) * 1024 * 1024


class AgentEventLogger:
    """
    Append-only JSON-Lines audit log of agent invocations.
    Each write = one *event* dict:
        {ts, event, iteration, exit_code, sentinel, prompt_sha, transcript}
    """

    def __init__(self, log_dir: str | os.PathLike = ".treadmill_logs"):
        # Resolve now so later ``chdir`` calls do not break logging
        self.log_dir = Path(log_dir).resolve()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        ts = time.strftime("%Y%m%d-%H%M%S")
        self._file = self.log_dir / f"agent-{ts}.jsonl"
        self._lock = RLock()
        self._flock = FileLock(str(self._file) + ".lock")

    @property
    def path(self) -> Path:
        return self._file

    # ---------------- public helpers --------------------------------
    def log_invocation(
        self,
        iteration: int,
        prompt: str,
        transcript: str,
        exit_code: int,
        sentinel: bool,
    ) -> None:
        self._write({
            "ts": time.time(),
            "event": "agent_invocation",
            "iteration": iteration,
            "exit_code": exit_code,
            "sentinel": sentinel,
            "prompt_sha": hashlib.sha1(prompt.encode()).hexdigest(),
            "transcript": transcript,
        })

    # ---------------- internals -------------------------------------
    def _write(self, obj: Dict[str, Any]) -> None:
        line = json.dumps(obj, ensure_ascii=False) + "\n"
        with self._flock, self._lock:
            with self._file.open("a", encoding="utf-8") as fh:
                fh.write(line)

        # rotate if the file gets too big
        if self._file.stat().st_size > MAX_BYTES:
            ts = time.strftime("%Y%m%d-%H%M%S")
            self._file.rename(self._file.with_name(f"agent-{ts}.jsonl.1"))
            # new empty file will be created automatically on next write
