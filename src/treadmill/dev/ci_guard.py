# src/treadmill/dev/ci_guard.py
"""
Treadmill CIGuard
-----------------

Runs the resolved build and test commands and classifies the outcome.

• build runs first, then test; with ``fail_fast`` a failed build skips
  the test phase.
• stdout+stderr of every phase land in one combined log, each phase
  under a timestamped header.
• no configured command is a *pass* with a warning in the log.

`verify_commits(n)` replays the guard on each of the last *n* commits and
always returns HEAD to where it started.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Optional

from .detect import CiCommands
from .shell import ShellRunner

logger = logging.getLogger("treadmill.dev.ci_guard")

NO_COMMANDS_WARNING = "Warning: No test or build commands configured"


@dataclass(slots=True)
class CIResult:
    passed: bool
    log: str
    failed_phases: List[str] = field(default_factory=list)
    warning: Optional[str] = None

    @property
    def reason(self) -> str:
        if self.passed:
            return "passed"
        return f"{' and '.join(self.failed_phases)} failed"


class CiGuardFailure(Exception):
    """Raised by callers that gate on a red CI result."""

    def __init__(self, result: CIResult):
        super().__init__(result.reason)
        self.result = result


@dataclass(slots=True)
class CommitVerdict:
    sha: str
    result: CIResult


class CIGuard:
    def __init__(
        self,
        shell: ShellRunner,
        *,
        fail_fast: bool = False,
        log_path: str | os.PathLike | None = None,
    ):
        self.shell = shell
        self.fail_fast = fail_fast
        self.log_path = Path(log_path) if log_path else None

    # ------------------------------------------------------------------ #
    def run(self, test_command: Optional[str], build_command: Optional[str]) -> CIResult:
        lines: List[str] = ["=== CI Guard Starting ===", f"Timestamp: {self._now()}"]
        failed: List[str] = []
        warning: Optional[str] = None

        if build_command:
            if not self._phase("build", build_command, lines):
                failed.append("build")

        if test_command:
            if failed and self.fail_fast:
                lines.append(f"[{self._now()}] Skipping tests: build failed (fail-fast)")
            elif not self._phase("tests", test_command, lines):
                failed.append("tests")

        if not test_command and not build_command:
            warning = NO_COMMANDS_WARNING
            lines.append(f"⚠ {warning}")
            logger.warning(warning)

        lines.append(f"=== CI Guard Finished (exit: {1 if failed else 0}) ===")
        result = CIResult(passed=not failed, log="\n".join(lines), failed_phases=failed, warning=warning)
        self._persist(result.log)
        return result

    def run_commands(self, commands: CiCommands) -> CIResult:
        return self.run(commands.test_command, commands.build_command)

    # ------------------------------------------------------------------ #
    def verify_commits(self, n: int, commands: CiCommands) -> List[CommitVerdict]:
        """
        Check out each of the last *n* commits (newest first) and run the
        guard against it; stops at the first red commit.  The original
        branch/commit is restored on every exit path.
        """
        original = self.shell.git_current_ref()
        shas = self.shell.git_rev_list(n)
        verdicts: List[CommitVerdict] = []
        try:
            for sha in shas:
                logger.info("Checking commit: %s", sha)
                self.shell.git_checkout(sha)
                result = self.run_commands(commands)
                verdicts.append(CommitVerdict(sha, result))
                if not result.passed:
                    logger.error("Commit %s failed CI!", sha)
                    break
        finally:
            self.shell.git_checkout(original)
        if verdicts and all(v.result.passed for v in verdicts):
            logger.info("All %d commits pass CI!", len(verdicts))
        return verdicts

    # ------------------------------------------------------------------ #
    def _phase(self, label: str, command: str, lines: List[str]) -> bool:
        lines.append(f"--- [{self._now()}] Running {label}: {command}")
        rc, output = self.shell.run_shell(command)
        if output:
            lines.append(output.rstrip("\n"))
        ok = rc == 0
        lines.append(f"{'✓' if ok else '✗'} {label.capitalize()} {'passed' if ok else 'FAILED'} (exit {rc})")
        return ok

    def _persist(self, text: str) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text(text + "\n", encoding="utf-8")

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat(timespec="seconds")
