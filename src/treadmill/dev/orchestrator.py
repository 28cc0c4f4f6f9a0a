# src/treadmill/dev/orchestrator.py
"""
Treadmill Orchestrator
----------------------
Drives an external coding agent through the backlog, one feature-sized
iteration at a time, until every feature passes or the iteration bound
is hit.

States
~~~~~~
INIT → ITERATING → {AGENT_FAILED, CI_REJECTED, ITERATION_OK} → ITERATING | DONE | EXHAUSTED

Safety invariant
~~~~~~~~~~~~~~~~
No unverified change survives an iteration: work from a failed agent run
or a red CI gate is hard-reset to the commit that was HEAD when the
iteration began, and backlog flags flipped during that iteration are
restored with it.  If the reset itself fails the run aborts.

Only the backlog file and the progress journal carry state between
iterations; a crashed run resumes by simply starting again.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import tabulate

from treadmill.agents.invoker import AgentInvocationFailure, AgentInvoker, AgentResult
from treadmill.audit.agent_event_log import AgentEventLogger
from treadmill.config import ConfigError, OrchestratorConfig
from treadmill.context.composer import compose
from treadmill.context.prompts import AGENT_PROMPT, SENTINEL
from .backlog import (
    Backlog,
    MalformedBacklog,
    UnknownFeatureId,
    is_complete,
    load,
    mark_complete,
    save,
)
from .ci_guard import CIGuard, CiGuardFailure
from .detect import CiCommands, detect, resolve_commands
from .journal import ProgressJournal
from .shell import RollbackFailure, ShellCommandError, ShellRunner

logger = logging.getLogger("treadmill")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s"))
    logger.addHandler(h)
logger.setLevel(logging.INFO)
log = logging.getLogger("treadmill.dev.orchestrator")

EXIT_DONE = 0
EXIT_EXHAUSTED = 1
EXIT_SETUP_ERROR = 2
EXIT_ABORTED = 3

_FRAMING = ("===", "--- [", "Timestamp:")


class LoopState(str, Enum):
    INIT = "INIT"
    ITERATING = "ITERATING"
    AGENT_FAILED = "AGENT_FAILED"
    CI_REJECTED = "CI_REJECTED"
    ITERATION_OK = "ITERATION_OK"
    DONE = "DONE"
    EXHAUSTED = "EXHAUSTED"


# --------------------------------------------------------------------------- #
# Orchestrator
# --------------------------------------------------------------------------- #
class Orchestrator:
    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        shell: ShellRunner | None = None,
        guard: CIGuard | None = None,
        invoker: AgentInvoker | None = None,
        journal: ProgressJournal | None = None,
        agent_log: AgentEventLogger | None = None,
        template: str = AGENT_PROMPT,
    ):
        self.config = config
        self.work_dir = Path(config.work_dir).resolve()
        self.backlog_path = config.resolve("backlog_path")
        self.template = template

        # Core collaborators -------------------------------------------------
        self.shell = shell or ShellRunner(self.work_dir)
        self.guard = guard or CIGuard(
            self.shell,
            fail_fast=config.fail_fast,
            log_path=config.resolve("ci_log_path") if config.ci_log_path else None,
        )
        self.invoker = invoker or AgentInvoker(
            config.agent_command,
            cwd=self.work_dir,
            timeout=config.agent_timeout,
            dry_run=config.dry_run,
        )
        self.journal = journal or ProgressJournal(config.resolve("progress_path"))
        # created on first agent run so operator commands leave no log dir behind
        self._agent_log = agent_log
        self.log_dir = agent_log.log_dir if agent_log is not None else config.resolve("log_dir")

        self.commands = CiCommands()

    @property
    def agent_log(self) -> AgentEventLogger:
        if self._agent_log is None:
            self._agent_log = AgentEventLogger(self.log_dir)
        return self._agent_log

    # ------------------------------------------------------------------ #
    # Journal helper – every event goes to the operator *and* the journal
    # ------------------------------------------------------------------ #
    def _note(self, message: str, level: int = logging.INFO) -> None:
        log.log(level, message)
        self.journal.append(message)

    def _load_backlog(self) -> Backlog:
        return load(self.backlog_path)

    def _orchestrator_files(self) -> List[Path]:
        """Files the loop owns; never part of the agent's commits."""
        paths = [self.journal.path, self.journal.lock_path, self.log_dir]
        if self.guard.log_path is not None:
            paths.append(Path(self.guard.log_path))
        return paths

    def _protected_paths(self) -> List[Path]:
        return [self.backlog_path, *self._orchestrator_files()]

    def _exclude_orchestrator_files(self) -> None:
        try:
            added = self.shell.git_exclude(self._orchestrator_files())
        except (ShellCommandError, OSError) as ex:
            log.warning("Could not update git excludes: %s", ex)
            return
        if added:
            log.info("Added to git info/exclude: %s", ", ".join(added))

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #
    def run(self) -> Dict[str, Any]:
        """
        Run to DONE or EXHAUSTED.  `MalformedBacklog` before the first
        iteration and `RollbackFailure` at any point propagate to the caller.
        """
        backlog = self._load_backlog()
        if is_complete(backlog):
            self._note("[COMPLETE] All features already passing")
            print(f"[✔] All {len(backlog.features)} features already passing!")
            return {"state": LoopState.DONE, "iterations": 0, "exit_code": EXIT_DONE}

        self.commands = resolve_commands(detect(self.work_dir), backlog.ci_config)
        self._exclude_orchestrator_files()
        self.journal.touch()
        self._note(
            f"[START] Orchestrator started with backlog: {self.backlog_path} "
            f"(max iterations: {self.config.max_iterations})"
        )
        log.info("Test command: %s", self.commands.test_command or "none")
        log.info("Build command: %s", self.commands.build_command or "none")
        if self.commands.empty:
            self._note(
                "[WARN] No test or build commands configured; the CI gate cannot reject anything",
                logging.WARNING,
            )

        for iteration in range(1, self.config.max_iterations + 1):
            try:
                outcome = self.run_iteration(iteration, backlog)
            except RollbackFailure as ex:
                self._note(f"[ABORT] [{iteration}] RollbackFailure: {ex}", logging.ERROR)
                print(f"[X] Rollback FAILED: {ex}")
                raise

            previous, backlog = backlog, self._reload_after(iteration, backlog)
            self._check_unmarked(previous, backlog)

            if is_complete(backlog):
                self._note("[COMPLETE] All features verified passing")
                print("[✔] Orchestrator finished: all features passing")
                return {"state": LoopState.DONE, "iterations": iteration, "exit_code": EXIT_DONE}

            if outcome.get("sentinel"):
                pending = [f.id for f in backlog.pending()]
                self._note(
                    f"[MISMATCH] [{iteration}] Agent signalled completion but "
                    f"{len(pending)} feature(s) still pending: {', '.join(pending)}",
                    logging.WARNING,
                )

        pending = [f.id for f in backlog.pending()]
        self._note(
            f"[EXHAUSTED] Stopped after {self.config.max_iterations} iterations; "
            f"{len(pending)} feature(s) still pending: {', '.join(pending)}",
            logging.WARNING,
        )
        print(f"[X] Reached maximum iterations ({self.config.max_iterations}) without completion")
        return {
            "state": LoopState.EXHAUSTED,
            "iterations": self.config.max_iterations,
            "exit_code": EXIT_EXHAUSTED,
        }

    # ------------------------------------------------------------------ #
    # One iteration
    # ------------------------------------------------------------------ #
    def run_iteration(self, iteration: int, backlog: Backlog) -> Dict[str, Any]:
        log.info("=== Iteration %d of %d ===", iteration, self.config.max_iterations)
        base_sha = self.shell.git_head()
        prompt = compose(
            self.template,
            backlog,
            self.journal.tail(self.config.progress_tail),
            self.commands,
            backlog_path=self.backlog_path.name,
        )

        # 1️⃣  Agent ----------------------------------------------------------
        try:
            result = self._invoke(iteration, prompt)
        except AgentInvocationFailure as ex:
            self._note(f"[AGENT_FAILED] [{iteration}] AgentInvocationFailure: {ex}", logging.ERROR)
            if self._iteration_changed(base_sha):
                self._rollback(iteration, base_sha, backlog, reason="agent failed")
            return {"iteration": iteration, "state": LoopState.AGENT_FAILED, "error": str(ex)}

        if result.completed:
            log.info("Agent signalled completion")
            if not self._iteration_changed(base_sha):
                self._note(f"[{iteration}] Agent signalled completion without new changes")
                return {"iteration": iteration, "state": LoopState.ITERATION_OK, "sentinel": True}

        # 2️⃣  CI gate --------------------------------------------------------
        try:
            self._gate()
        except CiGuardFailure as ex:
            excerpt = _failure_excerpt(ex.result.log)
            self._note(
                f"[CI_REJECTED] [{iteration}] CiGuardFailure: {ex}" + (f"\n{excerpt}" if excerpt else ""),
                logging.ERROR,
            )
            print("[X] CI guard failed! Reverting iteration...")
            self._rollback(iteration, base_sha, backlog, reason=str(ex))
            return {
                "iteration": iteration,
                "state": LoopState.CI_REJECTED,
                "reason": str(ex),
                "sentinel": result.completed,
            }

        print("[✔] CI guard passed!")
        self._note(f"[{iteration}] Iteration completed successfully")
        return {"iteration": iteration, "state": LoopState.ITERATION_OK, "sentinel": result.completed}

    def _invoke(self, iteration: int, prompt: str) -> AgentResult:
        result = self.invoker.invoke(prompt)
        try:
            self.agent_log.log_invocation(
                iteration, prompt, result.transcript, result.exit_code, result.completed
            )
        except OSError as ex:
            log.warning("Could not write agent transcript: %s", ex)
        if result.exit_code != 0:
            tail = result.transcript.strip().splitlines()[-3:]
            raise AgentInvocationFailure(
                f"agent exited with code {result.exit_code}"
                + (f": {' | '.join(tail)}" if tail else ""),
                result,
            )
        return result

    def _gate(self) -> None:
        result = self.guard.run_commands(self.commands)
        log.debug("CI log:\n%s", result.log)
        if not result.passed:
            raise CiGuardFailure(result)

    def _iteration_changed(self, base_sha: Optional[str]) -> bool:
        try:
            head = self.shell.git_head()
            if head != base_sha:
                return True
            return self.shell.git_is_dirty(ignore=self._protected_paths())
        except (ShellCommandError, OSError):
            return True

    # ------------------------------------------------------------------ #
    # Rollback – explicit, narrowly scoped
    # ------------------------------------------------------------------ #
    def _rollback(self, iteration: int, base_sha: Optional[str], snapshot: Backlog, *, reason: str) -> None:
        if self.config.dry_run:
            self._note(f"[ROLLBACK] [{iteration}] DRY RUN: would reset to {base_sha} ({reason})")
            return
        saved = self._snapshot_audit_files()
        try:
            self.shell.revert_to(base_sha, keep=self._protected_paths())
        finally:
            # a reset must never rewind the journal or the transcripts
            self._restore_audit_files(saved)
        self._restore_backlog(snapshot)
        self._note(f"[ROLLBACK] [{iteration}] Reverted to {base_sha[:12]} ({reason})")
        print("[↩] Rollback successful – working tree restored.")

    def _snapshot_audit_files(self) -> Dict[Path, bytes]:
        files = [self.journal.path]
        if self.guard.log_path is not None:
            files.append(Path(self.guard.log_path))
        if self.log_dir.is_dir():
            files.extend(p for p in self.log_dir.iterdir() if p.suffix != ".lock")
        return {p: p.read_bytes() for p in files if p.is_file()}

    @staticmethod
    def _restore_audit_files(saved: Dict[Path, bytes]) -> None:
        for path, data in saved.items():
            if path.is_file() and path.read_bytes() == data:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            log.info("Restored %s after rollback", path.name)

    def _restore_backlog(self, snapshot: Backlog) -> None:
        try:
            current: Optional[Backlog] = self._load_backlog()
        except (MalformedBacklog, FileNotFoundError):
            current = None
        if current != snapshot:
            save(snapshot, self.backlog_path)
            log.info("Backlog restored to its pre-iteration state")

    def _reload_after(self, iteration: int, previous: Backlog) -> Backlog:
        try:
            return self._load_backlog()
        except (MalformedBacklog, FileNotFoundError) as ex:
            # the agent damaged the backlog after CI already passed
            self._note(
                f"[WARN] [{iteration}] Backlog unreadable after iteration ({ex}); restoring last good copy",
                logging.WARNING,
            )
            save(previous, self.backlog_path)
            return previous

    def _check_unmarked(self, previous: Backlog, current: Backlog) -> None:
        was_passing = {f.id for f in previous.features if f.passes}
        for feat in current.features:
            if feat.id in was_passing and not feat.passes:
                self._note(f"[WARN] Feature {feat.id} was un-marked outside the loop", logging.WARNING)

    # ------------------------------------------------------------------ #
    # Operator helpers
    # ------------------------------------------------------------------ #
    def format_backlog(self, backlog: Backlog) -> str:
        if not backlog.features:
            return "(Backlog empty)"
        rows = [
            (f.id, f.priority, "✔" if f.passes else "", f.title[:60])
            for f in backlog.features
        ]
        headers = ["id", "priority", "passes", "title"]
        done = len(backlog.features) - len(backlog.pending())
        table = tabulate.tabulate(rows, headers, tablefmt="github")
        return f"{backlog.project_name}: {done}/{len(backlog.features)} passing\n{table}"

    def mark_done(self, feature_id: str) -> Backlog:
        backlog = mark_complete(self._load_backlog(), feature_id)
        save(backlog, self.backlog_path)
        self._note(f"[AMEND] Feature {feature_id} marked complete by operator")
        return backlog

    def verify_commits(self, n: int) -> bool:
        backlog = self._load_backlog()
        commands = resolve_commands(detect(self.work_dir), backlog.ci_config)
        verdicts = self.guard.verify_commits(n, commands)
        rows = [(v.sha[:12], "pass" if v.result.passed else v.result.reason) for v in verdicts]
        print(tabulate.tabulate(rows, ["commit", "ci"], tablefmt="github"))
        ok = bool(verdicts) and all(v.result.passed for v in verdicts)
        self._note(
            f"[VERIFY] {len(verdicts)} commit(s) checked: {'all green' if ok else 'RED commit found'}",
            logging.INFO if ok else logging.ERROR,
        )
        return ok


def _failure_excerpt(ci_log: str, limit: int = 8) -> str:
    lines = [
        line for line in ci_log.splitlines()
        if line.strip() and not line.startswith(_FRAMING)
    ]
    return "\n".join(lines[-limit:])


# --------------------------------------------------------------------------- #
# CLI
# --------------------------------------------------------------------------- #
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treadmill",
        description="Long-running agent orchestrator: loop a coding agent over a feature backlog.",
    )
    parser.add_argument("backlog", nargs="?", default=None, help="Backlog JSON file (default: prd.json)")
    parser.add_argument("--max-iterations", type=int, default=None, help="Maximum loop iterations (default: 10)")
    parser.add_argument("--work-dir", default=None, help="Working directory for the agent (default: current)")
    parser.add_argument("--progress", dest="progress_path", default=None, help="Progress file (default: progress.txt)")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Run without executing the agent or rollbacks")
    parser.add_argument("--ci-log", dest="ci_log_path", default=None, help="Persist the latest CI log to this file")
    parser.add_argument("--agent-cmd", dest="agent_command", default=None, help="Agent command line; '{prompt}' is substituted")
    parser.add_argument("--agent-timeout", type=float, default=None, help="Wall-clock limit per agent run, in seconds")
    parser.add_argument("--fail-fast", action="store_true", default=None, help="Skip tests when the build fails")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--status", action="store_true", help="Print the backlog and exit")
    group.add_argument("--archive-progress", action="store_true", help="Back up and truncate the progress file")
    group.add_argument("--verify-commits", type=int, metavar="N", help="Run the CI guard on each of the last N commits")
    group.add_argument("--mark-done", metavar="ID", help="Mark a feature as passing and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        env_cfg = OrchestratorConfig.from_env()
    except ConfigError as ex:
        log.error("Invalid environment: %s", ex)
        return EXIT_SETUP_ERROR
    cfg = env_cfg.override(
        backlog_path=os.path.abspath(args.backlog) if args.backlog else None,
        max_iterations=args.max_iterations,
        work_dir=args.work_dir,
        progress_path=args.progress_path,
        dry_run=args.dry_run,
        ci_log_path=args.ci_log_path,
        agent_command=args.agent_command,
        agent_timeout=args.agent_timeout,
        fail_fast=args.fail_fast,
    )
    if cfg.max_iterations < 1:
        log.error("--max-iterations must be at least 1")
        return EXIT_SETUP_ERROR
    if not Path(cfg.work_dir).is_dir():
        log.error("Working directory not found: %s", cfg.work_dir)
        return EXIT_SETUP_ERROR

    orch = Orchestrator(cfg)
    if not orch.backlog_path.is_file() and not args.archive_progress:
        log.error("Backlog file not found: %s", orch.backlog_path)
        return EXIT_SETUP_ERROR

    log.info("Backlog: %s", orch.backlog_path)
    log.info("Max iterations: %d", cfg.max_iterations)
    log.info("Working directory: %s", orch.work_dir)

    try:
        if args.status:
            print(orch.format_backlog(orch._load_backlog()))
            return EXIT_DONE
        if args.archive_progress:
            backup = orch.journal.archive()
            print(f"Backed up to: {backup}" if backup else "No progress file to back up.")
            print("Progress file cleared.")
            return EXIT_DONE
        if args.mark_done:
            orch.mark_done(args.mark_done)
            print(f"[✔] Feature {args.mark_done} marked as passing.")
            return EXIT_DONE
        if args.verify_commits is not None:
            return EXIT_DONE if orch.verify_commits(args.verify_commits) else EXIT_EXHAUSTED

        summary = orch.run()
    except (MalformedBacklog, UnknownFeatureId) as ex:
        log.error("%s: %s", type(ex).__name__, ex)
        return EXIT_SETUP_ERROR
    except RollbackFailure:
        return EXIT_ABORTED
    except ShellCommandError as ex:
        orch._note(f"[ABORT] ShellCommandError: {ex}", logging.ERROR)
        return EXIT_SETUP_ERROR

    if summary["state"] is LoopState.DONE:
        print(SENTINEL)
    return summary["exit_code"]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
