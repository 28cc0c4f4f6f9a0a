# tests/test_orchestrator_loop.py
"""
Integration tests for the orchestration loop.

Each test builds a throw-away git repository holding a committed
``prd.json``, then drives `Orchestrator.run()` with a scripted fake agent
(no real agent process is spawned).  The CI guard is real and runs tiny
shell commands configured through the backlog's ``ciConfig``.
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Callable, List

import pytest

from treadmill.agents.invoker import AgentResult
from treadmill.config import ConfigError, OrchestratorConfig
from treadmill.context.prompts import SENTINEL
from treadmill.dev.backlog import load, mark_complete, save
from treadmill.dev.ci_guard import CIGuard
from treadmill.dev.orchestrator import (
    EXIT_ABORTED,
    EXIT_DONE,
    EXIT_EXHAUSTED,
    EXIT_SETUP_ERROR,
    LoopState,
    Orchestrator,
    main,
)
from treadmill.dev.shell import RollbackFailure, ShellRunner

COMPILER_ERROR = "error[E0425]: cannot find value `undefined_thing` in this scope"
BUILD_CMD = f"if [ -f broken.rs ]; then echo '{COMPILER_ERROR}' >&2; exit 1; fi"


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #
def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, stdout=subprocess.PIPE, encoding="utf-8"
    ).stdout.strip()


def _history(repo: Path) -> List[str]:
    return _git(repo, "log", "--format=%H").splitlines()


def _backlog_obj(*passes: bool) -> dict:
    return {
        "projectName": "demo",
        "features": [
            {"id": f"F{i + 1}", "priority": i + 1, "title": f"feature {i + 1}", "passes": p}
            for i, p in enumerate(passes)
        ],
        "ciConfig": {"testCommand": None, "buildCommand": BUILD_CMD},
    }


def _init_repo(tmp_path: Path, *passes: bool, gitignore: bool = True) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "ci@example.com")
    _git(repo, "config", "user.name", "CI")
    (repo / "prd.json").write_text(json.dumps(_backlog_obj(*passes), indent=2))
    (repo / "README.md").write_text("demo\n")
    if gitignore:
        (repo / ".gitignore").write_text("progress.txt*\n.treadmill_logs/\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


def _commit(repo: Path, message: str) -> None:
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", message)


# --- scripted agent actions ------------------------------------------------
def implement(fid: str, *, sentinel: bool = False) -> Callable[[Path], AgentResult]:
    def _act(repo: Path) -> AgentResult:
        (repo / f"{fid.lower()}.rs").write_text("fn ok() {}\n")
        save(mark_complete(load(repo / "prd.json"), fid), repo / "prd.json")
        _commit(repo, f"{fid}: implement")
        return AgentResult(f"implemented {fid}\n" + (SENTINEL if sentinel else ""), 0)
    return _act


def break_build(fid: str) -> Callable[[Path], AgentResult]:
    def _act(repo: Path) -> AgentResult:
        (repo / "broken.rs").write_text("let x = undefined_thing;\n")
        save(mark_complete(load(repo / "prd.json"), fid), repo / "prd.json")
        _commit(repo, f"{fid}: implement (broken)")
        (repo / "leftover.tmp").write_text("scratch")
        return AgentResult(f"implemented {fid}", 0)
    return _act


def crash(*, after_commit: bool = False) -> Callable[[Path], AgentResult]:
    def _act(repo: Path) -> AgentResult:
        if after_commit:
            (repo / "half.rs").write_text("fn half() {}\n")
            _commit(repo, "half done")
        return AgentResult("Error: API rate limit exceeded", 1)
    return _act


def idle(*, sentinel: bool = False) -> Callable[[Path], AgentResult]:
    def _act(repo: Path) -> AgentResult:
        return AgentResult("nothing to do\n" + (SENTINEL if sentinel else ""), 0)
    return _act


class ScriptedAgent:
    def __init__(self, repo: Path, *actions: Callable[[Path], AgentResult]):
        self.repo = repo
        self.actions = list(actions)
        self.prompts: List[str] = []

    def invoke(self, prompt: str) -> AgentResult:
        self.prompts.append(prompt)
        return self.actions.pop(0)(self.repo)


class CountingGuard(CIGuard):
    def __init__(self, *a, **k):
        super().__init__(*a, **k)
        self.calls = 0

    def run(self, test_command, build_command):
        self.calls += 1
        return super().run(test_command, build_command)


def _orchestrator(repo: Path, agent: ScriptedAgent, *, max_iterations: int = 3, dry_run: bool = False):
    cfg = OrchestratorConfig(
        backlog_path="prd.json",
        work_dir=str(repo),
        max_iterations=max_iterations,
        dry_run=dry_run,
    )
    guard = CountingGuard(ShellRunner(repo))
    orch = Orchestrator(cfg, invoker=agent, guard=guard)
    return orch, guard


def _journal(repo: Path) -> str:
    return (repo / "progress.txt").read_text()


# --------------------------------------------------------------------------- #
# Terminal states
# --------------------------------------------------------------------------- #
def test_already_complete_backlog_is_done_without_invoking(tmp_path: Path):
    repo = _init_repo(tmp_path, True, True)
    agent = ScriptedAgent(repo)
    orch, guard = _orchestrator(repo, agent)

    summary = orch.run()

    assert summary["state"] is LoopState.DONE
    assert summary["iterations"] == 0
    assert agent.prompts == []
    assert guard.calls == 0


def test_features_completed_one_per_iteration(tmp_path: Path):
    repo = _init_repo(tmp_path, False, False)
    agent = ScriptedAgent(repo, implement("F1"), implement("F2"))
    orch, guard = _orchestrator(repo, agent)

    summary = orch.run()

    assert summary == {"state": LoopState.DONE, "iterations": 2, "exit_code": EXIT_DONE}
    assert guard.calls == 2
    assert "F1: feature 1" in agent.prompts[0]
    assert "F2: feature 2" in agent.prompts[1]
    journal = _journal(repo)
    assert "[START]" in journal
    assert "[1] Iteration completed successfully" in journal
    assert "[COMPLETE] All features verified passing" in journal


def test_iteration_bound_reached_is_exhausted(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    agent = ScriptedAgent(repo, idle(), idle())
    orch, _ = _orchestrator(repo, agent, max_iterations=2)

    summary = orch.run()

    assert summary["state"] is LoopState.EXHAUSTED
    assert summary["exit_code"] == EXIT_EXHAUSTED
    assert len(agent.prompts) == 2
    assert "[EXHAUSTED] Stopped after 2 iterations; 1 feature(s) still pending: F1" in _journal(repo)


# --------------------------------------------------------------------------- #
# Recoverable failures
# --------------------------------------------------------------------------- #
def test_agent_failure_skips_ci_and_advances(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    agent = ScriptedAgent(repo, crash(), implement("F1"))
    orch, guard = _orchestrator(repo, agent)

    summary = orch.run()

    assert summary["state"] is LoopState.DONE
    assert summary["iterations"] == 2
    assert guard.calls == 1  # only the second, successful iteration
    journal = _journal(repo)
    assert "[AGENT_FAILED] [1] AgentInvocationFailure: agent exited with code 1" in journal
    assert "API rate limit exceeded" in journal


def test_agent_failure_discards_its_commits(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    before = _history(repo)
    agent = ScriptedAgent(repo, crash(after_commit=True))
    orch, guard = _orchestrator(repo, agent, max_iterations=1)

    orch.run()

    assert guard.calls == 0
    assert _history(repo) == before
    assert not (repo / "half.rs").exists()


def test_ci_rejection_rolls_back_exactly_and_continues(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    before = _history(repo)
    agent = ScriptedAgent(repo, break_build("F1"), implement("F1"))
    orch, _ = _orchestrator(repo, agent, max_iterations=1)

    summary = orch.run()

    assert summary["state"] is LoopState.EXHAUSTED
    assert _history(repo) == before
    assert not (repo / "broken.rs").exists()
    assert not (repo / "leftover.tmp").exists()
    assert load(repo / "prd.json").get("F1").passes is False
    journal = _journal(repo)
    assert "[CI_REJECTED] [1] CiGuardFailure: build failed" in journal
    assert COMPILER_ERROR in journal
    assert "[ROLLBACK] [1] Reverted to" in journal

    # a fresh run gives the agent another attempt
    orch, _ = _orchestrator(repo, agent)
    assert orch.run()["state"] is LoopState.DONE


def test_rejected_flag_flip_on_untracked_backlog_is_restored(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    _git(repo, "rm", "-q", "--cached", "prd.json")
    _commit(repo, "stop tracking backlog")
    agent = ScriptedAgent(repo, break_build("F1"))
    orch, _ = _orchestrator(repo, agent, max_iterations=1)

    summary = orch.run()

    assert summary["state"] is LoopState.EXHAUSTED
    assert (repo / "prd.json").exists()
    assert load(repo / "prd.json").get("F1").passes is False


def test_journal_survives_rollback_without_gitignore(tmp_path: Path):
    repo = _init_repo(tmp_path, False, False, gitignore=False)
    agent = ScriptedAgent(repo, implement("F1"), break_build("F2"))
    orch, _ = _orchestrator(repo, agent, max_iterations=2)

    orch.run()

    journal = _journal(repo)
    assert "[1] Iteration completed successfully" in journal
    assert "[CI_REJECTED] [2] CiGuardFailure: build failed" in journal
    assert "[ROLLBACK] [2] Reverted to" in journal
    tracked = _git(repo, "ls-files").splitlines()
    assert "progress.txt" not in tracked
    assert not any(p.startswith(".treadmill_logs/") for p in tracked)
    assert "/progress.txt" in (repo / ".git" / "info" / "exclude").read_text().splitlines()


def test_rollback_restores_force_committed_journal_and_transcripts(tmp_path: Path):
    repo = _init_repo(tmp_path, False, gitignore=False)

    def _commit_everything_and_break(repo: Path) -> AgentResult:
        (repo / "broken.rs").write_text("let x = undefined_thing;\n")
        _git(repo, "add", "-A")
        _git(repo, "add", "-f", "progress.txt", ".treadmill_logs")
        _git(repo, "commit", "-q", "-m", "agent commits everything")
        return AgentResult("done", 0)

    agent = ScriptedAgent(repo, idle(), _commit_everything_and_break)
    orch, _ = _orchestrator(repo, agent, max_iterations=2)

    orch.run()

    journal = _journal(repo)
    assert "[START]" in journal
    assert "[1] Iteration completed successfully" in journal
    assert "[CI_REJECTED] [2]" in journal
    assert "[ROLLBACK] [2]" in journal
    transcripts = list((repo / ".treadmill_logs").glob("agent-*.jsonl"))
    assert len(transcripts) == 1
    events = [json.loads(l) for l in transcripts[0].read_text().splitlines()]
    assert [e["iteration"] for e in events] == [1, 2]


# --------------------------------------------------------------------------- #
# Sentinel handling
# --------------------------------------------------------------------------- #
def test_sentinel_is_cross_checked_against_backlog(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    agent = ScriptedAgent(repo, idle(sentinel=True), implement("F1"))
    orch, _ = _orchestrator(repo, agent)

    summary = orch.run()

    assert summary["state"] is LoopState.DONE
    assert summary["iterations"] == 2
    assert "[MISMATCH] [1] Agent signalled completion but 1 feature(s) still pending: F1" in _journal(repo)


def test_sentinel_with_new_commits_still_passes_the_gate(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    agent = ScriptedAgent(repo, implement("F1", sentinel=True))
    orch, guard = _orchestrator(repo, agent)

    summary = orch.run()

    assert summary["state"] is LoopState.DONE
    assert summary["iterations"] == 1
    assert guard.calls == 1


# --------------------------------------------------------------------------- #
# Fatal paths / dry run
# --------------------------------------------------------------------------- #
def test_rollback_failure_aborts_the_run(tmp_path: Path):
    work = tmp_path / "not-a-repo"
    work.mkdir()
    (work / "prd.json").write_text(json.dumps(_backlog_obj(False)))

    def _break(repo: Path) -> AgentResult:
        (repo / "broken.rs").write_text("x")
        return AgentResult("done", 0)

    agent = ScriptedAgent(work, _break)
    orch, _ = _orchestrator(work, agent)

    with pytest.raises(RollbackFailure):
        orch.run()
    assert "[ABORT] [1] RollbackFailure" in _journal(work)


def test_dry_run_does_not_roll_back(tmp_path: Path):
    repo = _init_repo(tmp_path, False)
    agent = ScriptedAgent(repo, break_build("F1"))
    orch, _ = _orchestrator(repo, agent, max_iterations=1, dry_run=True)

    orch.run()

    assert (repo / "broken.rs").exists()
    assert "DRY RUN: would reset to" in _journal(repo)


# --------------------------------------------------------------------------- #
# CLI
# --------------------------------------------------------------------------- #
@pytest.fixture
def clean_env(monkeypatch):
    for var in ("MAX_ITERATIONS", "PROGRESS_FILE", "WORK_DIR", "DRY_RUN", "CI_GUARD_LOG",
                "TREADMILL_AGENT_CMD", "TREADMILL_AGENT_TIMEOUT", "TREADMILL_LOG_DIR"):
        monkeypatch.delenv(var, raising=False)


def test_cli_missing_backlog_is_setup_error(tmp_path: Path, clean_env):
    assert main([str(tmp_path / "missing.json"), "--work-dir", str(tmp_path)]) == EXIT_SETUP_ERROR


def test_cli_malformed_backlog_is_setup_error(tmp_path: Path, clean_env):
    (tmp_path / "prd.json").write_text(json.dumps({"projectName": "x"}))
    assert main([str(tmp_path / "prd.json"), "--work-dir", str(tmp_path)]) == EXIT_SETUP_ERROR


def test_cli_done_prints_sentinel(tmp_path: Path, clean_env, capsys):
    repo = _init_repo(tmp_path, True)
    assert main([str(repo / "prd.json"), "--work-dir", str(repo)]) == EXIT_DONE
    assert SENTINEL in capsys.readouterr().out


def test_cli_status_and_mark_done(tmp_path: Path, clean_env, capsys):
    repo = _init_repo(tmp_path, False, False)
    prd = str(repo / "prd.json")

    assert main([prd, "--work-dir", str(repo), "--status"]) == EXIT_DONE
    assert "demo: 0/2 passing" in capsys.readouterr().out

    assert main([prd, "--work-dir", str(repo), "--mark-done", "F2"]) == EXIT_DONE
    assert load(prd).get("F2").passes is True
    assert "[AMEND] Feature F2 marked complete by operator" in _journal(repo)

    assert main([prd, "--work-dir", str(repo), "--mark-done", "F9"]) == EXIT_SETUP_ERROR


def test_cli_exhausted_exit_code_with_failing_agent(tmp_path: Path, clean_env):
    repo = _init_repo(tmp_path, False)
    code = main([
        str(repo / "prd.json"), "--work-dir", str(repo),
        "--max-iterations", "1", "--agent-cmd", "sh -c 'exit 7'",
    ])
    assert code == EXIT_EXHAUSTED
    assert "agent exited with code 7" in _journal(repo)


def test_cli_rollback_failure_exit_code(tmp_path: Path, clean_env):
    work = tmp_path / "not-a-repo"
    work.mkdir()
    (work / "prd.json").write_text(json.dumps(_backlog_obj(False)))
    code = main([
        str(work / "prd.json"), "--work-dir", str(work),
        "--agent-cmd", "sh -c 'touch broken.rs'",
    ])
    assert code == EXIT_ABORTED


def test_cli_archive_progress(tmp_path: Path, clean_env):
    repo = _init_repo(tmp_path, False)
    (repo / "progress.txt").write_text("[ts] old entry\n")
    assert main([str(repo / "prd.json"), "--work-dir", str(repo), "--archive-progress"]) == EXIT_DONE
    assert (repo / "progress.txt").read_text() == ""
    assert list(repo.glob("progress.txt.backup.*"))


def test_cli_verify_commits(tmp_path: Path, clean_env):
    repo = _init_repo(tmp_path, False)
    (repo / "broken.rs").write_text("x")
    _commit(repo, "bad")
    (repo / "broken.rs").unlink()
    _commit(repo, "fix")
    prd = str(repo / "prd.json")
    assert main([prd, "--work-dir", str(repo), "--verify-commits", "1"]) == EXIT_DONE
    assert main([prd, "--work-dir", str(repo), "--verify-commits", "3"]) == EXIT_EXHAUSTED


def test_cli_verify_commits_outside_repo_is_setup_error(tmp_path: Path, clean_env):
    (tmp_path / "prd.json").write_text(json.dumps(_backlog_obj(False)))
    code = main([str(tmp_path / "prd.json"), "--work-dir", str(tmp_path), "--verify-commits", "2"])
    assert code == EXIT_SETUP_ERROR
    assert "[ABORT] ShellCommandError:" in _journal(tmp_path)


def test_cli_operator_commands_leave_no_log_dir(tmp_path: Path, clean_env):
    repo = _init_repo(tmp_path, False, False, gitignore=False)
    prd = str(repo / "prd.json")

    assert main([prd, "--work-dir", str(repo), "--status"]) == EXIT_DONE
    assert main([prd, "--work-dir", str(repo), "--mark-done", "F1"]) == EXIT_DONE
    assert main([prd, "--work-dir", str(repo), "--archive-progress"]) == EXIT_DONE

    assert not (repo / ".treadmill_logs").exists()


@pytest.mark.parametrize("var", ["MAX_ITERATIONS", "TREADMILL_AGENT_TIMEOUT"])
def test_cli_non_numeric_environment_is_setup_error(tmp_path: Path, clean_env, monkeypatch, var):
    repo = _init_repo(tmp_path, False)
    monkeypatch.setenv(var, "ten")
    assert main([str(repo / "prd.json"), "--work-dir", str(repo)]) == EXIT_SETUP_ERROR


def test_config_error_names_the_variable():
    with pytest.raises(ConfigError, match="MAX_ITERATIONS"):
        OrchestratorConfig.from_env({"MAX_ITERATIONS": "many"})
    cfg = OrchestratorConfig.from_env({"MAX_ITERATIONS": "4", "TREADMILL_AGENT_TIMEOUT": "2.5"})
    assert (cfg.max_iterations, cfg.agent_timeout) == (4, 2.5)
