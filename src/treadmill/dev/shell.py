# src/treadmill/dev/shell.py
"""
Treadmill ShellRunner
---------------------

Thin wrapper around the git and shell invocations the orchestrator needs.

Enforced invariants
-------------------
• `revert_to(sha)` refuses to run unless *sha* names an existing commit.
• After a successful `revert_to(sha)`, HEAD == sha and the working tree
  holds no tracked or untracked changes (except the explicitly kept
  orchestrator files).
• Any git failure during a revert surfaces as `RollbackFailure`; callers
  must abort rather than continue on an unknown tree.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger("treadmill.dev.shell")


class ShellCommandError(Exception):
    """Raised when a git/shell command fails."""


class RollbackFailure(ShellCommandError):
    """Raised when the working tree cannot be restored to a prior commit."""


class ShellRunner:
    def __init__(self, repo_dir: str | os.PathLike = "."):
        self.repo_dir = os.path.abspath(repo_dir)
        if not os.path.isdir(self.repo_dir):
            raise ValueError(
                f"repo_dir '{self.repo_dir}' does not exist or is not a directory."
            )

    # ------------------------------------------------------------------ #
    # Generic helpers
    # ------------------------------------------------------------------ #
    def run(self, cmd: List[str], *, check: bool = True) -> str:
        """Run an argv command in the repo; return stdout."""
        result = subprocess.run(
            cmd,
            cwd=self.repo_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            check=False,
        )
        if check and result.returncode != 0:
            raise ShellCommandError(
                f"{' '.join(cmd)} failed: {(result.stderr or result.stdout or '').strip()}"
            )
        return result.stdout or ""

    def run_shell(self, command: str) -> Tuple[int, str]:
        """
        Run a shell command line (``a && b`` allowed).
        Returns (exit code, combined stdout+stderr).
        """
        result = subprocess.run(
            command,
            shell=True,
            cwd=self.repo_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
        return result.returncode, result.stdout or ""

    # ------------------------------------------------------------------ #
    # Git queries
    # ------------------------------------------------------------------ #
    def git_head(self) -> Optional[str]:
        """SHA of HEAD, or None outside a repo / before the first commit."""
        try:
            return self.run(["git", "rev-parse", "--verify", "HEAD"]).strip() or None
        except (ShellCommandError, OSError):
            return None

    def git_current_ref(self) -> str:
        """Branch name when attached, else the HEAD sha."""
        branch = self.run(["git", "rev-parse", "--abbrev-ref", "HEAD"]).strip()
        if branch and branch != "HEAD":
            return branch
        return self.run(["git", "rev-parse", "HEAD"]).strip()

    def git_commit_exists(self, sha: str) -> bool:
        try:
            self.run(["git", "cat-file", "-e", f"{sha}^{{commit}}"])
            return True
        except (ShellCommandError, OSError):
            return False

    def git_is_dirty(self, *, ignore: Iterable[str | os.PathLike] = ()) -> bool:
        """True if `git status` reports anything outside the *ignore* paths."""
        skip = {rel for rel in (self._repo_relative(p) for p in ignore) if rel}
        for line in self.run(["git", "status", "--porcelain", "--untracked-files=all"]).splitlines():
            path = line[3:].strip().strip('"')
            if path and path not in skip and not any(path.startswith(s + "/") for s in skip):
                return True
        return False

    def git_rev_list(self, n: int, ref: str = "HEAD") -> List[str]:
        out = self.run(["git", "rev-list", "-n", str(n), ref])
        return [line.strip() for line in out.splitlines() if line.strip()]

    # ------------------------------------------------------------------ #
    # Git mutators
    # ------------------------------------------------------------------ #
    def git_checkout(self, ref: str) -> None:
        self.run(["git", "checkout", "--quiet", ref])

    def git_exclude(self, paths: Iterable[str | os.PathLike]) -> List[str]:
        """
        Add *paths* to the repository-local ``info/exclude`` so `git add -A`
        never stages them.  Returns the patterns that were newly added.
        """
        exclude = os.path.join(
            self.repo_dir, self.run(["git", "rev-parse", "--git-path", "info/exclude"]).strip()
        )
        prefix = self.run(["git", "rev-parse", "--show-prefix"]).strip()
        patterns = [
            "/" + prefix + rel
            for rel in (self._repo_relative(p) for p in paths)
            if rel and rel != "."
        ]

        existing = ""
        if os.path.exists(exclude):
            with open(exclude, encoding="utf-8") as fh:
                existing = fh.read()
        known = set(existing.splitlines())
        new = [p for p in dict.fromkeys(patterns) if p not in known]
        if new:
            os.makedirs(os.path.dirname(exclude), exist_ok=True)
            with open(exclude, "a", encoding="utf-8") as fh:
                if existing and not existing.endswith("\n"):
                    fh.write("\n")
                fh.write("\n".join(new) + "\n")
        return new

    def revert_to(self, sha: Optional[str], *, keep: Iterable[str | os.PathLike] = ()) -> None:
        """
        Hard-reset HEAD and the working tree to *sha* and remove untracked
        files, sparing the paths in *keep*.

        Precondition: *sha* is an existing commit.
        Postcondition: HEAD == sha and ``git status`` shows nothing but *keep*.
        """
        if not sha:
            raise RollbackFailure("No prior commit recorded; cannot roll back.")
        if not self.git_commit_exists(sha):
            raise RollbackFailure(f"Prior commit {sha} does not exist; cannot roll back.")

        clean_cmd = ["git", "clean", "-fd"]
        for path in keep:
            rel = self._repo_relative(path)
            if rel is not None:
                clean_cmd += ["-e", "/" + rel]

        try:
            self.run(["git", "reset", "--hard", "--quiet", sha])
            self.run(clean_cmd)
        except (ShellCommandError, OSError) as ex:
            raise RollbackFailure(f"git rollback to {sha} failed: {ex}") from ex

        head = self.git_head()
        if head != sha:
            raise RollbackFailure(f"HEAD is {head} after rollback, expected {sha}")
        logger.info("Rolled back to %s", sha[:12])

    def _repo_relative(self, path: str | os.PathLike) -> Optional[str]:
        absolute = os.path.abspath(os.path.join(self.repo_dir, os.fspath(path)))
        rel = os.path.relpath(absolute, self.repo_dir)
        if rel.startswith(os.pardir):
            return None
        return rel.replace(os.sep, "/")
