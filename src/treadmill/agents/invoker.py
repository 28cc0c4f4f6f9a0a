# src/treadmill/agents/invoker.py
"""
Agent invocation.

The coding agent is an external process: prompt in, transcript + exit code
out.  The call blocks until the process exits.  An optional wall-clock
limit may be supplied by the caller; expiry is reported as exit code 124
(the `timeout(1)` convention) and is handled like any other non-zero exit.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from treadmill.context.prompts import SENTINEL

logger = logging.getLogger("treadmill.agents.invoker")

DEFAULT_AGENT_COMMAND = (
    "claude", "-p", "{prompt}", "--output-format", "text", "--dangerously-skip-permissions",
)
PROMPT_TOKEN = "{prompt}"
TIMEOUT_EXIT_CODE = 124


class AgentInvocationFailure(Exception):
    """Raised when the agent cannot be spawned or exits non-zero."""

    def __init__(self, message: str, result: "AgentResult | None" = None):
        super().__init__(message)
        self.result = result


@dataclass(frozen=True, slots=True)
class AgentResult:
    transcript: str
    exit_code: int

    @property
    def completed(self) -> bool:
        """True if the agent self-reported that the whole backlog is done."""
        return SENTINEL in self.transcript


def parse_command(command: str | Sequence[str] | None) -> List[str]:
    if command is None:
        return list(DEFAULT_AGENT_COMMAND)
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)


class AgentInvoker:
    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        *,
        cwd: str | os.PathLike = ".",
        timeout: Optional[float] = None,
        dry_run: bool = False,
    ):
        self.command = parse_command(command)
        self.cwd = os.path.abspath(cwd)
        self.timeout = timeout
        self.dry_run = dry_run

    def _argv(self, prompt: str) -> tuple[List[str], Optional[str]]:
        if PROMPT_TOKEN in self.command:
            return [prompt if tok == PROMPT_TOKEN else tok for tok in self.command], None
        return list(self.command), prompt

    def invoke(self, prompt: str) -> AgentResult:
        if self.dry_run:
            logger.warning("DRY RUN: would execute agent with prompt (truncated):\n%s...", prompt[:500])
            return AgentResult(transcript="[dry-run] agent not invoked", exit_code=0)

        argv, stdin = self._argv(prompt)
        logger.info("Spawning agent: %s", argv[0])
        try:
            result = subprocess.run(
                argv,
                cwd=self.cwd,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as ex:
            partial = ex.output or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            logger.error("Agent exceeded %ss wall-clock limit", self.timeout)
            return AgentResult(transcript=partial, exit_code=TIMEOUT_EXIT_CODE)
        except OSError as ex:
            raise AgentInvocationFailure(f"could not spawn agent {argv[0]!r}: {ex}") from ex

        return AgentResult(transcript=result.stdout or "", exit_code=result.returncode)
