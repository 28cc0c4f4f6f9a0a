# src/treadmill/context/composer.py
"""
Prompt composition.

`build_values()` gathers everything that goes into the agent prompt into a
`PromptValues` record; `render()` substitutes it into a template.  Both are
pure, so the exact prompt for a given backlog/journal state can be tested
without spawning anything.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Sequence

from treadmill.dev.backlog import Backlog, select_next
from treadmill.dev.detect import CiCommands
from treadmill.dev.journal import ProgressEntry

from .prompts import SENTINEL

NO_TESTS = "echo 'No tests configured'"
NO_BUILD = "echo 'No build configured'"
NO_PROGRESS = "No previous progress."
NO_PENDING = "(none – all features pass)"


@dataclass(frozen=True, slots=True)
class PromptValues:
    project_name: str
    backlog_json: str
    backlog_path: str
    next_feature: str
    progress: str
    test_command: str
    build_command: str
    sentinel: str = SENTINEL


def build_values(
    backlog: Backlog,
    progress_tail: Sequence[ProgressEntry],
    commands: CiCommands,
    *,
    backlog_path: str = "prd.json",
) -> PromptValues:
    nxt = select_next(backlog)
    return PromptValues(
        project_name=backlog.project_name,
        backlog_json=json.dumps(backlog.to_dict(), indent=2),
        backlog_path=backlog_path,
        next_feature=f"{nxt.id}: {nxt.title}" if nxt else NO_PENDING,
        progress="\n".join(e.render() for e in progress_tail) or NO_PROGRESS,
        test_command=commands.test_command or NO_TESTS,
        build_command=commands.build_command or NO_BUILD,
    )


def render(template: str, values: PromptValues) -> str:
    return template.format_map(asdict(values))


def compose(
    template: str,
    backlog: Backlog,
    progress_tail: Sequence[ProgressEntry],
    commands: CiCommands,
    *,
    backlog_path: str = "prd.json",
) -> str:
    return render(template, build_values(backlog, progress_tail, commands, backlog_path=backlog_path))
