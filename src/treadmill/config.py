# src/treadmill/config.py
"""
Run configuration: defaults ← environment (.env honoured) ← CLI flags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

_TRUE = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """An environment variable holds a value of the wrong type."""


def _number(environ: Dict[str, str], name: str, cast):
    raw = environ[name]
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    backlog_path: str = "prd.json"
    max_iterations: int = 10
    work_dir: str = "."
    progress_path: str = "progress.txt"
    dry_run: bool = False
    ci_log_path: Optional[str] = None
    agent_command: Optional[str] = None
    agent_timeout: Optional[float] = None
    log_dir: str = ".treadmill_logs"
    fail_fast: bool = False
    progress_tail: int = 50

    # ------------------------------------------------------------------ #
    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "OrchestratorConfig":
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)
        cfg = cls()
        env: Dict[str, Any] = {}
        if "MAX_ITERATIONS" in environ:
            env["max_iterations"] = _number(environ, "MAX_ITERATIONS", int)
        if "PROGRESS_FILE" in environ:
            env["progress_path"] = environ["PROGRESS_FILE"]
        if "WORK_DIR" in environ:
            env["work_dir"] = environ["WORK_DIR"]
        if "DRY_RUN" in environ:
            env["dry_run"] = environ["DRY_RUN"].strip().lower() in _TRUE
        if environ.get("CI_GUARD_LOG"):
            env["ci_log_path"] = environ["CI_GUARD_LOG"]
        if environ.get("TREADMILL_AGENT_CMD"):
            env["agent_command"] = environ["TREADMILL_AGENT_CMD"]
        if environ.get("TREADMILL_AGENT_TIMEOUT"):
            env["agent_timeout"] = _number(environ, "TREADMILL_AGENT_TIMEOUT", float)
        if environ.get("TREADMILL_LOG_DIR"):
            env["log_dir"] = environ["TREADMILL_LOG_DIR"]
        return replace(cfg, **env)

    def override(self, **kwargs: Any) -> "OrchestratorConfig":
        """Apply the non-None values in *kwargs* (CLI flags)."""
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in kwargs.items() if k in known and v is not None})

    # ------------------------------------------------------------------ #
    def resolve(self, name: str) -> Path:
        """Absolute path of a path-valued setting, relative to `work_dir`."""
        value = getattr(self, name)
        path = Path(value)
        if not path.is_absolute():
            path = Path(self.work_dir) / path
        return path.resolve()
