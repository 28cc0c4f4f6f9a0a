# src/treadmill/dev/detect.py
"""
Runner detection
----------------

Infers the test and build commands of the project under development from
its manifest files.  Each ecosystem is one strategy exposing

    detect(root: Path) -> CiCommands | None

where ``None`` means "not my ecosystem".  Strategies are tried in a fixed
order and the first one that claims the project wins; nothing is merged
across ecosystems.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

logger = logging.getLogger("treadmill.dev.detect")


@dataclass(frozen=True, slots=True)
class CiCommands:
    test_command: Optional[str] = None
    build_command: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not (self.test_command or self.build_command)


def _and(*steps: Optional[str]) -> Optional[str]:
    """Join the non-empty steps with shell AND-sequencing."""
    parts = [s for s in steps if s]
    return " && ".join(parts) if parts else None


class RunnerDetector:
    name = "base"

    def detect(self, root: Path) -> Optional[CiCommands]:  # pragma: no cover
        raise NotImplementedError


class NodeDetector(RunnerDetector):
    name = "node"

    _LOCKFILES = (
        ("pnpm-lock.yaml", "pnpm"),
        ("yarn.lock", "yarn"),
        ("bun.lockb", "bun"),
        ("bun.lock", "bun"),
    )

    def detect(self, root: Path) -> Optional[CiCommands]:
        manifest = root / "package.json"
        if not manifest.is_file():
            return None
        try:
            scripts = json.loads(manifest.read_text(encoding="utf-8")).get("scripts") or {}
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("package.json unreadable (%s); no Node commands", exc)
            return CiCommands()

        pm = self._package_manager(root)
        test = f"{pm} test" if "test" in scripts else None
        build = f"{pm} run build" if "build" in scripts else None
        if "typecheck" in scripts:
            build = _and(build, f"{pm} run typecheck")
        elif "type-check" in scripts:
            build = _and(build, f"{pm} run type-check")
        return CiCommands(test, build)

    def _package_manager(self, root: Path) -> str:
        for lockfile, pm in self._LOCKFILES:
            if (root / lockfile).exists():
                return pm
        return "npm"


class CargoDetector(RunnerDetector):
    name = "rust"

    def detect(self, root: Path) -> Optional[CiCommands]:
        if not (root / "Cargo.toml").is_file():
            return None
        build = "cargo build"
        if self._clippy_available(root):
            build = _and("cargo clippy -- -D warnings", build)
        return CiCommands("cargo test", build)

    @staticmethod
    def _clippy_available(root: Path) -> bool:
        if shutil.which("cargo-clippy"):
            return True
        try:
            result = subprocess.run(
                ["cargo", "clippy", "--version"],
                cwd=root,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                check=False,
            )
        except OSError:
            return False
        return result.returncode == 0


class PythonDetector(RunnerDetector):
    name = "python"

    _MARKERS = ("pytest.ini", "pyproject.toml", "setup.py")

    def detect(self, root: Path) -> Optional[CiCommands]:
        if not any((root / m).is_file() for m in self._MARKERS):
            return None
        pyproject = self._read(root / "pyproject.toml")

        if (root / "pytest.ini").is_file() or "pytest" in pyproject:
            test = "pytest"
        elif (root / "tests").is_dir():
            test = "python -m pytest tests/"
        else:
            test = None

        typecheck = "mypy ." if ("mypy" in pyproject or (root / "mypy.ini").is_file()) else None
        if "ruff" in pyproject:
            lint = "ruff check ."
        elif "flake8" in pyproject:
            lint = "flake8 ."
        else:
            lint = None
        return CiCommands(test, _and(typecheck, lint))

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return ""


class GoDetector(RunnerDetector):
    name = "go"

    def detect(self, root: Path) -> Optional[CiCommands]:
        if not (root / "go.mod").is_file():
            return None
        return CiCommands("go test ./...", "go build ./...")


class MakefileDetector(RunnerDetector):
    name = "make"

    def detect(self, root: Path) -> Optional[CiCommands]:
        makefile = root / "Makefile"
        if not makefile.is_file():
            return None
        text = makefile.read_text(encoding="utf-8", errors="replace")
        test = "make test" if re.search(r"^test:", text, re.M) else None
        build = "make build" if re.search(r"^build:", text, re.M) else None
        return CiCommands(test, build)


DEFAULT_DETECTORS: Sequence[RunnerDetector] = (
    NodeDetector(),
    CargoDetector(),
    PythonDetector(),
    GoDetector(),
    MakefileDetector(),
)


def detect(
    project_root: str | Path, detectors: Iterable[RunnerDetector] = DEFAULT_DETECTORS
) -> CiCommands:
    """Return the commands of the first detector that claims *project_root*."""
    root = Path(project_root)
    for detector in detectors:
        found = detector.detect(root)
        if found is not None:
            logger.info("Detected %s project in %s", detector.name, root)
            return found
    logger.info("No test/build runner detected in %s", root)
    return CiCommands()


def resolve_commands(
    detected: CiCommands, override: Optional[Dict[str, Optional[str]]] = None
) -> CiCommands:
    """
    Layer the backlog's ``ciConfig`` over *detected*, field by field.
    A key that is present wins even when its value is null or empty,
    which lets a backlog switch off a detected phase.
    """
    override = override or {}
    test = override["testCommand"] if "testCommand" in override else detected.test_command
    build = override["buildCommand"] if "buildCommand" in override else detected.build_command
    return CiCommands(test or None, build or None)
