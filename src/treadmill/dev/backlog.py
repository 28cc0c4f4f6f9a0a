# src/treadmill/dev/backlog.py

"""
Treadmill Backlog store
-----------------------
Single Responsibility: load, select from, amend and persist the feature
backlog.  Values are immutable; every amendment returns a new `Backlog`
and persistence is an explicit `save()` call.

On-disk shape (JSON)::

    {
      "projectName": "demo",
      "features": [
        {"id": "F1", "priority": 1, "title": "...", "description": "...",
         "acceptanceCriteria": ["..."], "passes": false}
      ],
      "ciConfig": {"testCommand": "pytest", "buildCommand": null}
    }

Unknown keys are carried through `load()` / `save()` untouched.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

import jsonschema

from .schema import BACKLOG_V1


class MalformedBacklog(Exception):
    """Raised if the backlog file is unreadable or violates the schema."""


class UnknownFeatureId(Exception):
    """Raised if a requested feature id is not in the backlog."""


_FEATURE_KEYS = ("id", "priority", "title", "description", "acceptanceCriteria", "passes")
_BACKLOG_KEYS = ("projectName", "features", "ciConfig")


# --------------------------------------------------------------------------- #
# Dataclasses
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class Feature:
    id: str
    priority: int
    title: str
    passes: bool = False
    description: str = ""
    acceptance_criteria: Tuple[str, ...] = ()
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "priority": self.priority,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "passes": self.passes,
        }
        out.update(self.extra)
        return out

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "Feature":
        return Feature(
            id=str(obj["id"]),
            priority=obj["priority"],
            title=obj["title"],
            passes=obj["passes"],
            description=obj.get("description", ""),
            acceptance_criteria=tuple(obj.get("acceptanceCriteria", ())),
            extra={k: v for k, v in obj.items() if k not in _FEATURE_KEYS},
        )


@dataclass(frozen=True, slots=True)
class Backlog:
    """
    The full feature list for a run.

    `features` keeps declaration order; selection sorts a copy.
    `ci_config` holds only the override keys that were actually present so
    that resolution can replace detected commands field-by-field.
    """

    project_name: str
    features: Tuple[Feature, ...] = ()
    ci_config: Optional[Dict[str, Optional[str]]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "projectName": self.project_name,
            "features": [f.to_dict() for f in self.features],
        }
        if self.ci_config is not None:
            out["ciConfig"] = dict(self.ci_config)
        out.update(self.extra)
        return out

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "Backlog":
        try:
            jsonschema.validate(obj, BACKLOG_V1)
        except jsonschema.ValidationError as exc:
            raise MalformedBacklog(f"Backlog violates schema: {exc.message}") from exc

        features = tuple(Feature.from_dict(f) for f in obj["features"])
        seen: set[str] = set()
        for feat in features:
            if feat.id in seen:
                raise MalformedBacklog(f"Duplicate feature id: {feat.id}")
            seen.add(feat.id)

        ci = obj.get("ciConfig")
        return Backlog(
            project_name=obj["projectName"],
            features=features,
            ci_config=dict(ci) if ci is not None else None,
            extra={k: v for k, v in obj.items() if k not in _BACKLOG_KEYS},
        )

    # --- queries --------------------------------------------------------- #
    def get(self, feature_id: str) -> Feature:
        for feat in self.features:
            if feat.id == feature_id:
                return feat
        raise UnknownFeatureId(f"No feature found with id={feature_id}")

    def pending(self) -> Tuple[Feature, ...]:
        return tuple(f for f in self.features if not f.passes)


# --------------------------------------------------------------------------- #
# Persistence
# --------------------------------------------------------------------------- #
def load(path: str | os.PathLike) -> Backlog:
    """Read and validate the backlog at *path*."""
    try:
        with open(path, "r", encoding="utf8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise
    except (OSError, ValueError) as exc:
        raise MalformedBacklog(f"Cannot read backlog {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedBacklog("Backlog JSON must be an object")
    return Backlog.from_dict(data)


def save(backlog: Backlog, path: str | os.PathLike) -> None:
    """Persist *backlog* atomically (temp file in the same dir + rename)."""
    path = os.fspath(path)
    fd, tmp_path = tempfile.mkstemp(
        dir=os.path.dirname(os.path.abspath(path)), prefix=".backlog-", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf8") as f:
            json.dump(backlog.to_dict(), f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


# --------------------------------------------------------------------------- #
# Selection / amendment
# --------------------------------------------------------------------------- #
def select_next(backlog: Backlog) -> Optional[Feature]:
    """
    Lowest `priority` among features with `passes == False`.
    `sorted` is stable, so ties keep declaration order.
    """
    pending = sorted(backlog.pending(), key=lambda f: f.priority)
    return pending[0] if pending else None


def is_complete(backlog: Backlog) -> bool:
    return select_next(backlog) is None


def mark_complete(backlog: Backlog, feature_id: str) -> Backlog:
    """Return a copy of *backlog* with `passes = True` for *feature_id*."""
    backlog.get(feature_id)  # raises UnknownFeatureId
    features = tuple(
        replace(f, passes=True) if f.id == feature_id else f for f in backlog.features
    )
    return replace(backlog, features=features)
