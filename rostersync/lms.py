"""LMS boundary: connection context, client protocol, group filters.

The engine never talks HTTP. It consumes any object that satisfies
`LmsClient`; `SnapshotLmsClient` serves a YAML snapshot of a course so the
CLI and tests can drive link/refresh/merge offline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit, urlunsplit

import yaml

from .errors import LmsError
from .models import GroupFilter, LmsType
from .resolution import name_matches, validate_glob_pattern

logger = logging.getLogger(__name__)

LMS_TYPES: tuple[LmsType, ...] = ("canvas", "moodle")

_DEFAULT_PORTS = {"https": 443, "http": 80}


@dataclass(frozen=True)
class LmsContext:
    """Which LMS course an operation talks to."""

    lms_type: LmsType
    base_url: str
    course_id: str


def normalize_base_url(base_url: str) -> str:
    trimmed = base_url.strip()
    if not trimmed:
        return ""
    candidate = trimmed if "://" in trimmed else f"https://{trimmed}"
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return trimmed.rstrip("/")

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"
    return urlunsplit((scheme, host, parts.path, "", "")).rstrip("/")


def normalize_context(lms_type: str, base_url: str, course_id: str) -> LmsContext:
    """Canonical form of a context, used as the identity of cache entries.

    Lowercases scheme and host, adds `https://` when no scheme is given,
    strips credentials, query, fragment, default ports and trailing slashes,
    and trims the course id.
    """
    lms_type = lms_type.strip().lower()
    if lms_type not in LMS_TYPES:
        raise ValueError(f"Unknown LMS type: {lms_type!r} (expected one of {', '.join(LMS_TYPES)})")
    return LmsContext(lms_type=lms_type, base_url=normalize_base_url(base_url), course_id=course_id.strip())


@dataclass(frozen=True)
class LmsGroupSetSummary:
    id: str
    name: str


@dataclass(frozen=True)
class LmsGroup:
    """A group as returned by the LMS, with raw member ids."""

    id: str
    name: str
    member_ids: tuple[str, ...] = ()


class LmsClient(Protocol):
    """What the engine needs from an LMS. Failures raise LmsError."""

    async def fetch_group_sets(self, context: LmsContext) -> list[LmsGroupSetSummary]: ...

    async def fetch_groups(self, context: LmsContext, group_set_id: str) -> list[LmsGroup]: ...


def apply_group_filter(groups: list[LmsGroup], group_filter: GroupFilter | None) -> list[LmsGroup]:
    """Narrow fetched groups to the import scope.

    Raises ValueError for an unknown filter kind or a missing/invalid pattern.
    """
    if group_filter is None or group_filter.kind == "all":
        return list(groups)
    if group_filter.kind == "selected":
        wanted = set(group_filter.selected)
        return [g for g in groups if g.id in wanted]
    if group_filter.kind == "pattern":
        if not group_filter.pattern:
            raise ValueError("Pattern filter requires a pattern")
        error = validate_glob_pattern(group_filter.pattern)
        if error is not None:
            raise ValueError(f"Invalid pattern: {error}")
        return [g for g in groups if name_matches(group_filter.pattern, g.name)]
    raise ValueError(f"Unknown filter kind: {group_filter.kind}")


def describe_filter(group_filter: GroupFilter | None) -> str:
    if group_filter is None or group_filter.kind == "all":
        return "All"
    if group_filter.kind == "selected":
        return f"{len(group_filter.selected)} selected"
    return f"Pattern: {group_filter.pattern}"


@dataclass
class SnapshotLmsClient:
    """LmsClient backed by a YAML course snapshot.

    Snapshot format::

        group_sets:
          - id: "gs-1"
            name: "Project Teams"
            groups:
              - id: "g-1"
                name: "Team 1"
                member_ids: ["u1", "u2"]
    """

    path: Path
    calls: list[str] = field(default_factory=list)

    def _load(self) -> list[dict]:
        try:
            data = yaml.safe_load(Path(self.path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise LmsError(f"Failed to read LMS snapshot {self.path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("group_sets", []), list):
            raise LmsError(f"Invalid LMS snapshot {self.path}: expected a 'group_sets' list")
        return data.get("group_sets", [])

    async def fetch_group_sets(self, context: LmsContext) -> list[LmsGroupSetSummary]:
        self.calls.append("fetch_group_sets")
        logger.debug("Listing group sets for %s course %s", context.lms_type, context.course_id)
        return [LmsGroupSetSummary(id=str(gs["id"]), name=str(gs.get("name", ""))) for gs in self._load()]

    async def fetch_groups(self, context: LmsContext, group_set_id: str) -> list[LmsGroup]:
        self.calls.append(f"fetch_groups:{group_set_id}")
        for gs in self._load():
            if str(gs["id"]) == group_set_id:
                return [
                    LmsGroup(
                        id=str(g["id"]),
                        name=str(g.get("name", "")),
                        member_ids=tuple(str(m) for m in g.get("member_ids", []) or []),
                    )
                    for g in gs.get("groups", []) or []
                ]
        raise LmsError(f"Group set not found in LMS: {group_set_id}")
