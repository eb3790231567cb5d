"""Data models for the roster document.

Every entity is a frozen dataclass. Documents are never edited in place:
mutations build a new Roster with `dataclasses.replace`, sharing every branch
they did not touch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, assert_never

from .util import (
    new_assignment_id,
    new_group_id,
    new_group_set_id,
    new_member_id,
    unique_in_order,
)

MemberStatus = Literal["active", "dropped", "incomplete"]
EnrollmentType = Literal["student", "staff"]
MemberSource = Literal["lms", "local", "import"]
GitUsernameStatus = Literal["unknown", "valid", "invalid"]
GroupOrigin = Literal["local", "system", "lms"]
SelectionKind = Literal["all", "selected"]
AssignmentType = Literal["class_wide", "selective"]
SystemType = Literal["individual_students", "staff"]
CacheKind = Literal["unlinked", "linked", "copied"]
FilterKind = Literal["all", "pattern", "selected"]
LmsType = Literal["canvas", "moodle"]

ConnectionKind = Literal["local", "system", "import", "unlinked", "linked", "copied"]


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class RosterMember:
    """A student or staff member."""

    id: str
    name: str
    email: str = ""
    status: MemberStatus = "active"
    enrollment_type: EnrollmentType = "student"
    source: MemberSource = "local"
    lms_user_id: str | None = None
    student_number: str | None = None
    git_username: str | None = None
    git_username_status: GitUsernameStatus = "unknown"

    @classmethod
    def create(cls, name: str, email: str = "", **fields: Any) -> RosterMember:
        return cls(id=new_member_id(), name=name, email=email, **fields)

    @property
    def is_student(self) -> bool:
        return self.enrollment_type == "student"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "status": self.status,
            "enrollment_type": self.enrollment_type,
            "source": self.source,
            "git_username_status": self.git_username_status,
        }
        for key in ("lms_user_id", "student_number", "git_username"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RosterMember:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            email=str(data.get("email") or ""),
            status=data.get("status", "active"),
            enrollment_type=data.get("enrollment_type", "student"),
            source=data.get("source", "local"),
            lms_user_id=data.get("lms_user_id"),
            student_number=data.get("student_number"),
            git_username=data.get("git_username"),
            git_username_status=data.get("git_username_status", "unknown"),
        )


@dataclass(frozen=True)
class Group:
    """A named team. Member ids are unique within a group."""

    id: str
    name: str
    member_ids: tuple[str, ...] = ()
    origin: GroupOrigin = "local"
    lms_group_id: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "member_ids", unique_in_order(self.member_ids))

    @classmethod
    def create(cls, name: str, member_ids=(), **fields: Any) -> Group:
        return cls(id=new_group_id(), name=name, member_ids=tuple(member_ids), **fields)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "member_ids": list(self.member_ids),
            "origin": self.origin,
        }
        if self.lms_group_id is not None:
            d["lms_group_id"] = self.lms_group_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Group:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            member_ids=tuple(str(m) for m in data.get("member_ids", [])),
            origin=data.get("origin", "local"),
            lms_group_id=data.get("lms_group_id"),
        )


@dataclass(frozen=True)
class GroupSelection:
    """Which groups of a group-set an assignment uses.

    `all` takes every group. `selected` takes the groups whose name matches
    `pattern` (every group when no pattern is set) minus `excluded_group_ids`.
    """

    kind: SelectionKind = "all"
    excluded_group_ids: tuple[str, ...] = ()
    pattern: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "excluded_group_ids", unique_in_order(self.excluded_group_ids))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind,
            "excluded_group_ids": list(self.excluded_group_ids),
        }
        if self.pattern is not None:
            d["pattern"] = self.pattern
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GroupSelection:
        if not data:
            return cls()
        return cls(
            kind=data.get("kind", "all"),
            excluded_group_ids=tuple(str(g) for g in data.get("excluded_group_ids", [])),
            pattern=data.get("pattern"),
        )


@dataclass(frozen=True)
class SystemConnection:
    """Synthetic set maintained by the engine (individual students, staff)."""

    system_type: SystemType


@dataclass(frozen=True)
class ImportConnection:
    """Set that originated from a one-time file import."""

    source_filename: str
    source_path: str | None = None
    last_updated: datetime | None = None


@dataclass(frozen=True)
class GroupFilter:
    """Import scope applied to an LMS group-set when linking or copying."""

    kind: FilterKind = "all"
    pattern: str | None = None
    selected: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind}
        if self.pattern is not None:
            d["pattern"] = self.pattern
        if self.selected:
            d["selected"] = list(self.selected)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GroupFilter | None:
        if data is None:
            return None
        return cls(
            kind=data.get("kind", "all"),
            pattern=data.get("pattern"),
            selected=tuple(str(s) for s in data.get("selected", [])),
        )


@dataclass(frozen=True)
class CachedLmsGroup:
    """An LMS group as last fetched, with its member resolution state."""

    id: str
    name: str
    lms_member_ids: tuple[str, ...] = ()
    resolved_member_ids: tuple[str, ...] = ()
    unresolved_count: int = 0
    needs_reresolution: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lms_member_ids": list(self.lms_member_ids),
            "resolved_member_ids": list(self.resolved_member_ids),
            "unresolved_count": self.unresolved_count,
            "needs_reresolution": self.needs_reresolution,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedLmsGroup:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            lms_member_ids=tuple(str(m) for m in data.get("lms_member_ids", [])),
            resolved_member_ids=tuple(str(m) for m in data.get("resolved_member_ids", [])),
            unresolved_count=int(data.get("unresolved_count", 0)),
            needs_reresolution=bool(data.get("needs_reresolution", False)),
        )


@dataclass(frozen=True)
class LmsGroupSetCacheEntry:
    """Synchronization state of a group-set known to the LMS."""

    kind: CacheKind
    lms_group_set_id: str
    lms_type: LmsType = "canvas"
    base_url: str = ""
    course_id: str = ""
    groups: tuple[CachedLmsGroup, ...] = ()
    filter: GroupFilter | None = None
    fetched_at: datetime | None = None

    @property
    def context_key(self) -> tuple[str, str, str, str]:
        return (self.lms_type, self.base_url, self.course_id, self.lms_group_set_id)


GroupSetConnection = SystemConnection | ImportConnection | LmsGroupSetCacheEntry | None


def connection_kind(connection: GroupSetConnection) -> ConnectionKind:
    match connection:
        case None:
            return "local"
        case SystemConnection():
            return "system"
        case ImportConnection():
            return "import"
        case LmsGroupSetCacheEntry(kind=kind):
            return kind
        case _:
            assert_never(connection)


def connection_to_dict(connection: GroupSetConnection) -> dict[str, Any] | None:
    match connection:
        case None:
            return None
        case SystemConnection(system_type=system_type):
            return {"kind": "system", "system_type": system_type}
        case ImportConnection():
            return {
                "kind": "import",
                "source_filename": connection.source_filename,
                "source_path": connection.source_path,
                "last_updated": _format_dt(connection.last_updated),
            }
        case LmsGroupSetCacheEntry():
            return {
                "kind": connection.kind,
                "lms_group_set_id": connection.lms_group_set_id,
                "lms_type": connection.lms_type,
                "base_url": connection.base_url,
                "course_id": connection.course_id,
                "groups": [g.to_dict() for g in connection.groups],
                "filter": connection.filter.to_dict() if connection.filter else None,
                "fetched_at": _format_dt(connection.fetched_at),
            }
        case _:
            assert_never(connection)


def connection_from_dict(data: dict[str, Any] | None) -> GroupSetConnection:
    if not data:
        return None
    kind = data.get("kind")
    if kind == "system":
        return SystemConnection(system_type=data["system_type"])
    if kind == "import":
        return ImportConnection(
            source_filename=str(data.get("source_filename", "")),
            source_path=data.get("source_path"),
            last_updated=_parse_dt(data.get("last_updated")),
        )
    if kind in ("unlinked", "linked", "copied"):
        return LmsGroupSetCacheEntry(
            kind=kind,
            lms_group_set_id=str(data["lms_group_set_id"]),
            lms_type=data.get("lms_type", "canvas"),
            base_url=str(data.get("base_url", "")),
            course_id=str(data.get("course_id", "")),
            groups=tuple(CachedLmsGroup.from_dict(g) for g in data.get("groups", [])),
            filter=GroupFilter.from_dict(data.get("filter")),
            fetched_at=_parse_dt(data.get("fetched_at")),
        )
    raise ValueError(f"Unknown group set connection kind: {kind!r}")


@dataclass(frozen=True)
class GroupSet:
    """A named collection of groups sharing one membership scheme."""

    id: str
    name: str
    group_ids: tuple[str, ...] = ()
    connection: GroupSetConnection = None
    group_selection: GroupSelection = field(default_factory=GroupSelection)

    def __post_init__(self):
        object.__setattr__(self, "group_ids", unique_in_order(self.group_ids))

    @classmethod
    def create(cls, name: str, group_ids=(), **fields: Any) -> GroupSet:
        return cls(id=new_group_set_id(), name=name, group_ids=tuple(group_ids), **fields)

    @property
    def kind(self) -> ConnectionKind:
        return connection_kind(self.connection)

    @property
    def lms_entry(self) -> LmsGroupSetCacheEntry | None:
        if isinstance(self.connection, LmsGroupSetCacheEntry):
            return self.connection
        return None

    @property
    def is_system(self) -> bool:
        return isinstance(self.connection, SystemConnection)

    @property
    def is_editable(self) -> bool:
        """Whether groups in this set may be edited through the mutation API."""
        match self.connection:
            case None | ImportConnection():
                return True
            case SystemConnection():
                return False
            case LmsGroupSetCacheEntry(kind=kind):
                return kind == "copied"
            case _:
                assert_never(self.connection)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "group_ids": list(self.group_ids),
            "connection": connection_to_dict(self.connection),
            "group_selection": self.group_selection.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupSet:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            group_ids=tuple(str(g) for g in data.get("group_ids", [])),
            connection=connection_from_dict(data.get("connection")),
            group_selection=GroupSelection.from_dict(data.get("group_selection")),
        )


@dataclass(frozen=True)
class Assignment:
    """An assignment that provisions one repository per selected group."""

    id: str
    name: str
    group_set_id: str
    description: str | None = None
    assignment_type: AssignmentType = "class_wide"
    group_selection: GroupSelection = field(default_factory=GroupSelection)

    @classmethod
    def create(cls, name: str, group_set_id: str, **fields: Any) -> Assignment:
        return cls(id=new_assignment_id(), name=name, group_set_id=group_set_id, **fields)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "group_set_id": self.group_set_id,
            "assignment_type": self.assignment_type,
            "group_selection": self.group_selection.to_dict(),
        }
        if self.description is not None:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assignment:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            group_set_id=str(data.get("group_set_id", "")),
            description=data.get("description"),
            assignment_type=data.get("assignment_type", "class_wide"),
            group_selection=GroupSelection.from_dict(data.get("group_selection")),
        )


@dataclass(frozen=True)
class Roster:
    """The roster document: members, groups, group-sets and assignments."""

    members: tuple[RosterMember, ...] = ()
    groups: tuple[Group, ...] = ()
    group_sets: tuple[GroupSet, ...] = ()
    assignments: tuple[Assignment, ...] = ()

    @classmethod
    def empty(cls) -> Roster:
        return cls()

    @property
    def students(self) -> tuple[RosterMember, ...]:
        return tuple(m for m in self.members if m.is_student)

    @property
    def staff(self) -> tuple[RosterMember, ...]:
        return tuple(m for m in self.members if not m.is_student)

    def find_member(self, member_id: str) -> RosterMember | None:
        return next((m for m in self.members if m.id == member_id), None)

    def find_group(self, group_id: str) -> Group | None:
        return next((g for g in self.groups if g.id == group_id), None)

    def find_group_set(self, group_set_id: str) -> GroupSet | None:
        return next((gs for gs in self.group_sets if gs.id == group_set_id), None)

    def find_assignment(self, assignment_id: str) -> Assignment | None:
        return next((a for a in self.assignments if a.id == assignment_id), None)

    def groups_of(self, group_set: GroupSet) -> list[Group]:
        """Groups referenced by a set, in set order, skipping dangling ids."""
        by_id = {g.id: g for g in self.groups}
        return [by_id[gid] for gid in group_set.group_ids if gid in by_id]

    def find_lms_group_set(self, lms_group_set_id: str) -> GroupSet | None:
        for gs in self.group_sets:
            entry = gs.lms_entry
            if entry is not None and entry.lms_group_set_id == lms_group_set_id:
                return gs
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "members": [m.to_dict() for m in self.members],
            "groups": [g.to_dict() for g in self.groups],
            "group_sets": [gs.to_dict() for gs in self.group_sets],
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Roster:
        members = list(data.get("members", []))
        # Older documents keep students and staff in separate arrays.
        members += data.get("students", [])
        members += [{"enrollment_type": "staff", **m} for m in data.get("staff", [])]
        return cls(
            members=tuple(RosterMember.from_dict(m) for m in members),
            groups=tuple(Group.from_dict(g) for g in data.get("groups", [])),
            group_sets=tuple(GroupSet.from_dict(gs) for gs in data.get("group_sets", [])),
            assignments=tuple(Assignment.from_dict(a) for a in data.get("assignments", [])),
        )
