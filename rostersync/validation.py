"""Validation engine for roster documents.

Roster-scope checks look at the document as a whole; assignment-scope checks
look at the groups one assignment resolves to. Every check is a pure function
of the document, so the engine can run as often as the coordinator asks.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Literal, assert_never

from .models import (
    Assignment,
    GroupSet,
    ImportConnection,
    LmsGroupSetCacheEntry,
    Roster,
    SystemConnection,
)
from .resolution import resolve_assignment_groups
from .system import INDIVIDUAL_STUDENTS, system_sets_missing
from .util import is_valid_email, normalize_email, normalize_name, slugify

DEFAULT_REPO_TEMPLATE = "{assignment}-{group}"

IdentityMode = Literal["username", "email"]


class ValidationKind(str, Enum):
    """Issue kinds, declared in report order."""

    DUPLICATE_MEMBER_ID = "duplicate_member_id"
    DUPLICATE_EMAIL = "duplicate_email"
    MISSING_EMAIL = "missing_email"
    INVALID_EMAIL = "invalid_email"
    DUPLICATE_ASSIGNMENT_NAME = "duplicate_assignment_name"
    DUPLICATE_GROUP_ID_IN_ASSIGNMENT = "duplicate_group_id_in_assignment"
    DUPLICATE_GROUP_NAME_IN_ASSIGNMENT = "duplicate_group_name_in_assignment"
    DUPLICATE_REPO_NAME_IN_ASSIGNMENT = "duplicate_repo_name_in_assignment"
    MEMBER_IN_MULTIPLE_GROUPS = "member_in_multiple_groups"
    ORPHAN_GROUP_MEMBER = "orphan_group_member"
    MISSING_GIT_USERNAME = "missing_git_username"
    INVALID_GIT_USERNAME = "invalid_git_username"
    EMPTY_GROUP = "empty_group"
    UNASSIGNED_STUDENT = "unassigned_student"
    PENDING_RERESOLUTION = "pending_reresolution"
    SYSTEM_GROUP_SETS_MISSING = "system_group_sets_missing"
    INVALID_ENROLLMENT_PARTITION = "invalid_enrollment_partition"
    INVALID_GROUP_ORIGIN = "invalid_group_origin"

    @property
    def is_blocking(self) -> bool:
        return self not in _WARNING_KINDS

    @property
    def order(self) -> int:
        return _KIND_ORDER[self]


_WARNING_KINDS = frozenset(
    {
        ValidationKind.MISSING_EMAIL,
        ValidationKind.MISSING_GIT_USERNAME,
        ValidationKind.INVALID_GIT_USERNAME,
        ValidationKind.UNASSIGNED_STUDENT,
        ValidationKind.PENDING_RERESOLUTION,
    }
)

_KIND_ORDER = {kind: i for i, kind in enumerate(ValidationKind)}


@dataclass(frozen=True)
class ValidationIssue:
    """A single integrity finding."""

    kind: ValidationKind
    affected_ids: tuple[str, ...] = ()
    context: str | None = None
    assignment_id: str | None = None

    @property
    def level(self) -> Literal["error", "warning"]:
        return "error" if self.kind.is_blocking else "warning"

    def __str__(self) -> str:
        ids = ", ".join(self.affected_ids)
        text = f"{self.level.upper()}: [{self.kind.value}]"
        if self.assignment_id:
            text += f" ({self.assignment_id})"
        if ids:
            text += f" {ids}"
        if self.context:
            text += f" - {self.context}"
        return text

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "level": self.level,
            "affected_ids": list(self.affected_ids),
            "context": self.context,
            "assignment_id": self.assignment_id,
        }


@dataclass
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def blocking(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.kind.is_blocking]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if not i.kind.is_blocking]

    @property
    def has_blocking_issues(self) -> bool:
        return any(i.kind.is_blocking for i in self.issues)


def _duplicated(keys: Iterable[tuple[str, str]]) -> list[str]:
    """Ids whose key occurs more than once, in source order.

    `keys` yields (id, key) pairs.
    """
    pairs = list(keys)
    counts = Counter(key for _, key in pairs)
    return [entity_id for entity_id, key in pairs if counts[key] > 1]


def sort_issues(issues: list[ValidationIssue]) -> list[ValidationIssue]:
    return sorted(issues, key=lambda issue: issue.kind.order)


class RosterRules:
    """Roster-scope checks."""

    def __init__(self, roster: Roster):
        self.roster = roster

    def run_all(self) -> list[ValidationIssue]:
        results: list[ValidationIssue] = []
        results.extend(self.check_duplicate_member_ids())
        results.extend(self.check_emails())
        results.extend(self.check_duplicate_assignment_names())
        results.extend(self.check_duplicate_group_ids())
        results.extend(self.check_orphans())
        results.extend(self.check_pending_reresolution())
        results.extend(self.check_system_sets())
        results.extend(self.check_enrollment_partition())
        results.extend(self.check_group_origins())
        return sort_issues(results)

    def check_duplicate_member_ids(self) -> list[ValidationIssue]:
        ids = unique_duplicates(m.id for m in self.roster.members)
        if not ids:
            return []
        return [ValidationIssue(ValidationKind.DUPLICATE_MEMBER_ID, tuple(ids))]

    def check_emails(self) -> list[ValidationIssue]:
        results = []
        students = self.roster.students

        missing = [m.id for m in students if not m.email.strip()]
        if missing:
            results.append(ValidationIssue(ValidationKind.MISSING_EMAIL, tuple(missing)))

        invalid = [m.id for m in students if m.email.strip() and not is_valid_email(m.email)]
        if invalid:
            results.append(ValidationIssue(ValidationKind.INVALID_EMAIL, tuple(invalid)))

        duplicates = _duplicated((m.id, normalize_email(m.email)) for m in students if m.email.strip())
        if duplicates:
            results.append(ValidationIssue(ValidationKind.DUPLICATE_EMAIL, tuple(duplicates)))

        return results

    def check_duplicate_assignment_names(self) -> list[ValidationIssue]:
        duplicates = _duplicated((a.id, normalize_name(a.name)) for a in self.roster.assignments)
        if not duplicates:
            return []
        return [ValidationIssue(ValidationKind.DUPLICATE_ASSIGNMENT_NAME, tuple(duplicates))]

    def check_duplicate_group_ids(self) -> list[ValidationIssue]:
        ids = unique_duplicates(g.id for g in self.roster.groups)
        if not ids:
            return []
        return [
            ValidationIssue(
                ValidationKind.DUPLICATE_GROUP_ID_IN_ASSIGNMENT,
                tuple(ids),
                context="Duplicate group ids in roster",
            )
        ]

    def check_orphans(self) -> list[ValidationIssue]:
        """Group-sets pointing at missing groups, and groups pointing at missing members."""
        results = []
        group_ids = {g.id for g in self.roster.groups}
        for gs in self.roster.group_sets:
            missing = [gid for gid in gs.group_ids if gid not in group_ids]
            if missing:
                results.append(
                    ValidationIssue(
                        ValidationKind.ORPHAN_GROUP_MEMBER,
                        tuple(missing),
                        context=f"Group set '{gs.name}' references non-existent groups",
                    )
                )

        member_ids = {m.id for m in self.roster.members}
        for group in self.roster.groups:
            orphans = [mid for mid in group.member_ids if mid not in member_ids]
            if orphans:
                results.append(
                    ValidationIssue(
                        ValidationKind.ORPHAN_GROUP_MEMBER,
                        tuple(orphans),
                        context=f"Group '{group.name}' references non-existent members",
                    )
                )
        return results

    def check_pending_reresolution(self) -> list[ValidationIssue]:
        results = []
        for gs in self.roster.group_sets:
            entry = gs.lms_entry
            if entry is None or entry.kind != "linked":
                continue
            flagged = [g.id for g in entry.groups if g.needs_reresolution]
            if flagged:
                results.append(
                    ValidationIssue(
                        ValidationKind.PENDING_RERESOLUTION,
                        tuple(flagged),
                        context=f"Group set '{gs.name}' needs member re-resolution",
                    )
                )
        return results

    def check_system_sets(self) -> list[ValidationIssue]:
        if not system_sets_missing(self.roster):
            return []
        return [
            ValidationIssue(
                ValidationKind.SYSTEM_GROUP_SETS_MISSING,
                context="Run ensure_system_group_sets before validation",
            )
        ]

    def check_enrollment_partition(self) -> list[ValidationIssue]:
        """System sets must not mix students and staff."""
        results = []
        members = {m.id: m for m in self.roster.members}
        for gs in self.roster.group_sets:
            if not isinstance(gs.connection, SystemConnection):
                continue
            want_student = gs.connection.system_type == INDIVIDUAL_STUDENTS
            misplaced = [
                mid
                for group in self.roster.groups_of(gs)
                for mid in group.member_ids
                if mid in members and members[mid].is_student != want_student
            ]
            if misplaced:
                label = "Staff in student set" if want_student else "Students in staff set"
                results.append(
                    ValidationIssue(
                        ValidationKind.INVALID_ENROLLMENT_PARTITION,
                        tuple(misplaced),
                        context=f"{label} '{gs.name}'",
                    )
                )
        return results

    def check_group_origins(self) -> list[ValidationIssue]:
        results = []
        for gs in self.roster.group_sets:
            for group in self.roster.groups_of(gs):
                if not _origin_ok(gs, group.origin, group.lms_group_id):
                    results.append(
                        ValidationIssue(
                            ValidationKind.INVALID_GROUP_ORIGIN,
                            (group.id,),
                            context=(
                                f"Group '{group.name}' has origin '{group.origin}' "
                                f"but group set '{gs.name}' expects a different origin"
                            ),
                        )
                    )
        return results


def _origin_ok(gs: GroupSet, origin: str, lms_group_id: str | None) -> bool:
    match gs.connection:
        case None:
            return True
        case SystemConnection():
            return origin == "system"
        case ImportConnection():
            return origin == "local" and lms_group_id is None
        case LmsGroupSetCacheEntry(kind=kind):
            if kind == "linked":
                return origin == "lms"
            return True
        case _:
            assert_never(gs.connection)


def unique_duplicates(values: Iterable[str]) -> list[str]:
    """Values that occur more than once, each reported once, in first-seen order."""
    values = list(values)
    counts = Counter(values)
    seen: set[str] = set()
    out = []
    for v in values:
        if counts[v] > 1 and v not in seen:
            seen.add(v)
            out.append(v)
    return out


def compute_repo_name(template: str, assignment: Assignment, group_name: str, group_id: str = "") -> str:
    expanded = (
        template.replace("{assignment}", assignment.name)
        .replace("{group}", group_name)
        .replace("{group_id}", group_id)
    )
    return slugify(expanded)


class AssignmentRules:
    """Assignment-scope checks over the groups an assignment resolves to."""

    def __init__(
        self,
        roster: Roster,
        assignment: Assignment,
        *,
        identity_mode: IdentityMode = "username",
        repo_template: str = DEFAULT_REPO_TEMPLATE,
    ):
        self.roster = roster
        self.assignment = assignment
        self.identity_mode = identity_mode
        self.repo_template = repo_template
        self.groups = resolve_assignment_groups(roster, assignment)
        self.members = {m.id: m for m in roster.members}

    def _issue(self, kind: ValidationKind, ids, context: str | None = None) -> ValidationIssue:
        return ValidationIssue(kind, tuple(ids), context=context, assignment_id=self.assignment.id)

    def run_all(self) -> list[ValidationIssue]:
        results: list[ValidationIssue] = []
        results.extend(self.check_duplicate_group_ids())
        results.extend(self.check_duplicate_group_names())
        results.extend(self.check_duplicate_repo_names())
        results.extend(self.check_membership())
        results.extend(self.check_orphan_members())
        results.extend(self.check_empty_groups())
        results.extend(self.check_unassigned_students())
        return sort_issues(results)

    def check_duplicate_group_ids(self) -> list[ValidationIssue]:
        ids = unique_duplicates(g.id for g in self.groups)
        return [self._issue(ValidationKind.DUPLICATE_GROUP_ID_IN_ASSIGNMENT, ids)] if ids else []

    def check_duplicate_group_names(self) -> list[ValidationIssue]:
        ids = _duplicated((g.id, normalize_name(g.name)) for g in self.groups)
        return [self._issue(ValidationKind.DUPLICATE_GROUP_NAME_IN_ASSIGNMENT, ids)] if ids else []

    def check_duplicate_repo_names(self) -> list[ValidationIssue]:
        by_name: dict[str, list[str]] = {}
        for g in self.groups:
            repo = compute_repo_name(self.repo_template, self.assignment, g.name, g.id)
            by_name.setdefault(repo, []).append(g.id)
        return [
            self._issue(ValidationKind.DUPLICATE_REPO_NAME_IN_ASSIGNMENT, ids, context=repo)
            for repo, ids in by_name.items()
            if len(ids) > 1
        ]

    def _active_memberships(self) -> list[str]:
        """Active member ids across the groups, one entry per membership."""
        out = []
        for g in self.groups:
            for mid in g.member_ids:
                member = self.members.get(mid)
                if member is not None and member.is_active:
                    out.append(mid)
        return out

    def check_membership(self) -> list[ValidationIssue]:
        """Multi-group membership and git identity of active members."""
        results = []
        memberships = self._active_memberships()

        multi = unique_duplicates(memberships)
        if multi:
            results.append(self._issue(ValidationKind.MEMBER_IN_MULTIPLE_GROUPS, multi))

        if self.identity_mode == "username":
            missing, invalid = [], []
            for mid in dict.fromkeys(memberships):
                member = self.members[mid]
                if not (member.git_username or "").strip():
                    missing.append(mid)
                elif member.git_username_status == "invalid":
                    invalid.append(mid)
            if missing:
                results.append(self._issue(ValidationKind.MISSING_GIT_USERNAME, missing))
            if invalid:
                results.append(self._issue(ValidationKind.INVALID_GIT_USERNAME, invalid))

        return results

    def check_orphan_members(self) -> list[ValidationIssue]:
        orphans = [mid for g in self.groups for mid in g.member_ids if mid not in self.members]
        orphans = list(dict.fromkeys(orphans))
        return [self._issue(ValidationKind.ORPHAN_GROUP_MEMBER, orphans)] if orphans else []

    def check_empty_groups(self) -> list[ValidationIssue]:
        empty = [g.id for g in self.groups if not g.member_ids]
        return [self._issue(ValidationKind.EMPTY_GROUP, empty)] if empty else []

    def check_unassigned_students(self) -> list[ValidationIssue]:
        if self.assignment.assignment_type != "class_wide":
            return []
        assigned = set(self._active_memberships())
        unassigned = [m.id for m in self.roster.students if m.is_active and m.id not in assigned]
        return [self._issue(ValidationKind.UNASSIGNED_STUDENT, unassigned)] if unassigned else []


def validate_roster(roster: Roster) -> list[ValidationIssue]:
    return RosterRules(roster).run_all()


def validate_assignment(
    roster: Roster,
    assignment_id: str,
    *,
    identity_mode: IdentityMode = "username",
    repo_template: str = DEFAULT_REPO_TEMPLATE,
) -> list[ValidationIssue]:
    """Assignment-scope issues. An unknown assignment id yields no issues."""
    assignment = roster.find_assignment(assignment_id)
    if assignment is None:
        return []
    rules = AssignmentRules(roster, assignment, identity_mode=identity_mode, repo_template=repo_template)
    return rules.run_all()


def validate(
    roster: Roster,
    *,
    identity_mode: IdentityMode = "username",
    repo_template: str = DEFAULT_REPO_TEMPLATE,
) -> list[ValidationIssue]:
    """Every roster-scope and assignment-scope issue, grouped by kind."""
    per_assignment: list[ValidationIssue] = []
    for assignment in roster.assignments:
        per_assignment.extend(
            validate_assignment(
                roster, assignment.id, identity_mode=identity_mode, repo_template=repo_template
            )
        )
    return combine_scopes(validate_roster(roster), per_assignment)


def combine_scopes(
    roster_issues: list[ValidationIssue], assignment_issues: list[ValidationIssue]
) -> list[ValidationIssue]:
    """Merge both scopes into one report, grouped by kind.

    The roster scope already reports orphan members for every group, so the
    per-assignment copies are dropped.
    """
    extra = [i for i in assignment_issues if i.kind != ValidationKind.ORPHAN_GROUP_MEMBER]
    return sort_issues(roster_issues + extra)
