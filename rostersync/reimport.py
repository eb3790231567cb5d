"""Group-set import, export and reimport from CSV files.

File format: a header row, a required `group_name` column and optional
`group_id`, `name`, `email` and `member_id` columns. One row per membership;
a group with no members is a single row with the member columns empty.

Reimport is a two-step protocol. `preview_reimport` computes a diff for the
user to confirm; `apply_reimport` produces a `GroupSetPatch` that
`apply_group_set_patch` merges into the document. Existing groups are matched
by `group_id` when the file provides one, otherwise by name, so a rename
without ids shows up as a remove plus an add.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from .errors import ImportFormatError, SyncStateError, UnknownEntityError
from .models import (
    Group,
    GroupSet,
    ImportConnection,
    LmsGroupSetCacheEntry,
    Roster,
    SystemConnection,
)
from .util import new_group_id, new_group_set_id, normalize_email

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["group_set_id", "group_id", "group_name", "member_id", "name", "email"]


@dataclass
class ParsedGroup:
    name: str
    group_id: str | None = None
    members: list[tuple[str, str]] = field(default_factory=list)


def parse_group_csv(path: Path) -> list[ParsedGroup]:
    """Read a group CSV into groups in first-appearance order.

    Raises ImportFormatError for a missing `group_name` column, an empty
    `group_name`, a repeated membership, a `group_id` used for two names, or
    a file with no data rows.
    """
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        try:
            header = next(reader)
        except StopIteration:
            raise ImportFormatError("CSV file is empty") from None
        columns = {name.strip().lower(): i for i, name in enumerate(header)}
        if "group_name" not in columns:
            raise ImportFormatError("CSV missing required column 'group_name'")

        def cell(row: list[str], column: str) -> str:
            i = columns.get(column)
            if i is None or i >= len(row):
                return ""
            return row[i].strip()

        groups: dict[str, ParsedGroup] = {}
        id_to_name: dict[str, str] = {}
        seen: set[tuple[str, str]] = set()
        rows = 0

        for line, row in enumerate(reader, start=2):
            if not any(c.strip() for c in row):
                continue
            rows += 1
            group_name = cell(row, "group_name")
            if not group_name:
                raise ImportFormatError(f"Line {line}: empty group_name")

            group_id = cell(row, "group_id") or None
            if group_id is not None:
                known = id_to_name.setdefault(group_id, group_name)
                if known != group_name:
                    raise ImportFormatError(
                        f"group_id '{group_id}' maps to multiple group names: '{known}' and '{group_name}'"
                    )

            group = groups.setdefault(group_name, ParsedGroup(name=group_name))
            if group.group_id is None:
                group.group_id = group_id

            member_id = cell(row, "member_id")
            email = normalize_email(cell(row, "email"))
            key = member_id or email
            if not key:
                continue
            if (group_name, key) in seen:
                raise ImportFormatError(f"Duplicate membership: group '{group_name}', member '{key}'")
            seen.add((group_name, key))
            group.members.append((member_id, email))

    if rows == 0:
        raise ImportFormatError("CSV file has no data rows")
    return list(groups.values())


class MemberMatcher:
    """Resolves CSV membership rows against the roster.

    A known `member_id` wins; otherwise the normalized email is used. Emails
    shared by two members are ambiguous and never resolve.
    """

    def __init__(self, roster: Roster):
        self.member_ids = {m.id for m in roster.members}
        self.by_email: dict[str, str | None] = {}
        for m in roster.members:
            key = normalize_email(m.email)
            if not key:
                continue
            self.by_email[key] = None if key in self.by_email else m.id

    def resolve_row(self, member_id: str, email: str) -> str | None:
        if member_id in self.member_ids:
            return member_id
        if email:
            return self.by_email.get(email)
        return None

    def resolve(self, group: ParsedGroup) -> tuple[tuple[str, ...], int]:
        """Resolved member ids (no duplicates) and the count of unmatched rows."""
        resolved: list[str] = []
        missing = 0
        for row_member_id, email in group.members:
            member_id = self.resolve_row(row_member_id, email)
            if member_id is None:
                missing += 1
            elif member_id not in resolved:
                resolved.append(member_id)
        return tuple(resolved), missing


@dataclass
class ImportPreview:
    """What an import would create."""

    groups: list[tuple[str, int]] = field(default_factory=list)
    missing_members: dict[str, int] = field(default_factory=dict)
    total_missing: int = 0


@dataclass
class ReimportDiff(ImportPreview):
    """Changes a reimport would make to an existing group-set."""

    added_group_names: list[str] = field(default_factory=list)
    removed_group_names: list[str] = field(default_factory=list)
    updated_group_names: list[str] = field(default_factory=list)
    renamed_groups: list[tuple[str, str]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.added_group_names or self.removed_group_names or self.updated_group_names or self.renamed_groups
        )


@dataclass(frozen=True)
class GroupSetPatch:
    """Replacement group collection for one group-set."""

    group_set: GroupSet
    groups_upserted: tuple[Group, ...] = ()
    deleted_group_ids: tuple[str, ...] = ()
    total_missing: int = 0


def _preview_groups(parsed: list[ParsedGroup], matcher: MemberMatcher, preview: ImportPreview) -> dict[str, tuple[str, ...]]:
    resolved_by_name: dict[str, tuple[str, ...]] = {}
    for pg in parsed:
        resolved, missing = matcher.resolve(pg)
        resolved_by_name[pg.name] = resolved
        preview.groups.append((pg.name, len(resolved)))
        if missing:
            preview.missing_members[pg.name] = missing
            preview.total_missing += missing
    return resolved_by_name


def preview_import_group_set(roster: Roster, file_path: Path) -> ImportPreview:
    parsed = parse_group_csv(Path(file_path))
    preview = ImportPreview()
    _preview_groups(parsed, MemberMatcher(roster), preview)
    return preview


def _import_connection(file_path: Path) -> ImportConnection:
    path = Path(file_path)
    return ImportConnection(
        source_filename=path.name,
        source_path=str(path),
        last_updated=datetime.now(timezone.utc),
    )


def import_group_set(roster: Roster, file_path: Path, name: str | None = None) -> Roster:
    """Create a new group-set from a CSV file."""
    file_path = Path(file_path)
    parsed = parse_group_csv(file_path)
    matcher = MemberMatcher(roster)
    groups = []
    for pg in parsed:
        member_ids, _ = matcher.resolve(pg)
        groups.append(Group(id=new_group_id(), name=pg.name, member_ids=member_ids, origin="local"))

    group_set = GroupSet(
        id=new_group_set_id(),
        name=name or file_path.stem,
        group_ids=tuple(g.id for g in groups),
        connection=_import_connection(file_path),
    )
    logger.info("Imported group set %r with %d group(s)", group_set.name, len(groups))
    return replace(roster, groups=roster.groups + tuple(groups), group_sets=roster.group_sets + (group_set,))


def _reimport_target(roster: Roster, group_set_id: str) -> GroupSet:
    gs = roster.find_group_set(group_set_id)
    if gs is None:
        raise UnknownEntityError("group set", group_set_id)
    match gs.connection:
        case SystemConnection():
            raise SyncStateError("System group sets cannot be reimported")
        case LmsGroupSetCacheEntry(kind="linked"):
            raise SyncStateError("Linked group sets are refreshed from the LMS, not reimported")
        case LmsGroupSetCacheEntry(kind="unlinked"):
            raise SyncStateError("Unlinked group sets have no groups to reimport")
    return gs


def _match(parsed: list[ParsedGroup], existing: list[Group]) -> list[tuple[ParsedGroup, Group | None]]:
    """Pair each parsed group with an existing group: id first, then name.

    An existing group is claimed at most once.
    """
    by_id = {g.id: g for g in existing}
    by_name = {g.name: g for g in existing}
    claimed: set[str] = set()
    pairs = []
    for pg in parsed:
        match = by_id.get(pg.group_id) if pg.group_id else None
        if match is None:
            match = by_name.get(pg.name)
        if match is not None and match.id in claimed:
            match = None
        if match is not None:
            claimed.add(match.id)
        pairs.append((pg, match))
    return pairs


def preview_reimport(roster: Roster, group_set_id: str, file_path: Path) -> ReimportDiff:
    gs = _reimport_target(roster, group_set_id)
    parsed = parse_group_csv(Path(file_path))
    diff = ReimportDiff()
    resolved_by_name = _preview_groups(parsed, MemberMatcher(roster), diff)

    existing = roster.groups_of(gs)
    matched: set[str] = set()
    for pg, group in _match(parsed, existing):
        if group is None:
            diff.added_group_names.append(pg.name)
            continue
        matched.add(group.id)
        if group.name != pg.name:
            diff.renamed_groups.append((group.name, pg.name))
        if set(group.member_ids) != set(resolved_by_name[pg.name]):
            diff.updated_group_names.append(pg.name)

    diff.removed_group_names = [g.name for g in existing if g.id not in matched]
    return diff


def apply_reimport(roster: Roster, group_set_id: str, file_path: Path) -> GroupSetPatch:
    file_path = Path(file_path)
    gs = _reimport_target(roster, group_set_id)
    parsed = parse_group_csv(file_path)
    matcher = MemberMatcher(roster)

    existing = roster.groups_of(gs)
    upserted: list[Group] = []
    total_missing = 0
    for pg, group in _match(parsed, existing):
        member_ids, missing = matcher.resolve(pg)
        total_missing += missing
        if group is None:
            upserted.append(Group(id=new_group_id(), name=pg.name, member_ids=member_ids, origin="local"))
        else:
            upserted.append(replace(group, name=pg.name, member_ids=member_ids))

    kept = {g.id for g in upserted}
    deleted = tuple(g.id for g in existing if g.id not in kept)

    connection = gs.connection
    if connection is None or isinstance(connection, ImportConnection):
        connection = _import_connection(file_path)
    updated_set = replace(gs, group_ids=tuple(g.id for g in upserted), connection=connection)
    return GroupSetPatch(
        group_set=updated_set,
        groups_upserted=tuple(upserted),
        deleted_group_ids=deleted,
        total_missing=total_missing,
    )


def apply_group_set_patch(roster: Roster, patch: GroupSetPatch) -> Roster:
    """Replace one group-set's group collection.

    Deleted groups leave the document only when no other set references them.
    """
    set_id = patch.group_set.id
    if roster.find_group_set(set_id) is None:
        raise UnknownEntityError("group set", set_id)

    referenced_elsewhere = {gid for gs in roster.group_sets if gs.id != set_id for gid in gs.group_ids}
    deleted = set(patch.deleted_group_ids) - referenced_elsewhere
    upserts = {g.id: g for g in patch.groups_upserted}

    groups = [upserts.pop(g.id, g) for g in roster.groups if g.id not in deleted]
    groups.extend(g for g in patch.groups_upserted if g.id in upserts)
    group_sets = tuple(patch.group_set if gs.id == set_id else gs for gs in roster.group_sets)
    logger.info(
        "Applied patch to group set %s: %d group(s), %d deleted",
        set_id,
        len(patch.groups_upserted),
        len(deleted),
    )
    return replace(roster, groups=tuple(groups), group_sets=group_sets)


def export_group_set(roster: Roster, group_set_id: str, file_path: Path) -> Path:
    """Write a group-set as CSV in the format reimport reads back."""
    gs = roster.find_group_set(group_set_id)
    if gs is None:
        raise UnknownEntityError("group set", group_set_id)

    file_path = Path(file_path)
    with open(file_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(EXPORT_COLUMNS)
        for group in roster.groups_of(gs):
            if not group.member_ids:
                writer.writerow([gs.id, group.id, group.name, "", "", ""])
                continue
            for member_id in group.member_ids:
                member = roster.find_member(member_id)
                writer.writerow(
                    [
                        gs.id,
                        group.id,
                        group.name,
                        member_id,
                        member.name if member else "",
                        member.email if member else "",
                    ]
                )
    return file_path
