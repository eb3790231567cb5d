"""Member resolution and group selection.

Maps LMS member identifiers onto roster member ids, keeps the per-group
resolution bookkeeping of cached LMS groups, and resolves the groups an
assignment actually uses from its group selection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from fnmatch import fnmatchcase
from typing import Iterable, Sequence

from .models import (
    Assignment,
    CachedLmsGroup,
    Group,
    GroupSelection,
    GroupSet,
    Roster,
)
from .util import unique_in_order

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# LMS member resolution
# -----------------------------------------------------------------------------


def build_lms_index(roster: Roster) -> dict[str, str]:
    """Map LMS user ids to roster member ids."""
    index: dict[str, str] = {}
    for member in roster.members:
        if member.lms_user_id:
            index.setdefault(member.lms_user_id, member.id)
    return index


def resolve_member_ids(
    lms_index: dict[str, str], lms_member_ids: Iterable[str]
) -> tuple[tuple[str, ...], int]:
    """Resolve raw LMS ids.

    Returns the resolved roster ids (first-seen order, no duplicates) and the
    number of distinct LMS ids that did not resolve.
    """
    resolved: list[str] = []
    seen: set[str] = set()
    unresolved = 0
    for lms_id in unique_in_order(lms_member_ids):
        member_id = lms_index.get(lms_id)
        if member_id is None:
            unresolved += 1
            continue
        if member_id not in seen:
            seen.add(member_id)
            resolved.append(member_id)
    return tuple(resolved), unresolved


def resolve_cached_group(lms_index: dict[str, str], group: CachedLmsGroup) -> CachedLmsGroup:
    lms_ids = unique_in_order(group.lms_member_ids)
    resolved, unresolved = resolve_member_ids(lms_index, lms_ids)
    return replace(
        group,
        lms_member_ids=lms_ids,
        resolved_member_ids=resolved,
        unresolved_count=unresolved,
        needs_reresolution=False,
    )


def build_cached_groups(roster: Roster, lms_groups: Sequence) -> tuple[CachedLmsGroup, ...]:
    """Turn fetched LMS groups into resolved cache groups."""
    index = build_lms_index(roster)
    return tuple(
        resolve_cached_group(
            index,
            CachedLmsGroup(id=g.id, name=g.name, lms_member_ids=tuple(g.member_ids)),
        )
        for g in lms_groups
    )


def mark_cache_for_reresolution(roster: Roster) -> Roster:
    """Flag every linked cache group whose resolution may be outdated.

    Resolved ids are cleared and the whole LMS membership counts as unresolved
    until `reresolve_cached_groups` runs. Copied and unlinked entries are left
    alone.
    """
    changed = False
    group_sets: list[GroupSet] = []
    for gs in roster.group_sets:
        entry = gs.lms_entry
        if entry is None or entry.kind != "linked":
            group_sets.append(gs)
            continue
        groups = []
        for cached in entry.groups:
            if cached.needs_reresolution and not cached.resolved_member_ids:
                groups.append(cached)
                continue
            groups.append(
                replace(
                    cached,
                    needs_reresolution=True,
                    resolved_member_ids=(),
                    unresolved_count=len(set(cached.lms_member_ids)),
                )
            )
            changed = True
        group_sets.append(replace(gs, connection=replace(entry, groups=tuple(groups))))

    if not changed:
        return roster
    logger.debug("Flagged linked group sets for re-resolution")
    return replace(roster, group_sets=tuple(group_sets))


def reresolve_cached_groups(roster: Roster) -> Roster:
    """Explicit re-resolution pass over linked cache groups.

    Groups that are flagged or still have unresolved members are resolved
    against the current roster. The set's group entities (matched by
    `lms_group_id`) receive the new resolved membership.
    """
    index = build_lms_index(roster)
    new_members: dict[str, tuple[str, ...]] = {}
    group_sets: list[GroupSet] = []
    changed = False

    for gs in roster.group_sets:
        entry = gs.lms_entry
        if entry is None or entry.kind != "linked":
            group_sets.append(gs)
            continue
        groups = []
        for cached in entry.groups:
            if not cached.needs_reresolution and cached.unresolved_count == 0:
                groups.append(cached)
                continue
            resolved = resolve_cached_group(index, cached)
            groups.append(resolved)
            changed = True
            for group in roster.groups_of(gs):
                if group.lms_group_id == cached.id:
                    new_members[group.id] = resolved.resolved_member_ids
        group_sets.append(replace(gs, connection=replace(entry, groups=tuple(groups))))

    if not changed:
        return roster

    groups = tuple(
        replace(g, member_ids=new_members[g.id]) if g.id in new_members else g
        for g in roster.groups
    )
    logger.info("Re-resolved %d group(s) against the roster", len(new_members))
    return replace(roster, groups=groups, group_sets=tuple(group_sets))


def pending_reresolution_count(roster: Roster) -> int:
    count = 0
    for gs in roster.group_sets:
        entry = gs.lms_entry
        if entry is not None and entry.kind == "linked":
            count += sum(1 for g in entry.groups if g.needs_reresolution)
    return count


# -----------------------------------------------------------------------------
# Group selection
# -----------------------------------------------------------------------------


def validate_glob_pattern(pattern: str) -> str | None:
    """Return an error message for an unsupported glob pattern, else None.

    Supported syntax is `*`, `?`, `[...]` and backslash escapes.
    """
    if not pattern:
        return "Pattern is required"
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "\\":
            if i + 1 >= len(pattern):
                return "pattern ends with unescaped backslash"
            i += 2
            continue
        if c == "*" and pattern[i + 1 : i + 2] == "*":
            return "recursive glob '**' is not allowed"
        if c in "{}":
            return "brace expansion is not allowed"
        if c in "@!+" and pattern[i + 1 : i + 2] == "(":
            return "extglob patterns are not allowed"
        if c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                return "unclosed '[' bracket"
            if end == i + 1:
                return "empty bracket expression '[]' is not allowed"
            i = end + 1
            continue
        i += 1
    return None


def _translate_escapes(pattern: str) -> str:
    # fnmatch has no backslash escape; wrap escaped characters in brackets.
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern[i] == "\\" and i + 1 < len(pattern):
            out.append(f"[{pattern[i + 1]}]")
            i += 2
            continue
        out.append(pattern[i])
        i += 1
    return "".join(out)


def name_matches(pattern: str, name: str) -> bool:
    return fnmatchcase(name, _translate_escapes(pattern))


def resolve_groups_from_selection(
    roster: Roster, group_set: GroupSet, selection: GroupSelection
) -> list[Group]:
    """Groups of `group_set` picked by `selection`, in set order.

    An invalid pattern matches nothing.
    """
    groups = roster.groups_of(group_set)
    if selection.kind == "all":
        return groups

    if selection.pattern:
        if validate_glob_pattern(selection.pattern) is not None:
            return []
        groups = [g for g in groups if name_matches(selection.pattern, g.name)]
    excluded = set(selection.excluded_group_ids)
    return [g for g in groups if g.id not in excluded]


def resolve_assignment_groups(roster: Roster, assignment: Assignment) -> list[Group]:
    group_set = roster.find_group_set(assignment.group_set_id)
    if group_set is None:
        return []
    return resolve_groups_from_selection(roster, group_set, assignment.group_selection)


@dataclass
class GroupSelectionPreview:
    """What a selection would pick, for showing before it is saved."""

    valid: bool
    error: str | None = None
    group_ids: list[str] | None = None
    empty_group_ids: list[str] | None = None
    member_counts: dict[str, int] | None = None
    total_groups: int = 0
    matched_groups: int = 0


def preview_group_selection(
    roster: Roster, group_set_id: str, selection: GroupSelection
) -> GroupSelectionPreview:
    group_set = roster.find_group_set(group_set_id)
    if group_set is None:
        return GroupSelectionPreview(valid=False, error="Group set not found")

    groups = roster.groups_of(group_set)
    total = len(groups)

    if selection.kind == "selected" and selection.pattern is not None:
        error = validate_glob_pattern(selection.pattern)
        if error is not None:
            return GroupSelectionPreview(valid=False, error=error, total_groups=total)
        groups = [g for g in groups if name_matches(selection.pattern, g.name)]

    matched = len(groups)
    if selection.kind == "selected":
        excluded = set(selection.excluded_group_ids)
        groups = [g for g in groups if g.id not in excluded]

    return GroupSelectionPreview(
        valid=True,
        group_ids=[g.id for g in groups],
        empty_group_ids=[g.id for g in groups if not g.member_ids],
        member_counts={g.id: len(g.member_ids) for g in groups},
        total_groups=total,
        matched_groups=matched,
    )
