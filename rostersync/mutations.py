"""Pure document transforms.

Every function takes a Roster and returns a new Roster. Only the touched
branch is rebuilt; everything else is shared with the input document.

Referencing an id that is not in the document raises UnknownEntityError.
Editing the groups of a linked or system group-set raises
ReadOnlyGroupSetError. Both indicate a caller bug.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, TypeVar

from .errors import ReadOnlyGroupSetError, RosterError, UnknownEntityError
from .models import Assignment, Group, GroupSelection, GroupSet, Roster, RosterMember

T = TypeVar("T")


def _replace_one(items: tuple[T, ...], entity_id: str, fn: Callable[[T], T]) -> tuple[T, ...]:
    return tuple(fn(item) if item.id == entity_id else item for item in items)  # type: ignore[attr-defined]


def _reject_id_change(changes: dict[str, Any], entity: str) -> None:
    if "id" in changes:
        raise RosterError(f"{entity} id is immutable")


def _require_member(roster: Roster, member_id: str) -> RosterMember:
    member = roster.find_member(member_id)
    if member is None:
        raise UnknownEntityError("member", member_id)
    return member


def _require_group(roster: Roster, group_id: str) -> Group:
    group = roster.find_group(group_id)
    if group is None:
        raise UnknownEntityError("group", group_id)
    return group


def _require_group_set(roster: Roster, group_set_id: str) -> GroupSet:
    gs = roster.find_group_set(group_set_id)
    if gs is None:
        raise UnknownEntityError("group set", group_set_id)
    return gs


def _require_assignment(roster: Roster, assignment_id: str) -> Assignment:
    assignment = roster.find_assignment(assignment_id)
    if assignment is None:
        raise UnknownEntityError("assignment", assignment_id)
    return assignment


def _require_editable(gs: GroupSet) -> None:
    if gs.is_editable:
        return
    reason = "system group set" if gs.is_system else f"{gs.kind} LMS group set"
    raise ReadOnlyGroupSetError(gs.id, reason)


def _require_group_editable(roster: Roster, group_id: str) -> None:
    for gs in roster.group_sets:
        if group_id in gs.group_ids:
            _require_editable(gs)


# -----------------------------------------------------------------------------
# Members
# -----------------------------------------------------------------------------


def add_member(roster: Roster, member: RosterMember) -> Roster:
    return replace(roster, members=roster.members + (member,))


def update_member(roster: Roster, member_id: str, **changes: Any) -> Roster:
    _require_member(roster, member_id)
    _reject_id_change(changes, "Member")
    return replace(roster, members=_replace_one(roster.members, member_id, lambda m: replace(m, **changes)))


def _strip_member(groups: tuple[Group, ...], member_id: str) -> tuple[Group, ...]:
    return tuple(
        replace(g, member_ids=tuple(m for m in g.member_ids if m != member_id)) if member_id in g.member_ids else g
        for g in groups
    )


def remove_member(roster: Roster, member_id: str) -> Roster:
    """Remove a member and strip its id from every group."""
    _require_member(roster, member_id)
    return replace(
        roster,
        members=tuple(m for m in roster.members if m.id != member_id),
        groups=_strip_member(roster.groups, member_id),
    )


@dataclass
class RemovalImpact:
    """Groups and assignments that reference a member."""

    member_id: str
    group_ids: list[str] = field(default_factory=list)
    assignment_ids: list[str] = field(default_factory=list)

    @property
    def affected(self) -> bool:
        return bool(self.group_ids)


def check_removal_impact(roster: Roster, member_id: str) -> RemovalImpact:
    impact = RemovalImpact(member_id=member_id)
    impact.group_ids = [g.id for g in roster.groups if member_id in g.member_ids]
    touched = set(impact.group_ids)
    sets_touched = {gs.id for gs in roster.group_sets if touched & set(gs.group_ids)}
    impact.assignment_ids = [a.id for a in roster.assignments if a.group_set_id in sets_touched]
    return impact


# -----------------------------------------------------------------------------
# Groups
# -----------------------------------------------------------------------------


def add_group(roster: Roster, group_set_id: str, group: Group) -> Roster:
    """Add a group to the document and append it to a group-set."""
    gs = _require_group_set(roster, group_set_id)
    _require_editable(gs)
    groups = roster.groups if roster.find_group(group.id) else roster.groups + (group,)
    return replace(
        roster,
        groups=groups,
        group_sets=_replace_one(
            roster.group_sets, group_set_id, lambda s: replace(s, group_ids=s.group_ids + (group.id,))
        ),
    )


def update_group(roster: Roster, group_id: str, **changes: Any) -> Roster:
    _require_group(roster, group_id)
    _require_group_editable(roster, group_id)
    _reject_id_change(changes, "Group")
    return replace(roster, groups=_replace_one(roster.groups, group_id, lambda g: replace(g, **changes)))


def add_group_member(roster: Roster, group_id: str, member_id: str) -> Roster:
    """Add a member to a group. Already present is a no-op."""
    group = _require_group(roster, group_id)
    if member_id in group.member_ids:
        return roster
    return update_group(roster, group_id, member_ids=group.member_ids + (member_id,))


def remove_group_member(roster: Roster, group_id: str, member_id: str) -> Roster:
    group = _require_group(roster, group_id)
    if member_id not in group.member_ids:
        return roster
    return update_group(roster, group_id, member_ids=tuple(m for m in group.member_ids if m != member_id))


def _drop_exclusion(selection: GroupSelection, group_ids: set[str]) -> GroupSelection:
    if not group_ids & set(selection.excluded_group_ids):
        return selection
    return replace(
        selection, excluded_group_ids=tuple(g for g in selection.excluded_group_ids if g not in group_ids)
    )


def drop_groups(roster: Roster, group_ids: set[str]) -> Roster:
    """Remove groups from the document, every set, and every exclusion list."""
    group_sets = tuple(
        replace(
            gs,
            group_ids=tuple(g for g in gs.group_ids if g not in group_ids),
            group_selection=_drop_exclusion(gs.group_selection, group_ids),
        )
        if group_ids & (set(gs.group_ids) | set(gs.group_selection.excluded_group_ids))
        else gs
        for gs in roster.group_sets
    )
    assignments = tuple(
        replace(a, group_selection=_drop_exclusion(a.group_selection, group_ids))
        if group_ids & set(a.group_selection.excluded_group_ids)
        else a
        for a in roster.assignments
    )
    return replace(
        roster,
        groups=tuple(g for g in roster.groups if g.id not in group_ids),
        group_sets=group_sets,
        assignments=assignments,
    )


def remove_group(roster: Roster, group_id: str) -> Roster:
    _require_group(roster, group_id)
    _require_group_editable(roster, group_id)
    return drop_groups(roster, {group_id})


# -----------------------------------------------------------------------------
# Group sets
# -----------------------------------------------------------------------------


def add_group_set(roster: Roster, group_set: GroupSet, groups: tuple[Group, ...] = ()) -> Roster:
    """Add a group-set along with any new groups it references."""
    known = {g.id for g in roster.groups}
    new_groups = tuple(g for g in groups if g.id not in known)
    return replace(
        roster,
        groups=roster.groups + new_groups,
        group_sets=roster.group_sets + (group_set,),
    )


def update_group_set(roster: Roster, group_set_id: str, **changes: Any) -> Roster:
    gs = _require_group_set(roster, group_set_id)
    _reject_id_change(changes, "Group set")
    if "group_ids" in changes:
        _require_editable(gs)
    return replace(
        roster, group_sets=_replace_one(roster.group_sets, group_set_id, lambda s: replace(s, **changes))
    )


def remove_group_set(roster: Roster, group_set_id: str) -> Roster:
    """Remove a group-set. Groups no other set references are dropped too."""
    gs = _require_group_set(roster, group_set_id)
    if gs.is_system:
        raise ReadOnlyGroupSetError(group_set_id, "system group set")
    remaining = tuple(s for s in roster.group_sets if s.id != group_set_id)
    still_used = {gid for s in remaining for gid in s.group_ids}
    orphaned = set(gs.group_ids) - still_used
    return drop_groups(replace(roster, group_sets=remaining), orphaned)


# -----------------------------------------------------------------------------
# Assignments
# -----------------------------------------------------------------------------


def add_assignment(roster: Roster, assignment: Assignment) -> Roster:
    return replace(roster, assignments=roster.assignments + (assignment,))


def update_assignment(
    roster: Roster,
    assignment_id: str,
    changes: dict[str, Any],
    *,
    clear_exclusions_on_group_set_change: bool = False,
) -> Roster:
    """Apply `changes` to an assignment.

    Exclusions are group ids of the previous group-set; with
    `clear_exclusions_on_group_set_change` they are reset when
    `group_set_id` changes.
    """
    current = _require_assignment(roster, assignment_id)
    _reject_id_change(changes, "Assignment")
    updated = replace(current, **changes)
    if clear_exclusions_on_group_set_change and updated.group_set_id != current.group_set_id:
        updated = replace(updated, group_selection=replace(updated.group_selection, excluded_group_ids=()))
    return replace(roster, assignments=_replace_one(roster.assignments, assignment_id, lambda _: updated))


def remove_assignment(roster: Roster, assignment_id: str) -> Roster:
    _require_assignment(roster, assignment_id)
    return replace(roster, assignments=tuple(a for a in roster.assignments if a.id != assignment_id))
