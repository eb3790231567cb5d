"""System group-sets maintained by the engine.

"Individual Students" holds one group per active student; "Staff" holds a
single group with every active staff member. Both are read-only through the
mutation API and are rebuilt here whenever the member list changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from .models import Group, GroupSet, Roster, RosterMember, SystemConnection
from .util import new_group_id, new_group_set_id, slugify

logger = logging.getLogger(__name__)

INDIVIDUAL_STUDENTS = "individual_students"
STAFF = "staff"

INDIVIDUAL_STUDENTS_SET_NAME = "Individual Students"
STAFF_SET_NAME = "Staff"
STAFF_GROUP_NAME = "Staff"


@dataclass
class SystemSetsResult:
    """Outcome of `ensure_system_group_sets`."""

    roster: Roster
    created_sets: list[str] = field(default_factory=list)
    upserted_groups: list[str] = field(default_factory=list)
    deleted_groups: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created_sets or self.upserted_groups or self.deleted_groups)


def find_system_set(roster: Roster, system_type: str) -> GroupSet | None:
    for gs in roster.group_sets:
        if isinstance(gs.connection, SystemConnection) and gs.connection.system_type == system_type:
            return gs
    return None


def system_sets_missing(roster: Roster) -> bool:
    return find_system_set(roster, INDIVIDUAL_STUDENTS) is None or find_system_set(roster, STAFF) is None


def individual_group_name(member: RosterMember) -> str:
    """`first_last` slug of a member's name, falling back to part of the id."""
    words = member.name.split()
    first = slugify(words[0]) if words else ""
    last = slugify(words[-1]) if len(words) > 1 else ""
    if first and last:
        return f"{first}_{last}"
    if first or last:
        return first or last
    return f"member-{member.id[-4:]}"


def _unique_name(base: str, taken: set[str]) -> str:
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def _ensure_set(roster: Roster, system_type: str, name: str, result: SystemSetsResult) -> tuple[Roster, GroupSet]:
    existing = find_system_set(roster, system_type)
    if existing is not None:
        return roster, existing
    gs = GroupSet(id=new_group_set_id(), name=name, connection=SystemConnection(system_type))
    result.created_sets.append(gs.id)
    logger.info("Created system group set %r", name)
    return replace(roster, group_sets=roster.group_sets + (gs,)), gs


def _sync_individual_students(roster: Roster, result: SystemSetsResult) -> Roster:
    roster, gs = _ensure_set(roster, INDIVIDUAL_STUDENTS, INDIVIDUAL_STUDENTS_SET_NAME, result)

    set_groups = roster.groups_of(gs)
    by_member = {
        g.member_ids[0]: g for g in set_groups if g.origin == "system" and len(g.member_ids) == 1
    }

    taken: set[str] = set()
    wanted: list[Group] = []
    for student in roster.students:
        if not student.is_active:
            continue
        name = _unique_name(individual_group_name(student), taken)
        taken.add(name)
        group = by_member.get(student.id)
        if group is None:
            group = Group(id=new_group_id(), name=name, member_ids=(student.id,), origin="system")
            result.upserted_groups.append(group.id)
        elif group.name != name:
            group = replace(group, name=name)
            result.upserted_groups.append(group.id)
        wanted.append(group)

    wanted_ids = {g.id for g in wanted}
    dropped = [g.id for g in set_groups if g.id not in wanted_ids]
    result.deleted_groups.extend(dropped)
    return _replace_set_groups(roster, gs, wanted, dropped)


def _sync_staff(roster: Roster, result: SystemSetsResult) -> Roster:
    roster, gs = _ensure_set(roster, STAFF, STAFF_SET_NAME, result)

    active_staff = tuple(m.id for m in roster.staff if m.is_active)
    set_groups = roster.groups_of(gs)
    group = next(
        (g for g in set_groups if g.origin == "system" and g.name == STAFF_GROUP_NAME), None
    )
    if group is None:
        group = Group(id=new_group_id(), name=STAFF_GROUP_NAME, member_ids=active_staff, origin="system")
        result.upserted_groups.append(group.id)
    elif group.member_ids != active_staff:
        group = replace(group, member_ids=active_staff)
        result.upserted_groups.append(group.id)

    dropped = [g.id for g in set_groups if g.id != group.id]
    result.deleted_groups.extend(dropped)
    return _replace_set_groups(roster, gs, [group], dropped)


def _replace_set_groups(roster: Roster, gs: GroupSet, wanted: list[Group], dropped: list[str]) -> Roster:
    wanted_by_id = {g.id: g for g in wanted}
    dropped_ids = set(dropped)

    groups = [wanted_by_id.pop(g.id, g) for g in roster.groups if g.id not in dropped_ids]
    groups.extend(g for g in wanted if g.id in wanted_by_id)

    group_sets = []
    for other in roster.group_sets:
        if other.id == gs.id:
            other = replace(other, group_ids=tuple(g.id for g in wanted))
        elif dropped_ids & set(other.group_ids):
            other = replace(other, group_ids=tuple(i for i in other.group_ids if i not in dropped_ids))
        group_sets.append(other)

    return replace(roster, groups=tuple(groups), group_sets=tuple(group_sets))


def ensure_system_group_sets(roster: Roster) -> SystemSetsResult:
    """Create missing system sets and bring their groups in line with the members."""
    result = SystemSetsResult(roster=roster)
    updated = _sync_individual_students(roster, result)
    updated = _sync_staff(updated, result)
    result.roster = updated if result.changed else roster
    return result
