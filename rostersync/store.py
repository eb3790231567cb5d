"""The roster store: single owner of the current document."""

from __future__ import annotations

import logging
from typing import Any, Callable

from . import mutations
from .coordinator import CascadeCoordinator
from .models import Assignment, Group, GroupSet, Roster, RosterMember
from .mutations import RemovalImpact

logger = logging.getLogger(__name__)

MAX_UNDO = 100


class RosterStore:
    """Holds the current roster and applies mutations to it.

    Every mutation runs synchronously: the transform is applied, cascades
    are run through the coordinator, the previous document goes on the undo
    stack, and validation is scheduled.
    """

    def __init__(self, roster: Roster | None = None, coordinator: CascadeCoordinator | None = None):
        self._roster = roster if roster is not None else Roster.empty()
        self.coordinator = coordinator
        self._undo: list[Roster] = []
        self._listeners: list[Callable[[Roster], None]] = []

    @property
    def roster(self) -> Roster:
        return self._roster

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    def subscribe(self, listener: Callable[[Roster], None]) -> None:
        self._listeners.append(listener)

    def _publish(self) -> None:
        for listener in self._listeners:
            listener(self._roster)
        if self.coordinator is not None:
            self.coordinator.schedule_validation(self._roster)

    def apply(self, transform: Callable[..., Roster], *args: Any, **kwargs: Any) -> Roster:
        """Run `transform(roster, *args, **kwargs)` and commit the result."""
        before = self._roster
        after = transform(before, *args, **kwargs)
        if after is before:
            return before
        if self.coordinator is not None:
            after = self.coordinator.apply_cascades(before, after)
        self._undo.append(before)
        del self._undo[:-MAX_UNDO]
        self._roster = after
        self._publish()
        return after

    def replace(self, roster: Roster) -> None:
        """Swap the document wholesale and forget history."""
        self._roster = roster
        self._undo.clear()
        self._publish()

    def undo(self) -> Roster | None:
        if not self._undo:
            return None
        self._roster = self._undo.pop()
        self._publish()
        return self._roster

    # Members

    def add_member(self, member: RosterMember) -> Roster:
        return self.apply(mutations.add_member, member)

    def update_member(self, member_id: str, **changes: Any) -> Roster:
        return self.apply(mutations.update_member, member_id, **changes)

    def remove_member(self, member_id: str) -> Roster:
        return self.apply(mutations.remove_member, member_id)

    def check_removal_impact(self, member_id: str) -> RemovalImpact:
        return mutations.check_removal_impact(self._roster, member_id)

    # Groups

    def add_group(self, group_set_id: str, group: Group) -> Roster:
        return self.apply(mutations.add_group, group_set_id, group)

    def update_group(self, group_id: str, **changes: Any) -> Roster:
        return self.apply(mutations.update_group, group_id, **changes)

    def remove_group(self, group_id: str) -> Roster:
        return self.apply(mutations.remove_group, group_id)

    def add_group_member(self, group_id: str, member_id: str) -> Roster:
        return self.apply(mutations.add_group_member, group_id, member_id)

    def remove_group_member(self, group_id: str, member_id: str) -> Roster:
        return self.apply(mutations.remove_group_member, group_id, member_id)

    # Group sets

    def add_group_set(self, group_set: GroupSet, groups: tuple[Group, ...] = ()) -> Roster:
        return self.apply(mutations.add_group_set, group_set, groups)

    def update_group_set(self, group_set_id: str, **changes: Any) -> Roster:
        return self.apply(mutations.update_group_set, group_set_id, **changes)

    def remove_group_set(self, group_set_id: str) -> Roster:
        return self.apply(mutations.remove_group_set, group_set_id)

    # Assignments

    def add_assignment(self, assignment: Assignment) -> Roster:
        return self.apply(mutations.add_assignment, assignment)

    def update_assignment(
        self, assignment_id: str, changes: dict[str, Any], *, clear_exclusions_on_group_set_change: bool = False
    ) -> Roster:
        return self.apply(
            mutations.update_assignment,
            assignment_id,
            changes,
            clear_exclusions_on_group_set_change=clear_exclusions_on_group_set_change,
        )

    def remove_assignment(self, assignment_id: str) -> Roster:
        return self.apply(mutations.remove_assignment, assignment_id)
