"""
Exception hierarchy for the roster engine.

Mutation-layer errors are programming errors: they derive from ValueError and
propagate to the caller. Only the command boundary (`rostersync.result`)
turns them into structured results.
"""

from __future__ import annotations


class RosterError(ValueError):
    """Base class for structural misuse of the roster document."""


class UnknownEntityError(RosterError):
    """An operation referenced an id that is not in the document."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"Unknown {entity}: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ReadOnlyGroupSetError(RosterError):
    """Groups of linked and system group-sets can only change through sync."""

    def __init__(self, group_set_id: str, reason: str):
        super().__init__(f"Group set {group_set_id} is read-only: {reason}")
        self.group_set_id = group_set_id


class SyncStateError(RosterError):
    """A sync action was invoked on a group-set in the wrong state."""


class ImportFormatError(RosterError):
    """A group-set import file could not be interpreted."""


class LmsError(RuntimeError):
    """Transport or authentication failure reported by an LMS client."""
