"""Cascade and debounce coordination.

`Debouncer` and `SequenceGuard` are small primitives usable at any async
boundary. `CascadeCoordinator` wires them to the roster: it applies the
follow-on changes a mutation requires and schedules validation of the latest
document.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, TypeVar

from .models import Roster
from .resolution import mark_cache_for_reresolution
from .system import ensure_system_group_sets, system_sets_missing
from .validation import DEFAULT_REPO_TEMPLATE, IdentityMode, ValidationIssue, validate

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEBOUNCE_SECONDS = 0.2


class Debouncer(Generic[T]):
    """Run `callback` with the most recent value once the quiet period ends.

    Each `schedule` cancels the pending call and restarts the timer.
    Requires a running event loop.
    """

    def __init__(self, callback: Callable[[T], Any], delay: float = DEBOUNCE_SECONDS):
        self.callback = callback
        self.delay = delay
        self._task: asyncio.Task | None = None
        self._value: T | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, value: T) -> None:
        self.cancel()
        self._value = value
        self._task = asyncio.get_running_loop().create_task(self._fire(value))

    async def _fire(self, value: T) -> None:
        await asyncio.sleep(self.delay)
        self._task = None
        result = self.callback(value)
        if asyncio.iscoroutine(result):
            await result

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("Debounced call superseded")
        self._task = None

    async def flush(self) -> None:
        """Run the pending call now instead of waiting."""
        if not self.pending:
            return
        self.cancel()
        result = self.callback(self._value)  # type: ignore[arg-type]
        if asyncio.iscoroutine(result):
            await result


class SequenceGuard:
    """Tag async requests so only the latest one may apply its result."""

    def __init__(self) -> None:
        self._latest = 0

    @property
    def latest(self) -> int:
        return self._latest

    def issue(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, token: int) -> bool:
        return token == self._latest

    def invalidate(self) -> None:
        """Make every outstanding token stale."""
        self._latest += 1


def member_identity_changed(before: Roster, after: Roster) -> bool:
    """True when a member was removed or its `lms_user_id` changed."""
    if before.members is after.members:
        return False
    after_lms = {m.id: m.lms_user_id for m in after.members}
    for m in before.members:
        if m.id not in after_lms or after_lms[m.id] != m.lms_user_id:
            return True
    return False


class CascadeCoordinator:
    """Applies mutation cascades and runs debounced validation.

    Subscribers receive `(roster, issues)` after every validation run.
    """

    def __init__(
        self,
        *,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        identity_mode: IdentityMode = "username",
        repo_template: str = DEFAULT_REPO_TEMPLATE,
    ):
        self.identity_mode = identity_mode
        self.repo_template = repo_template
        self.issues: list[ValidationIssue] = []
        self.validated: Roster | None = None
        self.validation_runs = 0
        self._debouncer: Debouncer[Roster] = Debouncer(self.validate_now, debounce_seconds)
        self._subscribers: list[Callable[[Roster, list[ValidationIssue]], None]] = []

    def subscribe(self, callback: Callable[[Roster, list[ValidationIssue]], None]) -> None:
        self._subscribers.append(callback)

    def apply_cascades(self, before: Roster, after: Roster) -> Roster:
        """Follow-on changes a mutation from `before` to `after` requires.

        Removing a member or changing its LMS id flags linked cache groups
        for re-resolution. Member changes also rebuild the system group-sets
        once they exist.
        """
        if member_identity_changed(before, after):
            after = mark_cache_for_reresolution(after)
        if before.members is not after.members and not system_sets_missing(after):
            after = ensure_system_group_sets(after).roster
        return after

    def validate_now(self, roster: Roster) -> list[ValidationIssue]:
        self.validation_runs += 1
        self.issues = validate(roster, identity_mode=self.identity_mode, repo_template=self.repo_template)
        self.validated = roster
        logger.debug("Validated roster: %d issue(s)", len(self.issues))
        for callback in self._subscribers:
            callback(roster, self.issues)
        return self.issues

    def schedule_validation(self, roster: Roster) -> None:
        """Debounce validation of `roster`; without a running loop, validate now."""
        try:
            self._debouncer.schedule(roster)
        except RuntimeError:
            self.validate_now(roster)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    async def flush(self) -> None:
        await self._debouncer.flush()

    def cancel(self) -> None:
        self._debouncer.cancel()
