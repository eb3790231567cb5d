"""Group-set synchronization against an LMS.

State machine per LMS-tracked group-set::

    unlinked --link(filter)--> linked
    linked   --refresh-->      linked   (groups and fetched_at replaced)
    linked   --break_sync-->   copied   (editable, no longer refreshed)
    any      --delete-->       removed

Operations take the document they should act on and return a new one inside
a CommandResult. They never touch shared state themselves; the caller merges
the result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from .errors import LmsError, SyncStateError, UnknownEntityError
from .lms import LmsClient, LmsContext, LmsGroup, LmsGroupSetSummary, apply_group_filter
from .models import (
    CachedLmsGroup,
    Group,
    GroupFilter,
    GroupSet,
    LmsGroupSetCacheEntry,
    Roster,
)
from .mutations import drop_groups, remove_group_set
from .reimport import apply_group_set_patch, apply_reimport
from .resolution import build_cached_groups
from .result import CommandResult, run_command_async
from .util import new_group_id, new_group_set_id

logger = logging.getLogger(__name__)

STALENESS_THRESHOLD = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_stale(entry: LmsGroupSetCacheEntry, now: datetime, threshold: timedelta = STALENESS_THRESHOLD) -> bool:
    """A linked entry is stale once its last fetch is older than `threshold`."""
    if entry.kind != "linked":
        return False
    if entry.fetched_at is None:
        return True
    return now - entry.fetched_at > threshold


@dataclass
class GroupSetStatus:
    """One row of the group-set overview."""

    id: str
    name: str
    kind: str
    group_count: int
    unresolved: int = 0
    pending_reresolution: int = 0
    stale: bool = False
    fetched_at: datetime | None = None


def group_set_status(
    roster: Roster, gs: GroupSet, now: datetime, threshold: timedelta = STALENESS_THRESHOLD
) -> GroupSetStatus:
    status = GroupSetStatus(id=gs.id, name=gs.name, kind=gs.kind, group_count=len(roster.groups_of(gs)))
    entry = gs.lms_entry
    if entry is not None:
        status.unresolved = sum(g.unresolved_count for g in entry.groups)
        status.pending_reresolution = sum(1 for g in entry.groups if g.needs_reresolution)
        status.stale = is_stale(entry, now, threshold)
        status.fetched_at = entry.fetched_at
    return status


def _in_context(entry: LmsGroupSetCacheEntry, context: LmsContext) -> bool:
    return (entry.lms_type, entry.base_url, entry.course_id) == (
        context.lms_type,
        context.base_url,
        context.course_id,
    )


def merge_lms_group_set_list(
    roster: Roster, upstream: list[LmsGroupSetSummary], context: LmsContext
) -> Roster:
    """Merge a freshly fetched list of LMS group-sets into the document.

    Known entries keep everything but their display name. Unlinked entries
    missing upstream are dropped; linked and copied ones are never removed.
    New upstream sets become unlinked placeholders. Merging the same list
    twice changes nothing the second time.
    """
    names = {s.id: s.name for s in upstream}
    known: set[str] = set()
    changed = False
    group_sets: list[GroupSet] = []

    for gs in roster.group_sets:
        entry = gs.lms_entry
        if entry is None or not _in_context(entry, context):
            group_sets.append(gs)
            continue
        known.add(entry.lms_group_set_id)
        if entry.lms_group_set_id not in names:
            if entry.kind == "unlinked":
                changed = True
                continue
            group_sets.append(gs)
            continue
        name = names[entry.lms_group_set_id]
        if gs.name != name:
            gs = replace(gs, name=name)
            changed = True
        group_sets.append(gs)

    for summary in upstream:
        if summary.id in known or roster.find_lms_group_set(summary.id) is not None:
            continue
        known.add(summary.id)
        group_sets.append(
            GroupSet(
                id=new_group_set_id(),
                name=summary.name,
                connection=LmsGroupSetCacheEntry(
                    kind="unlinked",
                    lms_group_set_id=summary.id,
                    lms_type=context.lms_type,
                    base_url=context.base_url,
                    course_id=context.course_id,
                ),
            )
        )
        changed = True

    if not changed:
        return roster
    logger.debug("Merged %d upstream group set(s)", len(upstream))
    return replace(roster, group_sets=tuple(group_sets))


def _lms_groups(cached: tuple[CachedLmsGroup, ...], origin: str, existing: dict[str, Group]) -> list[Group]:
    """Group entities for cached LMS groups, reusing ids matched by lms_group_id."""
    groups = []
    for c in cached:
        current = existing.get(c.id)
        if current is None:
            groups.append(
                Group(
                    id=new_group_id(),
                    name=c.name,
                    member_ids=c.resolved_member_ids,
                    origin=origin,
                    lms_group_id=c.id,
                )
            )
        else:
            groups.append(replace(current, name=c.name, member_ids=c.resolved_member_ids, origin=origin))
    return groups


def _install(roster: Roster, gs: GroupSet, groups: list[Group]) -> Roster:
    """Put `gs` (new or replacing the set with the same id) and its groups in the document.

    Groups the set referenced before and no longer does are dropped unless
    another set references them.
    """
    previous = roster.find_group_set(gs.id)
    new_ids = {g.id for g in groups}
    upserts = {g.id: g for g in groups}

    all_groups = [upserts.pop(g.id, g) for g in roster.groups]
    all_groups.extend(g for g in groups if g.id in upserts)

    if previous is None:
        group_sets = roster.group_sets + (gs,)
    else:
        group_sets = tuple(gs if s.id == gs.id else s for s in roster.group_sets)
    roster = replace(roster, groups=tuple(all_groups), group_sets=group_sets)

    if previous is None:
        return roster
    used_elsewhere = {gid for s in roster.group_sets if s.id != gs.id for gid in s.group_ids}
    stale = set(previous.group_ids) - new_ids - used_elsewhere
    return drop_groups(roster, stale) if stale else roster


@dataclass(frozen=True)
class FetchedGroupSet:
    """Upstream state of one LMS group-set: filtered, not yet resolved.

    Resolution happens when the fetch is installed, against whatever document
    is current at that point.
    """

    lms_group_set_id: str
    name: str
    groups: tuple[LmsGroup, ...]
    group_filter: GroupFilter | None
    fetched_at: datetime


class GroupSetSyncManager:
    """Runs link/refresh/break-sync/delete/reimport for one LMS context.

    Actions on the same LMS group-set (or, for local sets, the same group-set
    id) are serialized with a per-key asyncio.Lock, so a second call starts
    its fetch only after the first one finished and its result is the later
    one.

    `link`/`copy`/`refresh` fetch and install in one step on the document
    passed in. Callers whose document can change while the fetch is in
    flight use `fetch_link`/`fetch_refresh` and install the result with
    `install_link`/`install_refresh` on the document current at completion.
    """

    def __init__(
        self,
        client: LmsClient,
        context: LmsContext,
        *,
        staleness: timedelta = STALENESS_THRESHOLD,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.context = context
        self.staleness = staleness
        self.now = now
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _key_for(self, gs: GroupSet) -> str:
        entry = gs.lms_entry
        return f"lms:{entry.lms_group_set_id}" if entry is not None else gs.id

    def is_stale(self, entry: LmsGroupSetCacheEntry) -> bool:
        return is_stale(entry, self.now(), self.staleness)

    async def _fetch(self, lms_group_set_id: str, group_filter: GroupFilter | None) -> FetchedGroupSet:
        summaries = await self.client.fetch_group_sets(self.context)
        name = next((s.name for s in summaries if s.id == lms_group_set_id), None)
        if name is None:
            raise LmsError(f"Group set not found in LMS: {lms_group_set_id}")
        groups = await self.client.fetch_groups(self.context, lms_group_set_id)
        try:
            filtered = apply_group_filter(groups, group_filter)
        except ValueError as e:
            raise SyncStateError(str(e)) from e
        return FetchedGroupSet(
            lms_group_set_id=lms_group_set_id,
            name=name,
            groups=tuple(filtered),
            group_filter=group_filter,
            fetched_at=self.now(),
        )

    # -- link / copy ---------------------------------------------------------

    def _linkable(self, roster: Roster, lms_group_set_id: str) -> GroupSet | None:
        """The unlinked placeholder for `lms_group_set_id`, if any."""
        existing = roster.find_lms_group_set(lms_group_set_id)
        if existing is not None and existing.kind != "unlinked":
            raise SyncStateError(
                f"LMS group set {lms_group_set_id} is already represented by '{existing.name}' ({existing.kind})"
            )
        return existing

    def install_link(self, roster: Roster, fetched: FetchedGroupSet, kind: str = "linked") -> Roster:
        """Resolve a fetched group-set against `roster` and insert it as `kind`."""
        existing = self._linkable(roster, fetched.lms_group_set_id)
        cached = build_cached_groups(roster, fetched.groups)
        groups = _lms_groups(cached, "lms" if kind == "linked" else "local", {})
        entry = LmsGroupSetCacheEntry(
            kind=kind,
            lms_group_set_id=fetched.lms_group_set_id,
            lms_type=self.context.lms_type,
            base_url=self.context.base_url,
            course_id=self.context.course_id,
            groups=cached,
            filter=fetched.group_filter,
            fetched_at=fetched.fetched_at,
        )
        group_ids = tuple(g.id for g in groups)
        if existing is not None:
            gs = replace(existing, name=fetched.name, group_ids=group_ids, connection=entry)
        else:
            gs = GroupSet(id=new_group_set_id(), name=fetched.name, group_ids=group_ids, connection=entry)

        logger.info(
            "%s LMS group set %s as '%s' (%d groups)", kind.capitalize(), fetched.lms_group_set_id, fetched.name, len(groups)
        )
        return _install(roster, gs, groups)

    async def _fetch_for_link(
        self, roster: Roster, lms_group_set_id: str, group_filter: GroupFilter | None
    ) -> FetchedGroupSet:
        async with self._lock(f"lms:{lms_group_set_id}"):
            self._linkable(roster, lms_group_set_id)
            return await self._fetch(lms_group_set_id, group_filter)

    async def fetch_link(
        self, roster: Roster, lms_group_set_id: str, group_filter: GroupFilter | None = None
    ) -> CommandResult[FetchedGroupSet]:
        return await run_command_async(self._fetch_for_link, roster, lms_group_set_id, group_filter)

    async def _link(self, roster: Roster, lms_group_set_id: str, group_filter: GroupFilter | None, kind: str) -> Roster:
        async with self._lock(f"lms:{lms_group_set_id}"):
            self._linkable(roster, lms_group_set_id)
            fetched = await self._fetch(lms_group_set_id, group_filter)
            return self.install_link(roster, fetched, kind)

    async def link(
        self, roster: Roster, lms_group_set_id: str, group_filter: GroupFilter | None = None
    ) -> CommandResult[Roster]:
        return await run_command_async(self._link, roster, lms_group_set_id, group_filter, "linked")

    async def copy(
        self, roster: Roster, lms_group_set_id: str, group_filter: GroupFilter | None = None
    ) -> CommandResult[Roster]:
        return await run_command_async(self._link, roster, lms_group_set_id, group_filter, "copied")

    # -- refresh -------------------------------------------------------------

    def _require_linked(self, roster: Roster, group_set_id: str) -> tuple[GroupSet, LmsGroupSetCacheEntry]:
        gs = roster.find_group_set(group_set_id)
        if gs is None:
            raise UnknownEntityError("group set", group_set_id)
        entry = gs.lms_entry
        if entry is None or entry.kind != "linked":
            raise SyncStateError(f"Group set '{gs.name}' is not linked")
        if not _in_context(entry, self.context):
            raise SyncStateError(
                f"Group set '{gs.name}' belongs to {entry.base_url} course {entry.course_id}, "
                f"not {self.context.base_url} course {self.context.course_id}"
            )
        return gs, entry

    def install_refresh(self, roster: Roster, group_set_id: str, fetched: FetchedGroupSet) -> Roster:
        """Replace a linked set's groups with a fetched state, resolved against `roster`.

        Local group ids are kept for groups matched by `lms_group_id`.
        """
        gs, entry = self._require_linked(roster, group_set_id)
        if entry.lms_group_set_id != fetched.lms_group_set_id:
            raise SyncStateError(f"Group set '{gs.name}' no longer tracks LMS group set {fetched.lms_group_set_id}")
        cached = build_cached_groups(roster, fetched.groups)
        existing = {g.lms_group_id: g for g in roster.groups_of(gs) if g.lms_group_id}
        groups = _lms_groups(cached, "lms", existing)
        new_entry = replace(entry, groups=cached, fetched_at=fetched.fetched_at)
        updated = replace(gs, name=fetched.name, group_ids=tuple(g.id for g in groups), connection=new_entry)
        logger.info("Refreshed group set '%s' (%d groups)", fetched.name, len(groups))
        return _install(roster, updated, groups)

    async def _fetch_for_refresh(self, roster: Roster, group_set_id: str) -> FetchedGroupSet:
        gs, entry = self._require_linked(roster, group_set_id)
        async with self._lock(self._key_for(gs)):
            return await self._fetch(entry.lms_group_set_id, entry.filter)

    async def fetch_refresh(self, roster: Roster, group_set_id: str) -> CommandResult[FetchedGroupSet]:
        return await run_command_async(self._fetch_for_refresh, roster, group_set_id)

    async def _refresh(self, roster: Roster, group_set_id: str) -> Roster:
        gs, entry = self._require_linked(roster, group_set_id)
        async with self._lock(self._key_for(gs)):
            fetched = await self._fetch(entry.lms_group_set_id, entry.filter)
            return self.install_refresh(roster, group_set_id, fetched)

    async def refresh(self, roster: Roster, group_set_id: str) -> CommandResult[Roster]:
        return await run_command_async(self._refresh, roster, group_set_id)

    # -- break sync / delete -------------------------------------------------

    async def _break_sync(self, roster: Roster, group_set_id: str) -> Roster:
        gs, entry = self._require_linked(roster, group_set_id)
        async with self._lock(self._key_for(gs)):
            ids = set(gs.group_ids)
            groups = tuple(replace(g, origin="local") if g.id in ids and g.origin == "lms" else g for g in roster.groups)
            updated = replace(gs, connection=replace(entry, kind="copied"))
            logger.info("Broke sync for group set '%s'", gs.name)
            return replace(
                roster,
                groups=groups,
                group_sets=tuple(updated if s.id == gs.id else s for s in roster.group_sets),
            )

    async def break_sync(self, roster: Roster, group_set_id: str) -> CommandResult[Roster]:
        return await run_command_async(self._break_sync, roster, group_set_id)

    async def _delete(self, roster: Roster, group_set_id: str) -> Roster:
        gs = roster.find_group_set(group_set_id)
        if gs is None:
            raise UnknownEntityError("group set", group_set_id)
        async with self._lock(self._key_for(gs)):
            logger.info("Deleted group set '%s'", gs.name)
            return remove_group_set(roster, group_set_id)

    async def delete(self, roster: Roster, group_set_id: str) -> CommandResult[Roster]:
        return await run_command_async(self._delete, roster, group_set_id)

    # -- reimport ------------------------------------------------------------

    async def _reimport(self, roster: Roster, group_set_id: str, file_path: Path) -> Roster:
        gs = roster.find_group_set(group_set_id)
        if gs is None:
            raise UnknownEntityError("group set", group_set_id)
        async with self._lock(self._key_for(gs)):
            patch = apply_reimport(roster, group_set_id, file_path)
            return apply_group_set_patch(roster, patch)

    async def reimport(self, roster: Roster, group_set_id: str, file_path: Path) -> CommandResult[Roster]:
        return await run_command_async(self._reimport, roster, group_set_id, file_path)

    # -- list ----------------------------------------------------------------

    async def _fetch_list(self, roster: Roster) -> Roster:
        upstream = await self.client.fetch_group_sets(self.context)
        return merge_lms_group_set_list(roster, upstream, self.context)

    async def fetch_group_set_list(self, roster: Roster) -> CommandResult[Roster]:
        return await run_command_async(self._fetch_list, roster)
