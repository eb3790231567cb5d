"""Session state: one open roster profile and everything attached to it.

There are no module-level singletons. A caller creates a RosterSession,
opens a profile with `load_profile`, and tears it down with `clear` (or by
loading another profile). Async results that were superseded in the meantime
are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import SyncConfig
from .coordinator import CascadeCoordinator, SequenceGuard
from .lms import LmsClient, LmsContext
from .models import GroupFilter, Roster
from .profile import load_roster, save_roster
from .result import CommandResult, run_command, run_command_async
from .store import RosterStore
from .sync import GroupSetSyncManager, merge_lms_group_set_list
from .system import ensure_system_group_sets

logger = logging.getLogger(__name__)


class RosterSession:
    def __init__(self, config: SyncConfig | None = None):
        self.config = config or SyncConfig()
        self.coordinator = CascadeCoordinator(
            debounce_seconds=self.config.debounce_seconds,
            identity_mode=self.config.git_identity_mode,  # type: ignore[arg-type]
            repo_template=self.config.repo_name_template,
        )
        self.store = RosterStore(coordinator=self.coordinator)
        self.profile_path: Path | None = None
        self._profile_seq = SequenceGuard()
        self._list_seq = SequenceGuard()
        # Bumped whenever the open document is swapped out.
        self._document_seq = SequenceGuard()
        self._managers: dict[LmsContext, GroupSetSyncManager] = {}

    @property
    def roster(self) -> Roster:
        return self.store.roster

    # -- lifecycle -----------------------------------------------------------

    async def load_profile(self, path: Path) -> bool:
        """Open a roster document. Returns False when a newer load superseded this one."""
        token = self._profile_seq.issue()
        self._list_seq.invalidate()
        roster = await asyncio.to_thread(load_roster, Path(path))
        return self.apply_loaded(token, roster, Path(path))

    def apply_loaded(self, token: int, roster: Roster, path: Path | None = None) -> bool:
        if not self._profile_seq.is_current(token):
            logger.debug("Discarding superseded profile load (token %d)", token)
            return False
        roster = ensure_system_group_sets(roster).roster
        self._document_seq.invalidate()
        self._list_seq.invalidate()
        self.store.replace(roster)
        self.profile_path = path
        return True

    def begin_profile_load(self) -> int:
        return self._profile_seq.issue()

    def save(self, path: Path | None = None) -> Path:
        target = path or self.profile_path
        if target is None:
            raise ValueError("No profile path to save to")
        return save_roster(self.store.roster, target)

    def clear(self) -> None:
        """Tear down the open profile. In-flight results become stale."""
        self._profile_seq.invalidate()
        self._list_seq.invalidate()
        self._document_seq.invalidate()
        self._managers.clear()
        self.profile_path = None
        self.store.replace(Roster.empty())
        self.coordinator.cancel()

    # -- LMS -----------------------------------------------------------------

    def sync_manager(self, client: LmsClient, context: LmsContext) -> GroupSetSyncManager:
        manager = self._managers.get(context)
        if manager is None or manager.client is not client:
            manager = GroupSetSyncManager(client, context, staleness=self.config.staleness)
            self._managers[context] = manager
        return manager

    async def refresh_lms_list(self, client: LmsClient, context: LmsContext) -> CommandResult[Roster] | None:
        """Fetch the upstream group-set list and merge it into the current document.

        Returns None when a newer fetch (or a profile switch) superseded this one.
        """
        token = self._list_seq.issue()
        result = await run_command_async(client.fetch_group_sets, context)
        if not self._list_seq.is_current(token):
            logger.debug("Discarding superseded LMS list fetch (token %d)", token)
            return None
        if not result.ok:
            return CommandResult(error=result.error)
        roster = self.store.apply(merge_lms_group_set_list, result.value, context)
        return CommandResult.success(roster)

    def _superseded(self, token: int, action: str) -> bool:
        if self._document_seq.is_current(token):
            return False
        logger.debug("Discarding %s for a document that was replaced (token %d)", action, token)
        return True

    async def link(
        self,
        client: LmsClient,
        context: LmsContext,
        lms_group_set_id: str,
        group_filter: GroupFilter | None = None,
        *,
        copy: bool = False,
    ) -> CommandResult[Roster] | None:
        """Link (or copy) an LMS group-set into the current document.

        The fetched groups are resolved and installed against the document as
        it is when the fetch completes. Returns None when the profile was
        cleared or replaced in the meantime.
        """
        manager = self.sync_manager(client, context)
        token = self._document_seq.latest
        fetched = await manager.fetch_link(self.store.roster, lms_group_set_id, group_filter)
        if self._superseded(token, "LMS link"):
            return None
        if not fetched.ok:
            return CommandResult(error=fetched.error)
        kind = "copied" if copy else "linked"
        return run_command(self.store.apply, manager.install_link, fetched.value, kind)

    async def refresh(
        self, client: LmsClient, context: LmsContext, group_set_id: str
    ) -> CommandResult[Roster] | None:
        """Refresh a linked set; same completion rules as `link`."""
        manager = self.sync_manager(client, context)
        token = self._document_seq.latest
        fetched = await manager.fetch_refresh(self.store.roster, group_set_id)
        if self._superseded(token, "LMS refresh"):
            return None
        if not fetched.ok:
            return CommandResult(error=fetched.error)
        return run_command(self.store.apply, manager.install_refresh, group_set_id, fetched.value)
