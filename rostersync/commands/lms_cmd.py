"""LMS commands: merge the group-set list, link, copy, refresh, re-resolve.

All of these read from an `LmsClient`. The CLI drives them with a
`SnapshotLmsClient` so a course can be synced from a YAML export.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from ..config import SyncConfig
from ..lms import LmsContext, SnapshotLmsClient, describe_filter
from ..models import GroupFilter
from ..resolution import pending_reresolution_count, reresolve_cached_groups, validate_glob_pattern
from ..result import run_command_async
from ..sync import GroupSetSyncManager, merge_lms_group_set_list
from .common import console, open_roster, require_ok, save


def build_filter(pattern: str | None, selected: tuple[str, ...]) -> GroupFilter | None:
    if pattern and selected:
        raise ValueError("Use either --pattern or --select, not both")
    if pattern:
        error = validate_glob_pattern(pattern)
        if error:
            raise ValueError(f"Invalid pattern '{pattern}': {error}")
        return GroupFilter(kind="pattern", pattern=pattern)
    if selected:
        return GroupFilter(kind="selected", selected=tuple(selected))
    return None


def run_merge(roster_path: Path, snapshot: Path, context: LmsContext) -> int:
    out = console()
    roster = open_roster(roster_path)
    client = SnapshotLmsClient(snapshot)
    upstream = require_ok(asyncio.run(run_command_async(client.fetch_group_sets, context)))
    merged = merge_lms_group_set_list(roster, upstream, context)
    if merged is roster:
        out.print("Group-set list is up to date.", style="dim")
        return 0
    save(merged, roster_path)
    out.print(f"Merged {len(upstream)} LMS group set(s)", style="green")
    return 0


def run_link(
    roster_path: Path,
    snapshot: Path,
    context: LmsContext,
    config: SyncConfig,
    lms_group_set_id: str,
    group_filter: GroupFilter | None = None,
    copy: bool = False,
) -> int:
    roster = open_roster(roster_path)
    manager = GroupSetSyncManager(SnapshotLmsClient(snapshot), context, staleness=config.staleness)
    action = manager.copy if copy else manager.link
    updated = require_ok(asyncio.run(action(roster, lms_group_set_id, group_filter)))
    save(updated, roster_path)

    gs = updated.find_lms_group_set(lms_group_set_id)
    verb = "Copied" if copy else "Linked"
    console().print(
        f"{verb} '{gs.name}' as {gs.id}: {len(gs.group_ids)} group(s), filter {describe_filter(group_filter)}",
        style="green",
    )
    _report_unresolved(gs.lms_entry.groups)
    return 0


def run_refresh(roster_path: Path, snapshot: Path, context: LmsContext, config: SyncConfig, group_set_id: str) -> int:
    roster = open_roster(roster_path)
    manager = GroupSetSyncManager(SnapshotLmsClient(snapshot), context, staleness=config.staleness)
    updated = require_ok(asyncio.run(manager.refresh(roster, group_set_id)))
    save(updated, roster_path)

    gs = updated.find_group_set(group_set_id)
    console().print(f"Refreshed '{gs.name}': {len(gs.group_ids)} group(s)", style="green")
    _report_unresolved(gs.lms_entry.groups)
    return 0


def run_reresolve(roster_path: Path) -> int:
    out = console()
    roster = open_roster(roster_path)
    pending = pending_reresolution_count(roster)
    updated = reresolve_cached_groups(roster)
    if updated is roster:
        out.print("Nothing to re-resolve.", style="dim")
        return 0
    save(updated, roster_path)
    out.print(f"Re-resolved {pending} flagged group(s)", style="green")
    return 0


def _report_unresolved(groups) -> None:
    unresolved = sum(g.unresolved_count for g in groups)
    if unresolved:
        console().print(f"[yellow]{unresolved} LMS member(s) not matched to the roster[/]")
