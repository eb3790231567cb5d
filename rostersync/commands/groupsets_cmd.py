"""Group-set commands: list, import/export, reimport, break-sync, delete."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.table import Table

from ..config import SyncConfig
from ..lms import LmsContext
from ..mutations import remove_group_set
from ..reimport import (
    ReimportDiff,
    apply_group_set_patch,
    apply_reimport,
    export_group_set,
    import_group_set,
    preview_reimport,
)
from ..result import run_command
from ..sync import GroupSetSyncManager, group_set_status
from ..system import ensure_system_group_sets
from .common import console, open_roster, require_ok, save


def run_list(roster_path: Path, config: SyncConfig) -> int:
    out = console()
    roster = open_roster(roster_path)
    now = datetime.now(timezone.utc)

    table = Table(title="Group sets")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Groups", justify="right")
    table.add_column("Unresolved", justify="right")
    table.add_column("Fetched")
    for gs in roster.group_sets:
        status = group_set_status(roster, gs, now, config.staleness)
        fetched = status.fetched_at.strftime("%Y-%m-%d %H:%M") if status.fetched_at else ""
        if status.stale:
            fetched = f"[yellow]{fetched} (stale)[/]"
        unresolved = str(status.unresolved) if gs.lms_entry else ""
        if status.pending_reresolution:
            unresolved += f" [yellow]({status.pending_reresolution} pending)[/]"
        table.add_row(status.id, status.name, status.kind, str(status.group_count), unresolved, fetched)
    out.print(table)
    return 0


def run_import(roster_path: Path, file_path: Path, name: str | None = None) -> int:
    roster = open_roster(roster_path)
    updated = require_ok(run_command(import_group_set, roster, file_path, name))
    save(updated, roster_path)
    gs = updated.group_sets[-1]
    console().print(f"Imported '{gs.name}' ({len(gs.group_ids)} groups) as {gs.id}", style="green")
    return 0


def run_export(roster_path: Path, group_set_id: str, file_path: Path) -> int:
    roster = open_roster(roster_path)
    written = require_ok(run_command(export_group_set, roster, group_set_id, file_path))
    console().print(f"Wrote {written}", style="green")
    return 0


def _print_diff(diff: ReimportDiff) -> None:
    out = console()
    for name in diff.added_group_names:
        out.print(f"  [green]+ {name}[/]")
    for name in diff.removed_group_names:
        out.print(f"  [red]- {name}[/]")
    for old, new in diff.renamed_groups:
        out.print(f"  [cyan]~ {old} -> {new}[/]")
    for name in diff.updated_group_names:
        out.print(f"  [yellow]* {name} (membership changed)[/]")
    if diff.total_missing:
        out.print(f"[yellow]{diff.total_missing} member row(s) not found in the roster[/]")
        for group_name, count in diff.missing_members.items():
            out.print(f"  {group_name}: {count}", style="dim")
    if not diff.has_changes:
        out.print("No changes.", style="dim")
    elif diff.added_group_names and diff.removed_group_names:
        out.print(
            "Groups are matched by group_id when present, otherwise by name; "
            "a renamed group without an id shows as removed + added.",
            style="dim",
        )


def run_reimport(roster_path: Path, group_set_id: str, file_path: Path, apply: bool = False) -> int:
    roster = open_roster(roster_path)
    diff = require_ok(run_command(preview_reimport, roster, group_set_id, file_path))
    _print_diff(diff)
    if not apply:
        console().print("Preview only. Re-run with --apply to commit.", style="dim")
        return 0

    patch = require_ok(run_command(apply_reimport, roster, group_set_id, file_path))
    updated = apply_group_set_patch(roster, patch)
    save(updated, roster_path)
    return 0


def run_break_sync(roster_path: Path, group_set_id: str) -> int:
    roster = open_roster(roster_path)
    gs = roster.find_group_set(group_set_id)
    entry = gs.lms_entry if gs is not None else None
    if entry is None:
        raise click.ClickException(f"Not an LMS group set: {group_set_id}")
    # Breaking sync never calls the client.
    context = LmsContext(entry.lms_type, entry.base_url, entry.course_id)
    manager = GroupSetSyncManager(client=None, context=context)  # type: ignore[arg-type]
    updated = require_ok(asyncio.run(manager.break_sync(roster, group_set_id)))
    save(updated, roster_path)
    console().print(f"Group set {group_set_id} is now a copy and can be edited.", style="green")
    return 0


def run_delete(roster_path: Path, group_set_id: str) -> int:
    roster = open_roster(roster_path)
    updated = require_ok(run_command(remove_group_set, roster, group_set_id))
    save(updated, roster_path)
    console().print(f"Deleted group set {group_set_id}", style="green")
    return 0


def run_system_sets(roster_path: Path) -> int:
    from ..profile import load_roster

    roster = load_roster(roster_path)
    result = ensure_system_group_sets(roster)
    out = console()
    if not result.changed:
        out.print("System group sets are up to date.", style="dim")
        return 0
    save(result.roster, roster_path)
    out.print(
        f"Created {len(result.created_sets)} set(s), updated {len(result.upserted_groups)} group(s), "
        f"removed {len(result.deleted_groups)} group(s)",
        style="green",
    )
    return 0
