"""Member commands: removal impact and removal."""

from __future__ import annotations

from pathlib import Path

import click

from ..coordinator import CascadeCoordinator
from ..mutations import check_removal_impact
from ..store import RosterStore
from .common import console, open_roster, save


def run_impact(roster_path: Path, member_id: str) -> int:
    out = console()
    roster = open_roster(roster_path)
    member = roster.find_member(member_id)
    if member is None:
        out.print(f"Unknown member: {member_id}", style="bold red")
        return 1

    impact = check_removal_impact(roster, member_id)
    out.print(f"[bold]{member.name}[/] ({member.id})")
    if not impact.affected:
        out.print("Not in any group.", style="dim")
        return 0
    for gid in impact.group_ids:
        group = roster.find_group(gid)
        out.print(f"  group: {group.name if group else gid}")
    for aid in impact.assignment_ids:
        assignment = roster.find_assignment(aid)
        out.print(f"  assignment: {assignment.name if assignment else aid}")
    return 0


def run_remove(roster_path: Path, member_id: str, yes: bool = False) -> int:
    out = console()
    roster = open_roster(roster_path)
    if roster.find_member(member_id) is None:
        out.print(f"Unknown member: {member_id}", style="bold red")
        return 1

    impact = check_removal_impact(roster, member_id)
    if impact.affected and not yes:
        out.print(
            f"[yellow]Member is in {len(impact.group_ids)} group(s) "
            f"used by {len(impact.assignment_ids)} assignment(s).[/]"
        )
        if not click.confirm("Remove anyway?", default=False):
            out.print("Aborted.", style="dim")
            return 1

    store = RosterStore(roster, coordinator=CascadeCoordinator())
    store.remove_member(member_id)
    save(store.roster, roster_path)
    out.print(f"Removed member {member_id}", style="green")
    return 0
