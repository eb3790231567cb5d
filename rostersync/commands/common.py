"""Helpers shared by the command implementations."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console

from ..lms import LmsContext, normalize_context
from ..models import Roster
from ..profile import load_roster, save_roster
from ..result import CommandResult
from ..system import ensure_system_group_sets


def console() -> Console:
    return Console(stderr=True)


def open_roster(roster_path: Path) -> Roster:
    """Load the roster and bring its system group-sets up to date."""
    try:
        roster = load_roster(roster_path)
    except ValueError as e:
        raise click.ClickException(f"Cannot read roster {roster_path}: {e}") from e
    return ensure_system_group_sets(roster).roster


def save(roster: Roster, roster_path: Path) -> None:
    save_roster(roster, roster_path)
    console().print(f"Saved {roster_path}", style="dim")


def require_ok(result: CommandResult):
    """Unwrap a result or stop the command with its error."""
    if not result.ok:
        raise click.ClickException(str(result.error))
    return result.value


def lms_context(lms_type: str, base_url: str, course_id: str) -> LmsContext:
    try:
        return normalize_context(lms_type, base_url, course_id)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--lms-type") from e
