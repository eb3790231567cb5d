"""Validate command implementation."""

from __future__ import annotations

import json
from pathlib import Path

from rich.table import Table

from ..config import SyncConfig
from ..validation import ValidationIssue, combine_scopes, validate, validate_assignment, validate_roster
from .common import console, open_roster


def run_validate(
    roster_path: Path,
    config: SyncConfig,
    fail_on: str = "error",
    output_json: bool = False,
    assignment_id: str | None = None,
) -> int:
    """Validate the roster.

    Returns:
        Exit code (0 = clean at the `fail_on` level, 1 = issues found)
    """
    out = console()
    roster = open_roster(roster_path)
    options = {"identity_mode": config.git_identity_mode, "repo_template": config.repo_name_template}

    if assignment_id:
        if roster.find_assignment(assignment_id) is None:
            out.print(f"Unknown assignment: {assignment_id}", style="bold red")
            return 1
        issues = combine_scopes(validate_roster(roster), validate_assignment(roster, assignment_id, **options))
    else:
        issues = validate(roster, **options)

    errors = sum(1 for i in issues if i.level == "error")
    warnings = len(issues) - errors

    if output_json:
        print(
            json.dumps(
                {
                    "issues": [i.to_dict() for i in issues],
                    "summary": {"errors": errors, "warnings": warnings},
                },
                indent=2,
            )
        )
    else:
        _print_issues(issues, roster_path)

    if fail_on == "warning":
        return 1 if issues else 0
    return 1 if errors else 0


def _print_issues(issues: list[ValidationIssue], roster_path: Path) -> None:
    out = console()
    if not issues:
        out.print(f"✓ {roster_path.name}: no issues", style="green")
        return

    table = Table(title=f"Validation: {roster_path.name}")
    table.add_column("Level")
    table.add_column("Kind")
    table.add_column("Assignment", style="dim")
    table.add_column("Affected")
    table.add_column("Context", style="dim")
    for issue in issues:
        style = "red" if issue.level == "error" else "yellow"
        table.add_row(
            f"[{style}]{issue.level}[/]",
            issue.kind.value,
            issue.assignment_id or "",
            ", ".join(issue.affected_ids),
            issue.context or "",
        )
    out.print(table)
    errors = sum(1 for i in issues if i.level == "error")
    out.print(f"{errors} error(s), {len(issues) - errors} warning(s)")
