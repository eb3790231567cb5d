"""CLI entrypoint for rostersync."""

import logging
import sys
from pathlib import Path

import click

from . import __version__

ROSTER_FILENAMES = ("roster.json", "roster.yaml", "roster.yml")


def _auto_detect_roster(start: Path) -> Path | None:
    """Find a roster document by walking up from `start`."""
    cur = start.resolve()
    for p in (cur, *cur.parents):
        for name in ROSTER_FILENAMES:
            candidate = p / name
            if candidate.is_file():
                return candidate
    return None


def _setup_logging(verbose: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
    )


@click.group()
@click.version_option(__version__, prog_name="rostersync")
@click.option(
    "--roster",
    "-r",
    type=click.Path(exists=False, dir_okay=False, path_type=Path),
    default=None,
    help="Path to the roster document (defaults to auto-detected roster.json/.yaml)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to rostersync.toml (defaults to auto-detected)",
)
@click.option("--verbose", is_flag=True, help="Log engine activity to stderr")
@click.pass_context
def cli(ctx: click.Context, roster: Path | None, config_path: Path | None, verbose: bool) -> None:
    """rostersync - Roster consistency and group-set synchronization.

    Validate a course roster, manage its group sets, and keep LMS-linked
    group sets in sync.
    """
    from .config import find_config, load_config

    _setup_logging(verbose)
    ctx.ensure_object(dict)
    if roster is None:
        roster = _auto_detect_roster(Path.cwd())
        if roster is None:
            raise click.ClickException("Roster not found. Pass --roster /path/to/roster.json or run from its folder.")

    if config_path is None:
        config_path = find_config(roster.resolve().parent)
    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e

    ctx.obj["roster"] = roster.resolve()
    ctx.obj["config"] = config


# -----------------------------------------------------------------------------
# Validation


@cli.command()
@click.option(
    "--fail-on",
    type=click.Choice(["error", "warning"]),
    default="error",
    help="Exit with error if this level or higher found",
)
@click.option("--json", "output_json", is_flag=True, help="Output results as JSON")
@click.option(
    "--assignment",
    "assignment_id",
    type=str,
    default=None,
    metavar="ASSIGNMENT_ID",
    help="Only run assignment checks for this assignment",
)
@click.pass_context
def validate(ctx: click.Context, fail_on: str, output_json: bool, assignment_id: str | None) -> None:
    """Check the roster and its assignments for problems.

    Roster-level checks always run. Without --assignment every assignment
    is checked as well.
    """
    from .commands.validate_cmd import run_validate

    exit_code = run_validate(ctx.obj["roster"], ctx.obj["config"], fail_on, output_json, assignment_id)
    sys.exit(exit_code)


@cli.command("system-sets")
@click.pass_context
def system_sets(ctx: click.Context) -> None:
    """Create or repair the Individual Students and Staff group sets."""
    from .commands.groupsets_cmd import run_system_sets

    sys.exit(run_system_sets(ctx.obj["roster"]))


# -----------------------------------------------------------------------------
# Members


@cli.group()
def members() -> None:
    """Inspect and remove roster members."""


@members.command("impact")
@click.argument("member_id")
@click.pass_context
def members_impact(ctx: click.Context, member_id: str) -> None:
    """Show the groups and assignments a member removal would touch."""
    from .commands.members_cmd import run_impact

    sys.exit(run_impact(ctx.obj["roster"], member_id))


@members.command("remove")
@click.argument("member_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def members_remove(ctx: click.Context, member_id: str, yes: bool) -> None:
    """Remove a member and strip them from every group."""
    from .commands.members_cmd import run_remove

    sys.exit(run_remove(ctx.obj["roster"], member_id, yes))


# -----------------------------------------------------------------------------
# Group sets


@cli.group()
def groupsets() -> None:
    """List, import, export and edit group sets."""


@groupsets.command("list")
@click.pass_context
def groupsets_list(ctx: click.Context) -> None:
    """List group sets with their kind and sync status."""
    from .commands.groupsets_cmd import run_list

    sys.exit(run_list(ctx.obj["roster"], ctx.obj["config"]))


@groupsets.command("import")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", type=str, default=None, help="Group-set name (defaults to the file name)")
@click.pass_context
def groupsets_import(ctx: click.Context, file_path: Path, name: str | None) -> None:
    """Import a group set from CSV."""
    from .commands.groupsets_cmd import run_import

    sys.exit(run_import(ctx.obj["roster"], file_path, name))


@groupsets.command("export")
@click.argument("group_set_id")
@click.argument("file_path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def groupsets_export(ctx: click.Context, group_set_id: str, file_path: Path) -> None:
    """Export a group set to CSV (one row per membership)."""
    from .commands.groupsets_cmd import run_export

    sys.exit(run_export(ctx.obj["roster"], group_set_id, file_path))


@groupsets.command("reimport")
@click.argument("group_set_id")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--apply", is_flag=True, help="Write the changes (default is a preview)")
@click.pass_context
def groupsets_reimport(ctx: click.Context, group_set_id: str, file_path: Path, apply: bool) -> None:
    """Re-import a local or imported group set from CSV.

    Without --apply only the diff is shown.
    """
    from .commands.groupsets_cmd import run_reimport

    sys.exit(run_reimport(ctx.obj["roster"], group_set_id, file_path, apply))


@groupsets.command("break-sync")
@click.argument("group_set_id")
@click.pass_context
def groupsets_break_sync(ctx: click.Context, group_set_id: str) -> None:
    """Turn a linked group set into an editable copy."""
    from .commands.groupsets_cmd import run_break_sync

    sys.exit(run_break_sync(ctx.obj["roster"], group_set_id))


@groupsets.command("delete")
@click.argument("group_set_id")
@click.pass_context
def groupsets_delete(ctx: click.Context, group_set_id: str) -> None:
    """Delete a group set and the groups only it uses."""
    from .commands.groupsets_cmd import run_delete

    sys.exit(run_delete(ctx.obj["roster"], group_set_id))


# -----------------------------------------------------------------------------
# LMS


def _lms_options(fn):
    fn = click.option(
        "--snapshot",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        required=True,
        help="YAML snapshot of the LMS course",
    )(fn)
    fn = click.option("--course-id", required=True, help="LMS course id")(fn)
    fn = click.option("--base-url", required=True, help="LMS base URL")(fn)
    fn = click.option(
        "--lms-type",
        type=click.Choice(["canvas", "moodle"]),
        default="canvas",
        show_default=True,
        help="LMS flavour",
    )(fn)
    return fn


@cli.group()
def lms() -> None:
    """Synchronize group sets with an LMS course."""


@lms.command("merge")
@_lms_options
@click.pass_context
def lms_merge(ctx: click.Context, lms_type: str, base_url: str, course_id: str, snapshot: Path) -> None:
    """Merge the course's group-set list into the roster."""
    from .commands.common import lms_context
    from .commands.lms_cmd import run_merge

    context = lms_context(lms_type, base_url, course_id)
    sys.exit(run_merge(ctx.obj["roster"], snapshot, context))


@lms.command("link")
@click.argument("lms_group_set_id")
@_lms_options
@click.option("--pattern", type=str, default=None, help="Only import groups whose name matches this glob")
@click.option("--select", "selected", multiple=True, help="Only import this LMS group id (repeatable)")
@click.option("--copy", is_flag=True, help="Import as an editable copy instead of linking")
@click.pass_context
def lms_link(
    ctx: click.Context,
    lms_group_set_id: str,
    lms_type: str,
    base_url: str,
    course_id: str,
    snapshot: Path,
    pattern: str | None,
    selected: tuple[str, ...],
    copy: bool,
) -> None:
    """Link (or copy) an LMS group set into the roster."""
    from .commands.common import lms_context
    from .commands.lms_cmd import build_filter, run_link

    context = lms_context(lms_type, base_url, course_id)
    try:
        group_filter = build_filter(pattern, selected)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--pattern / --select") from e
    exit_code = run_link(
        ctx.obj["roster"], snapshot, context, ctx.obj["config"], lms_group_set_id, group_filter, copy
    )
    sys.exit(exit_code)


@lms.command("refresh")
@click.argument("group_set_id")
@_lms_options
@click.pass_context
def lms_refresh(
    ctx: click.Context, group_set_id: str, lms_type: str, base_url: str, course_id: str, snapshot: Path
) -> None:
    """Refresh a linked group set from the LMS."""
    from .commands.common import lms_context
    from .commands.lms_cmd import run_refresh

    context = lms_context(lms_type, base_url, course_id)
    sys.exit(run_refresh(ctx.obj["roster"], snapshot, context, ctx.obj["config"], group_set_id))


@lms.command("reresolve")
@click.pass_context
def lms_reresolve(ctx: click.Context) -> None:
    """Match cached LMS members against the current roster again."""
    from .commands.lms_cmd import run_reresolve

    sys.exit(run_reresolve(ctx.obj["roster"]))


if __name__ == "__main__":
    cli()
