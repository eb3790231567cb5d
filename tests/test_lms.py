"""Tests for the LMS boundary and command results."""

from pathlib import Path

import pytest

from rostersync.errors import LmsError, UnknownEntityError
from rostersync.lms import LmsGroup, SnapshotLmsClient, apply_group_filter, describe_filter
from rostersync.models import GroupFilter
from rostersync.result import CommandResult, run_command, run_command_async

GROUPS = [LmsGroup("lg-1", "Team-A"), LmsGroup("lg-2", "Team-B"), LmsGroup("lg-3", "Lab-1")]


@pytest.mark.parametrize(
    "group_filter, expected",
    [
        (None, ["lg-1", "lg-2", "lg-3"]),
        (GroupFilter(kind="all"), ["lg-1", "lg-2", "lg-3"]),
        (GroupFilter(kind="selected", selected=("lg-3", "lg-9")), ["lg-3"]),
        (GroupFilter(kind="pattern", pattern="Team-?"), ["lg-1", "lg-2"]),
    ],
)
def test_apply_group_filter(group_filter, expected):
    assert [g.id for g in apply_group_filter(GROUPS, group_filter)] == expected


@pytest.mark.parametrize(
    "group_filter",
    [GroupFilter(kind="pattern"), GroupFilter(kind="pattern", pattern="{x}"), GroupFilter(kind="other")],
)
def test_apply_group_filter_rejects_bad_filters(group_filter):
    with pytest.raises(ValueError):
        apply_group_filter(GROUPS, group_filter)


def test_describe_filter():
    assert describe_filter(None) == "All"
    assert describe_filter(GroupFilter(kind="selected", selected=("a", "b"))) == "2 selected"
    assert describe_filter(GroupFilter(kind="pattern", pattern="T*")) == "Pattern: T*"


@pytest.mark.asyncio
async def test_snapshot_client(lms_client: SnapshotLmsClient, lms_context):
    summaries = await lms_client.fetch_group_sets(lms_context)
    assert [(s.id, s.name) for s in summaries] == [("lgs-1", "Project Teams"), ("lgs-2", "Lab Pairs")]

    groups = await lms_client.fetch_groups(lms_context, "lgs-1")
    assert groups[0] == LmsGroup("lg-1", "Team-A", ("u1", "u2"))
    assert lms_client.calls == ["fetch_group_sets", "fetch_groups:lgs-1"]

    with pytest.raises(LmsError, match="not found"):
        await lms_client.fetch_groups(lms_context, "lgs-404")


@pytest.mark.asyncio
async def test_snapshot_client_read_errors(tmp_path: Path, lms_context):
    with pytest.raises(LmsError, match="Failed to read"):
        await SnapshotLmsClient(tmp_path / "missing.yaml").fetch_group_sets(lms_context)

    bad = tmp_path / "bad.yaml"
    bad.write_text("group_sets: 3\n", encoding="utf-8")
    with pytest.raises(LmsError, match="Invalid LMS snapshot"):
        await SnapshotLmsClient(bad).fetch_group_sets(lms_context)


# -----------------------------------------------------------------------------
# Command results


def test_run_command_wraps_expected_errors():
    def boom():
        raise UnknownEntityError("group", "g_1")

    result = run_command(boom)
    assert not result.ok
    assert str(result.error) == "Unknown group: g_1 (UnknownEntityError)"
    with pytest.raises(RuntimeError):
        result.unwrap()


def test_run_command_lets_bugs_propagate():
    with pytest.raises(KeyError):
        run_command(lambda: {}["x"])


@pytest.mark.asyncio
async def test_run_command_async():
    async def ok():
        return 42

    async def fail():
        raise LmsError("timeout")

    assert (await run_command_async(ok)).unwrap() == 42
    assert (await run_command_async(fail)).error.detail == "LmsError"
    assert CommandResult.success(None).ok
