"""Tests for LMS member resolution and group selection."""

from dataclasses import replace

import pytest

from rostersync.models import (
    CachedLmsGroup,
    Group,
    GroupSelection,
    GroupSet,
    LmsGroupSetCacheEntry,
    Roster,
)
from rostersync.resolution import (
    build_lms_index,
    mark_cache_for_reresolution,
    pending_reresolution_count,
    preview_group_selection,
    reresolve_cached_groups,
    resolve_cached_group,
    resolve_groups_from_selection,
    resolve_member_ids,
    validate_glob_pattern,
)


def with_linked(roster: Roster, *cached: CachedLmsGroup, kind: str = "linked") -> Roster:
    groups = tuple(
        Group(id=f"g_{c.id}", name=c.name, member_ids=c.resolved_member_ids, origin="lms", lms_group_id=c.id)
        for c in cached
    )
    gs = GroupSet(
        id="gs_lms",
        name="Teams",
        group_ids=tuple(g.id for g in groups),
        connection=LmsGroupSetCacheEntry(kind=kind, lms_group_set_id="lgs-1", groups=cached),
    )
    return replace(roster, groups=roster.groups + groups, group_sets=roster.group_sets + (gs,))


def test_resolution_accounting(roster: Roster):
    index = build_lms_index(roster)
    resolved, unresolved = resolve_member_ids(index, ["u1", "u9", "u2", "u1", "u8"])
    assert resolved == ("m_alice", "m_bob")
    assert unresolved == 2

    group = resolve_cached_group(index, CachedLmsGroup(id="lg", name="A", lms_member_ids=("u1", "u9", "u1")))
    assert group.lms_member_ids == ("u1", "u9")
    assert len(group.resolved_member_ids) + group.unresolved_count == len(group.lms_member_ids)


def test_staff_resolve_too(roster: Roster):
    assert build_lms_index(roster)["t1"] == "m_tina"


def test_mark_flags_only_linked_entries(roster: Roster):
    cached = CachedLmsGroup(id="lg-1", name="A", lms_member_ids=("u1", "u2"), resolved_member_ids=("m_alice", "m_bob"))
    linked = with_linked(roster, cached)
    marked = mark_cache_for_reresolution(linked)

    group = marked.find_group_set("gs_lms").lms_entry.groups[0]
    assert group.needs_reresolution
    assert group.resolved_member_ids == ()
    assert group.unresolved_count == 2
    assert pending_reresolution_count(marked) == 1

    # Already flagged: nothing left to change.
    assert mark_cache_for_reresolution(marked) is marked

    copied = with_linked(roster, cached, kind="copied")
    assert mark_cache_for_reresolution(copied) is copied


def test_reresolve_updates_cache_and_groups(roster: Roster):
    cached = CachedLmsGroup(id="lg-1", name="A", lms_member_ids=("u1", "u7"), resolved_member_ids=("m_alice",), unresolved_count=1)
    linked = with_linked(roster, cached)
    # The roster learns u7 belongs to Cara.
    members = tuple(replace(m, lms_user_id="u7") if m.id == "m_cara" else m for m in linked.members)
    updated = reresolve_cached_groups(replace(linked, members=members))

    group = updated.find_group_set("gs_lms").lms_entry.groups[0]
    assert group.resolved_member_ids == ("m_alice", "m_cara")
    assert group.unresolved_count == 0
    assert not group.needs_reresolution
    assert updated.find_group("g_lg-1").member_ids == ("m_alice", "m_cara")


def test_reresolve_without_work_returns_same_roster(roster: Roster):
    cached = CachedLmsGroup(id="lg-1", name="A", lms_member_ids=("u1",), resolved_member_ids=("m_alice",))
    linked = with_linked(roster, cached)
    assert reresolve_cached_groups(linked) is linked


# -----------------------------------------------------------------------------
# Group selection


@pytest.mark.parametrize(
    "pattern, ok",
    [
        ("Team-*", True),
        ("Lab-?", True),
        ("[AB]*", True),
        (r"Team\*", True),
        ("**", False),
        ("{a,b}", False),
        ("@(a)", False),
        ("[abc", False),
        ("[]", False),
        ("Team\\", False),
        ("", False),
    ],
)
def test_validate_glob_pattern(pattern, ok):
    assert (validate_glob_pattern(pattern) is None) is ok


def selection_roster(roster: Roster) -> Roster:
    groups = roster.groups + (
        Group(id="g_t1", name="Team-1"),
        Group(id="g_t2", name="Team-2"),
        Group(id="g_star", name="Team*"),
        Group(id="g_lab", name="Lab-1"),
    )
    gs = GroupSet(id="gs_sel", name="Sel", group_ids=("g_t1", "g_t2", "g_star", "g_lab"))
    return replace(roster, groups=groups, group_sets=roster.group_sets + (gs,))


@pytest.mark.parametrize(
    "selection, expected",
    [
        (GroupSelection(kind="all", excluded_group_ids=("g_t1",)), ["g_t1", "g_t2", "g_star", "g_lab"]),
        (GroupSelection(kind="selected"), ["g_t1", "g_t2", "g_star", "g_lab"]),
        (GroupSelection(kind="selected", excluded_group_ids=("g_lab",)), ["g_t1", "g_t2", "g_star"]),
        (GroupSelection(kind="selected", pattern="Team-*"), ["g_t1", "g_t2"]),
        (GroupSelection(kind="selected", pattern="team-*"), []),
        (GroupSelection(kind="selected", pattern=r"Team\*"), ["g_star"]),
        (GroupSelection(kind="selected", pattern="Team-*", excluded_group_ids=("g_t2",)), ["g_t1"]),
        (GroupSelection(kind="selected", pattern="**"), []),
    ],
)
def test_resolve_groups_from_selection(roster: Roster, selection, expected):
    roster = selection_roster(roster)
    groups = resolve_groups_from_selection(roster, roster.find_group_set("gs_sel"), selection)
    assert [g.id for g in groups] == expected


def test_preview_group_selection(roster: Roster):
    roster = selection_roster(roster)
    preview = preview_group_selection(
        roster, "gs_sel", GroupSelection(kind="selected", pattern="Team-*", excluded_group_ids=("g_t2",))
    )
    assert preview.valid
    assert preview.total_groups == 4
    assert preview.matched_groups == 2
    assert preview.group_ids == ["g_t1"]
    assert preview.empty_group_ids == ["g_t1"]

    bad = preview_group_selection(roster, "gs_sel", GroupSelection(kind="selected", pattern="{a,b}"))
    assert not bad.valid
    assert "brace" in bad.error

    assert not preview_group_selection(roster, "gs_missing", GroupSelection()).valid
