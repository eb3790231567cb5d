"""Tests for session lifecycle and stale-result handling."""

import asyncio
from pathlib import Path

import pytest

from rostersync.config import SyncConfig
from rostersync.lms import LmsGroupSetSummary
from rostersync.models import Roster, RosterMember
from rostersync.profile import save_roster
from rostersync.session import RosterSession
from rostersync.system import system_sets_missing


def test_out_of_order_profile_loads_are_discarded():
    session = RosterSession()
    first = session.begin_profile_load()
    second = session.begin_profile_load()

    newer = Roster(members=(RosterMember(id="m_new", name="New", email="new@example.edu"),))
    older = Roster(members=(RosterMember(id="m_old", name="Old", email="old@example.edu"),))

    assert session.apply_loaded(second, newer)
    assert not session.apply_loaded(first, older)
    assert session.roster.find_member("m_new") is not None
    assert session.roster.find_member("m_old") is None


@pytest.mark.asyncio
async def test_load_profile_adds_system_sets(base_roster: Roster, tmp_path: Path):
    path = save_roster(base_roster, tmp_path / "roster.json")
    session = RosterSession(SyncConfig(debounce_ms=0))
    assert await session.load_profile(path)
    assert not system_sets_missing(session.roster)
    assert session.profile_path == path
    assert not session.store.can_undo


@pytest.mark.asyncio
async def test_clear_resets_and_cancels(roster: Roster, tmp_path: Path):
    session = RosterSession(SyncConfig(debounce_ms=10_000))
    token = session.begin_profile_load()
    session.apply_loaded(token, roster, tmp_path / "roster.json")
    session.store.update_member("m_alice", name="A")
    assert session.coordinator.pending

    session.clear()
    assert not session.coordinator.pending
    assert session.roster == Roster.empty()
    assert session.profile_path is None
    assert not session.apply_loaded(token, roster)


@pytest.mark.asyncio
async def test_save_round_trip(roster: Roster, tmp_path: Path):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster, tmp_path / "roster.yaml")
    written = session.save()
    assert written.read_text(encoding="utf-8").startswith("members:")

    with pytest.raises(ValueError):
        RosterSession().save()


class SlowClient:
    """Client whose list fetches finish in the order the test releases them."""

    def __init__(self):
        self.gates: list[asyncio.Event] = []

    async def fetch_group_sets(self, context):
        gate = asyncio.Event()
        self.gates.append(gate)
        index = len(self.gates)
        await gate.wait()
        return [LmsGroupSetSummary(f"lgs-{index}", f"Set {index}")]

    async def fetch_groups(self, context, group_set_id):
        return []


@pytest.mark.asyncio
async def test_superseded_list_fetch_is_dropped(roster: Roster, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)
    client = SlowClient()

    first = asyncio.create_task(session.refresh_lms_list(client, lms_context))
    await asyncio.sleep(0)
    second = asyncio.create_task(session.refresh_lms_list(client, lms_context))
    await asyncio.sleep(0)

    client.gates[1].set()
    result = await second
    assert result.ok
    client.gates[0].set()
    assert await first is None

    names = [gs.name for gs in session.roster.group_sets if gs.lms_entry is not None]
    assert names == ["Set 2"]


@pytest.mark.asyncio
async def test_link_and_refresh_through_session(roster: Roster, lms_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)

    result = await session.link(lms_client, lms_context, "lgs-1")
    assert result.ok
    gs = session.roster.find_lms_group_set("lgs-1")
    assert gs.kind == "linked"
    assert session.store.can_undo

    refreshed = await session.refresh(lms_client, lms_context, gs.id)
    assert refreshed.ok
    assert session.sync_manager(lms_client, lms_context) is session.sync_manager(lms_client, lms_context)


# -----------------------------------------------------------------------------
# Link and refresh while the document changes


@pytest.mark.asyncio
async def test_link_keeps_edits_made_while_fetching(roster: Roster, gated_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)

    task = asyncio.create_task(session.link(gated_client, lms_context, "lgs-1"))
    await gated_client.waiting.wait()
    session.store.add_member(RosterMember(id="m_dan", name="Dan Ray", email="dan@example.edu", lms_user_id="u9"))
    gated_client.gate.set()
    result = await task

    assert result.ok
    doc = session.roster
    assert doc.find_member("m_dan") is not None
    gs = doc.find_lms_group_set("lgs-1")
    team_b = next(g for g in doc.groups_of(gs) if g.name == "Team-B")
    assert team_b.member_ids == ("m_cara", "m_dan")


@pytest.mark.asyncio
async def test_link_after_clear_is_dropped(roster: Roster, gated_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)

    task = asyncio.create_task(session.link(gated_client, lms_context, "lgs-1"))
    await gated_client.waiting.wait()
    session.clear()
    gated_client.gate.set()

    assert await task is None
    assert session.roster == Roster.empty()


@pytest.mark.asyncio
async def test_refresh_after_profile_switch_is_dropped(roster: Roster, base_roster: Roster, gated_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)
    gated_client.gate.set()
    assert (await session.link(gated_client, lms_context, "lgs-1")).ok
    gs = session.roster.find_lms_group_set("lgs-1")

    gated_client.gate.clear()
    gated_client.waiting.clear()
    task = asyncio.create_task(session.refresh(gated_client, lms_context, gs.id))
    await gated_client.waiting.wait()
    session.apply_loaded(session.begin_profile_load(), base_roster)
    gated_client.gate.set()

    assert await task is None
    assert session.roster.find_lms_group_set("lgs-1") is None


@pytest.mark.asyncio
async def test_refresh_of_set_deleted_while_fetching(roster: Roster, gated_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)
    gated_client.gate.set()
    assert (await session.link(gated_client, lms_context, "lgs-1")).ok
    gs = session.roster.find_lms_group_set("lgs-1")

    gated_client.gate.clear()
    gated_client.waiting.clear()
    task = asyncio.create_task(session.refresh(gated_client, lms_context, gs.id))
    await gated_client.waiting.wait()
    session.store.remove_group_set(gs.id)
    gated_client.gate.set()

    result = await task
    assert not result.ok
    assert result.error.detail == "UnknownEntityError"
    assert session.roster.find_group_set(gs.id) is None


@pytest.mark.asyncio
async def test_concurrent_refreshes_later_one_wins(roster: Roster, versioned_client, lms_context):
    session = RosterSession()
    session.apply_loaded(session.begin_profile_load(), roster)
    assert (await session.link(versioned_client, lms_context, "lgs-1")).ok
    gs = session.roster.find_lms_group_set("lgs-1")

    results = await asyncio.gather(
        session.refresh(versioned_client, lms_context, gs.id),
        session.refresh(versioned_client, lms_context, gs.id),
    )
    assert all(r.ok for r in results)
    assert versioned_client.max_active == 1
    assert session.roster.find_group_set(gs.id).name == "Teams v3"
