"""Tests for the engine-maintained system group-sets."""

from dataclasses import replace

from rostersync.models import Roster, RosterMember
from rostersync.system import (
    INDIVIDUAL_STUDENTS,
    STAFF,
    ensure_system_group_sets,
    find_system_set,
    individual_group_name,
    system_sets_missing,
)


def test_creates_both_sets(base_roster: Roster):
    assert system_sets_missing(base_roster)
    result = ensure_system_group_sets(base_roster)
    roster = result.roster

    assert len(result.created_sets) == 2
    assert not system_sets_missing(roster)

    individuals = find_system_set(roster, INDIVIDUAL_STUDENTS)
    assert individuals.name == "Individual Students"
    groups = roster.groups_of(individuals)
    assert [g.name for g in groups] == ["alice_smith", "bob_jones", "cara_diaz"]
    assert all(g.origin == "system" and len(g.member_ids) == 1 for g in groups)

    staff = roster.groups_of(find_system_set(roster, STAFF))
    assert [(g.name, g.member_ids) for g in staff] == [("Staff", ("m_tina",))]


def test_is_idempotent(roster: Roster):
    result = ensure_system_group_sets(roster)
    assert not result.changed
    assert result.roster is roster


def test_tracks_member_changes(roster: Roster):
    individuals = find_system_set(roster, INDIVIDUAL_STUDENTS)
    alice_group = next(g for g in roster.groups_of(individuals) if g.member_ids == ("m_alice",))

    members = tuple(replace(m, status="dropped") if m.id == "m_bob" else m for m in roster.members)
    members += (RosterMember(id="m_dan", name="Dan Ray", email="dan@example.edu"),)
    result = ensure_system_group_sets(replace(roster, members=members))
    updated = result.roster

    groups = updated.groups_of(find_system_set(updated, INDIVIDUAL_STUDENTS))
    assert [g.member_ids for g in groups] == [("m_alice",), ("m_cara",), ("m_dan",)]
    # Existing groups keep their ids.
    assert groups[0].id == alice_group.id
    assert len(result.deleted_groups) == 1
    assert updated.find_group(result.deleted_groups[0]) is None


def test_name_collisions_get_suffixes(base_roster: Roster):
    twin = RosterMember(id="m_alice2", name="Alice Smith", email="alice2@example.edu")
    roster = ensure_system_group_sets(replace(base_roster, members=base_roster.members + (twin,))).roster
    names = [g.name for g in roster.groups_of(find_system_set(roster, INDIVIDUAL_STUDENTS))]
    assert names == ["alice_smith", "bob_jones", "cara_diaz", "alice_smith-2"]


def test_staff_group_follows_active_staff(roster: Roster):
    members = tuple(replace(m, status="dropped") if m.id == "m_tina" else m for m in roster.members)
    updated = ensure_system_group_sets(replace(roster, members=members)).roster
    staff = updated.groups_of(find_system_set(updated, STAFF))
    assert staff[0].member_ids == ()


def test_individual_group_name_fallbacks():
    assert individual_group_name(RosterMember(id="m_1234abcd", name="Cher")) == "cher"
    assert individual_group_name(RosterMember(id="m_1234abcd", name="   ")) == "member-abcd"
    assert individual_group_name(RosterMember(id="m_x", name="Jean Luc Picard")) == "jean_picard"
