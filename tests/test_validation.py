"""Tests for roster-scope and assignment-scope validation."""

from dataclasses import replace

from rostersync.models import (
    Assignment,
    CachedLmsGroup,
    Group,
    GroupSelection,
    GroupSet,
    LmsGroupSetCacheEntry,
    Roster,
    RosterMember,
)
from rostersync.validation import (
    ValidationKind,
    compute_repo_name,
    validate,
    validate_assignment,
    validate_roster,
)


def kinds(issues):
    return [i.kind for i in issues]


def with_member(roster: Roster, member_id: str, **changes) -> Roster:
    return replace(roster, members=tuple(replace(m, **changes) if m.id == member_id else m for m in roster.members))


def test_clean_roster_has_no_issues(roster: Roster):
    assert validate(roster) == []


def test_missing_system_sets_reported(base_roster: Roster):
    issues = validate_roster(base_roster)
    assert ValidationKind.SYSTEM_GROUP_SETS_MISSING in kinds(issues)


def test_duplicate_emails_reported_as_member_ids(roster: Roster):
    roster = with_member(roster, "m_bob", email="  ALICE@example.edu ")
    issues = validate_roster(roster)
    dup = [i for i in issues if i.kind == ValidationKind.DUPLICATE_EMAIL]
    assert len(dup) == 1
    assert dup[0].affected_ids == ("m_alice", "m_bob")
    assert dup[0].level == "error"


def test_missing_email_is_a_warning_and_invalid_email_is_blocking(roster: Roster):
    roster = with_member(roster, "m_alice", email="")
    roster = with_member(roster, "m_bob", email="not-an-email")
    issues = validate_roster(roster)
    by_kind = {i.kind: i for i in issues}
    assert by_kind[ValidationKind.MISSING_EMAIL].affected_ids == ("m_alice",)
    assert by_kind[ValidationKind.MISSING_EMAIL].level == "warning"
    assert by_kind[ValidationKind.INVALID_EMAIL].affected_ids == ("m_bob",)
    assert by_kind[ValidationKind.INVALID_EMAIL].level == "error"


def test_staff_emails_are_not_checked(roster: Roster):
    roster = with_member(roster, "m_tina", email="")
    assert validate_roster(roster) == []


def test_duplicate_member_ids_reported_once(roster: Roster):
    clone = replace(roster.find_member("m_cara"), name="Cara Again", email="cara2@example.edu")
    roster = replace(roster, members=roster.members + (clone,))
    issues = [i for i in validate_roster(roster) if i.kind == ValidationKind.DUPLICATE_MEMBER_ID]
    assert issues[0].affected_ids == ("m_cara",)


def test_duplicate_assignment_names_normalized(roster: Roster):
    other = Assignment(id="a_hw1b", name="  homework   1 ", group_set_id="gs_projects")
    roster = replace(roster, assignments=roster.assignments + (other,))
    issues = [i for i in validate_roster(roster) if i.kind == ValidationKind.DUPLICATE_ASSIGNMENT_NAME]
    assert issues[0].affected_ids == ("a_hw1", "a_hw1b")


def test_orphan_references(roster: Roster):
    groups = tuple(replace(g, member_ids=g.member_ids + ("m_ghost",)) if g.id == "g_blue" else g for g in roster.groups)
    group_sets = tuple(
        replace(gs, group_ids=gs.group_ids + ("g_gone",)) if gs.id == "gs_projects" else gs
        for gs in roster.group_sets
    )
    issues = validate_roster(replace(roster, groups=groups, group_sets=group_sets))
    orphan_ids = [i.affected_ids for i in issues if i.kind == ValidationKind.ORPHAN_GROUP_MEMBER]
    assert ("g_gone",) in orphan_ids
    assert ("m_ghost",) in orphan_ids


def test_linked_group_with_local_origin_is_invalid(roster: Roster):
    group = Group(id="g_lms", name="Team", member_ids=("m_alice",), origin="local", lms_group_id="lg-1")
    gs = GroupSet(
        id="gs_lms",
        name="Teams",
        group_ids=("g_lms",),
        connection=LmsGroupSetCacheEntry(kind="linked", lms_group_set_id="lgs-1"),
    )
    roster = replace(roster, groups=roster.groups + (group,), group_sets=roster.group_sets + (gs,))
    issues = validate_roster(roster)
    assert [i.affected_ids for i in issues if i.kind == ValidationKind.INVALID_GROUP_ORIGIN] == [("g_lms",)]


def test_staff_in_student_system_set_breaks_partition(roster: Roster):
    roster = with_member(roster, "m_alice", enrollment_type="staff")
    issues = validate_roster(roster)
    partition = [i for i in issues if i.kind == ValidationKind.INVALID_ENROLLMENT_PARTITION]
    assert partition and "m_alice" in partition[0].affected_ids


def test_pending_reresolution_is_a_warning(roster: Roster):
    entry = LmsGroupSetCacheEntry(
        kind="linked",
        lms_group_set_id="lgs-1",
        groups=(CachedLmsGroup(id="lg-1", name="A", lms_member_ids=("u1",), needs_reresolution=True),),
    )
    roster = replace(roster, group_sets=roster.group_sets + (GroupSet(id="gs_l", name="L", connection=entry),))
    issues = validate_roster(roster)
    assert kinds(issues) == [ValidationKind.PENDING_RERESOLUTION]
    assert issues[0].level == "warning"


# -----------------------------------------------------------------------------
# Assignment scope


def test_member_in_multiple_groups(roster: Roster):
    groups = tuple(replace(g, member_ids=g.member_ids + ("m_alice",)) if g.id == "g_blue" else g for g in roster.groups)
    issues = validate_assignment(replace(roster, groups=groups), "a_hw1")
    assert kinds(issues) == [ValidationKind.MEMBER_IN_MULTIPLE_GROUPS]
    assert issues[0].affected_ids == ("m_alice",)
    assert issues[0].assignment_id == "a_hw1"


def test_inactive_members_are_ignored_for_membership_checks(roster: Roster):
    groups = tuple(replace(g, member_ids=g.member_ids + ("m_alice",)) if g.id == "g_blue" else g for g in roster.groups)
    roster = with_member(replace(roster, groups=groups), "m_alice", status="dropped")
    assert validate_assignment(roster, "a_hw1") == []


def test_unassigned_students_only_for_class_wide(roster: Roster):
    groups = tuple(replace(g, member_ids=()) if g.id == "g_blue" else g for g in roster.groups)
    roster = replace(roster, groups=groups)
    issues = validate_assignment(roster, "a_hw1")
    assert kinds(issues) == [ValidationKind.EMPTY_GROUP, ValidationKind.UNASSIGNED_STUDENT]
    assert issues[1].affected_ids == ("m_cara",)

    selective = replace(roster, assignments=(replace(roster.assignments[0], assignment_type="selective"),))
    assert kinds(validate_assignment(selective, "a_hw1")) == [ValidationKind.EMPTY_GROUP]


def test_git_username_checks_depend_on_identity_mode(roster: Roster):
    roster = with_member(roster, "m_alice", git_username=None)
    roster = with_member(roster, "m_bob", git_username_status="invalid")
    issues = validate_assignment(roster, "a_hw1", identity_mode="username")
    assert kinds(issues) == [ValidationKind.MISSING_GIT_USERNAME, ValidationKind.INVALID_GIT_USERNAME]
    assert validate_assignment(roster, "a_hw1", identity_mode="email") == []


def test_duplicate_group_and_repo_names(roster: Roster):
    groups = tuple(replace(g, name="red ") if g.id == "g_blue" else g for g in roster.groups)
    issues = validate_assignment(replace(roster, groups=groups), "a_hw1")
    assert kinds(issues) == [
        ValidationKind.DUPLICATE_GROUP_NAME_IN_ASSIGNMENT,
        ValidationKind.DUPLICATE_REPO_NAME_IN_ASSIGNMENT,
    ]
    assert issues[1].context == "homework-1-red"


def test_repo_template_with_group_id_avoids_collisions(roster: Roster):
    groups = tuple(replace(g, name="Red") if g.id == "g_blue" else g for g in roster.groups)
    issues = validate_assignment(replace(roster, groups=groups), "a_hw1", repo_template="{assignment}-{group_id}")
    assert ValidationKind.DUPLICATE_REPO_NAME_IN_ASSIGNMENT not in kinds(issues)


def test_selection_limits_checked_groups(roster: Roster):
    groups = tuple(replace(g, member_ids=()) if g.id == "g_blue" else g for g in roster.groups)
    assignment = replace(
        roster.assignments[0],
        assignment_type="selective",
        group_selection=GroupSelection(kind="selected", excluded_group_ids=("g_blue",)),
    )
    roster = replace(roster, groups=groups, assignments=(assignment,))
    assert validate_assignment(roster, "a_hw1") == []


def test_unknown_assignment_yields_no_issues(roster: Roster):
    assert validate_assignment(roster, "a_missing") == []


def test_issues_sorted_by_kind(roster: Roster):
    roster = with_member(roster, "m_alice", email="")
    extra = RosterMember(id="m_bob", name="Bob Clone", email="bob@example.edu")
    roster = replace(roster, members=roster.members + (extra,))
    issues = validate(roster)
    orders = [i.kind.order for i in issues]
    assert orders == sorted(orders)
    assert issues[0].kind == ValidationKind.DUPLICATE_MEMBER_ID


def test_compute_repo_name():
    assignment = Assignment(id="a1", name="Lab 2", group_set_id="gs")
    assert compute_repo_name("{assignment}-{group}", assignment, "Team Ü") == "lab-2-team-u"
    assert compute_repo_name("{group_id}", assignment, "x", "g_01") == "g-01"


def test_orphan_member_reported_once(roster: Roster):
    groups = tuple(replace(g, member_ids=g.member_ids + ("m_ghost",)) if g.id == "g_blue" else g for g in roster.groups)
    issues = validate(replace(roster, groups=groups))
    orphans = [i for i in issues if i.kind == ValidationKind.ORPHAN_GROUP_MEMBER]
    assert [i.affected_ids for i in orphans] == [("m_ghost",)]
    assert orphans[0].assignment_id is None
