"""Pytest configuration and fixtures."""

import asyncio
from pathlib import Path

import pytest
import yaml

from rostersync.lms import LmsContext, LmsGroup, LmsGroupSetSummary, SnapshotLmsClient
from rostersync.models import Assignment, Group, GroupSet, Roster, RosterMember
from rostersync.system import ensure_system_group_sets


def member(member_id: str, name: str, email: str | None = None, **fields) -> RosterMember:
    if email is None:
        email = f"{name.split()[0].lower()}@example.edu"
    return RosterMember(id=member_id, name=name, email=email, **fields)


@pytest.fixture
def base_roster() -> Roster:
    """Three students, one staff member, one local project set and an assignment."""
    members = (
        member("m_alice", "Alice Smith", lms_user_id="u1", git_username="alice", git_username_status="valid"),
        member("m_bob", "Bob Jones", lms_user_id="u2", git_username="bobj", git_username_status="valid"),
        member("m_cara", "Cara Diaz", lms_user_id="u3", git_username="cara", git_username_status="valid"),
        member("m_tina", "Tina Teach", enrollment_type="staff", lms_user_id="t1"),
    )
    groups = (
        Group(id="g_red", name="Red", member_ids=("m_alice", "m_bob")),
        Group(id="g_blue", name="Blue", member_ids=("m_cara",)),
    )
    projects = GroupSet(id="gs_projects", name="Projects", group_ids=("g_red", "g_blue"))
    assignment = Assignment(id="a_hw1", name="Homework 1", group_set_id="gs_projects")
    return Roster(members=members, groups=groups, group_sets=(projects,), assignments=(assignment,))


@pytest.fixture
def roster(base_roster: Roster) -> Roster:
    """`base_roster` with its system group-sets in place."""
    return ensure_system_group_sets(base_roster).roster


@pytest.fixture
def lms_context() -> LmsContext:
    return LmsContext(lms_type="canvas", base_url="https://canvas.example.edu", course_id="101")


SNAPSHOT = {
    "group_sets": [
        {
            "id": "lgs-1",
            "name": "Project Teams",
            "groups": [
                {"id": "lg-1", "name": "Team-A", "member_ids": ["u1", "u2"]},
                {"id": "lg-2", "name": "Team-B", "member_ids": ["u3", "u9"]},
                {"id": "lg-3", "name": "Lab-1", "member_ids": []},
            ],
        },
        {"id": "lgs-2", "name": "Lab Pairs", "groups": []},
    ]
}


def write_snapshot(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def snapshot_path(tmp_path: Path) -> Path:
    return write_snapshot(tmp_path / "course.yaml", SNAPSHOT)


@pytest.fixture
def lms_client(snapshot_path: Path) -> SnapshotLmsClient:
    return SnapshotLmsClient(snapshot_path)


class GatedClient(SnapshotLmsClient):
    """Snapshot client whose group fetch waits until the test opens the gate."""

    def __init__(self, path: Path):
        super().__init__(path)
        self.waiting = asyncio.Event()
        self.gate = asyncio.Event()

    async def fetch_groups(self, context: LmsContext, group_set_id: str) -> list[LmsGroup]:
        self.waiting.set()
        await self.gate.wait()
        return await super().fetch_groups(context, group_set_id)


class VersionedClient:
    """Names the set after a counter bumped on every list fetch; records overlap."""

    def __init__(self):
        self.version = 0
        self.active = 0
        self.max_active = 0

    async def fetch_group_sets(self, context: LmsContext) -> list[LmsGroupSetSummary]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.version += 1
        version = self.version
        await asyncio.sleep(0.01)
        self.active -= 1
        return [LmsGroupSetSummary("lgs-1", f"Teams v{version}")]

    async def fetch_groups(self, context: LmsContext, group_set_id: str) -> list[LmsGroup]:
        await asyncio.sleep(0)
        return [LmsGroup("lg-1", "A", ("u1",))]


@pytest.fixture
def gated_client(snapshot_path: Path) -> GatedClient:
    return GatedClient(snapshot_path)


@pytest.fixture
def versioned_client() -> VersionedClient:
    return VersionedClient()
