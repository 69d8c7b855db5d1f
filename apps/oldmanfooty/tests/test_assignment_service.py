"""
Tests for attaching players to registrations and tracking their attendance.
"""

import pytest

from oldmanfooty.database.models import ApprovalStatus, AttendanceStatus
from oldmanfooty.services import assignment_service, registration_service
from oldmanfooty.services.errors import (
    IllegalTransitionError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)

from conftest import reload


@pytest.fixture
def team_setup(make_club, make_user, make_carnival, make_registration, make_player):
    """Host club and carnival, a visiting club with one registration and two players."""

    async def _make(status=ApprovalStatus.PENDING):
        host_club = await make_club("Redcliffe Dolphins")
        host = await make_user("host@dolphins.example", host_club)
        carnival = await make_carnival("Winter Carnival 2025", host=host)

        club = await make_club("Brisbane Bears")
        delegate = await make_user("delegate@bears.example", club)
        registration = await make_registration(
            carnival, club, status=status, approved_by=host if status == ApprovalStatus.APPROVED else None
        )
        wally = await make_player(club, "Wally", "Lewis")
        gene = await make_player(club, "Gene", "Miles")
        return {
            "host": host,
            "carnival": carnival,
            "club": club,
            "delegate": delegate,
            "registration": registration,
            "players": [wally, gene],
        }

    return _make


@pytest.mark.asyncio
async def test_attach_requires_approved_registration(db_session, team_setup):
    """Pending registrations take no players; once approved the attach succeeds."""
    setup = await team_setup()
    registration = setup["registration"]
    wally = setup["players"][0]

    with pytest.raises(IllegalTransitionError):
        await assignment_service.attach_players(db_session, setup["delegate"].id, registration.id, [wally.id])

    await registration_service.approve_registration(db_session, setup["host"].id, registration.id)
    attached = await assignment_service.attach_players(
        db_session, setup["delegate"].id, registration.id, [wally.id]
    )

    assert attached == 1
    listing = await assignment_service.list_assignments(db_session, registration.id)
    assert [p["full_name"] for p in listing["players"]] == ["Wally Lewis"]
    assert listing["players"][0]["attendance_status"] == AttendanceStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_attach_is_idempotent(db_session, team_setup):
    setup = await team_setup(ApprovalStatus.APPROVED)
    registration = setup["registration"]
    ids = [p.id for p in setup["players"]]

    first = await assignment_service.attach_players(db_session, setup["delegate"].id, registration.id, ids)
    second = await assignment_service.attach_players(
        db_session, setup["delegate"].id, registration.id, ids + ids
    )

    assert first == 2
    assert second == 0
    stats = await assignment_service.get_attendance_stats(db_session, registration.id)
    assert stats["total"] == 2


@pytest.mark.asyncio
async def test_attach_empty_list(db_session, team_setup):
    setup = await team_setup(ApprovalStatus.APPROVED)

    assert await assignment_service.attach_players(
        db_session, setup["delegate"].id, setup["registration"].id, []
    ) == 0


@pytest.mark.asyncio
async def test_attach_rejects_other_club_player(db_session, team_setup, make_club, make_player):
    setup = await team_setup(ApprovalStatus.APPROVED)
    other_club = await make_club("Wynnum Tigers")
    outsider = await make_player(other_club, "Steve", "Renouf")

    with pytest.raises(ValidationError) as exc_info:
        await assignment_service.attach_players(
            db_session, setup["delegate"].id, setup["registration"].id, [setup["players"][0].id, outsider.id]
        )

    assert "not a member of the registered club" in exc_info.value.message
    stats = await assignment_service.get_attendance_stats(db_session, setup["registration"].id)
    assert stats["total"] == 0


@pytest.mark.asyncio
async def test_attach_rejects_inactive_or_unknown_player(db_session, team_setup, make_player):
    setup = await team_setup(ApprovalStatus.APPROVED)
    retired = await make_player(setup["club"], "Trevor", "Gillmeister", is_active=False)

    with pytest.raises(ValidationError):
        await assignment_service.attach_players(
            db_session, setup["delegate"].id, setup["registration"].id, [retired.id]
        )
    with pytest.raises(ValidationError):
        await assignment_service.attach_players(
            db_session, setup["delegate"].id, setup["registration"].id, [999999]
        )


@pytest.mark.asyncio
async def test_attach_by_another_club_is_refused(db_session, team_setup):
    setup = await team_setup(ApprovalStatus.APPROVED)

    with pytest.raises(NotAuthorizedError):
        await assignment_service.attach_players(
            db_session, setup["host"].id, setup["registration"].id, [setup["players"][0].id]
        )


@pytest.mark.asyncio
async def test_attendance_status_and_stats(db_session, team_setup, make_assignment):
    setup = await team_setup(ApprovalStatus.APPROVED)
    wally, gene = setup["players"]
    first = await make_assignment(setup["registration"], wally)
    await make_assignment(setup["registration"], gene)

    updated = await assignment_service.set_attendance_status(
        db_session, setup["delegate"].id, first.id, "Tentative", notes=" Hamstring "
    )

    assert updated["attendance_status"] == "tentative"
    assert updated["notes"] == "Hamstring"
    stats = await assignment_service.get_attendance_stats(db_session, setup["registration"].id)
    assert stats == {"confirmed": 1, "tentative": 1, "unavailable": 0, "total": 2}

    with pytest.raises(ValidationError):
        await assignment_service.set_attendance_status(db_session, setup["delegate"].id, first.id, "maybe")


@pytest.mark.asyncio
async def test_detach_then_reattach(db_session, team_setup, make_assignment):
    setup = await team_setup(ApprovalStatus.APPROVED)
    wally = setup["players"][0]
    assignment = await make_assignment(setup["registration"], wally, AttendanceStatus.UNAVAILABLE)

    assert await assignment_service.detach_player(db_session, setup["delegate"].id, assignment.id) is True
    with pytest.raises(NotFoundError):
        await assignment_service.detach_player(db_session, setup["delegate"].id, assignment.id)

    attached = await assignment_service.attach_players(
        db_session, setup["delegate"].id, setup["registration"].id, [wally.id]
    )

    assert attached == 1
    reactivated = await reload(db_session, assignment)
    assert reactivated.is_active is True
    assert reactivated.attendance_status == AttendanceStatus.CONFIRMED.value
