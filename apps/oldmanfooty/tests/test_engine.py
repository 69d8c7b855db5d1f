"""
Tests for the envelope facade: success and failure shapes, rollback on
domain errors, and notification reports moved into ``details``.
"""

from unittest.mock import AsyncMock

import pytest

from oldmanfooty.database.models import ApprovalStatus
from oldmanfooty.services import engine
from oldmanfooty.services.errors import CapacityExceededError, ErrorKind, NotFoundError


# ============================================================================
# run()
# ============================================================================


@pytest.mark.asyncio
async def test_run_wraps_success():
    session = AsyncMock()

    async def operation(session, value):
        return {"value": value}

    envelope = await engine.run(session, operation, 5)

    assert envelope == {"success": True, "data": {"value": 5}}
    session.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_wraps_domain_error_and_rolls_back():
    session = AsyncMock()

    async def operation(session):
        raise CapacityExceededError()

    envelope = await engine.run(session, operation)

    assert envelope == {
        "success": False,
        "message": "This carnival has reached its maximum number of teams",
        "errorKind": ErrorKind.CAPACITY_EXCEEDED.value,
    }
    session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_propagates_unexpected_errors():
    session = AsyncMock()

    async def operation(session):
        raise RuntimeError("database went away")

    with pytest.raises(RuntimeError):
        await engine.run(session, operation)


@pytest.mark.asyncio
async def test_run_result_mapper():
    async def operation(session):
        return True

    envelope = await engine.run(AsyncMock(), operation, result=lambda value: {"removed": value})
    assert envelope["data"] == {"removed": True}


def test_success_moves_notifications_to_details():
    data = {"id": 1, "notifications": {"sent": 1, "failed": 0, "suppressed": 0, "failed_recipients": []}}

    envelope = engine.success(data)

    assert envelope["data"] == {"id": 1}
    assert envelope["details"]["notifications"]["sent"] == 1
    # Caller's dict is untouched
    assert "notifications" in data


def test_failure_envelope():
    assert engine.failure(NotFoundError("Carnival not found")) == {
        "success": False,
        "message": "Carnival not found",
        "errorKind": "NotFound",
    }


# ============================================================================
# Operations against the database
# ============================================================================


@pytest.mark.asyncio
async def test_approve_envelope_end_to_end(
    db_session, email_outbox, make_club, make_user, make_carnival, make_registration
):
    host_club = await make_club("Redcliffe Dolphins")
    host = await make_user("host@dolphins.example", host_club)
    carnival = await make_carnival("Winter Carnival 2025", host=host, max_teams=1)
    bears = await make_club("Brisbane Bears")
    await make_user("primary@bears.example", bears, is_primary_delegate=True)
    tigers = await make_club("Wynnum Tigers")
    first = await make_registration(carnival, bears)
    second = await make_registration(carnival, tigers, display_order=2)

    approved = await engine.approve_registration(db_session, first.id, host.id)
    full = await engine.approve_registration(db_session, second.id, host.id)

    assert approved["success"] is True
    assert approved["data"]["approval_status"] == ApprovalStatus.APPROVED.value
    assert approved["details"]["notifications"]["sent"] == 1
    assert full == {
        "success": False,
        "message": "This carnival has reached its maximum number of teams",
        "errorKind": "CapacityExceeded",
    }


@pytest.mark.asyncio
async def test_withdraw_and_reorder_return_no_data(
    db_session, make_club, make_user, make_carnival, make_registration
):
    host_club = await make_club("Redcliffe Dolphins")
    host = await make_user("host@dolphins.example", host_club)
    carnival = await make_carnival("Winter Carnival 2025", host=host)
    bears = await make_club("Brisbane Bears")
    registration = await make_registration(carnival, bears)

    reordered = await engine.reorder_registrations(db_session, carnival.id, host.id, [registration.id])
    withdrawn = await engine.withdraw_registration(db_session, registration.id, host.id)

    assert reordered == {"success": True, "data": None}
    assert withdrawn == {"success": True, "data": None}
