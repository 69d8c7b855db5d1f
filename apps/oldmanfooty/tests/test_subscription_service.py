"""
Tests for state-filtered carnival announcement subscriptions.
"""

from datetime import timedelta

import pytest

from oldmanfooty.services import subscription_service
from oldmanfooty.services.errors import NotFoundError, ValidationError


@pytest.mark.asyncio
async def test_subscribe_unsubscribe_resubscribe(db_session, clock):
    """Resubscribing reactivates the same row with the new states."""
    created = await subscription_service.subscribe(db_session, " Fan@Example.com ", ["nsw", "QLD", "QLD"])

    assert created["email"] == "fan@example.com"
    assert created["states"] == ["NSW", "QLD"]
    assert created["is_active"] is True
    token = (await subscription_service.get_subscription_by_email(db_session, "fan@example.com")).unsubscribe_token
    assert len(token) == 64

    clock.set(clock.now + timedelta(days=1))
    gone = await subscription_service.unsubscribe(db_session, token)
    assert gone["is_active"] is False
    assert gone["unsubscribed_at"] == clock.now.isoformat()

    # Idempotent
    again = await subscription_service.unsubscribe(db_session, token)
    assert again["unsubscribed_at"] == gone["unsubscribed_at"]

    clock.set(clock.now + timedelta(days=1))
    back = await subscription_service.subscribe(db_session, "fan@example.com", ["VIC"], source="carnival-page")

    assert back["id"] == created["id"]
    assert back["is_active"] is True
    assert back["states"] == ["VIC"]
    assert back["source"] == "carnival-page"
    assert back["unsubscribed_at"] is None
    assert back["subscribed_at"] == clock.now.isoformat()


@pytest.mark.asyncio
async def test_unsubscribe_unknown_token(db_session):
    with pytest.raises(NotFoundError):
        await subscription_service.unsubscribe(db_session, "0" * 64)
    with pytest.raises(NotFoundError):
        await subscription_service.unsubscribe(db_session, "  ")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "email,states",
    [
        ("not-an-email", ["QLD"]),
        ("fan@example.com", []),
        ("fan@example.com", ["XYZ"]),
    ],
)
async def test_subscribe_validation(db_session, email, states):
    with pytest.raises(ValidationError):
        await subscription_service.subscribe(db_session, email, states)


@pytest.mark.asyncio
async def test_find_by_state_and_unsubscribe_email(db_session):
    await subscription_service.subscribe(db_session, "qld@example.com", ["QLD"])
    await subscription_service.subscribe(db_session, "both@example.com", ["NSW", "QLD"])
    await subscription_service.subscribe(db_session, "nsw@example.com", ["NSW"])

    qld = await subscription_service.find_by_state(db_session, "qld")
    assert [s["email"] for s in qld] == ["both@example.com", "qld@example.com"]

    await subscription_service.unsubscribe_email(db_session, "both@example.com")
    qld = await subscription_service.find_by_state(db_session, "QLD")
    assert [s["email"] for s in qld] == ["qld@example.com"]
