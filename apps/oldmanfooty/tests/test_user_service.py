"""
Tests for accounts, authentication, invitations and the primary-delegate role.

Tests:
- Registration (duplicate email, proxy club claim)
- Authentication and dashboard redirect
- Invitation token format, expiry and acceptance
- Primary-delegate transfer, including rollback when a write fails
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from oldmanfooty.database.models import User
from oldmanfooty.services import user_service
from oldmanfooty.services.errors import (
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from oldmanfooty.services.notification_service import EmailType
from oldmanfooty.utils.datetime_utils import ensure_utc

from conftest import DEFAULT_PASSWORD, reload


async def _reload(session, user_id):
    result = await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ============================================================================
# Registration
# ============================================================================


@pytest.mark.asyncio
async def test_register_user_hashes_password_once(db_session):
    data = await user_service.register_user(
        db_session, "Mal", "Meninga", "Mal.Meninga@Example.com", "canberra1"
    )

    assert data["email"] == "mal.meninga@example.com"
    assert data["club_id"] is None
    assert data["is_primary_delegate"] is False

    user = await _reload(db_session, data["id"])
    assert user.password_hash != "canberra1"
    assert user.check_password("canberra1")


@pytest.mark.asyncio
async def test_register_user_duplicate_email(db_session, make_user):
    await make_user("taken@example.com")

    with pytest.raises(DuplicateEmailError):
        await user_service.register_user(db_session, "A", "B", "TAKEN@example.com", "password1")


@pytest.mark.asyncio
async def test_register_user_rejects_short_password(db_session):
    with pytest.raises(ValidationError):
        await user_service.register_user(db_session, "A", "B", "a@example.com", "short")


@pytest.mark.asyncio
async def test_register_user_claims_proxy_club(db_session, email_outbox, make_club, make_user):
    """A new account matching a proxy club's contact email becomes its primary delegate."""
    proxy = await make_club(
        "Gold Coast Vikings", contact_email="vikings@clubs.example", is_active=False, created_by_proxy=True
    )
    old_primary = await make_user("old@vikings.example", proxy, is_primary_delegate=True)

    data = await user_service.register_user(
        db_session, "New", "Delegate", "vikings@clubs.example", "password1"
    )

    assert data["club_id"] == proxy.id
    assert data["is_primary_delegate"] is True
    proxy = await reload(db_session, proxy)
    assert proxy.is_active is True
    assert proxy.created_by_proxy is False

    previous = await _reload(db_session, old_primary.id)
    assert previous.is_primary_delegate is False

    alerts = email_outbox.of_type(EmailType.SECURITY_ALERT)
    assert [m.recipient for m in alerts] == [old_primary.email]


@pytest.mark.asyncio
async def test_register_user_skips_inactive_club_whose_name_is_taken(db_session, email_outbox, make_club):
    """An active club with the same name keeps the old proxy inactive; the account is still created."""
    active = await make_club("Gold Coast Vikings")
    proxy = await make_club(
        "Gold Coast Vikings", contact_email="vikings@clubs.example", is_active=False, created_by_proxy=True
    )

    data = await user_service.register_user(
        db_session, "New", "Delegate", "vikings@clubs.example", "password1"
    )

    assert data["club_id"] is None
    assert data["is_primary_delegate"] is False
    proxy = await reload(db_session, proxy)
    assert proxy.is_active is False
    assert proxy.created_by_proxy is True
    active = await reload(db_session, active)
    assert active.is_active is True
    assert email_outbox.sent == []


# ============================================================================
# Authentication
# ============================================================================


@pytest.mark.asyncio
async def test_authenticate_redirects_by_role(db_session, clock, make_user):
    await make_user("delegate@example.com")
    await make_user("admin@example.com", is_admin=True)

    delegate = await user_service.authenticate(db_session, "Delegate@example.com", DEFAULT_PASSWORD)
    admin = await user_service.authenticate(db_session, "admin@example.com", DEFAULT_PASSWORD)

    assert delegate["redirect_to"] == user_service.DASHBOARD_URL
    assert admin["redirect_to"] == user_service.ADMIN_DASHBOARD_URL
    assert delegate["last_login"] == clock.now.isoformat()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "email,password",
    [
        ("nobody@example.com", DEFAULT_PASSWORD),
        ("delegate@example.com", "wrong-password"),
        ("inactive@example.com", DEFAULT_PASSWORD),
    ],
)
async def test_authenticate_failures_are_indistinguishable(db_session, make_user, email, password):
    await make_user("delegate@example.com")
    await make_user("inactive@example.com", is_active=False)

    with pytest.raises(InvalidCredentialsError) as exc_info:
        await user_service.authenticate(db_session, email, password)

    assert exc_info.value.message == "Invalid email or password"


# ============================================================================
# Invitations
# ============================================================================


@pytest.mark.asyncio
async def test_invite_and_accept(db_session, clock, email_outbox, make_club, make_user):
    club = await make_club("Brisbane Bears")
    primary = await make_user("primary@bears.example", club, is_primary_delegate=True)

    invited = await user_service.invite_delegate(db_session, primary.id, "new@bears.example")

    invitee = await _reload(db_session, invited["id"])
    assert invitee.is_active is False
    assert invitee.club_id == club.id
    assert len(invitee.invitation_token) == 64
    int(invitee.invitation_token, 16)  # hex
    assert ensure_utc(invitee.invitation_expires) == clock.now + timedelta(days=7)

    invitations = email_outbox.of_type(EmailType.INVITATION)
    assert [m.recipient for m in invitations] == ["new@bears.example"]
    assert invitee.invitation_token in invitations[0].body

    accepted = await user_service.accept_invitation(
        db_session, invitee.invitation_token, "Allan", "Langer", "password1"
    )
    assert accepted["is_active"] is True

    invitee = await _reload(db_session, invited["id"])
    assert invitee.invitation_token is None
    assert invitee.check_password("password1")


@pytest.mark.asyncio
async def test_accept_expired_invitation(db_session, clock, make_club, make_user):
    club = await make_club("Brisbane Bears")
    primary = await make_user("primary@bears.example", club, is_primary_delegate=True)
    invited = await user_service.invite_delegate(db_session, primary.id, "late@bears.example")
    token = (await _reload(db_session, invited["id"])).invitation_token

    clock.set(clock.now + timedelta(days=7, seconds=1))
    with pytest.raises(InvalidOrExpiredTokenError):
        await user_service.accept_invitation(db_session, token, "Late", "Comer", "password1")


@pytest.mark.asyncio
async def test_accept_unknown_token(db_session):
    with pytest.raises(InvalidOrExpiredTokenError):
        await user_service.accept_invitation(db_session, "f" * 64, "A", "B", "password1")


@pytest.mark.asyncio
async def test_only_primary_delegate_invites(db_session, make_club, make_user):
    club = await make_club("Brisbane Bears")
    delegate = await make_user("plain@bears.example", club)

    with pytest.raises(NotAuthorizedError):
        await user_service.invite_delegate(db_session, delegate.id, "new@bears.example")


# ============================================================================
# Primary-delegate transfer
# ============================================================================


@pytest.fixture
def delegates(make_club, make_user):
    async def _make():
        club = await make_club("Brisbane Bears")
        a = await make_user("a@bears.example", club, is_primary_delegate=True)
        b = await make_user("b@bears.example", club)
        return club, a, b

    return _make


@pytest.mark.asyncio
async def test_transfer_primary_delegate(db_session, email_outbox, delegates):
    club, a, b = await delegates()

    result = await user_service.transfer_primary_delegate(db_session, a.id, b.id)

    assert result["previous_primary_id"] == a.id
    assert result["new_primary_id"] == b.id
    assert (await _reload(db_session, a.id)).is_primary_delegate is False
    assert (await _reload(db_session, b.id)).is_primary_delegate is True
    assert [m.recipient for m in email_outbox.of_type(EmailType.ROLE_TRANSFER)] == [b.email]


@pytest.mark.asyncio
async def test_transfer_rolls_back_when_second_write_fails(
    db_session, email_outbox, delegates, monkeypatch
):
    """A failure after the first flag write leaves both users exactly as they were."""
    club, a, b = await delegates()

    real_set_flag = user_service._set_primary_delegate_flag
    calls = []

    async def failing_set_flag(session, user_id, value):
        calls.append(user_id)
        if len(calls) == 2:
            raise NotFoundError("simulated write failure")
        await real_set_flag(session, user_id, value)

    monkeypatch.setattr(user_service, "_set_primary_delegate_flag", failing_set_flag)

    with pytest.raises(NotFoundError):
        await user_service.transfer_primary_delegate(db_session, a.id, b.id)

    assert calls == [a.id, b.id]
    assert (await _reload(db_session, a.id)).is_primary_delegate is True
    assert (await _reload(db_session, b.id)).is_primary_delegate is False
    assert email_outbox.sent == []


@pytest.mark.asyncio
async def test_transfer_requires_primary_caller(db_session, delegates):
    club, a, b = await delegates()

    with pytest.raises(NotAuthorizedError):
        await user_service.transfer_primary_delegate(db_session, b.id, a.id)


@pytest.mark.asyncio
async def test_transfer_to_other_club_is_refused(db_session, delegates, make_club, make_user):
    club, a, b = await delegates()
    other_club = await make_club("Sharks")
    outsider = await make_user("c@sharks.example", other_club)

    with pytest.raises(ValidationError):
        await user_service.transfer_primary_delegate(db_session, a.id, outsider.id)
    assert (await _reload(db_session, a.id)).is_primary_delegate is True
