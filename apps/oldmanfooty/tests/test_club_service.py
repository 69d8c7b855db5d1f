"""
Tests for clubs, proxy clubs, reactivation alerts and alternate names.
"""

import pytest

from oldmanfooty.services import club_service
from oldmanfooty.services.errors import NotAuthorizedError, NotFoundError, ValidationError
from oldmanfooty.services.notification_service import EmailType

from conftest import reload


@pytest.mark.asyncio
async def test_create_club_makes_creator_primary(db_session, make_user):
    creator = await make_user("wally@bears.example", first_name="Wally", last_name="Lewis")

    data = await club_service.create_club(db_session, creator.id, "Brisbane Bears", state="qld")

    assert data["club_name"] == "Brisbane Bears"
    assert data["state"] == "QLD"
    assert data["contact_email"] == "wally@bears.example"
    assert data["contact_person"] == "Wally Lewis"
    creator = await reload(db_session, creator)
    assert creator.club_id == data["id"]
    assert creator.is_primary_delegate is True


@pytest.mark.asyncio
async def test_create_club_duplicate_active_name(db_session, make_club, make_user):
    await make_club("Brisbane Bears")
    creator = await make_user("new@example.com")

    with pytest.raises(ValidationError) as exc_info:
        await club_service.create_club(db_session, creator.id, "brisbane bears")
    assert exc_info.value.message == club_service.DUPLICATE_CLUB_NAME


@pytest.mark.asyncio
async def test_create_club_refused_for_existing_delegate(db_session, make_club, make_user):
    club = await make_club("Brisbane Bears")
    delegate = await make_user("delegate@bears.example", club)

    with pytest.raises(NotAuthorizedError):
        await club_service.create_club(db_session, delegate.id, "Second Club")


@pytest.mark.asyncio
async def test_create_proxy_club_requires_admin(db_session, make_user):
    admin = await make_user("admin@example.com", is_admin=True)
    plain = await make_user("plain@example.com")

    data = await club_service.create_proxy_club(
        db_session, admin.id, "Gold Coast Vikings", "Vikings@Clubs.example", state="QLD"
    )
    assert data["is_active"] is False
    assert data["created_by_proxy"] is True
    assert data["contact_email"] == "vikings@clubs.example"

    with pytest.raises(NotAuthorizedError):
        await club_service.create_proxy_club(db_session, plain.id, "Other", "other@clubs.example")


@pytest.mark.asyncio
async def test_create_proxy_club_refuses_active_name(db_session, make_club, make_user):
    await make_club("Gold Coast Vikings")
    admin = await make_user("admin@example.com", is_admin=True)

    with pytest.raises(ValidationError) as exc_info:
        await club_service.create_proxy_club(db_session, admin.id, "GOLD COAST VIKINGS", "vikings@clubs.example")
    assert exc_info.value.message == club_service.DUPLICATE_CLUB_NAME


@pytest.mark.asyncio
async def test_reactivate_club_alerts_primary_delegate(db_session, email_outbox, make_club, make_user):
    club = await make_club("Brisbane Bears")
    primary = await make_user("primary@bears.example", club, is_primary_delegate=True)

    deactivated = await club_service.deactivate_club(db_session, primary.id, club.id)
    assert deactivated["is_active"] is False
    assert email_outbox.sent == []

    reactivated = await club_service.reactivate_club(db_session, primary.id, club.id)

    assert reactivated["is_active"] is True
    assert reactivated["notifications"]["sent"] == 1
    alerts = email_outbox.of_type(EmailType.SECURITY_ALERT)
    assert [m.recipient for m in alerts] == ["primary@bears.example"]


@pytest.mark.asyncio
async def test_reactivate_blocked_when_name_taken(db_session, make_club, make_user):
    old = await make_club("Brisbane Bears", is_active=False)
    primary = await make_user("primary@bears.example", old, is_primary_delegate=True)
    await make_club("Brisbane Bears")

    with pytest.raises(ValidationError):
        await club_service.reactivate_club(db_session, primary.id, old.id)


@pytest.mark.asyncio
async def test_only_primary_delegate_manages_club(db_session, make_club, make_user):
    club = await make_club("Brisbane Bears")
    delegate = await make_user("plain@bears.example", club)

    with pytest.raises(NotAuthorizedError):
        await club_service.deactivate_club(db_session, delegate.id, club.id)


# ============================================================================
# Alternate names
# ============================================================================


@pytest.mark.asyncio
async def test_alternate_names_ordered_and_deduplicated(db_session, make_club, make_user):
    club = await make_club("Brisbane Bears")
    primary = await make_user("primary@bears.example", club, is_primary_delegate=True)

    await club_service.add_alternate_name(db_session, primary.id, club.id, "Bears Masters")
    await club_service.add_alternate_name(db_session, primary.id, club.id, "BRISBANE OLD BOYS")
    names = await club_service.add_alternate_name(db_session, primary.id, club.id, "bears masters")

    assert names == ["Bears Masters", "BRISBANE OLD BOYS"]

    with pytest.raises(ValidationError):
        await club_service.add_alternate_name(db_session, primary.id, club.id, "brisbane bears")

    remaining = await club_service.remove_alternate_name(db_session, primary.id, club.id, "bears masters")
    assert remaining == ["BRISBANE OLD BOYS"]

    with pytest.raises(NotFoundError):
        await club_service.remove_alternate_name(db_session, primary.id, club.id, "Nobody")


@pytest.mark.asyncio
async def test_find_club_by_name_or_alias(db_session, make_club, make_user):
    inactive = await make_club("Redcliffe Dolphins", is_active=False)
    active = await make_club("Redcliffe Dolphins")
    bears = await make_club("Brisbane Bears")
    primary = await make_user("primary@bears.example", bears, is_primary_delegate=True)
    await club_service.add_alternate_name(db_session, primary.id, bears.id, "Bears Masters")

    by_name = await club_service.find_club_by_name_or_alias(db_session, "REDCLIFFE dolphins")
    by_alias = await club_service.find_club_by_name_or_alias(db_session, " bears masters ")

    assert by_name.id == active.id != inactive.id
    assert by_alias.id == bears.id
    assert await club_service.find_club_by_name_or_alias(db_session, "Unknown") is None
    assert await club_service.find_club_by_name_or_alias(db_session, "") is None
