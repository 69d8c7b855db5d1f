"""
Tests for the player roster.

Tests:
- Age boundary (16 to 100) and masters eligibility
- Name normalisation and per-club email uniqueness
- Paging, search and sorting
- Admin move between clubs detaches assignments
"""

from datetime import date

import pytest

from oldmanfooty.database.models import ApprovalStatus
from oldmanfooty.services import player_service
from oldmanfooty.services.errors import NotAuthorizedError, ValidationError

from conftest import reload


@pytest.fixture
def roster_club(make_club, make_user):
    async def _make(name="Brisbane Bears"):
        club = await make_club(name)
        delegate = await make_user(f"delegate@{name.split()[-1].lower()}.example", club)
        return club, delegate

    return _make


def _fields(**overrides):
    fields = {
        "first_name": "gorden",
        "last_name": "tallis",
        "email": "gorden@players.example",
        "date_of_birth": "1973-12-20",
    }
    fields.update(overrides)
    return fields


# ============================================================================
# Eligibility
# ============================================================================


@pytest.mark.asyncio
async def test_player_age_boundary(db_session, roster_club):
    """Today is 2025-05-30: one day short of 16 fails, exactly 16 passes."""
    club, delegate = await roster_club()

    with pytest.raises(ValidationError) as exc_info:
        await player_service.create_player(
            db_session, delegate.id, club.id, _fields(email="young@players.example", date_of_birth="2009-05-31")
        )
    assert exc_info.value.message == "Player must be between 16 and 100 years old"

    created = await player_service.create_player(
        db_session, delegate.id, club.id, _fields(email="sixteen@players.example", date_of_birth="2009-05-30")
    )
    assert created["age"] == 16
    assert created["is_masters_eligible"] is False


@pytest.mark.asyncio
async def test_player_date_of_birth_in_future(db_session, roster_club):
    club, delegate = await roster_club()

    with pytest.raises(ValidationError) as exc_info:
        await player_service.create_player(db_session, delegate.id, club.id, _fields(date_of_birth="2025-06-01"))
    assert exc_info.value.message == "Date of birth cannot be in the future"


def test_calculate_age_before_and_after_birthday():
    dob = date(1980, 6, 15)
    assert player_service.calculate_age(dob, date(2025, 6, 14)) == 44
    assert player_service.calculate_age(dob, date(2025, 6, 15)) == 45


def test_normalize_player_name():
    assert player_service.normalize_player_name("  o'brien-smith ", "Last name") == "O'Brien-Smith"
    assert player_service.normalize_player_name("MAL", "First name") == "Mal"
    with pytest.raises(ValidationError):
        player_service.normalize_player_name("   ", "First name")


# ============================================================================
# Create / update
# ============================================================================


@pytest.mark.asyncio
async def test_create_player(db_session, roster_club):
    club, delegate = await roster_club()

    created = await player_service.create_player(db_session, delegate.id, club.id, _fields(shorts="red"))

    assert created["first_name"] == "Gorden"
    assert created["last_name"] == "Tallis"
    assert created["initials"] == "G.T."
    assert created["shorts"] == "Red"
    assert created["age"] == 51
    assert created["is_masters_eligible"] is True


@pytest.mark.asyncio
async def test_duplicate_player_email_in_club(db_session, roster_club):
    club, delegate = await roster_club()
    await player_service.create_player(db_session, delegate.id, club.id, _fields())

    with pytest.raises(ValidationError) as exc_info:
        await player_service.create_player(
            db_session, delegate.id, club.id, _fields(first_name="Other", email="GORDEN@players.example")
        )
    assert exc_info.value.message == "A player with this email already exists in your club"


@pytest.mark.asyncio
async def test_same_email_allowed_in_another_club(db_session, roster_club):
    bears, bears_delegate = await roster_club("Brisbane Bears")
    tigers, tigers_delegate = await roster_club("Wynnum Tigers")

    await player_service.create_player(db_session, bears_delegate.id, bears.id, _fields())
    created = await player_service.create_player(db_session, tigers_delegate.id, tigers.id, _fields())

    assert created["club_id"] == tigers.id


@pytest.mark.asyncio
async def test_other_club_delegate_cannot_add_player(db_session, roster_club):
    bears, _ = await roster_club("Brisbane Bears")
    _, tigers_delegate = await roster_club("Wynnum Tigers")

    with pytest.raises(NotAuthorizedError):
        await player_service.create_player(db_session, tigers_delegate.id, bears.id, _fields())


@pytest.mark.asyncio
async def test_update_and_deactivate_player(db_session, roster_club, make_player):
    club, delegate = await roster_club()
    player = await make_player(club)

    updated = await player_service.update_player(db_session, delegate.id, player.id, {"notes": " Hooker "})
    assert updated["notes"] == "Hooker"

    deactivated = await player_service.deactivate_player(db_session, delegate.id, player.id)
    assert deactivated["is_active"] is False
    reactivated = await player_service.reactivate_player(db_session, delegate.id, player.id)
    assert reactivated["is_active"] is True


# ============================================================================
# Listing
# ============================================================================


@pytest.mark.asyncio
async def test_list_players_paging_search_and_sort(db_session, roster_club, make_player):
    club, _ = await roster_club()
    await make_player(club, "Allan", "Langer")
    await make_player(club, "Kevin", "Walters")
    await make_player(club, "Kerrod", "Walters")
    await make_player(club, "Shane", "Webcke", is_active=False)

    page = await player_service.list_players(db_session, club.id, page=1, page_size=2)
    assert page["total"] == 3
    assert [p["full_name"] for p in page["items"]] == ["Allan Langer", "Kerrod Walters"]

    page_two = await player_service.list_players(db_session, club.id, page=2, page_size=2)
    assert [p["full_name"] for p in page_two["items"]] == ["Kevin Walters"]

    searched = await player_service.list_players(db_session, club.id, search="WALT")
    assert searched["total"] == 2

    by_first_desc = await player_service.list_players(
        db_session, club.id, sort_by="firstName", sort_order="desc"
    )
    assert [p["first_name"] for p in by_first_desc["items"]] == ["Kevin", "Kerrod", "Allan"]

    everyone = await player_service.list_players(db_session, club.id, include_inactive=True)
    assert everyone["total"] == 4


# ============================================================================
# Admin move
# ============================================================================


@pytest.mark.asyncio
async def test_move_player_detaches_assignments(
    db_session, roster_club, make_user, make_player, make_carnival, make_registration, make_assignment
):
    bears, _ = await roster_club("Brisbane Bears")
    tigers, _ = await roster_club("Wynnum Tigers")
    admin = await make_user("admin@example.com", is_admin=True)
    player = await make_player(bears)
    carnival = await make_carnival("Winter Carnival 2025", host=admin)
    registration = await make_registration(carnival, bears, status=ApprovalStatus.APPROVED, approved_by=admin)
    assignment = await make_assignment(registration, player)

    moved = await player_service.move_player_to_club(db_session, admin.id, player.id, tigers.id)

    assert moved["club_id"] == tigers.id
    assert (await reload(db_session, assignment)).is_active is False


@pytest.mark.asyncio
async def test_move_player_requires_admin(db_session, roster_club, make_player):
    bears, delegate = await roster_club("Brisbane Bears")
    tigers, _ = await roster_club("Wynnum Tigers")
    player = await make_player(bears)

    with pytest.raises(NotAuthorizedError):
        await player_service.move_player_to_club(db_session, delegate.id, player.id, tigers.id)
