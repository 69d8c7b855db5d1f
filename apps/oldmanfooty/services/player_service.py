"""
Player roster service.

Players belong to exactly one club. Eligibility for masters football is
age 35 or over; a player record can only be created for ages 16 to 100.
"""

import logging
from datetime import date
from typing import Any, Dict, Mapping, Optional
from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import ClubPlayer, CarnivalClubPlayer, ShortsColour
from oldmanfooty.services.club_service import require_club, require_club_member
from oldmanfooty.services.errors import NotAuthorizedError, NotFoundError, ValidationError
from oldmanfooty.services.user_service import require_user
from oldmanfooty.utils.datetime_utils import today, isoformat_or_none
from oldmanfooty.utils.validation import clean_str, parse_date, require_email, require_text

logger = logging.getLogger(__name__)

MIN_PLAYER_AGE = 16
MAX_PLAYER_AGE = 100
MASTERS_ELIGIBLE_AGE = 35

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# Public sort names -> columns
SORT_FIELDS = {
    "firstName": ClubPlayer.first_name,
    "lastName": ClubPlayer.last_name,
}


def _player_to_dict(player: ClubPlayer, as_of: Optional[date] = None) -> Dict:
    as_of = as_of or today()
    age = player.age_on(as_of)
    return {
        "id": player.id,
        "club_id": player.club_id,
        "first_name": player.first_name,
        "last_name": player.last_name,
        "full_name": player.full_name,
        "initials": player.initials,
        "email": player.email,
        "date_of_birth": isoformat_or_none(player.date_of_birth),
        "age": age,
        "is_masters_eligible": age >= MASTERS_ELIGIBLE_AGE,
        "shorts": player.shorts,
        "notes": player.notes,
        "is_active": player.is_active,
        "registered_at": isoformat_or_none(player.registered_at),
    }


def title_case_name(value: str) -> str:
    """Title-case each word, keeping hyphenated and apostrophe parts capitalised."""
    return " ".join(part.capitalize() for part in value.split())


def _capitalise_parts(value: str) -> str:
    for sep in ("-", "'"):
        value = sep.join(piece[:1].upper() + piece[1:] for piece in value.split(sep))
    return value


def normalize_player_name(value: Optional[str], field: str) -> str:
    return _capitalise_parts(title_case_name(require_text(value, field, 50)))


def calculate_age(date_of_birth: date, as_of: Optional[date] = None) -> int:
    as_of = as_of or today()
    years = as_of.year - date_of_birth.year
    if (as_of.month, as_of.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def validate_date_of_birth(value, as_of: Optional[date] = None) -> date:
    """
    Raises:
        ValidationError: Missing, in the future, or age outside 16..100
    """
    as_of = as_of or today()
    date_of_birth = parse_date(value, "Date of birth")
    if date_of_birth is None:
        raise ValidationError("Date of birth is required")
    if date_of_birth > as_of:
        raise ValidationError("Date of birth cannot be in the future")
    age = calculate_age(date_of_birth, as_of)
    if age < MIN_PLAYER_AGE or age > MAX_PLAYER_AGE:
        raise ValidationError("Player must be between 16 and 100 years old")
    return date_of_birth


def validate_shorts(value: Optional[str]) -> str:
    value = clean_str(value)
    if value is None:
        return ShortsColour.UNRESTRICTED.value
    for colour in ShortsColour:
        if colour.value.lower() == value.lower():
            return colour.value
    raise ValidationError(
        f"Shorts colour must be one of: {', '.join(c.value for c in ShortsColour)}"
    )


async def _email_taken(
    session: AsyncSession, club_id: int, email: str, exclude_id: Optional[int] = None
) -> bool:
    conditions = [ClubPlayer.club_id == club_id, ClubPlayer.email == email]
    if exclude_id is not None:
        conditions.append(ClubPlayer.id != exclude_id)
    result = await session.execute(select(ClubPlayer.id).where(and_(*conditions)).limit(1))
    return result.scalar_one_or_none() is not None


async def require_player(session: AsyncSession, player_id: int) -> ClubPlayer:
    result = await session.execute(
        select(ClubPlayer).where(ClubPlayer.id == player_id).execution_options(populate_existing=True)
    )
    player = result.scalar_one_or_none()
    if player is None:
        raise NotFoundError("Player not found")
    return player


async def create_player(
    session: AsyncSession, user_id: int, club_id: int, fields: Mapping[str, Any]
) -> Dict:
    """
    Add a player to a club's roster.

    Raises:
        NotAuthorizedError: User is not a delegate of the club
        ValidationError: Bad fields, age outside 16..100, or email already on the roster
    """
    first_name = normalize_player_name(fields.get("first_name"), "First name")
    last_name = normalize_player_name(fields.get("last_name"), "Last name")
    email = require_email(fields.get("email"))
    date_of_birth = validate_date_of_birth(fields.get("date_of_birth"))
    shorts = validate_shorts(fields.get("shorts"))
    notes = clean_str(fields.get("notes"))

    try:
        async with unit_of_work(session):
            await require_club_member(session, user_id, club_id)
            await require_club(session, club_id)
            if await _email_taken(session, club_id, email):
                raise ValidationError("A player with this email already exists in your club")
            player = ClubPlayer(
                club_id=club_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                date_of_birth=date_of_birth,
                shorts=shorts,
                notes=notes,
                is_active=True,
            )
            session.add(player)
            await session.flush()
    except IntegrityError:
        raise ValidationError("A player with this email already exists in your club")

    logger.info("Player %d added to club %d", player.id, club_id)
    return _player_to_dict(player)


async def update_player(
    session: AsyncSession, user_id: int, player_id: int, fields: Mapping[str, Any]
) -> Dict:
    """Partial update; only the keys present in ``fields`` change."""
    updates: Dict[str, Any] = {}
    if "first_name" in fields:
        updates["first_name"] = normalize_player_name(fields["first_name"], "First name")
    if "last_name" in fields:
        updates["last_name"] = normalize_player_name(fields["last_name"], "Last name")
    if "email" in fields:
        updates["email"] = require_email(fields["email"])
    if "date_of_birth" in fields:
        updates["date_of_birth"] = validate_date_of_birth(fields["date_of_birth"])
    if "shorts" in fields:
        updates["shorts"] = validate_shorts(fields["shorts"])
    if "notes" in fields:
        updates["notes"] = clean_str(fields["notes"])

    try:
        async with unit_of_work(session):
            player = await require_player(session, player_id)
            await require_club_member(session, user_id, player.club_id)
            if "email" in updates and await _email_taken(
                session, player.club_id, updates["email"], exclude_id=player.id
            ):
                raise ValidationError("A player with this email already exists in your club")
            for key, value in updates.items():
                setattr(player, key, value)
    except IntegrityError:
        raise ValidationError("A player with this email already exists in your club")

    return _player_to_dict(player)


async def set_player_active(session: AsyncSession, user_id: int, player_id: int, active: bool) -> Dict:
    """Soft deactivate or reactivate. Existing assignments are left as they are."""
    async with unit_of_work(session):
        player = await require_player(session, player_id)
        await require_club_member(session, user_id, player.club_id)
        player.is_active = active
    logger.info("Player %d %s", player_id, "reactivated" if active else "deactivated")
    return _player_to_dict(player)


async def deactivate_player(session: AsyncSession, user_id: int, player_id: int) -> Dict:
    return await set_player_active(session, user_id, player_id, False)


async def reactivate_player(session: AsyncSession, user_id: int, player_id: int) -> Dict:
    return await set_player_active(session, user_id, player_id, True)


async def list_players(
    session: AsyncSession,
    club_id: int,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    include_inactive: bool = False,
) -> Dict:
    """
    Page through a club's roster.

    ``search`` matches names and email (case-insensitive substring).
    ``sort_by`` accepts ``firstName`` or ``lastName``; anything else sorts by
    last name. Returns items, total, page and page_size.
    """
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)

    conditions = [ClubPlayer.club_id == club_id]
    if not include_inactive:
        conditions.append(ClubPlayer.is_active.is_(True))
    search = clean_str(search)
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(
            or_(
                func.lower(ClubPlayer.first_name).like(pattern),
                func.lower(ClubPlayer.last_name).like(pattern),
                func.lower(ClubPlayer.email).like(pattern),
            )
        )

    sort_column = SORT_FIELDS.get(sort_by, ClubPlayer.last_name)
    direction = sort_column.desc() if (sort_order or "").lower() == "desc" else sort_column.asc()
    tie_break = ClubPlayer.first_name if sort_column is ClubPlayer.last_name else ClubPlayer.last_name

    total_result = await session.execute(
        select(func.count(ClubPlayer.id)).where(and_(*conditions))
    )
    total = total_result.scalar_one()

    result = await session.execute(
        select(ClubPlayer)
        .where(and_(*conditions))
        .order_by(direction, tie_break, ClubPlayer.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    as_of = today()
    return {
        "items": [_player_to_dict(p, as_of) for p in result.scalars().all()],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


async def move_player_to_club(
    session: AsyncSession, admin_id: int, player_id: int, new_club_id: int
) -> Dict:
    """
    Admin reassignment of a player to another club.

    Active assignments are detached first so no assignment ever points at a
    registration of a club the player no longer belongs to.
    """
    try:
        async with unit_of_work(session):
            admin = await require_user(session, admin_id)
            if not admin.is_admin:
                raise NotAuthorizedError("Only administrators can move players between clubs")
            player = await require_player(session, player_id)
            club = await require_club(session, new_club_id)
            if not club.is_active:
                raise ValidationError("Club not found or inactive")
            if player.club_id == club.id:
                return _player_to_dict(player)
            if await _email_taken(session, club.id, player.email):
                raise ValidationError("A player with this email already exists in that club")

            detached = await session.execute(
                update(CarnivalClubPlayer)
                .where(
                    and_(
                        CarnivalClubPlayer.club_player_id == player.id,
                        CarnivalClubPlayer.is_active.is_(True),
                    )
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            previous_club_id = player.club_id
            player.club_id = club.id
    except IntegrityError:
        raise ValidationError("A player with this email already exists in that club")

    logger.info(
        "Player %d moved from club %d to club %d (%d assignment(s) detached)",
        player_id, previous_club_id, new_club_id, detached.rowcount or 0,
    )
    return _player_to_dict(player)
