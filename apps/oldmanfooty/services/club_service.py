"""
Club service: clubs, proxy clubs, activation and alternate names.
"""

import logging
from typing import Dict, List, Optional
from sqlalchemy import select, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import Club, ClubAlternateName, User
from oldmanfooty.services import audit_service, notification_service
from oldmanfooty.services.errors import NotAuthorizedError, NotFoundError, ValidationError
from oldmanfooty.services.user_service import require_user
from oldmanfooty.utils.datetime_utils import isoformat_or_none
from oldmanfooty.utils.validation import (
    clean_str,
    optional_email,
    optional_phone,
    require_email,
    require_text,
    validate_state,
)

logger = logging.getLogger(__name__)

DUPLICATE_CLUB_NAME = "A club with this name already exists"


def _club_to_dict(club: Club, alternate_names: Optional[List[str]] = None) -> Dict:
    data = {
        "id": club.id,
        "club_name": club.club_name,
        "state": club.state,
        "location": club.location,
        "contact_person": club.contact_person,
        "contact_email": club.contact_email,
        "contact_phone": club.contact_phone,
        "logo_url": club.logo_url,
        "is_publicly_listed": club.is_publicly_listed,
        "is_active": club.is_active,
        "created_by_proxy": club.created_by_proxy,
        "created_at": isoformat_or_none(club.created_at),
    }
    if alternate_names is not None:
        data["alternate_names"] = alternate_names
    return data


async def get_club(session: AsyncSession, club_id: int) -> Optional[Club]:
    result = await session.execute(select(Club).where(Club.id == club_id))
    return result.scalar_one_or_none()


async def require_club(session: AsyncSession, club_id: int) -> Club:
    club = await get_club(session, club_id)
    if club is None:
        raise NotFoundError("Club not found")
    return club


def is_club_delegate(user: User, club_id: Optional[int]) -> bool:
    return club_id is not None and user.is_active and user.club_id == club_id


async def require_club_member(session: AsyncSession, user_id: int, club_id: int) -> User:
    """Active delegate of ``club_id`` or an admin."""
    user = await require_user(session, user_id)
    if not (user.is_admin or is_club_delegate(user, club_id)):
        raise NotAuthorizedError("You can only manage your own club")
    return user


async def require_club_manager(session: AsyncSession, user_id: int, club_id: int) -> User:
    """Primary delegate of ``club_id`` or an admin."""
    user = await require_user(session, user_id)
    if user.is_admin:
        return user
    if not (is_club_delegate(user, club_id) and user.is_primary_delegate):
        raise NotAuthorizedError("Only the primary delegate can manage this club")
    return user


async def _active_name_taken(session: AsyncSession, club_name: str, exclude_id: Optional[int] = None) -> bool:
    conditions = [func.lower(Club.club_name) == club_name.lower(), Club.is_active.is_(True)]
    if exclude_id is not None:
        conditions.append(Club.id != exclude_id)
    result = await session.execute(select(Club.id).where(and_(*conditions)).limit(1))
    return result.scalar_one_or_none() is not None


async def create_club(
    session: AsyncSession,
    user_id: int,
    club_name: str,
    state: Optional[str] = None,
    location: Optional[str] = None,
    contact_person: Optional[str] = None,
    contact_email: Optional[str] = None,
    contact_phone: Optional[str] = None,
    logo_url: Optional[str] = None,
    is_publicly_listed: bool = True,
) -> Dict:
    """
    Create a club and make its creator the primary delegate.

    Contact details default to the creator's own.

    Raises:
        NotAuthorizedError: Creator already belongs to a club
        ValidationError: Bad input or an active club already has the name
    """
    club_name = require_text(club_name, "Club name", 100)
    state = validate_state(state)
    contact_email = optional_email(contact_email, "Contact email")
    contact_phone = optional_phone(contact_phone)

    try:
        async with unit_of_work(session):
            user = await require_user(session, user_id)
            if user.club_id is not None:
                raise NotAuthorizedError("You are already a delegate of a club")
            if await _active_name_taken(session, club_name):
                raise ValidationError(DUPLICATE_CLUB_NAME)

            club = Club(
                club_name=club_name,
                state=state,
                location=clean_str(location),
                contact_person=clean_str(contact_person) or user.full_name,
                contact_email=contact_email or user.email,
                contact_phone=contact_phone or user.phone_number,
                logo_url=clean_str(logo_url),
                is_publicly_listed=is_publicly_listed,
                is_active=True,
                created_by_proxy=False,
            )
            session.add(club)
            await session.flush()

            user.club_id = club.id
            user.is_primary_delegate = True
    except IntegrityError:
        raise ValidationError(DUPLICATE_CLUB_NAME)

    logger.info("User %d created club %d (%s)", user_id, club.id, club.club_name)
    return _club_to_dict(club)


async def create_proxy_club(
    session: AsyncSession,
    admin_id: int,
    club_name: str,
    contact_email: str,
    state: Optional[str] = None,
    location: Optional[str] = None,
    contact_person: Optional[str] = None,
    contact_phone: Optional[str] = None,
) -> Dict:
    """
    Create a placeholder club for a club that has not joined yet.

    The club stays inactive until someone registers with ``contact_email``.
    """
    club_name = require_text(club_name, "Club name", 100)
    contact_email = require_email(contact_email, "Contact email")
    state = validate_state(state)
    contact_phone = optional_phone(contact_phone)

    async with unit_of_work(session):
        admin = await require_user(session, admin_id)
        if not admin.is_admin:
            raise NotAuthorizedError("Only administrators can create proxy clubs")
        if await _active_name_taken(session, club_name):
            raise ValidationError(DUPLICATE_CLUB_NAME)

        club = Club(
            club_name=club_name,
            state=state,
            location=clean_str(location),
            contact_person=clean_str(contact_person),
            contact_email=contact_email,
            contact_phone=contact_phone,
            is_publicly_listed=False,
            is_active=False,
            created_by_proxy=True,
        )
        session.add(club)
        await session.flush()

    logger.info("Admin %d created proxy club %d (%s)", admin_id, club.id, club.club_name)
    return _club_to_dict(club)


async def deactivate_club(session: AsyncSession, user_id: int, club_id: int) -> Dict:
    async with unit_of_work(session):
        await require_club_manager(session, user_id, club_id)
        club = await require_club(session, club_id)
        club.is_active = False
    logger.info("Club %d deactivated by user %d", club_id, user_id)
    return _club_to_dict(club)


async def reactivate_club(session: AsyncSession, user_id: int, club_id: int) -> Dict:
    """
    Reactivate a previously deactivated club and alert its primary delegate.

    Raises:
        ValidationError: Another active club has taken the name meanwhile
    """
    async with unit_of_work(session):
        await require_club_manager(session, user_id, club_id)
        club = await require_club(session, club_id)
        if club.is_active:
            return _club_to_dict(club)
        if await _active_name_taken(session, club.club_name, exclude_id=club.id):
            raise ValidationError(DUPLICATE_CLUB_NAME)
        club.is_active = True

        result = await session.execute(
            select(User).where(
                and_(
                    User.club_id == club.id,
                    User.is_primary_delegate.is_(True),
                    User.is_active.is_(True),
                )
            )
        )
        primary = result.scalar_one_or_none()
        alerts = notification_service.build_security_alert(
            [primary] if primary else [],
            club,
            f"{club.club_name} has been reactivated on Old Man Footy.",
        )

    audit_service.log_user_action(
        audit_service.CLUB_REACTIVATED, user_id=user_id, entity_type="club", entity_id=club.id
    )
    report = await notification_service.dispatch(alerts)
    data = _club_to_dict(club)
    data["notifications"] = report.to_dict()
    return data


# --- Alternate names ---


async def list_alternate_names(session: AsyncSession, club_id: int) -> List[str]:
    result = await session.execute(
        select(ClubAlternateName.alternate_name)
        .where(ClubAlternateName.club_id == club_id)
        .order_by(ClubAlternateName.position, ClubAlternateName.id)
    )
    return list(result.scalars().all())


async def add_alternate_name(session: AsyncSession, user_id: int, club_id: int, alternate_name: str) -> List[str]:
    """Append an alias; adding an alias the club already has is a no-op."""
    alternate_name = require_text(alternate_name, "Alternate name", 100)
    async with unit_of_work(session):
        await require_club_manager(session, user_id, club_id)
        club = await require_club(session, club_id)
        if alternate_name.lower() == club.club_name.lower():
            raise ValidationError("Alternate name must differ from the club name")

        existing = await list_alternate_names(session, club_id)
        if alternate_name.lower() not in {name.lower() for name in existing}:
            session.add(
                ClubAlternateName(club_id=club_id, alternate_name=alternate_name, position=len(existing) + 1)
            )
    return await list_alternate_names(session, club_id)


async def remove_alternate_name(session: AsyncSession, user_id: int, club_id: int, alternate_name: str) -> List[str]:
    async with unit_of_work(session):
        await require_club_manager(session, user_id, club_id)
        result = await session.execute(
            select(ClubAlternateName).where(
                and_(
                    ClubAlternateName.club_id == club_id,
                    func.lower(ClubAlternateName.alternate_name) == (alternate_name or "").strip().lower(),
                )
            )
        )
        alias = result.scalar_one_or_none()
        if alias is None:
            raise NotFoundError("Alternate name not found")
        await session.delete(alias)
        await session.flush()

        remaining = await session.execute(
            select(ClubAlternateName)
            .where(ClubAlternateName.club_id == club_id)
            .order_by(ClubAlternateName.position, ClubAlternateName.id)
        )
        for position, row in enumerate(remaining.scalars().all(), start=1):
            row.position = position
    return await list_alternate_names(session, club_id)


async def find_club_by_name_or_alias(session: AsyncSession, name: str) -> Optional[Club]:
    """
    Case-insensitive lookup by display name, then by alternate name.

    Active clubs win over inactive ones with the same name.
    """
    name = clean_str(name)
    if not name:
        return None
    lowered = name.lower()

    result = await session.execute(
        select(Club)
        .where(func.lower(Club.club_name) == lowered)
        .order_by(Club.is_active.desc(), Club.id)
        .limit(1)
    )
    club = result.scalar_one_or_none()
    if club is not None:
        return club

    result = await session.execute(
        select(Club)
        .join(ClubAlternateName, ClubAlternateName.club_id == Club.id)
        .where(func.lower(ClubAlternateName.alternate_name) == lowered)
        .order_by(Club.is_active.desc(), Club.id)
        .limit(1)
    )
    return result.scalar_one_or_none()
