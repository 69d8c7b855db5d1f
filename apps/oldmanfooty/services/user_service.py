"""
User service layer: accounts, authentication, delegate invitations and the
primary-delegate role.
"""

from datetime import timedelta
from typing import Dict, List, Optional
from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import User, Club
from oldmanfooty.services import audit_service, auth_service, notification_service
from oldmanfooty.services.errors import (
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from oldmanfooty.services.locking import user_lock, lock_user_rows
from oldmanfooty.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
from oldmanfooty.utils.validation import (
    clean_str,
    normalize_email,
    optional_phone,
    require_email,
    require_text,
    validate_password,
)
import logging

logger = logging.getLogger(__name__)

INVITATION_EXPIRY_DAYS = 7

ADMIN_DASHBOARD_URL = "/admin/dashboard"
DASHBOARD_URL = "/dashboard"


def _user_to_dict(user: User) -> Dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone_number": user.phone_number,
        "is_admin": user.is_admin,
        "is_primary_delegate": user.is_primary_delegate,
        "is_active": user.is_active,
        "club_id": user.club_id,
        "last_login": isoformat_or_none(user.last_login),
    }


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def require_user(session: AsyncSession, user_id: int) -> User:
    """Load an active user or raise NotAuthorized (unknown actors are not authorised)."""
    user = await get_user(session, user_id)
    if user is None or not user.is_active:
        raise NotAuthorizedError("You must be logged in to perform this action")
    return user


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    """
    Get user by email address.

    Args:
        session: Database session
        email: Email address (will be normalized to lowercase)

    Returns:
        User or None if not found
    """
    email = normalize_email(email)
    if not email:
        return None
    result = await session.execute(select(User).where(func.lower(User.email) == email).limit(1))
    return result.scalar_one_or_none()


async def get_club_delegates(session: AsyncSession, club_id: int, include_inactive: bool = False) -> List[Dict]:
    """List a club's delegates, primary delegate first."""
    conditions = [User.club_id == club_id]
    if not include_inactive:
        conditions.append(User.is_active.is_(True))
    result = await session.execute(
        select(User)
        .where(and_(*conditions))
        .order_by(User.is_primary_delegate.desc(), User.last_name, User.first_name)
    )
    return [_user_to_dict(user) for user in result.scalars().all()]


async def register_user(
    session: AsyncSession,
    first_name: str,
    last_name: str,
    email: str,
    password: str,
    phone_number: Optional[str] = None,
) -> Dict:
    """
    Create a new active user with no club.

    When the email matches the contact email of a proxy or inactive club,
    the new user is granted that club as its primary delegate and any
    previous primary delegate receives a security alert. An inactive club
    whose name an active club has since taken is not granted.

    Raises:
        ValidationError: Malformed input
        DuplicateEmailError: Email already registered
    """
    first_name = require_text(first_name, "First name", 50)
    last_name = require_text(last_name, "Last name", 50)
    email = require_email(email)
    password = validate_password(password)
    phone_number = optional_phone(phone_number)

    async with unit_of_work(session):
        if await get_user_by_email(session, email) is not None:
            raise DuplicateEmailError()

        user = User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone_number=phone_number,
            is_active=True,
            is_admin=False,
            is_primary_delegate=False,
        )
        user.set_password(password)
        session.add(user)
        try:
            await session.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration for the same email
            raise DuplicateEmailError()

        alerts = await _claim_proxy_club(session, user)

    report = await notification_service.dispatch(alerts)
    logger.info("Registered user %d (%s)", user.id, email)

    data = _user_to_dict(user)
    data["notifications"] = report.to_dict()
    return data


async def _claim_proxy_club(session: AsyncSession, user: User) -> notification_service.Audience:
    """Grant a proxy/inactive club whose contact email matches the new user."""
    result = await session.execute(
        select(Club)
        .where(
            and_(
                func.lower(Club.contact_email) == user.email,
                (Club.created_by_proxy.is_(True)) | (Club.is_active.is_(False)),
            )
        )
        .order_by(Club.id)
        .limit(1)
    )
    club = result.scalar_one_or_none()
    if club is None:
        return notification_service.Audience()

    if not club.is_active:
        clash = await session.execute(
            select(Club.id).where(
                and_(
                    func.lower(Club.club_name) == club.club_name.lower(),
                    Club.is_active.is_(True),
                    Club.id != club.id,
                )
            )
        )
        if clash.first() is not None:
            # Reactivating would duplicate an active club's name
            logger.warning(
                "Not granting club %d (%s) to user %d: name held by an active club",
                club.id,
                club.club_name,
                user.id,
            )
            return notification_service.Audience()

    previous_result = await session.execute(
        select(User).where(and_(User.club_id == club.id, User.is_primary_delegate.is_(True)))
    )
    previous = previous_result.scalar_one_or_none()
    if previous is not None:
        previous.is_primary_delegate = False
        # Clear the old flag before the new one is written
        await session.flush()

    was_inactive = not club.is_active
    user.club_id = club.id
    user.is_primary_delegate = True
    club.is_active = True
    club.created_by_proxy = False
    try:
        await session.flush()
    except IntegrityError:
        # The club's delegates or name changed under a concurrent request
        raise ValidationError("This club changed while your account was being created; please try again")

    audit_service.log_user_action(
        audit_service.CLUB_CLAIMED,
        user_id=user.id,
        entity_type="club",
        entity_id=club.id,
        metadata={"reactivated": was_inactive, "previous_delegate_id": previous.id if previous else None},
    )
    logger.info("User %d claimed proxy club %d (%s)", user.id, club.id, club.club_name)

    if previous is None:
        return notification_service.Audience()
    event = (
        f"A new account ({user.email}) was registered with the contact email of "
        f"{club.club_name} and has been made the club's primary delegate."
    )
    if was_inactive:
        event += " The club, which had been deactivated, is active again."
    return notification_service.build_security_alert([previous], club, event)


async def authenticate(session: AsyncSession, email: str, password: str) -> Dict:
    """
    Verify credentials and record the login.

    Returns the user dict plus ``redirect_to`` (admin or standard dashboard).

    Raises:
        InvalidCredentialsError: Unknown email, inactive account or bad password
            (indistinguishable to the caller)
    """
    normalized = normalize_email(email)
    user = await get_user_by_email(session, normalized) if normalized else None

    failure = None
    if user is None:
        failure = "unknown_email"
    elif not user.is_active:
        failure = "inactive_account"
    elif not user.check_password(password or ""):
        failure = "bad_password"

    if failure:
        audit_service.log_user_action(
            audit_service.USER_LOGIN,
            user_id=user.id if user else None,
            entity_type="user",
            entity_id=user.id if user else None,
            result="FAILURE",
            reason=failure,
            metadata={"email": normalized},
        )
        await session.rollback()
        raise InvalidCredentialsError()

    async with unit_of_work(session):
        user.last_login = utcnow()

    audit_service.log_user_action(
        audit_service.USER_LOGIN, user_id=user.id, entity_type="user", entity_id=user.id
    )
    data = _user_to_dict(user)
    data["redirect_to"] = ADMIN_DASHBOARD_URL if user.is_admin else DASHBOARD_URL
    return data


async def invite_delegate(
    session: AsyncSession,
    inviter_id: int,
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Dict:
    """
    Invite a new delegate to the inviter's club.

    Creates an inactive user bound to the club with a 64-character hex token
    that expires in 7 days, then emails the invitation.

    Raises:
        NotAuthorizedError: Inviter is not a primary delegate
        DuplicateEmailError: Email already has an account
    """
    email = require_email(email)
    try:
        async with unit_of_work(session):
            inviter = await require_user(session, inviter_id)
            if not inviter.is_primary_delegate or inviter.club_id is None:
                raise NotAuthorizedError("Only the primary delegate can invite new delegates")
            if await get_user_by_email(session, email) is not None:
                raise DuplicateEmailError()

            club_result = await session.execute(select(Club).where(Club.id == inviter.club_id))
            club = club_result.scalar_one()

            token = auth_service.generate_token()
            invitee = User(
                email=email,
                first_name=clean_str(first_name) or "",
                last_name=clean_str(last_name) or "",
                club_id=club.id,
                is_active=False,
                is_admin=False,
                is_primary_delegate=False,
                invitation_token=token,
                invitation_expires=utcnow() + timedelta(days=INVITATION_EXPIRY_DAYS),
            )
            session.add(invitee)
            await session.flush()
            audience = notification_service.build_invitation(invitee, inviter, club, token)
    except IntegrityError:
        raise DuplicateEmailError()

    audit_service.log_user_action(
        audit_service.USER_INVITED,
        user_id=inviter.id,
        entity_type="user",
        entity_id=invitee.id,
        metadata={"club_id": club.id},
    )
    report = await notification_service.dispatch(audience)

    data = _user_to_dict(invitee)
    data["invitation_expires"] = isoformat_or_none(invitee.invitation_expires)
    data["notifications"] = report.to_dict()
    return data


async def accept_invitation(
    session: AsyncSession,
    token: str,
    first_name: str,
    last_name: str,
    password: str,
) -> Dict:
    """
    Activate an invited user.

    The plaintext password is handed to the model, which hashes it once.

    Raises:
        InvalidOrExpiredTokenError: Unknown, used or expired token
        ValidationError: Malformed names or password
    """
    first_name = require_text(first_name, "First name", 50)
    last_name = require_text(last_name, "Last name", 50)
    password = validate_password(password)
    token = clean_str(token)
    if not token:
        raise InvalidOrExpiredTokenError()

    async with unit_of_work(session):
        result = await session.execute(
            select(User).where(User.invitation_token == token).with_for_update()
        )
        user = result.scalar_one_or_none()
        expires = ensure_utc(user.invitation_expires) if user else None
        if user is None or user.is_active or expires is None or expires <= utcnow():
            raise InvalidOrExpiredTokenError()

        user.first_name = first_name
        user.last_name = last_name
        user.set_password(password)
        user.is_active = True
        user.invitation_token = None
        user.invitation_expires = None

    audit_service.log_user_action(
        audit_service.INVITATION_ACCEPTED, user_id=user.id, entity_type="user", entity_id=user.id
    )
    return _user_to_dict(user)


async def _set_primary_delegate_flag(session: AsyncSession, user_id: int, value: bool) -> None:
    result = await session.execute(
        update(User).where(User.id == user_id).values(is_primary_delegate=value)
    )
    if result.rowcount != 1:
        raise NotFoundError("User not found")


async def transfer_primary_delegate(session: AsyncSession, caller_id: int, target_id: int) -> Dict:
    """
    Hand the primary-delegate role from the caller to another active
    delegate of the same club.

    Both user rows are locked; the two flag writes commit together or not at
    all. The notification is only sent after a successful commit.

    Raises:
        NotAuthorizedError: Caller is not the primary delegate
        NotFoundError: Target user does not exist
        ValidationError: Target is inactive, in another club or already primary
    """
    if caller_id == target_id:
        raise ValidationError("You are already the primary delegate")

    async with user_lock(caller_id, target_id):
        async with unit_of_work(session):
            users = await lock_user_rows(session, [caller_id, target_id])
            caller = users.get(caller_id)
            target = users.get(target_id)

            if caller is None or not caller.is_active or not caller.is_primary_delegate:
                raise NotAuthorizedError("Only the primary delegate can transfer the role")
            if target is None:
                raise NotFoundError("Delegate not found")
            if not target.is_active:
                raise ValidationError("The new primary delegate must have an active account")
            if target.club_id != caller.club_id:
                raise ValidationError("The new primary delegate must belong to your club")
            if target.is_primary_delegate:
                raise ValidationError("That delegate is already the primary delegate")

            await _set_primary_delegate_flag(session, caller.id, False)
            await _set_primary_delegate_flag(session, target.id, True)

            club_result = await session.execute(select(Club).where(Club.id == caller.club_id))
            club = club_result.scalar_one()
            audience = notification_service.build_role_transfer(caller, target, club)

    audit_service.log_user_action(
        audit_service.PRIMARY_DELEGATE_TRANSFERRED,
        user_id=caller.id,
        entity_type="user",
        entity_id=target.id,
        metadata={"club_id": club.id},
    )
    logger.info("Primary delegate of club %d moved from user %d to %d", club.id, caller.id, target.id)
    report = await notification_service.dispatch(audience)

    return {
        "club_id": club.id,
        "previous_primary_id": caller.id,
        "new_primary_id": target.id,
        "notifications": report.to_dict(),
    }
