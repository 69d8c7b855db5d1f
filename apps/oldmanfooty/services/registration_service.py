"""
Registration state machine for club attendance at carnivals.

States: pending, approved, rejected, and withdrawn (``is_active = False``).

Every transition runs under the carnival's lock (in-process lock plus
``SELECT ... FOR UPDATE`` on the carnival row), so capacity checks and
uniqueness checks see a stable count. Notifications go out after commit.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence
from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import (
    ApprovalStatus,
    Carnival,
    CarnivalClub,
    CarnivalClubPlayer,
    Club,
)
from oldmanfooty.services import notification_service
from oldmanfooty.services.carnival_service import (
    check_registration_open,
    count_approved_registrations,
    count_registrations,
    is_carnival_host,
)
from oldmanfooty.services.club_service import is_club_delegate
from oldmanfooty.services.errors import (
    CapacityExceededError,
    DuplicateActiveRegistrationError,
    IllegalTransitionError,
    NotAuthorizedError,
    NotFoundError,
    PaidCannotWithdrawError,
    RegistrationClosedError,
    ValidationError,
)
from oldmanfooty.services.locking import carnival_lock, lock_carnival_row, lock_registration_row
from oldmanfooty.services.user_service import require_user
from oldmanfooty.utils.datetime_utils import utcnow, isoformat_or_none
from oldmanfooty.utils.validation import clean_str, optional_email, optional_phone

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "No reason provided"

DETAIL_FIELDS = (
    "team_name",
    "player_count",
    "contact_person",
    "contact_email",
    "contact_phone",
    "special_requirements",
    "registration_notes",
)


def _registration_to_dict(registration: CarnivalClub, club_name: Optional[str] = None) -> Dict:
    data = {
        "id": registration.id,
        "carnival_id": registration.carnival_id,
        "club_id": registration.club_id,
        "registration_date": isoformat_or_none(registration.registration_date),
        "team_name": registration.team_name,
        "player_count": registration.player_count,
        "contact_person": registration.contact_person,
        "contact_email": registration.contact_email,
        "contact_phone": registration.contact_phone,
        "special_requirements": registration.special_requirements,
        "registration_notes": registration.registration_notes,
        "payment_amount": (
            str(registration.payment_amount) if registration.payment_amount is not None else None
        ),
        "is_paid": registration.is_paid,
        "payment_date": isoformat_or_none(registration.payment_date),
        "display_order": registration.display_order,
        "is_active": registration.is_active,
        "approval_status": registration.approval_status,
        "approved_at": isoformat_or_none(registration.approved_at),
        "approved_by_user_id": registration.approved_by_user_id,
        "rejection_reason": registration.rejection_reason,
    }
    if club_name is not None:
        data["club_name"] = club_name
    return data


def clean_registration_details(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate the optional details a club supplies with a registration."""
    payload = payload or {}
    cleaned: Dict[str, Any] = {}
    for key in DETAIL_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if key == "player_count":
            if value is None or value == "":
                cleaned[key] = None
                continue
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError("Player count must be a whole number")
            if value < 0:
                raise ValidationError("Player count cannot be negative")
            cleaned[key] = value
        elif key == "contact_email":
            cleaned[key] = optional_email(value, "Contact email")
        elif key == "contact_phone":
            cleaned[key] = optional_phone(value)
        else:
            cleaned[key] = clean_str(value)
    return cleaned


def _apply_details(registration: CarnivalClub, cleaned: Mapping[str, Any]) -> None:
    for key, value in cleaned.items():
        setattr(registration, key, value)


async def get_registration(session: AsyncSession, registration_id: int) -> Optional[CarnivalClub]:
    result = await session.execute(select(CarnivalClub).where(CarnivalClub.id == registration_id))
    return result.scalar_one_or_none()


async def _carnival_id_for(session: AsyncSession, registration_id: int) -> int:
    result = await session.execute(
        select(CarnivalClub.carnival_id).where(CarnivalClub.id == registration_id)
    )
    carnival_id = result.scalar_one_or_none()
    if carnival_id is None:
        raise NotFoundError("Registration not found")
    return carnival_id


async def _find_active_registration(
    session: AsyncSession, carnival_id: int, club_id: int
) -> Optional[CarnivalClub]:
    result = await session.execute(
        select(CarnivalClub)
        .where(
            and_(
                CarnivalClub.carnival_id == carnival_id,
                CarnivalClub.club_id == club_id,
                CarnivalClub.is_active.is_(True),
            )
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _next_display_order(session: AsyncSession, carnival_id: int) -> int:
    return await count_registrations(session, carnival_id) + 1


async def _require_active_club(session: AsyncSession, club_id: int) -> Club:
    club = await session.get(Club, club_id)
    if club is None or not club.is_active:
        raise ValidationError("Club not found or inactive")
    return club


async def _load_locked(session: AsyncSession, carnival_id: int, registration_id: int):
    """Lock the carnival row, then the registration row."""
    carnival = await lock_carnival_row(session, carnival_id)
    registration = await lock_registration_row(session, registration_id)
    if carnival is None or registration is None or registration.carnival_id != carnival.id:
        raise NotFoundError("Registration not found")
    return registration, carnival


# --- Creation ---


async def register_club_for_carnival(
    session: AsyncSession,
    user_id: int,
    carnival_id: int,
    payload: Optional[Mapping[str, Any]] = None,
) -> Dict:
    """
    Self-registration by a club delegate. Always created as pending.

    A rejected registration for the same club is reused as a resubmission.

    Raises:
        NotFoundError: No such carnival
        NotAuthorizedError: User is not an active club delegate
        DuplicateActiveRegistrationError: Club already has a pending or approved registration
        RegistrationClosedError: Carnival inactive, deadline passed or not hosted here
        CapacityExceededError: Approved registrations already fill the carnival
        ValidationError: Bad registration details
    """
    cleaned = clean_registration_details(payload)

    try:
        async with carnival_lock(carnival_id):
            async with unit_of_work(session):
                carnival = await lock_carnival_row(session, carnival_id)
                if carnival is None:
                    raise NotFoundError("Carnival not found")
                user = await require_user(session, user_id)
                if user.club_id is None:
                    raise NotAuthorizedError("You must be a club delegate to register for a carnival")
                club = await session.get(Club, user.club_id)
                if club is None or not club.is_active:
                    raise NotAuthorizedError("Your club must be active to register for a carnival")

                existing = await _find_active_registration(session, carnival.id, club.id)
                if existing is not None and existing.approval_status != ApprovalStatus.REJECTED.value:
                    raise DuplicateActiveRegistrationError()
                if carnival.is_unclaimed_scrape:
                    raise RegistrationClosedError(
                        "This carnival takes registrations through its external registration link"
                    )
                await check_registration_open(session, carnival)

                if existing is not None:
                    registration = existing
                    _move_to_pending(registration)
                else:
                    registration = CarnivalClub(
                        carnival_id=carnival.id,
                        club_id=club.id,
                        approval_status=ApprovalStatus.PENDING.value,
                        is_active=True,
                        is_paid=False,
                        display_order=await _next_display_order(session, carnival.id),
                        contact_person=user.full_name,
                        contact_email=user.email,
                        contact_phone=user.phone_number,
                    )
                    session.add(registration)
                registration.registration_date = utcnow()
                _apply_details(registration, cleaned)
                await session.flush()

                audience = await notification_service.build_registration_received(
                    session, carnival, club, registration
                )
    except IntegrityError:
        raise DuplicateActiveRegistrationError()

    logger.info(
        "Club %d registered for carnival %d (registration %d, pending)",
        club.id, carnival.id, registration.id,
    )
    report = await notification_service.dispatch(audience)
    data = _registration_to_dict(registration, club.club_name)
    data["notifications"] = report.to_dict()
    return data


async def host_add_club(
    session: AsyncSession,
    user_id: int,
    carnival_id: int,
    club_id: int,
    payload: Optional[Mapping[str, Any]] = None,
) -> Dict:
    """
    Host adds a club directly. Created approved, so it counts against
    capacity at once; the host may overfill the carnival.

    Raises:
        NotAuthorizedError: User is not the carnival host
        DuplicateActiveRegistrationError: Club already has an active registration
        ValidationError: Unknown or inactive club, bad details
    """
    cleaned = clean_registration_details(payload)

    try:
        async with carnival_lock(carnival_id):
            async with unit_of_work(session):
                carnival = await lock_carnival_row(session, carnival_id)
                if carnival is None:
                    raise NotFoundError("Carnival not found")
                user = await require_user(session, user_id)
                if not is_carnival_host(user, carnival):
                    raise NotAuthorizedError("Only the carnival host can add clubs")
                club = await _require_active_club(session, club_id)
                if await _find_active_registration(session, carnival.id, club.id) is not None:
                    raise DuplicateActiveRegistrationError()

                now = utcnow()
                registration = CarnivalClub(
                    carnival_id=carnival.id,
                    club_id=club.id,
                    registration_date=now,
                    approval_status=ApprovalStatus.APPROVED.value,
                    approved_at=now,
                    approved_by_user_id=user.id,
                    is_active=True,
                    is_paid=False,
                    display_order=await _next_display_order(session, carnival.id),
                    contact_person=club.contact_person,
                    contact_email=club.contact_email,
                    contact_phone=club.contact_phone,
                )
                _apply_details(registration, cleaned)
                session.add(registration)
                await session.flush()

                audience = await notification_service.build_registration_decision(
                    session, carnival, club, approved=True
                )
    except IntegrityError:
        raise DuplicateActiveRegistrationError()

    logger.info(
        "Host %d added club %d to carnival %d (registration %d, approved)",
        user_id, club.id, carnival.id, registration.id,
    )
    report = await notification_service.dispatch(audience)
    data = _registration_to_dict(registration, club.club_name)
    data["notifications"] = report.to_dict()
    return data


# --- Transitions ---


def _move_to_pending(registration: CarnivalClub) -> None:
    registration.approval_status = ApprovalStatus.PENDING.value
    registration.approved_at = None
    registration.approved_by_user_id = None
    registration.rejection_reason = None


async def approve_registration(session: AsyncSession, user_id: int, registration_id: int) -> Dict:
    """
    pending -> approved.

    Within one transaction: re-read the carnival's ``max_teams`` under lock,
    count the other approved registrations, refuse if this one would exceed
    it, then write.

    Raises:
        NotAuthorizedError: User is not the carnival host
        IllegalTransitionError: Not pending, withdrawn, or carnival inactive
        CapacityExceededError: Carnival is full
    """
    carnival_id = await _carnival_id_for(session, registration_id)

    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration, carnival = await _load_locked(session, carnival_id, registration_id)
            user = await require_user(session, user_id)
            if not is_carnival_host(user, carnival):
                raise NotAuthorizedError("Only the carnival host can approve registrations")
            if not registration.is_active or registration.approval_status != ApprovalStatus.PENDING.value:
                raise IllegalTransitionError("Only pending registrations can be approved")
            if not carnival.is_active:
                raise IllegalTransitionError("This carnival is no longer active")

            if carnival.max_teams is not None:
                approved = await count_approved_registrations(
                    session, carnival.id, exclude_registration_id=registration.id
                )
                if approved + 1 > carnival.max_teams:
                    raise CapacityExceededError()

            registration.approval_status = ApprovalStatus.APPROVED.value
            registration.approved_at = utcnow()
            registration.approved_by_user_id = user.id
            registration.rejection_reason = None
            await session.flush()

            club = await session.get(Club, registration.club_id)
            audience = await notification_service.build_registration_decision(
                session, carnival, club, approved=True
            )

    logger.info("Registration %d approved by user %d", registration.id, user_id)
    report = await notification_service.dispatch(audience)
    data = _registration_to_dict(registration, club.club_name)
    data["notifications"] = report.to_dict()
    return data


async def reject_registration(
    session: AsyncSession, user_id: int, registration_id: int, reason: Optional[str] = None
) -> Dict:
    """
    pending -> rejected, with a reason (defaulted when blank).

    Raises:
        NotAuthorizedError: User is not the carnival host
        IllegalTransitionError: Registration is not pending
    """
    reason = clean_str(reason) or DEFAULT_REJECTION_REASON
    carnival_id = await _carnival_id_for(session, registration_id)

    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration, carnival = await _load_locked(session, carnival_id, registration_id)
            user = await require_user(session, user_id)
            if not is_carnival_host(user, carnival):
                raise NotAuthorizedError("Only the carnival host can reject registrations")
            if not registration.is_active or registration.approval_status != ApprovalStatus.PENDING.value:
                raise IllegalTransitionError("Only pending registrations can be rejected")

            registration.approval_status = ApprovalStatus.REJECTED.value
            registration.rejection_reason = reason
            registration.approved_at = None
            registration.approved_by_user_id = None
            await session.flush()

            club = await session.get(Club, registration.club_id)
            audience = await notification_service.build_registration_decision(
                session, carnival, club, approved=False, reason=reason
            )

    logger.info("Registration %d rejected by user %d", registration.id, user_id)
    report = await notification_service.dispatch(audience)
    data = _registration_to_dict(registration, club.club_name)
    data["notifications"] = report.to_dict()
    return data


async def resubmit_registration(
    session: AsyncSession,
    user_id: int,
    registration_id: int,
    payload: Optional[Mapping[str, Any]] = None,
) -> Dict:
    """
    rejected -> pending, reusing the row with the rejection reason cleared.

    Raises:
        NotAuthorizedError: User is not a delegate of the registered club
        IllegalTransitionError: Registration is not rejected
        RegistrationClosedError / CapacityExceededError: as for self-registration
    """
    cleaned = clean_registration_details(payload)
    carnival_id = await _carnival_id_for(session, registration_id)

    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration, carnival = await _load_locked(session, carnival_id, registration_id)
            user = await require_user(session, user_id)
            if not (user.is_admin or is_club_delegate(user, registration.club_id)):
                raise NotAuthorizedError("Only your club's delegates can resubmit this registration")
            if not registration.is_active or registration.approval_status != ApprovalStatus.REJECTED.value:
                raise IllegalTransitionError("Only rejected registrations can be resubmitted")
            await check_registration_open(session, carnival)

            _move_to_pending(registration)
            registration.registration_date = utcnow()
            _apply_details(registration, cleaned)
            await session.flush()

            club = await session.get(Club, registration.club_id)
            audience = await notification_service.build_registration_received(
                session, carnival, club, registration
            )

    logger.info("Registration %d resubmitted by user %d", registration.id, user_id)
    report = await notification_service.dispatch(audience)
    data = _registration_to_dict(registration, club.club_name)
    data["notifications"] = report.to_dict()
    return data


async def withdraw_registration(session: AsyncSession, user_id: int, registration_id: int) -> bool:
    """
    Soft-delete a registration and deactivate its player assignments.

    The host may remove any registration. A delegate of the registered club
    may withdraw it only while it is unpaid. Withdrawing an already
    withdrawn registration is a no-op.

    Raises:
        NotAuthorizedError: Neither host nor club delegate
        PaidCannotWithdrawError: Delegate withdrawal of a paid registration
    """
    carnival_id = await _carnival_id_for(session, registration_id)

    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration, carnival = await _load_locked(session, carnival_id, registration_id)
            user = await require_user(session, user_id)
            if not is_carnival_host(user, carnival):
                if not is_club_delegate(user, registration.club_id):
                    raise NotAuthorizedError("You cannot withdraw this registration")
                if registration.is_paid:
                    raise PaidCannotWithdrawError()
            if not registration.is_active:
                return True

            registration.is_active = False
            await session.execute(
                update(CarnivalClubPlayer)
                .where(
                    and_(
                        CarnivalClubPlayer.carnival_club_id == registration.id,
                        CarnivalClubPlayer.is_active.is_(True),
                    )
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )

    logger.info("Registration %d withdrawn by user %d", registration_id, user_id)
    return True


async def reorder_registrations(
    session: AsyncSession, user_id: int, carnival_id: int, ordered_ids: Sequence[int]
) -> int:
    """
    Write display orders 1..n following ``ordered_ids``.

    Ids that do not belong to the carnival (or are withdrawn) are ignored.
    Returns the number of registrations reordered.
    """
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            user = await require_user(session, user_id)
            if not is_carnival_host(user, carnival):
                raise NotAuthorizedError("Only the carnival host can reorder registrations")

            result = await session.execute(
                select(CarnivalClub).where(
                    and_(CarnivalClub.carnival_id == carnival.id, CarnivalClub.is_active.is_(True))
                )
            )
            by_id = {r.id: r for r in result.scalars().all()}

            position = 0
            seen = set()
            for registration_id in ordered_ids or []:
                registration = by_id.get(registration_id)
                if registration is None or registration_id in seen:
                    continue
                seen.add(registration_id)
                position += 1
                registration.display_order = position

    logger.info("Carnival %d registrations reordered (%d)", carnival_id, position)
    return position


async def update_payment(
    session: AsyncSession,
    user_id: int,
    registration_id: int,
    is_paid: bool,
    payment_amount: Optional[Any] = None,
) -> Dict:
    """Host records payment status; ``payment_date`` tracks the paid flag."""
    amount = None
    if payment_amount is not None and payment_amount != "":
        try:
            amount = Decimal(str(payment_amount)).quantize(Decimal("0.01"))
        except InvalidOperation:
            raise ValidationError("Payment amount must be a number")
        if amount < 0:
            raise ValidationError("Payment amount cannot be negative")

    carnival_id = await _carnival_id_for(session, registration_id)
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration, carnival = await _load_locked(session, carnival_id, registration_id)
            user = await require_user(session, user_id)
            if not is_carnival_host(user, carnival):
                raise NotAuthorizedError("Only the carnival host can record payments")
            if not registration.is_active:
                raise IllegalTransitionError("This registration has been withdrawn")

            if is_paid and not registration.is_paid:
                registration.payment_date = utcnow()
            elif not is_paid:
                registration.payment_date = None
            registration.is_paid = bool(is_paid)
            if amount is not None:
                registration.payment_amount = amount

    return _registration_to_dict(registration)


# --- Queries ---


async def list_registrations(
    session: AsyncSession,
    carnival_id: int,
    status: Optional[ApprovalStatus] = None,
    include_inactive: bool = False,
) -> List[Dict]:
    """Registrations for a carnival in display order, with club names."""
    conditions = [CarnivalClub.carnival_id == carnival_id]
    if not include_inactive:
        conditions.append(CarnivalClub.is_active.is_(True))
    if status is not None:
        try:
            conditions.append(CarnivalClub.approval_status == ApprovalStatus(status).value)
        except ValueError:
            raise ValidationError(
                f"Status must be one of: {', '.join(s.value for s in ApprovalStatus)}"
            )
    result = await session.execute(
        select(CarnivalClub, Club.club_name)
        .join(Club, Club.id == CarnivalClub.club_id)
        .where(and_(*conditions))
        .order_by(CarnivalClub.display_order, CarnivalClub.id)
    )
    return [_registration_to_dict(registration, club_name) for registration, club_name in result.all()]


async def list_club_registrations(session: AsyncSession, club_id: int) -> List[Dict]:
    """A club's active registrations with carnival title and date."""
    result = await session.execute(
        select(CarnivalClub, Carnival.title, Carnival.date)
        .join(Carnival, Carnival.id == CarnivalClub.carnival_id)
        .where(and_(CarnivalClub.club_id == club_id, CarnivalClub.is_active.is_(True)))
        .order_by(Carnival.date, CarnivalClub.id)
    )
    registrations = []
    for registration, title, carnival_date in result.all():
        data = _registration_to_dict(registration)
        data["carnival_title"] = title
        data["carnival_date"] = isoformat_or_none(carnival_date)
        registrations.append(data)
    return registrations


async def broadcast_to_attendees(
    session: AsyncSession, user_id: int, carnival_id: int, subject: str, message: str
) -> Dict:
    """
    Host email to every approved attending club.

    Returns the dispatch report; clubs with no address count as failed.
    """
    subject = clean_str(subject)
    message = clean_str(message)
    if not subject or not message:
        raise ValidationError("Subject and message are required")

    result = await session.execute(select(Carnival).where(Carnival.id == carnival_id))
    carnival = result.scalar_one_or_none()
    if carnival is None:
        raise NotFoundError("Carnival not found")
    user = await require_user(session, user_id)
    if not is_carnival_host(user, carnival):
        raise NotAuthorizedError("Only the carnival host can email attendees")

    audience = await notification_service.build_attendee_broadcast(session, carnival, subject, message)
    # Read-only; release the connection before sending
    await session.rollback()

    report = await notification_service.dispatch(audience)
    logger.info(
        "Broadcast for carnival %d: %d sent, %d failed", carnival_id, report.sent, report.failed
    )
    return report.to_dict()


async def registration_counts(session: AsyncSession, carnival_id: int) -> Dict[str, int]:
    """Active registrations per status."""
    result = await session.execute(
        select(CarnivalClub.approval_status, func.count(CarnivalClub.id))
        .where(and_(CarnivalClub.carnival_id == carnival_id, CarnivalClub.is_active.is_(True)))
        .group_by(CarnivalClub.approval_status)
    )
    counts = {status.value: 0 for status in ApprovalStatus}
    for status, count in result.all():
        counts[status] = count
    return counts
