"""
Carnival registry: manual carnivals, scraped listings and the claim handover.

A scraped carnival stays read-only to users until a host club claims it.
After the claim it behaves like a manual carnival owned by the claimer,
except that the scraper may still refresh its links and social pages.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple
from sqlalchemy import select, update, delete, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import (
    ApprovalStatus,
    Carnival,
    CarnivalClub,
    CarnivalClubPlayer,
    CarnivalOrigin,
    Claimed,
    Club,
    Scraped,
    User,
)
from oldmanfooty.services import audit_service, notification_service
from oldmanfooty.services.club_service import find_club_by_name_or_alias
from oldmanfooty.services.errors import (
    AlreadyClaimedError,
    CapacityExceededError,
    IllegalTransitionError,
    NotAuthorizedError,
    NotFoundError,
    RegistrationClosedError,
    ValidationError,
)
from oldmanfooty.services.locking import carnival_lock, lock_carnival_row
from oldmanfooty.services.user_service import require_user
from oldmanfooty.utils.datetime_utils import utcnow, today, ensure_utc, isoformat_or_none
from oldmanfooty.utils.validation import (
    clean_str,
    optional_email,
    optional_phone,
    optional_positive_int,
    parse_date,
    parse_datetime,
    require_text,
    validate_state,
)

logger = logging.getLogger(__name__)

# Fields the scraper supplies
SCRAPED_FIELDS = (
    "title",
    "date",
    "end_date",
    "state",
    "venue_name",
    "location_address",
    "location_address_line1",
    "location_address_line2",
    "location_suburb",
    "location_postcode",
    "location_latitude",
    "location_longitude",
    "organiser_contact_name",
    "organiser_contact_email",
    "organiser_contact_phone",
    "schedule_details",
    "registration_link",
    "fees_description",
    "social_media_facebook",
    "social_media_website",
    "club_logo_url",
)

# Still refreshed by the scraper once a host owns the carnival
REFRESHABLE_AFTER_CLAIM = (
    "registration_link",
    "social_media_facebook",
    "social_media_website",
    "club_logo_url",
)

EDITABLE_FIELDS = SCRAPED_FIELDS + ("max_teams", "registration_deadline")

DUPLICATE_CARNIVAL = "Your club already has a carnival with this title on this date"


# --- Serialisation ---


def _provenance_to_dict(carnival: Carnival) -> Dict:
    provenance = carnival.provenance
    if isinstance(provenance, Scraped):
        return {
            "kind": "scraped",
            "external_id": provenance.external_id,
            "last_synced_at": isoformat_or_none(provenance.last_synced_at),
        }
    if isinstance(provenance, Claimed):
        return {
            "kind": "claimed",
            "external_id": provenance.external_id,
            "claimed_at": isoformat_or_none(provenance.claimed_at),
        }
    return {"kind": "manual"}


def _carnival_to_dict(carnival: Carnival) -> Dict:
    data = {"id": carnival.id}
    for field in EDITABLE_FIELDS:
        value = getattr(carnival, field)
        if isinstance(value, date):
            value = isoformat_or_none(value)
        data[field] = value
    data.update(
        {
            "is_active": carnival.is_active,
            "club_id": carnival.club_id,
            "created_by_user_id": carnival.created_by_user_id,
            "origin": carnival.origin,
            "external_id": carnival.external_id,
            "provenance": _provenance_to_dict(carnival),
            "created_at": isoformat_or_none(carnival.created_at),
        }
    )
    return data


# --- Field validation ---


def _clean_location_coordinate(value, field: str, limit: float) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not -limit <= number <= limit:
        raise ValidationError(f"{field} is out of range")
    return number


def clean_carnival_fields(
    fields: Mapping[str, Any],
    allowed: Tuple[str, ...] = EDITABLE_FIELDS,
    require_core: bool = False,
    strict_contacts: bool = True,
) -> Dict[str, Any]:
    """
    Validate the carnival fields present in ``fields``.

    Unknown keys are dropped. ``require_core`` demands a title and start
    date (new records). Scraped contacts are kept as listed rather than
    rejected (``strict_contacts=False``).
    """
    cleaned: Dict[str, Any] = {}
    for key in allowed:
        if key not in fields:
            continue
        value = fields[key]
        if key == "title":
            cleaned[key] = require_text(value, "Title", 200)
        elif key == "date":
            cleaned[key] = parse_date(value, "Date")
            if cleaned[key] is None:
                raise ValidationError("Date is required")
        elif key == "end_date":
            cleaned[key] = parse_date(value, "End date")
        elif key == "state":
            cleaned[key] = validate_state(value)
        elif key == "location_latitude":
            cleaned[key] = _clean_location_coordinate(value, "Latitude", 90)
        elif key == "location_longitude":
            cleaned[key] = _clean_location_coordinate(value, "Longitude", 180)
        elif key == "organiser_contact_email":
            cleaned[key] = optional_email(value, "Organiser email") if strict_contacts else clean_str(value)
        elif key == "organiser_contact_phone":
            cleaned[key] = optional_phone(value) if strict_contacts else clean_str(value)
        elif key == "max_teams":
            cleaned[key] = optional_positive_int(value, "Maximum teams")
        elif key == "registration_deadline":
            cleaned[key] = parse_datetime(value, "Registration deadline")
        else:
            cleaned[key] = clean_str(value)

    if require_core:
        if "title" not in cleaned:
            raise ValidationError("Title is required")
        if "date" not in cleaned:
            raise ValidationError("Date is required")
    return cleaned


def _check_date_range(carnival: Carnival) -> None:
    if carnival.end_date and carnival.date and carnival.end_date < carnival.date:
        raise ValidationError("End date cannot be before the start date")


def _apply_fields(carnival: Carnival, cleaned: Mapping[str, Any]) -> List[str]:
    changed = []
    for key, value in cleaned.items():
        current = getattr(carnival, key)
        if key == "registration_deadline":
            current = ensure_utc(current)
        if current != value:
            setattr(carnival, key, value)
            changed.append(key)
    _check_date_range(carnival)
    return changed


# --- Lookups and authorisation ---


async def get_carnival(session: AsyncSession, carnival_id: int) -> Optional[Carnival]:
    result = await session.execute(select(Carnival).where(Carnival.id == carnival_id))
    return result.scalar_one_or_none()


async def require_carnival(session: AsyncSession, carnival_id: int) -> Carnival:
    carnival = await get_carnival(session, carnival_id)
    if carnival is None:
        raise NotFoundError("Carnival not found")
    return carnival


def is_carnival_host(user: User, carnival: Carnival) -> bool:
    """Admins, and the user who created (or claimed) the carnival."""
    if user.is_admin:
        return True
    return carnival.created_by_user_id is not None and carnival.created_by_user_id == user.id


async def require_carnival_host(session: AsyncSession, user_id: int, carnival: Carnival) -> User:
    user = await require_user(session, user_id)
    if not is_carnival_host(user, carnival):
        raise NotAuthorizedError("Only the carnival host can do this")
    return user


# --- Capacity ---


async def count_registrations(
    session: AsyncSession,
    carnival_id: int,
    status: Optional[ApprovalStatus] = None,
    exclude_registration_id: Optional[int] = None,
) -> int:
    """Active registrations for a carnival, optionally filtered by status. Always hits the store."""
    conditions = [CarnivalClub.carnival_id == carnival_id, CarnivalClub.is_active.is_(True)]
    if status is not None:
        conditions.append(CarnivalClub.approval_status == status.value)
    if exclude_registration_id is not None:
        conditions.append(CarnivalClub.id != exclude_registration_id)
    result = await session.execute(select(func.count(CarnivalClub.id)).where(and_(*conditions)))
    return result.scalar_one()


async def count_approved_registrations(
    session: AsyncSession, carnival_id: int, exclude_registration_id: Optional[int] = None
) -> int:
    return await count_registrations(
        session, carnival_id, ApprovalStatus.APPROVED, exclude_registration_id
    )


async def count_pending_registrations(session: AsyncSession, carnival_id: int) -> int:
    return await count_registrations(session, carnival_id, ApprovalStatus.PENDING)


async def check_registration_open(session: AsyncSession, carnival: Carnival, now=None) -> None:
    """
    Raise unless new self-registrations are accepted.

    Raises:
        RegistrationClosedError: Carnival inactive or deadline passed
        CapacityExceededError: Approved registrations already fill ``max_teams``
    """
    now = ensure_utc(now) if now is not None else utcnow()
    if not carnival.is_active:
        raise RegistrationClosedError("This carnival is no longer active")
    deadline = ensure_utc(carnival.registration_deadline)
    if deadline is not None and now > deadline:
        raise RegistrationClosedError()
    if carnival.max_teams is not None:
        approved = await count_approved_registrations(session, carnival.id)
        if approved >= carnival.max_teams:
            raise CapacityExceededError()


async def is_registration_open(session: AsyncSession, carnival: Carnival, now=None) -> bool:
    try:
        await check_registration_open(session, carnival, now)
    except (RegistrationClosedError, CapacityExceededError):
        return False
    return True


async def get_carnival_summary(session: AsyncSession, carnival_id: int) -> Dict:
    """Carnival plus approved/pending counts and whether registration is open."""
    carnival = await require_carnival(session, carnival_id)
    data = _carnival_to_dict(carnival)
    data["approved_count"] = await count_approved_registrations(session, carnival.id)
    data["pending_count"] = await count_pending_registrations(session, carnival.id)
    data["registration_open"] = await is_registration_open(session, carnival)
    return data


async def list_carnivals(
    session: AsyncSession,
    state: Optional[str] = None,
    upcoming_only: bool = True,
    include_inactive: bool = False,
) -> List[Dict]:
    conditions = []
    if not include_inactive:
        conditions.append(Carnival.is_active.is_(True))
    if state:
        conditions.append(Carnival.state == validate_state(state))
    if upcoming_only:
        conditions.append(func.coalesce(Carnival.end_date, Carnival.date) >= today())
    query = select(Carnival).order_by(Carnival.date, Carnival.id)
    if conditions:
        query = query.where(and_(*conditions))
    result = await session.execute(query)
    return [_carnival_to_dict(c) for c in result.scalars().all()]


# --- Manual carnivals ---


async def create_carnival(session: AsyncSession, user_id: int, fields: Mapping[str, Any]) -> Dict:
    """
    Create a manual carnival hosted by the creator's club.

    Admins may name any club as host via ``club_id``.

    When an unclaimed scraped carnival has the same title and date, no new
    row is created: the host club claims the scraped carnival with these
    fields instead (the result carries ``merged: True`` and subscribers get
    the "merged" announcement).

    Raises:
        NotAuthorizedError: Creator has no club (or names another club)
        ValidationError: Bad fields, or the host club already has a manual
            carnival with this title on this date
    """
    cleaned = clean_carnival_fields(fields, require_core=True)
    async with unit_of_work(session):
        user = await require_user(session, user_id)
        host_club = await _resolve_host_club(session, user, fields.get("club_id"))
        host_club_id = host_club.id if host_club is not None else None
        scrape_id = await _find_same_day_carnival(session, user, host_club, cleaned)

    if scrape_id is not None:
        try:
            data = await claim_carnival(session, user_id, scrape_id, host_club_id, fields)
        except AlreadyClaimedError:
            logger.info("Carnival %d was claimed before it could be merged; creating a new one", scrape_id)
        else:
            data["merged"] = True
            return data

    async with unit_of_work(session):
        carnival = Carnival(
            origin=CarnivalOrigin.MANUAL.value,
            is_active=True,
            club_id=host_club_id,
            created_by_user_id=user_id,
        )
        _apply_fields(carnival, cleaned)
        session.add(carnival)
        await session.flush()
        audience = await notification_service.build_carnival_announcement(session, carnival, "new")

    logger.info("Carnival %d (%s) created by user %d", carnival.id, carnival.title, user_id)
    report = await notification_service.dispatch(audience)
    data = _carnival_to_dict(carnival)
    data["merged"] = False
    data["notifications"] = report.to_dict()
    return data


async def _resolve_host_club(session: AsyncSession, user: User, club_id: Optional[int]) -> Optional[Club]:
    host_club_id = club_id or user.club_id
    if not user.is_admin:
        if user.club_id is None:
            raise NotAuthorizedError("You must belong to a club to host a carnival")
        if host_club_id != user.club_id:
            raise NotAuthorizedError("You can only host carnivals for your own club")
    if host_club_id is None:
        return None
    club = await session.get(Club, host_club_id)
    if club is None or not club.is_active:
        raise ValidationError("Host club not found or inactive")
    return club


def _state_compatible(user: User, carnival: Carnival, club: Club) -> bool:
    return user.is_admin or not (carnival.state and club.state and carnival.state != club.state)


async def _find_same_day_carnival(
    session: AsyncSession, user: User, host_club: Optional[Club], cleaned: Mapping[str, Any]
) -> Optional[int]:
    """
    Check a new carnival against active ones with the same title and date.

    Returns the id of an unclaimed scrape the host club may take over, or
    None. Raises ValidationError when the host club already runs a manual
    carnival with that title on that date.
    """
    if host_club is None:
        return None
    result = await session.execute(
        select(Carnival)
        .where(
            and_(
                func.lower(Carnival.title) == cleaned["title"].lower(),
                Carnival.date == cleaned["date"],
                Carnival.is_active.is_(True),
            )
        )
        .order_by(Carnival.id)
    )
    candidates = result.scalars().all()
    for candidate in candidates:
        if candidate.origin == CarnivalOrigin.MANUAL.value and candidate.club_id == host_club.id:
            raise ValidationError(DUPLICATE_CARNIVAL)
    for candidate in candidates:
        if candidate.is_unclaimed_scrape and _state_compatible(user, candidate, host_club):
            return candidate.id
    return None


async def update_carnival(
    session: AsyncSession, user_id: int, carnival_id: int, fields: Mapping[str, Any]
) -> Dict:
    """
    Host edit of a carnival; subscribers are told when anything changed.

    Raises:
        NotAuthorizedError: Not the host, or the carnival is an unclaimed scrape
    """
    cleaned = clean_carnival_fields(fields)
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            await require_carnival_host(session, user_id, carnival)
            if carnival.is_unclaimed_scrape:
                raise NotAuthorizedError("Claim this carnival before editing it")
            changed = _apply_fields(carnival, cleaned)
            audience = notification_service.Audience()
            if changed and carnival.is_active:
                audience = await notification_service.build_carnival_announcement(
                    session, carnival, "updated"
                )

    if changed:
        logger.info("Carnival %d updated by user %d: %s", carnival_id, user_id, ", ".join(changed))
    report = await notification_service.dispatch(audience)
    data = _carnival_to_dict(carnival)
    data["notifications"] = report.to_dict()
    return data


async def delete_carnival(session: AsyncSession, user_id: int, carnival_id: int) -> bool:
    """Hard-delete a carnival with its registrations and their assignments."""
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            await require_carnival_host(session, user_id, carnival)

            registration_ids = select(CarnivalClub.id).where(CarnivalClub.carnival_id == carnival_id)
            await session.execute(
                delete(CarnivalClubPlayer).where(CarnivalClubPlayer.carnival_club_id.in_(registration_ids))
            )
            await session.execute(delete(CarnivalClub).where(CarnivalClub.carnival_id == carnival_id))
            await session.execute(delete(Carnival).where(Carnival.id == carnival_id))
            session.expunge(carnival)

    logger.info("Carnival %d deleted by user %d", carnival_id, user_id)
    return True


async def deactivate_past_carnivals(session: AsyncSession, as_of: Optional[date] = None) -> int:
    """Deactivate active carnivals that finished before ``as_of`` (default today)."""
    as_of = as_of or today()
    async with unit_of_work(session):
        result = await session.execute(
            update(Carnival)
            .where(
                and_(
                    Carnival.is_active.is_(True),
                    func.coalesce(Carnival.end_date, Carnival.date) < as_of,
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
    count = result.rowcount or 0
    if count:
        logger.info("Deactivated %d past carnival(s)", count)
    return count


# --- Scraped carnivals ---


async def ingest_scraped_carnival(
    session: AsyncSession, external_id: str, fields: Mapping[str, Any]
) -> Dict:
    """
    Upsert a carnival from the external listing, keyed on ``external_id``.

    - New: created as an unclaimed scrape; subscribers get a "new" announcement.
    - Unclaimed: every scraped field is overwritten and ``last_synced_at`` refreshed.
    - Claimed: only links and social pages are refreshed; the host owns the rest.
    - Manual with the same external id: left untouched.

    ``fields`` may carry ``club_name``; when it matches a club (or one of its
    alternate names) that club's logo fills in a missing ``club_logo_url``.
    """
    external_id = clean_str(external_id)
    if not external_id:
        raise ValidationError("External id is required")

    result = await session.execute(select(Carnival.id).where(Carnival.external_id == external_id))
    existing_id = result.scalar_one_or_none()
    if existing_id is None:
        return await _create_scraped_carnival(session, external_id, fields)

    async with carnival_lock(existing_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, existing_id)
            provenance = carnival.provenance
            if isinstance(provenance, Scraped):
                cleaned = clean_carnival_fields(
                    fields, SCRAPED_FIELDS, require_core=True, strict_contacts=False
                )
                await _fill_logo_from_club(session, cleaned, fields)
                changed = _apply_fields(carnival, cleaned)
                carnival.last_synced_at = utcnow()
            elif isinstance(provenance, Claimed):
                cleaned = clean_carnival_fields(fields, REFRESHABLE_AFTER_CLAIM, strict_contacts=False)
                changed = _apply_fields(carnival, cleaned)
                carnival.last_synced_at = utcnow()
            else:
                changed = []

    logger.info(
        "Scraped carnival %s refreshed (carnival %d, %d field(s) changed)",
        external_id, carnival.id, len(changed),
    )
    data = _carnival_to_dict(carnival)
    data["created"] = False
    return data


async def _fill_logo_from_club(session: AsyncSession, cleaned: Dict[str, Any], fields: Mapping[str, Any]) -> None:
    if cleaned.get("club_logo_url") or not fields.get("club_name"):
        return
    club = await find_club_by_name_or_alias(session, fields["club_name"])
    if club is not None and club.logo_url:
        cleaned["club_logo_url"] = club.logo_url


async def _create_scraped_carnival(session: AsyncSession, external_id: str, fields: Mapping[str, Any]) -> Dict:
    cleaned = clean_carnival_fields(fields, SCRAPED_FIELDS, require_core=True, strict_contacts=False)
    try:
        async with unit_of_work(session):
            await _fill_logo_from_club(session, cleaned, fields)
            carnival = Carnival(
                origin=CarnivalOrigin.SCRAPED.value,
                external_id=external_id,
                is_active=True,
                last_synced_at=utcnow(),
            )
            _apply_fields(carnival, cleaned)
            session.add(carnival)
            await session.flush()
            audience = await notification_service.build_carnival_announcement(session, carnival, "new")
    except IntegrityError:
        result = await session.execute(select(Carnival.id).where(Carnival.external_id == external_id))
        if result.scalar_one_or_none() is None:
            raise
        # Another ingest created the same external id first; refresh that row instead
        logger.info("Scraped carnival %s created concurrently, refreshing", external_id)
        return await ingest_scraped_carnival(session, external_id, fields)

    logger.info("Scraped carnival %s ingested as carnival %d", external_id, carnival.id)
    report = await notification_service.dispatch(audience)
    data = _carnival_to_dict(carnival)
    data["created"] = True
    data["notifications"] = report.to_dict()
    return data


# --- Claim handover ---


async def claim_carnival(
    session: AsyncSession,
    user_id: int,
    carnival_id: int,
    acting_club_id: Optional[int] = None,
    fields: Optional[Mapping[str, Any]] = None,
) -> Dict:
    """
    Take over an unclaimed scraped carnival for the acting club.

    The claimer becomes the carnival's owner, the host club is set, and the
    request payload overrides the scraped details (the organiser contact
    defaults to the claimer). The scraped organiser is told about the claim
    unless they are the claimer.

    Admins may claim on behalf of any active club. Delegates may only claim
    for their own club and only carnivals in their club's state.

    Raises:
        NotFoundError: No such carnival
        AlreadyClaimedError: Manual carnival, or already claimed (nothing is written)
        NotAuthorizedError: Acting club is not the user's, or out of state
    """
    cleaned = clean_carnival_fields(fields or {})
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            if not carnival.is_unclaimed_scrape:
                raise AlreadyClaimedError()

            user = await require_user(session, user_id)
            club = await _resolve_claiming_club(session, user, carnival, acting_club_id)

            original_email = carnival.organiser_contact_email
            carnival.original_contact_email = original_email
            carnival.club_id = club.id
            carnival.created_by_user_id = user.id
            carnival.claimed_at = utcnow()

            defaults = {
                "organiser_contact_name": user.full_name,
                "organiser_contact_email": user.email,
                "organiser_contact_phone": user.phone_number,
            }
            for key, value in defaults.items():
                if not cleaned.get(key) and value:
                    cleaned[key] = value
            _apply_fields(carnival, cleaned)
            await session.flush()

            audience = await notification_service.build_carnival_announcement(session, carnival, "merged")
            claim_notice = notification_service.build_claim_notice(carnival, user, club, original_email)
            audience.messages.extend(claim_notice.messages)

    audit_service.log_user_action(
        audit_service.CARNIVAL_CLAIMED,
        user_id=user.id,
        entity_type="carnival",
        entity_id=carnival.id,
        metadata={"club_id": club.id, "external_id": carnival.external_id},
    )
    logger.info("Carnival %d claimed by user %d for club %d", carnival.id, user.id, club.id)
    report = await notification_service.dispatch(audience)
    data = _carnival_to_dict(carnival)
    data["notifications"] = report.to_dict()
    return data


async def _resolve_claiming_club(
    session: AsyncSession, user: User, carnival: Carnival, acting_club_id: Optional[int]
) -> Club:
    club_id = acting_club_id or user.club_id
    if club_id is None:
        raise NotAuthorizedError("You must belong to a club to claim a carnival")
    if not user.is_admin and club_id != user.club_id:
        raise NotAuthorizedError("You can only claim carnivals for your own club")

    club = await session.get(Club, club_id)
    if club is None or not club.is_active:
        raise NotAuthorizedError("Your club must be active to claim a carnival")
    if not _state_compatible(user, carnival, club):
        raise NotAuthorizedError("You can only claim carnivals in your club's state")
    return club


async def claim_carnival_on_behalf(
    session: AsyncSession,
    admin_id: int,
    carnival_id: int,
    club_id: int,
    fields: Optional[Mapping[str, Any]] = None,
) -> Dict:
    """Admin claim of a scraped carnival for a named club."""
    admin = await require_user(session, admin_id)
    if not admin.is_admin:
        raise NotAuthorizedError("Only administrators can claim on behalf of a club")
    return await claim_carnival(session, admin_id, carnival_id, club_id, fields)


async def merge_carnival(session: AsyncSession, user_id: int, source_id: int, target_id: int) -> Dict:
    """
    Fold an unclaimed scraped carnival into a manual carnival the user hosts.

    Scraped details fill only the target's empty fields. The target takes
    over the external id, so later scrapes of that listing leave it alone,
    and the source is deactivated.

    Raises:
        NotFoundError: Either carnival is missing or inactive
        ValidationError: Source and target are the same carnival
        AlreadyClaimedError: Source is not an unclaimed scrape
        IllegalTransitionError: Target is not a manual carnival, or already
            carries an external id
        NotAuthorizedError: User does not host the target, or the source is
            outside the host club's state
    """
    if source_id == target_id:
        raise ValidationError("A carnival cannot be merged into itself")

    async with carnival_lock(source_id, target_id):
        async with unit_of_work(session):
            rows = {}
            for carnival_id in sorted((source_id, target_id)):
                rows[carnival_id] = await lock_carnival_row(session, carnival_id)
            source, target = rows[source_id], rows[target_id]
            if source is None or not source.is_active:
                raise NotFoundError("Carnival to merge not found")
            if target is None or not target.is_active:
                raise NotFoundError("Target carnival not found")

            user = await require_carnival_host(session, user_id, target)
            if not source.is_unclaimed_scrape:
                raise AlreadyClaimedError()
            if target.origin != CarnivalOrigin.MANUAL.value or target.external_id:
                raise IllegalTransitionError("Scraped carnivals can only be merged into manual carnivals")
            if target.club_id is not None:
                host_club = await session.get(Club, target.club_id)
                if host_club is not None and not _state_compatible(user, source, host_club):
                    raise NotAuthorizedError("You can only merge carnivals in your club's state")

            filled = {}
            for field in SCRAPED_FIELDS:
                value = getattr(source, field)
                if value in (None, "") or getattr(target, field) not in (None, ""):
                    continue
                filled[field] = value
            _apply_fields(target, filled)

            external_id = source.external_id
            source.external_id = None
            source.is_active = False
            # The external id is unique; release it before the target takes it
            await session.flush()
            target.external_id = external_id
            target.last_synced_at = source.last_synced_at
            await session.flush()

    audit_service.log_user_action(
        audit_service.CARNIVAL_MERGED,
        user_id=user_id,
        entity_type="carnival",
        entity_id=target.id,
        metadata={"source_id": source.id, "external_id": external_id, "fields": sorted(filled)},
    )
    logger.info("Carnival %d merged into carnival %d by user %d", source.id, target.id, user_id)
    return _carnival_to_dict(target)


async def release_ownership(session: AsyncSession, user_id: int, carnival_id: int) -> Dict:
    """
    Hand a claimed carnival back to the scraper.

    The carnival returns to the unclaimed scraped state and the original
    organiser email is restored. Host-only settings (team cap and
    registration deadline) are cleared, since nobody is left to manage them.

    Raises:
        IllegalTransitionError: Carnival was never claimed, or still has
            pending or approved registrations
    """
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            carnival = await lock_carnival_row(session, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            await require_carnival_host(session, user_id, carnival)
            if not isinstance(carnival.provenance, Claimed):
                raise IllegalTransitionError("Only claimed carnivals can be released")
            open_registrations = await count_approved_registrations(
                session, carnival.id
            ) + await count_pending_registrations(session, carnival.id)
            if open_registrations:
                raise IllegalTransitionError(
                    "Remove or reject all pending and approved registrations before releasing this carnival"
                )

            previous_club_id = carnival.club_id
            carnival.club_id = None
            carnival.created_by_user_id = None
            carnival.claimed_at = None
            carnival.organiser_contact_email = carnival.original_contact_email
            carnival.original_contact_email = None
            carnival.max_teams = None
            carnival.registration_deadline = None

    audit_service.log_user_action(
        audit_service.CARNIVAL_RELEASED,
        user_id=user_id,
        entity_type="carnival",
        entity_id=carnival.id,
        metadata={"club_id": previous_club_id},
    )
    return _carnival_to_dict(carnival)

