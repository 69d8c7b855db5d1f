"""
Notification dispatcher.

Works in two steps so that no transaction stays open while email goes out:

1. ``build_*`` functions run inside the caller's unit of work. They resolve
   the audience with the session and render each message.
2. ``dispatch`` runs after commit. It never touches the database and never
   raises: failures are counted in the returned ``DispatchReport``.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.models import (
    ApprovalStatus,
    Carnival,
    CarnivalClub,
    Club,
    EmailSubscription,
    User,
    AUSTRALIAN_STATE_NAMES,
)
from oldmanfooty.services import email_service
from oldmanfooty.services.email_service import OutboundEmail

logger = logging.getLogger(__name__)

BASE_URL = os.getenv("BASE_URL", "https://oldmanfooty.au").rstrip("/")


class EmailType(str, enum.Enum):
    """Notification type enum."""

    CARNIVAL_NEW = "carnival_new"
    CARNIVAL_UPDATED = "carnival_updated"
    CARNIVAL_MERGED = "carnival_merged"
    ATTENDEE_BROADCAST = "attendee_broadcast"
    REGISTRATION_RECEIVED = "registration_received"
    REGISTRATION_APPROVED = "registration_approved"
    REGISTRATION_REJECTED = "registration_rejected"
    CLAIM_NOTICE = "claim_notice"
    INVITATION = "invitation"
    ROLE_TRANSFER = "role_transfer"
    SECURITY_ALERT = "security_alert"


ANNOUNCEMENT_TYPES = {
    "new": EmailType.CARNIVAL_NEW,
    "updated": EmailType.CARNIVAL_UPDATED,
    "merged": EmailType.CARNIVAL_MERGED,
}


@dataclass
class DispatchReport:
    """Outcome of one dispatch. Recipients with no address count as failed."""

    sent: int = 0
    failed: int = 0
    suppressed: int = 0
    failed_recipients: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed

    def merge(self, other: "DispatchReport") -> "DispatchReport":
        return DispatchReport(
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            suppressed=self.suppressed + other.suppressed,
            failed_recipients=self.failed_recipients + other.failed_recipients,
        )

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "suppressed": self.suppressed,
            "failed_recipients": list(self.failed_recipients),
        }


@dataclass
class Audience:
    """Rendered messages plus recipients that could not be addressed."""

    messages: List[OutboundEmail] = field(default_factory=list)
    unaddressable: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)


# --- Dispatch ---


async def dispatch(audience) -> DispatchReport:
    """
    Hand every message to the email sender, best-effort per recipient.

    Accepts an ``Audience`` or a plain iterable of ``OutboundEmail``.
    Unaddressable recipients in an ``Audience`` are counted as failed.
    """
    if isinstance(audience, Audience):
        messages = audience.messages
        report = DispatchReport(
            failed=len(audience.unaddressable),
            failed_recipients=list(audience.unaddressable),
        )
    else:
        messages = list(audience or [])
        report = DispatchReport()

    if not messages:
        return report

    if not email_service.is_enabled():
        logger.info("Email sending is disabled. %d notification(s) suppressed.", len(messages))
        report.suppressed += len(messages)
        return report

    sender = email_service.get_email_sender()
    for message in messages:
        try:
            delivered = await sender.send(message)
        except Exception as e:
            logger.error(f"Failed to send {message.email_type} email to {message.recipient}: {e}")
            delivered = False
        if delivered:
            report.sent += 1
        else:
            report.failed += 1
            report.failed_recipients.append(message.recipient)

    if report.failed:
        logger.warning(
            "Dispatch finished with %d sent, %d failed", report.sent, report.failed
        )
    return report


# --- Audience helpers ---


def same_email(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive, whitespace-insensitive email comparison."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


async def get_club_notification_email(session: AsyncSession, club_id: int) -> Optional[str]:
    """
    Address for club-level notices: the active primary delegate, falling back
    to the club's contact email.
    """
    result = await session.execute(
        select(User.email).where(
            and_(
                User.club_id == club_id,
                User.is_primary_delegate.is_(True),
                User.is_active.is_(True),
            )
        )
    )
    delegate_email = result.scalar_one_or_none()
    if delegate_email:
        return delegate_email

    result = await session.execute(select(Club.contact_email).where(Club.id == club_id))
    contact_email = result.scalar_one_or_none()
    return contact_email or None


async def get_subscribers_for_state(session: AsyncSession, state: str) -> List[str]:
    """Emails of active subscriptions whose states of interest include ``state``."""
    result = await session.execute(
        select(EmailSubscription).where(EmailSubscription.is_active.is_(True))
    )
    # States live in a JSON list; filter here so SQLite and PostgreSQL agree
    return [sub.email for sub in result.scalars().all() if sub.includes_state(state)]


def _carnival_url(carnival: Carnival) -> str:
    return f"{BASE_URL}/carnivals/{carnival.id}"


def _carnival_when_where(carnival: Carnival) -> List[str]:
    lines = [f"Date: {carnival.date.strftime('%A %d %B %Y')}"]
    if carnival.end_date and carnival.end_date != carnival.date:
        lines[0] += f" to {carnival.end_date.strftime('%A %d %B %Y')}"
    place = ", ".join(
        part for part in (carnival.venue_name, carnival.location_suburb, carnival.state) if part
    )
    if place:
        lines.append(f"Location: {place}")
    return lines


# --- Renderers: each returns (subject, body) ---


def render_carnival_announcement(carnival: Carnival, kind: str) -> Tuple[str, str]:
    state_name = AUSTRALIAN_STATE_NAMES.get(carnival.state, carnival.state or "")
    if kind == "new":
        subject = f"New Masters carnival in {state_name}: {carnival.title}"
        intro = "A new carnival has been listed in a state you follow."
    elif kind == "merged":
        subject = f"Carnival now hosted: {carnival.title}"
        intro = "This carnival has been taken over by its host club and its details have been confirmed."
    else:
        subject = f"Carnival updated: {carnival.title}"
        intro = "The details of a carnival you may be interested in have changed."
    lines = [intro, "", carnival.title, *_carnival_when_where(carnival)]
    if carnival.registration_link:
        lines.append(f"Register: {carnival.registration_link}")
    lines.extend(["", f"Details: {_carnival_url(carnival)}"])
    return subject, "\n".join(lines)


def render_registration_received(carnival: Carnival, club: Club, registration: CarnivalClub) -> Tuple[str, str]:
    subject = f"New registration for {carnival.title}: {club.club_name}"
    lines = [
        f"{club.club_name} has registered for {carnival.title} and is awaiting your approval.",
    ]
    if registration.team_name:
        lines.append(f"Team name: {registration.team_name}")
    if registration.player_count:
        lines.append(f"Expected players: {registration.player_count}")
    lines.extend(["", f"Review registrations: {_carnival_url(carnival)}/attendees"])
    return subject, "\n".join(lines)


def render_registration_approved(carnival: Carnival, club: Club) -> Tuple[str, str]:
    subject = f"Registration approved: {carnival.title}"
    lines = [
        f"Good news! {club.club_name}'s registration for {carnival.title} has been approved.",
        "",
        *_carnival_when_where(carnival),
        "",
        f"You can now add players to your registration: {_carnival_url(carnival)}",
    ]
    return subject, "\n".join(lines)


def render_registration_rejected(carnival: Carnival, club: Club, reason: str) -> Tuple[str, str]:
    subject = f"Registration not approved: {carnival.title}"
    lines = [
        f"{club.club_name}'s registration for {carnival.title} was not approved.",
        "",
        f"Reason: {reason}",
        "",
        f"You may update and resubmit your registration: {_carnival_url(carnival)}",
    ]
    return subject, "\n".join(lines)


def render_claim_notice(carnival: Carnival, claimer: User, club: Club) -> Tuple[str, str]:
    subject = f"Your carnival listing has been claimed: {carnival.title}"
    lines = [
        f"{carnival.title} has been claimed on Old Man Footy by {claimer.full_name} of {club.club_name}.",
        "",
        "They will now manage registrations and details for this carnival.",
        f"If you believe this is a mistake, please contact {claimer.email}.",
        "",
        f"View the carnival: {_carnival_url(carnival)}",
    ]
    return subject, "\n".join(lines)


def render_attendee_broadcast(carnival: Carnival, subject_line: str, message: str) -> Tuple[str, str]:
    subject = f"{carnival.title}: {subject_line}"
    lines = [message, "", f"Carnival details: {_carnival_url(carnival)}"]
    return subject, "\n".join(lines)


def render_invitation(invitee: User, inviter: User, club: Club, token: str) -> Tuple[str, str]:
    subject = f"You're invited to join {club.club_name} on Old Man Footy"
    lines = [
        f"{inviter.full_name} has invited you to become a delegate of {club.club_name}.",
        "",
        f"Accept your invitation: {BASE_URL}/auth/invitation/{token}",
        "",
        "This invitation expires in 7 days.",
    ]
    return subject, "\n".join(lines)


def render_role_transfer(previous: User, successor: User, club: Club) -> Tuple[str, str]:
    subject = f"You are now the primary delegate of {club.club_name}"
    lines = [
        f"{previous.full_name} has transferred the primary delegate role for {club.club_name} to you.",
        "",
        f"Manage your club: {BASE_URL}/clubs/manage",
    ]
    return subject, "\n".join(lines)


def render_security_alert(user: User, club: Optional[Club], event: str) -> Tuple[str, str]:
    club_name = club.club_name if club else "your club"
    subject = f"Security alert: {club_name}"
    lines = [
        f"Hello {user.first_name},",
        "",
        event,
        "",
        "If you did not expect this change, please contact the Old Man Footy administrators.",
    ]
    return subject, "\n".join(lines)


# --- Audience builders (run inside the unit of work) ---


async def build_carnival_announcement(
    session: AsyncSession, carnival: Carnival, kind: str
) -> Audience:
    """All active subscribers interested in the carnival's state."""
    if kind not in ANNOUNCEMENT_TYPES:
        raise ValueError(f"Unknown announcement kind: {kind}")
    if not carnival.state:
        return Audience()
    subject, body = render_carnival_announcement(carnival, kind)
    email_type = ANNOUNCEMENT_TYPES[kind].value
    recipients = await get_subscribers_for_state(session, carnival.state)
    return Audience(
        messages=[OutboundEmail(email, subject, body, email_type) for email in recipients]
    )


async def build_registration_received(
    session: AsyncSession, carnival: Carnival, club: Club, registration: CarnivalClub
) -> Audience:
    """Tell the host club a registration is waiting for approval."""
    recipient = None
    if carnival.club_id:
        recipient = await get_club_notification_email(session, carnival.club_id)
    if not recipient:
        recipient = carnival.organiser_contact_email
    if not recipient:
        return Audience(unaddressable=[f"host of carnival {carnival.id}"])
    subject, body = render_registration_received(carnival, club, registration)
    return Audience(
        messages=[OutboundEmail(recipient, subject, body, EmailType.REGISTRATION_RECEIVED.value)]
    )


async def build_registration_decision(
    session: AsyncSession,
    carnival: Carnival,
    club: Club,
    approved: bool,
    reason: Optional[str] = None,
) -> Audience:
    """Approval or rejection notice to the registered club."""
    recipient = await get_club_notification_email(session, club.id)
    if not recipient:
        return Audience(unaddressable=[club.club_name])
    if approved:
        subject, body = render_registration_approved(carnival, club)
        email_type = EmailType.REGISTRATION_APPROVED
    else:
        subject, body = render_registration_rejected(carnival, club, reason)
        email_type = EmailType.REGISTRATION_REJECTED
    return Audience(messages=[OutboundEmail(recipient, subject, body, email_type.value)])


def build_claim_notice(
    carnival: Carnival, claimer: User, club: Club, original_email: Optional[str]
) -> Audience:
    """Notice to the scraped organiser, unless they are the one claiming."""
    if not original_email:
        return Audience()
    if same_email(original_email, claimer.email):
        logger.info(
            "Claim notice for carnival %s suppressed: claimer is the listed organiser", carnival.id
        )
        return Audience()
    subject, body = render_claim_notice(carnival, claimer, club)
    return Audience(
        messages=[OutboundEmail(original_email.strip(), subject, body, EmailType.CLAIM_NOTICE.value)]
    )


async def build_attendee_broadcast(
    session: AsyncSession, carnival: Carnival, subject_line: str, message: str
) -> Audience:
    """Every active, approved attending club; clubs without an address are unaddressable."""
    result = await session.execute(
        select(CarnivalClub.club_id, Club.club_name)
        .join(Club, Club.id == CarnivalClub.club_id)
        .where(
            and_(
                CarnivalClub.carnival_id == carnival.id,
                CarnivalClub.is_active.is_(True),
                CarnivalClub.approval_status == ApprovalStatus.APPROVED.value,
                Club.is_active.is_(True),
            )
        )
        .order_by(CarnivalClub.display_order, CarnivalClub.id)
    )
    subject, body = render_attendee_broadcast(carnival, subject_line, message)
    audience = Audience()
    for club_id, club_name in result.all():
        recipient = await get_club_notification_email(session, club_id)
        if recipient:
            audience.messages.append(
                OutboundEmail(recipient, subject, body, EmailType.ATTENDEE_BROADCAST.value)
            )
        else:
            audience.unaddressable.append(club_name)
    return audience


def build_invitation(invitee: User, inviter: User, club: Club, token: str) -> Audience:
    subject, body = render_invitation(invitee, inviter, club, token)
    return Audience(messages=[OutboundEmail(invitee.email, subject, body, EmailType.INVITATION.value)])


def build_role_transfer(previous: User, successor: User, club: Club) -> Audience:
    subject, body = render_role_transfer(previous, successor, club)
    return Audience(
        messages=[OutboundEmail(successor.email, subject, body, EmailType.ROLE_TRANSFER.value)]
    )


def build_security_alert(users: Iterable[User], club: Optional[Club], event: str) -> Audience:
    audience = Audience()
    for user in users:
        subject, body = render_security_alert(user, club, event)
        audience.messages.append(
            OutboundEmail(user.email, subject, body, EmailType.SECURITY_ALERT.value)
        )
    return audience
