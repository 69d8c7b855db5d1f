"""
SQLAlchemy ORM models for the Masters Rugby League carnival system.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    Date,
    DateTime,
    Numeric,
    JSON,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from oldmanfooty.database.db import Base
from oldmanfooty.services import auth_service


AUSTRALIAN_STATES = ["ACT", "NSW", "NT", "QLD", "SA", "TAS", "VIC", "WA"]

AUSTRALIAN_STATE_NAMES = {
    "NSW": "New South Wales",
    "QLD": "Queensland",
    "VIC": "Victoria",
    "WA": "Western Australia",
    "SA": "South Australia",
    "TAS": "Tasmania",
    "NT": "Northern Territory",
    "ACT": "Australian Capital Territory",
}


class ApprovalStatus(str, enum.Enum):
    """Registration approval status enum."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AttendanceStatus(str, enum.Enum):
    """Player attendance status for a carnival registration."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    UNAVAILABLE = "unavailable"


class ShortsColour(str, enum.Enum):
    """Masters shorts-colour classification."""

    UNRESTRICTED = "Unrestricted"
    RED = "Red"
    YELLOW = "Yellow"
    BLUE = "Blue"
    GREEN = "Green"


class CarnivalOrigin(str, enum.Enum):
    """Where a carnival record came from."""

    MANUAL = "manual"
    SCRAPED = "scraped"


# --- Carnival provenance variants ---


@dataclass(frozen=True)
class Manual:
    """Carnival entered by a host club."""


@dataclass(frozen=True)
class Scraped:
    """Carnival ingested from the external listing and not yet claimed."""

    external_id: Optional[str]
    last_synced_at: Optional[datetime]


@dataclass(frozen=True)
class Claimed:
    """Scraped carnival that a real host club has taken over."""

    external_id: Optional[str]
    claimed_at: datetime


Provenance = Union[Manual, Scraped, Claimed]


class Club(Base):
    """Member clubs."""

    __tablename__ = "clubs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    club_name = Column(String(100), nullable=False)
    state = Column(String(3), nullable=True)
    location = Column(String, nullable=True)
    contact_person = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    logo_url = Column(String, nullable=True)
    is_publicly_listed = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_proxy = Column(Boolean, default=False, nullable=False)  # placeholder until claimed
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    alternate_names = relationship(
        "ClubAlternateName", back_populates="club", cascade="all, delete-orphan",
        passive_deletes=True, order_by="ClubAlternateName.position",
    )

    __table_args__ = (
        Index(
            "uq_clubs_active_name", "club_name", unique=True,
            postgresql_where=text("is_active"), sqlite_where=text("is_active = 1"),
        ),
        Index("idx_clubs_state", "state"),
        Index("idx_clubs_contact_email", "contact_email"),
    )


class ClubAlternateName(Base):
    """Ordered aliases used to match scraped data back to a club."""

    __tablename__ = "club_alternate_names"

    id = Column(Integer, primary_key=True, autoincrement=True)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False)
    alternate_name = Column(String(100), nullable=False)
    position = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    club = relationship("Club", back_populates="alternate_names")

    __table_args__ = (
        UniqueConstraint("club_id", "alternate_name", name="uq_club_alternate_names_club_name"),
        Index("idx_club_alternate_names_name", "alternate_name"),
    )


class User(Base):
    """User accounts (club delegates and administrators)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=True)  # null until an invitation is accepted
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    phone_number = Column(String, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_primary_delegate = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="RESTRICT"), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)
    invitation_token = Column(String(64), nullable=True, unique=True)
    invitation_expires = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one primary delegate per club
        Index(
            "uq_users_club_primary_delegate", "club_id", unique=True,
            postgresql_where=text("is_primary_delegate"),
            sqlite_where=text("is_primary_delegate = 1"),
        ),
        Index("idx_users_club", "club_id"),
    )

    def set_password(self, password: str) -> None:
        """Store a bcrypt hash of the plaintext credential. Hashes exactly once."""
        self.password_hash = auth_service.hash_password(password)

    def check_password(self, password: str) -> bool:
        return auth_service.verify_password(password, self.password_hash)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Carnival(Base):
    """Carnival (tournament) listings, manual or scraped."""

    __tablename__ = "carnivals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    state = Column(String(3), nullable=True)
    # Structured location
    venue_name = Column(String, nullable=True)
    location_address = Column(String, nullable=True)
    location_address_line1 = Column(String, nullable=True)
    location_address_line2 = Column(String, nullable=True)
    location_suburb = Column(String, nullable=True)
    location_postcode = Column(String(10), nullable=True)
    location_latitude = Column(Float, nullable=True)
    location_longitude = Column(Float, nullable=True)
    # Organiser contact
    organiser_contact_name = Column(String, nullable=True)
    organiser_contact_email = Column(String, nullable=True)
    organiser_contact_phone = Column(String, nullable=True)
    original_contact_email = Column(String, nullable=True)  # scraped organiser email, kept across a claim
    schedule_details = Column(Text, nullable=True)
    registration_link = Column(String, nullable=True)
    fees_description = Column(Text, nullable=True)
    social_media_facebook = Column(String, nullable=True)
    social_media_website = Column(String, nullable=True)
    club_logo_url = Column(String, nullable=True)
    max_teams = Column(Integer, nullable=True)
    registration_deadline = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="RESTRICT"), nullable=True)  # host club
    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    # Provenance
    origin = Column(String(20), nullable=False, default=CarnivalOrigin.MANUAL.value)
    external_id = Column(String, nullable=True, unique=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    registrations = relationship(
        "CarnivalClub", back_populates="carnival", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            f"origin IN ({', '.join(repr(e.value) for e in CarnivalOrigin)})",
            name="ck_carnivals_origin",
        ),
        CheckConstraint("max_teams IS NULL OR max_teams >= 1", name="ck_carnivals_max_teams"),
        Index("idx_carnivals_date", "date"),
        Index("idx_carnivals_state", "state"),
        Index("idx_carnivals_club", "club_id"),
    )

    @property
    def provenance(self) -> Provenance:
        if self.origin == CarnivalOrigin.MANUAL.value:
            return Manual()
        if self.claimed_at is None:
            return Scraped(external_id=self.external_id, last_synced_at=self.last_synced_at)
        return Claimed(external_id=self.external_id, claimed_at=self.claimed_at)

    @property
    def is_unclaimed_scrape(self) -> bool:
        return isinstance(self.provenance, Scraped)


class ClubPlayer(Base):
    """Players on a club's roster."""

    __tablename__ = "club_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(254), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    shorts = Column(String(20), nullable=False, default=ShortsColour.UNRESTRICTED.value)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    registered_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("club_id", "email", name="uq_club_players_club_email"),
        CheckConstraint(
            f"shorts IN ({', '.join(repr(e.value) for e in ShortsColour)})",
            name="ck_club_players_shorts",
        ),
        Index("idx_club_players_club", "club_id"),
        Index("idx_club_players_name", "last_name", "first_name"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def initials(self) -> str:
        first = self.first_name[:1].upper() if self.first_name else ""
        last = self.last_name[:1].upper() if self.last_name else ""
        return f"{first}.{last}."

    def age_on(self, today: date) -> int:
        """Whole years between date of birth and ``today``."""
        dob = self.date_of_birth
        years = today.year - dob.year
        if (today.month, today.day) < (dob.month, dob.day):
            years -= 1
        return years


class CarnivalClub(Base):
    """Registration: join table (Club ↔ Carnival) with approval workflow."""

    __tablename__ = "carnival_clubs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carnival_id = Column(Integer, ForeignKey("carnivals.id", ondelete="CASCADE"), nullable=False)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="RESTRICT"), nullable=False)
    registration_date = Column(DateTime(timezone=True), nullable=False)
    team_name = Column(String, nullable=True)
    player_count = Column(Integer, nullable=True)
    contact_person = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    special_requirements = Column(Text, nullable=True)
    registration_notes = Column(Text, nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    display_order = Column(Integer, nullable=False, default=999)
    is_active = Column(Boolean, default=True, nullable=False)
    approval_status = Column(String(20), nullable=False, default=ApprovalStatus.PENDING.value)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    carnival = relationship("Carnival", back_populates="registrations")
    assignments = relationship(
        "CarnivalClubPlayer", back_populates="registration", cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            f"approval_status IN ({', '.join(repr(e.value) for e in ApprovalStatus)})",
            name="ck_carnival_clubs_approval_status",
        ),
        CheckConstraint(
            "(approval_status = 'approved' AND approved_at IS NOT NULL) "
            "OR (approval_status <> 'approved' AND approved_at IS NULL)",
            name="ck_carnival_clubs_approved_at",
        ),
        CheckConstraint(
            "(approval_status = 'rejected' AND rejection_reason IS NOT NULL) "
            "OR (approval_status <> 'rejected' AND rejection_reason IS NULL)",
            name="ck_carnival_clubs_rejection_reason",
        ),
        CheckConstraint(
            "(is_paid AND payment_date IS NOT NULL) OR (NOT is_paid AND payment_date IS NULL)",
            name="ck_carnival_clubs_payment_date",
        ),
        # One active registration per (carnival, club)
        Index(
            "uq_carnival_clubs_active", "carnival_id", "club_id", unique=True,
            postgresql_where=text("is_active"), sqlite_where=text("is_active = 1"),
        ),
        Index("idx_carnival_clubs_carnival_status", "carnival_id", "approval_status"),
        Index("idx_carnival_clubs_club", "club_id"),
    )


class CarnivalClubPlayer(Base):
    """Assignment: join table (Registration ↔ ClubPlayer)."""

    __tablename__ = "carnival_club_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carnival_club_id = Column(
        Integer, ForeignKey("carnival_clubs.id", ondelete="CASCADE"), nullable=False
    )
    club_player_id = Column(Integer, ForeignKey("club_players.id", ondelete="RESTRICT"), nullable=False)
    attendance_status = Column(String(20), nullable=False, default=AttendanceStatus.CONFIRMED.value)
    notes = Column(Text, nullable=True)
    added_at = Column(DateTime(timezone=True), server_default=func.now())
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    registration = relationship("CarnivalClub", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("carnival_club_id", "club_player_id", name="uq_carnival_club_players_pair"),
        CheckConstraint(
            f"attendance_status IN ({', '.join(repr(e.value) for e in AttendanceStatus)})",
            name="ck_carnival_club_players_attendance",
        ),
        Index("idx_carnival_club_players_registration", "carnival_club_id"),
        Index("idx_carnival_club_players_player", "club_player_id"),
    )


class EmailSubscription(Base):
    """Carnival announcement subscriptions, filtered by state of interest."""

    __tablename__ = "email_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    states = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    source = Column(String(50), nullable=True, default="homepage")
    unsubscribe_token = Column(String(64), nullable=False, unique=True)
    subscribed_at = Column(DateTime(timezone=True), nullable=False)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "(is_active AND unsubscribed_at IS NULL) OR (NOT is_active AND unsubscribed_at IS NOT NULL)",
            name="ck_email_subscriptions_unsubscribed_at",
        ),
        Index("idx_email_subscriptions_active", "is_active"),
    )

    def includes_state(self, state: str) -> bool:
        return bool(self.states) and state in self.states
