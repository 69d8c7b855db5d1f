"""
Shared pytest configuration for the carnival engine tests.

Runs against SQLite (a fresh file per test) unless TEST_DATABASE_URL points
at a PostgreSQL test database.

SAFETY: When TEST_DATABASE_URL is set, this module REFUSES to run against any
database whose name does not contain the substring "test".  The fixtures drop
every table on teardown.
"""

import os

# Route decorators read ENV at import time
os.environ.setdefault("ENV", "test")

import asyncio
from datetime import date, datetime
from typing import List, Optional

import pytest
import pytest_asyncio
import pytz
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from oldmanfooty.database import db
from oldmanfooty.database.db import Base, enable_sqlite_foreign_keys
from oldmanfooty.database.models import (
    ApprovalStatus,
    AttendanceStatus,
    Carnival,
    CarnivalClub,
    CarnivalClubPlayer,
    CarnivalOrigin,
    Club,
    ClubPlayer,
    User,
)
from oldmanfooty.services import email_service, rate_limiting_service
from oldmanfooty.services.email_service import OutboundEmail
from oldmanfooty.utils import datetime_utils

# Pinned "now" for every test: 2025-05-30T10:00Z
FIXED_NOW = datetime(2025, 5, 30, 10, 0, tzinfo=pytz.UTC)

DEFAULT_PASSWORD = "Footy2025"


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if TEST_DATABASE_URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'oldmanfooty_test.db'}"

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../{db_name}_test\n"
            f"  Or unset it to run against a throwaway SQLite file.\n"
            f"{'=' * 70}"
        )
    return url


# ============================================================================
# Database fixtures
# ============================================================================


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine with all tables for one test."""
    # NullPool: every session gets its own connection, so concurrent
    # sessions in one test behave like separate requests
    engine = create_async_engine(
        _resolve_test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,
    )
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions via db.AsyncSessionLocal uses the test engine
    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local

    await asyncio.sleep(0.05)  # Let in-flight connections finish
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Factory for extra sessions (concurrency tests open one per 'request')."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A session for the test body, rolled back and closed afterwards."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# Collaborators: email, clock, rate limiter
# ============================================================================


class RecordingEmailSender:
    """Email sender that records messages instead of delivering them."""

    def __init__(self):
        self.sent: List[OutboundEmail] = []
        self.fail_for = set()

    async def send(self, message: OutboundEmail) -> bool:
        if message.recipient in self.fail_for:
            return False
        self.sent.append(message)
        return True

    def of_type(self, email_type) -> List[OutboundEmail]:
        value = getattr(email_type, "value", email_type)
        return [m for m in self.sent if m.email_type == value]

    def recipients(self) -> List[str]:
        return [m.recipient for m in self.sent]


@pytest.fixture(autouse=True)
def email_outbox(monkeypatch):
    """Install a recording sender with email enabled."""
    sender = RecordingEmailSender()
    monkeypatch.setattr(email_service, "ENABLE_EMAIL", True)
    email_service.set_email_sender(sender)
    yield sender
    email_service.set_email_sender(None)


class FrozenClock:
    """Settable clock for ``datetime_utils.utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture(autouse=True)
def clock():
    """Pin utcnow() to FIXED_NOW; tests may move it."""
    frozen = FrozenClock(FIXED_NOW)
    datetime_utils.set_time_source(frozen)
    yield frozen
    datetime_utils.reset_time_source()


@pytest.fixture(autouse=True)
def clear_rate_limit_storage():
    rate_limiting_service.reset_ip_rate_limit_storage()
    yield
    rate_limiting_service.reset_ip_rate_limit_storage()
    rate_limiting_service.set_clock(None)


# ============================================================================
# Model factories
#
# Each factory commits through its own short-lived session, so the objects it
# returns are detached with every column loaded. Rollbacks in the session under
# test cannot expire them.
# ============================================================================


async def _persist(session_factory, obj):
    async with session_factory() as session:
        session.add(obj)
        await session.commit()
    return obj


async def reload(session, obj):
    """Fresh copy of a row in ``session``, bypassing the identity map."""
    return await session.get(type(obj), obj.id, populate_existing=True)


@pytest.fixture
def make_club(session_factory):
    async def _make_club(
        club_name: str,
        state: Optional[str] = "QLD",
        contact_email: Optional[str] = None,
        is_active: bool = True,
        created_by_proxy: bool = False,
        logo_url: Optional[str] = None,
    ) -> Club:
        club = Club(
            club_name=club_name,
            state=state,
            contact_email=contact_email,
            is_active=is_active,
            created_by_proxy=created_by_proxy,
            logo_url=logo_url,
            is_publicly_listed=True,
        )
        return await _persist(session_factory, club)

    return _make_club


@pytest.fixture
def make_user(session_factory):
    async def _make_user(
        email: str,
        club: Optional[Club] = None,
        first_name: str = "Test",
        last_name: str = "Delegate",
        is_primary_delegate: bool = False,
        is_admin: bool = False,
        is_active: bool = True,
        password: str = DEFAULT_PASSWORD,
    ) -> User:
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            club_id=club.id if club else None,
            is_primary_delegate=is_primary_delegate,
            is_admin=is_admin,
            is_active=is_active,
        )
        user.set_password(password)
        return await _persist(session_factory, user)

    return _make_user


@pytest.fixture
def make_carnival(session_factory):
    async def _make_carnival(
        title: str,
        host: Optional[User] = None,
        carnival_date: date = date(2025, 6, 14),
        end_date: Optional[date] = None,
        state: Optional[str] = "QLD",
        max_teams: Optional[int] = None,
        registration_deadline: Optional[datetime] = None,
        origin: CarnivalOrigin = CarnivalOrigin.MANUAL,
        external_id: Optional[str] = None,
        organiser_contact_email: Optional[str] = None,
        is_active: bool = True,
    ) -> Carnival:
        carnival = Carnival(
            title=title,
            date=carnival_date,
            end_date=end_date,
            state=state,
            max_teams=max_teams,
            registration_deadline=registration_deadline,
            origin=origin.value,
            external_id=external_id,
            organiser_contact_email=organiser_contact_email,
            is_active=is_active,
            club_id=host.club_id if host else None,
            created_by_user_id=host.id if host else None,
            last_synced_at=FIXED_NOW if origin == CarnivalOrigin.SCRAPED else None,
        )
        return await _persist(session_factory, carnival)

    return _make_carnival


@pytest.fixture
def make_registration(session_factory):
    """Insert a registration row directly, bypassing the state machine."""

    async def _make_registration(
        carnival: Carnival,
        club: Club,
        status: ApprovalStatus = ApprovalStatus.PENDING,
        display_order: int = 1,
        is_paid: bool = False,
        approved_by: Optional[User] = None,
    ) -> CarnivalClub:
        registration = CarnivalClub(
            carnival_id=carnival.id,
            club_id=club.id,
            registration_date=FIXED_NOW,
            approval_status=status.value,
            approved_at=FIXED_NOW if status == ApprovalStatus.APPROVED else None,
            approved_by_user_id=approved_by.id if approved_by else None,
            rejection_reason="Full" if status == ApprovalStatus.REJECTED else None,
            display_order=display_order,
            is_paid=is_paid,
            payment_date=FIXED_NOW if is_paid else None,
            is_active=True,
        )
        return await _persist(session_factory, registration)

    return _make_registration


@pytest.fixture
def make_player(session_factory):
    async def _make_player(
        club: Club,
        first_name: str = "Wally",
        last_name: str = "Lewis",
        email: Optional[str] = None,
        date_of_birth: date = date(1975, 12, 1),
        is_active: bool = True,
    ) -> ClubPlayer:
        player = ClubPlayer(
            club_id=club.id,
            first_name=first_name,
            last_name=last_name,
            email=email or f"{first_name}.{last_name}@players.example".lower(),
            date_of_birth=date_of_birth,
            is_active=is_active,
        )
        return await _persist(session_factory, player)

    return _make_player


@pytest.fixture
def make_assignment(session_factory):
    async def _make_assignment(
        registration: CarnivalClub,
        player: ClubPlayer,
        attendance_status: AttendanceStatus = AttendanceStatus.CONFIRMED,
        is_active: bool = True,
    ) -> CarnivalClubPlayer:
        assignment = CarnivalClubPlayer(
            carnival_club_id=registration.id,
            club_player_id=player.id,
            attendance_status=attendance_status.value,
            added_at=FIXED_NOW,
            is_active=is_active,
        )
        return await _persist(session_factory, assignment)

    return _make_assignment
