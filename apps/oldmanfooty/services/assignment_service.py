"""
Player assignment: which players attend an approved registration.
"""

import logging
from typing import Dict, List, Optional, Sequence
from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import (
    ApprovalStatus,
    AttendanceStatus,
    CarnivalClub,
    CarnivalClubPlayer,
    ClubPlayer,
)
from oldmanfooty.services.club_service import is_club_delegate
from oldmanfooty.services.errors import (
    IllegalTransitionError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from oldmanfooty.services.locking import carnival_lock, lock_registration_row
from oldmanfooty.services.user_service import require_user
from oldmanfooty.utils.datetime_utils import utcnow, isoformat_or_none
from oldmanfooty.utils.validation import clean_str

logger = logging.getLogger(__name__)


def _assignment_to_dict(assignment: CarnivalClubPlayer, player: Optional[ClubPlayer] = None) -> Dict:
    data = {
        "id": assignment.id,
        "registration_id": assignment.carnival_club_id,
        "player_id": assignment.club_player_id,
        "attendance_status": assignment.attendance_status,
        "notes": assignment.notes,
        "added_at": isoformat_or_none(assignment.added_at),
        "is_active": assignment.is_active,
    }
    if player is not None:
        data.update(
            {
                "first_name": player.first_name,
                "last_name": player.last_name,
                "full_name": player.full_name,
                "shorts": player.shorts,
            }
        )
    return data


def validate_attendance_status(status: Optional[str]) -> str:
    try:
        return AttendanceStatus((status or "").strip().lower()).value
    except ValueError:
        raise ValidationError(
            f"Attendance status must be one of: {', '.join(s.value for s in AttendanceStatus)}"
        )


async def _registration_carnival_id(session: AsyncSession, registration_id: int) -> int:
    result = await session.execute(
        select(CarnivalClub.carnival_id).where(CarnivalClub.id == registration_id)
    )
    carnival_id = result.scalar_one_or_none()
    if carnival_id is None:
        raise NotFoundError("Registration not found")
    return carnival_id


async def attach_players(
    session: AsyncSession, user_id: int, registration_id: int, player_ids: Sequence[int]
) -> int:
    """
    Attach players to an approved registration as ``confirmed``.

    Players already actively assigned are skipped, and a previously detached
    assignment is reactivated, so repeating a call changes nothing. Returns
    the number of players newly attached.

    Raises:
        NotFoundError: No such registration
        NotAuthorizedError: User is not a delegate of the registered club
        IllegalTransitionError: Registration is not approved (or withdrawn)
        ValidationError: A player is unknown, inactive or from another club
    """
    carnival_id = await _registration_carnival_id(session, registration_id)

    # Registration status is guarded by the carnival lock
    async with carnival_lock(carnival_id):
        async with unit_of_work(session):
            registration = await lock_registration_row(session, registration_id)
            if registration is None:
                raise NotFoundError("Registration not found")
            user = await require_user(session, user_id)
            if not (user.is_admin or is_club_delegate(user, registration.club_id)):
                raise NotAuthorizedError("Only your club's delegates can assign players")
            if not registration.is_active or registration.approval_status != ApprovalStatus.APPROVED.value:
                raise IllegalTransitionError("Players can only be added to an approved registration")

            ordered_ids: List[int] = []
            for player_id in player_ids or []:
                if player_id not in ordered_ids:
                    ordered_ids.append(player_id)
            if not ordered_ids:
                return 0

            result = await session.execute(select(ClubPlayer).where(ClubPlayer.id.in_(ordered_ids)))
            players = {p.id: p for p in result.scalars().all()}
            for player_id in ordered_ids:
                player = players.get(player_id)
                if player is None:
                    raise ValidationError(f"Player {player_id} not found")
                if player.club_id != registration.club_id:
                    raise ValidationError(f"{player.full_name} is not a member of the registered club")
                if not player.is_active:
                    raise ValidationError(f"{player.full_name} is not an active player")

            existing_result = await session.execute(
                select(CarnivalClubPlayer).where(
                    and_(
                        CarnivalClubPlayer.carnival_club_id == registration.id,
                        CarnivalClubPlayer.club_player_id.in_(ordered_ids),
                    )
                )
            )
            existing = {a.club_player_id: a for a in existing_result.scalars().all()}

            attached = 0
            now = utcnow()
            for player_id in ordered_ids:
                assignment = existing.get(player_id)
                if assignment is not None and assignment.is_active:
                    continue
                if assignment is not None:
                    assignment.is_active = True
                    assignment.attendance_status = AttendanceStatus.CONFIRMED.value
                    assignment.added_at = now
                else:
                    session.add(
                        CarnivalClubPlayer(
                            carnival_club_id=registration.id,
                            club_player_id=player_id,
                            attendance_status=AttendanceStatus.CONFIRMED.value,
                            added_at=now,
                            is_active=True,
                        )
                    )
                attached += 1

    logger.info("Attached %d player(s) to registration %d", attached, registration_id)
    return attached


async def _load_assignment(session: AsyncSession, assignment_id: int) -> CarnivalClubPlayer:
    result = await session.execute(
        select(CarnivalClubPlayer)
        .where(CarnivalClubPlayer.id == assignment_id)
        .execution_options(populate_existing=True)
    )
    assignment = result.scalar_one_or_none()
    if assignment is None or not assignment.is_active:
        raise NotFoundError("Assignment not found")
    return assignment


async def _require_assignment_editor(session: AsyncSession, user_id: int, assignment: CarnivalClubPlayer) -> None:
    result = await session.execute(
        select(CarnivalClub.club_id).where(CarnivalClub.id == assignment.carnival_club_id)
    )
    club_id = result.scalar_one()
    user = await require_user(session, user_id)
    if not (user.is_admin or is_club_delegate(user, club_id)):
        raise NotAuthorizedError("Only your club's delegates can change this assignment")


async def detach_player(session: AsyncSession, user_id: int, assignment_id: int) -> bool:
    """Soft-delete an assignment."""
    async with unit_of_work(session):
        assignment = await _load_assignment(session, assignment_id)
        await _require_assignment_editor(session, user_id, assignment)
        assignment.is_active = False
    logger.info("Assignment %d detached by user %d", assignment_id, user_id)
    return True


async def set_attendance_status(
    session: AsyncSession,
    user_id: int,
    assignment_id: int,
    status: str,
    notes: Optional[str] = None,
) -> Dict:
    """Move an assignment between confirmed, tentative and unavailable."""
    status = validate_attendance_status(status)
    async with unit_of_work(session):
        assignment = await _load_assignment(session, assignment_id)
        await _require_assignment_editor(session, user_id, assignment)
        assignment.attendance_status = status
        if notes is not None:
            assignment.notes = clean_str(notes)
    return _assignment_to_dict(assignment)


async def get_attendance_stats(session: AsyncSession, registration_id: int) -> Dict[str, int]:
    """Active assignments per attendance status, plus the total."""
    result = await session.execute(
        select(CarnivalClubPlayer.attendance_status, func.count(CarnivalClubPlayer.id))
        .where(
            and_(
                CarnivalClubPlayer.carnival_club_id == registration_id,
                CarnivalClubPlayer.is_active.is_(True),
            )
        )
        .group_by(CarnivalClubPlayer.attendance_status)
    )
    stats = {status.value: 0 for status in AttendanceStatus}
    for status, count in result.all():
        stats[status] = count
    stats["total"] = sum(stats[s.value] for s in AttendanceStatus)
    return stats


async def list_assignments(session: AsyncSession, registration_id: int) -> Dict:
    """Players attached to a registration, by surname, with attendance stats."""
    result = await session.execute(
        select(CarnivalClubPlayer, ClubPlayer)
        .join(ClubPlayer, ClubPlayer.id == CarnivalClubPlayer.club_player_id)
        .where(
            and_(
                CarnivalClubPlayer.carnival_club_id == registration_id,
                CarnivalClubPlayer.is_active.is_(True),
            )
        )
        .order_by(ClubPlayer.last_name, ClubPlayer.first_name, CarnivalClubPlayer.id)
    )
    players = [_assignment_to_dict(assignment, player) for assignment, player in result.all()]
    return {"players": players, "stats": await get_attendance_stats(session, registration_id)}
