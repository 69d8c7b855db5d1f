"""Player roster and player assignment route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import get_current_user_id, require_admin
from oldmanfooty.api.routes import envelope_response
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import (
    AttachPlayersRequest,
    AttendanceUpdate,
    MovePlayerRequest,
    PlayerCreate,
    PlayerUpdate,
)
from oldmanfooty.services import assignment_service, engine, player_service
from oldmanfooty.services.club_service import require_club_member

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


async def _list_roster(session: AsyncSession, user_id: int, club_id: int, **options):
    await require_club_member(session, user_id, club_id)
    return await player_service.list_players(session, club_id, **options)


@router.get("/api/clubs/{club_id}/players")
async def list_players(
    club_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(player_service.DEFAULT_PAGE_SIZE, ge=1, le=player_service.MAX_PAGE_SIZE),
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, description="firstName or lastName"),
    sort_order: str = "asc",
    include_inactive: bool = False,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        _list_roster,
        user_id,
        club_id,
        page=page,
        page_size=page_size,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        include_inactive=include_inactive,
    )
    return envelope_response(envelope)


@router.post("/api/clubs/{club_id}/players")
async def create_player(
    club_id: int,
    payload: PlayerCreate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, player_service.create_player, user_id, club_id, payload.model_dump()
    )
    return envelope_response(envelope, success_status=201)


@router.patch("/api/players/{player_id}")
async def update_player(
    player_id: int,
    payload: PlayerUpdate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        player_service.update_player,
        user_id,
        player_id,
        payload.model_dump(exclude_unset=True),
    )
    return envelope_response(envelope)


@router.post("/api/players/{player_id}/deactivate")
async def deactivate_player(
    player_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, player_service.deactivate_player, user_id, player_id)
    return envelope_response(envelope)


@router.post("/api/players/{player_id}/reactivate")
async def reactivate_player(
    player_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, player_service.reactivate_player, user_id, player_id)
    return envelope_response(envelope)


@router.post("/api/admin/players/{player_id}/move")
async def move_player(
    player_id: int,
    payload: MovePlayerRequest,
    admin_id: int = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, player_service.move_player_to_club, admin_id, player_id, payload.club_id
    )
    return envelope_response(envelope)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


@router.get("/api/registrations/{registration_id}/players")
async def list_assignments(
    registration_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Players attached to a registration with attendance statistics."""
    envelope = await engine.run(session, assignment_service.list_assignments, registration_id)
    return envelope_response(envelope)


@router.post("/api/registrations/{registration_id}/players")
async def attach_players(
    registration_id: int,
    payload: AttachPlayersRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.attach_players(session, registration_id, user_id, payload.player_ids)
    return envelope_response(envelope)


@router.delete("/api/assignments/{assignment_id}")
async def detach_player(
    assignment_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, assignment_service.detach_player, user_id, assignment_id)
    return envelope_response(envelope)


@router.put("/api/assignments/{assignment_id}/attendance")
async def set_attendance_status(
    assignment_id: int,
    payload: AttendanceUpdate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.set_attendance_status(
        session, assignment_id, user_id, payload.status, payload.notes
    )
    return envelope_response(envelope)
