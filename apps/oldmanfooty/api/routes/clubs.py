"""Club route handlers."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import get_current_user_id, require_admin
from oldmanfooty.api.routes import envelope_response
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import AlternateNameRequest, ClubCreate, ProxyClubCreate
from oldmanfooty.services import club_service, engine, user_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/clubs")
async def create_club(
    payload: ClubCreate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a club; the caller becomes its primary delegate."""
    envelope = await engine.run(
        session, club_service.create_club, user_id, **payload.model_dump()
    )
    return envelope_response(envelope, success_status=201)


@router.post("/api/admin/clubs/proxy")
async def create_proxy_club(
    payload: ProxyClubCreate,
    admin_id: int = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, club_service.create_proxy_club, admin_id, **payload.model_dump()
    )
    return envelope_response(envelope, success_status=201)


@router.post("/api/clubs/{club_id}/deactivate")
async def deactivate_club(
    club_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, club_service.deactivate_club, user_id, club_id)
    return envelope_response(envelope)


@router.post("/api/clubs/{club_id}/reactivate")
async def reactivate_club(
    club_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, club_service.reactivate_club, user_id, club_id)
    return envelope_response(envelope)


@router.get("/api/clubs/{club_id}/delegates")
async def list_delegates(
    club_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, user_service.get_club_delegates, club_id)
    return envelope_response(envelope)


@router.get("/api/clubs/{club_id}/alternate-names")
async def list_alternate_names(
    club_id: int,
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, club_service.list_alternate_names, club_id)
    return envelope_response(envelope)


@router.post("/api/clubs/{club_id}/alternate-names")
async def add_alternate_name(
    club_id: int,
    payload: AlternateNameRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, club_service.add_alternate_name, user_id, club_id, payload.alternate_name
    )
    return envelope_response(envelope)


@router.delete("/api/clubs/{club_id}/alternate-names/{alternate_name}")
async def remove_alternate_name(
    club_id: int,
    alternate_name: str,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, club_service.remove_alternate_name, user_id, club_id, alternate_name
    )
    return envelope_response(envelope)
