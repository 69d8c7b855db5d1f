"""Carnival registry route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import get_current_user_id, require_admin
from oldmanfooty.api.routes import envelope_response
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import (
    BroadcastRequest,
    CarnivalCreate,
    CarnivalFields,
    ClaimCarnivalRequest,
    MergeCarnivalRequest,
    ScrapedCarnivalRequest,
)
from oldmanfooty.services import carnival_service, engine, registration_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/carnivals")
async def list_carnivals(
    state: Optional[str] = None,
    upcoming_only: bool = True,
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, carnival_service.list_carnivals, state=state, upcoming_only=upcoming_only
    )
    return envelope_response(envelope)


@router.get("/api/carnivals/{carnival_id}")
async def get_carnival(
    carnival_id: int,
    session: AsyncSession = Depends(get_db_session),
):
    """Carnival with approved/pending counts and whether registration is open."""
    envelope = await engine.run(session, carnival_service.get_carnival_summary, carnival_id)
    return envelope_response(envelope)


@router.post("/api/carnivals")
async def create_carnival(
    payload: CarnivalCreate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, carnival_service.create_carnival, user_id, payload.model_dump(exclude_unset=True)
    )
    return envelope_response(envelope, success_status=201)


@router.patch("/api/carnivals/{carnival_id}")
async def update_carnival(
    carnival_id: int,
    payload: CarnivalFields,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        carnival_service.update_carnival,
        user_id,
        carnival_id,
        payload.model_dump(exclude_unset=True),
    )
    return envelope_response(envelope)


@router.delete("/api/carnivals/{carnival_id}")
async def delete_carnival(
    carnival_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, carnival_service.delete_carnival, user_id, carnival_id)
    return envelope_response(envelope)


@router.post("/api/carnivals/{carnival_id}/claim")
async def claim_carnival(
    carnival_id: int,
    payload: ClaimCarnivalRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Claim a scraped carnival for the caller's club (admins may name a club)."""
    fields = payload.model_dump(exclude_unset=True)
    acting_club_id = fields.pop("club_id", None)
    envelope = await engine.claim_carnival(session, carnival_id, user_id, acting_club_id, fields)
    return envelope_response(envelope)


@router.post("/api/carnivals/{carnival_id}/release")
async def release_carnival(
    carnival_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, carnival_service.release_ownership, user_id, carnival_id)
    return envelope_response(envelope)


@router.post("/api/carnivals/{carnival_id}/merge")
async def merge_carnival(
    carnival_id: int,
    payload: MergeCarnivalRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Merge this scraped carnival into a manual carnival the caller hosts."""
    envelope = await engine.run(
        session, carnival_service.merge_carnival, user_id, carnival_id, payload.target_carnival_id
    )
    return envelope_response(envelope)


@router.post("/api/carnivals/{carnival_id}/broadcast")
async def broadcast_to_attendees(
    carnival_id: int,
    payload: BroadcastRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Email every approved attending club."""
    envelope = await engine.run(
        session,
        registration_service.broadcast_to_attendees,
        user_id,
        carnival_id,
        payload.subject,
        payload.message,
    )
    return envelope_response(envelope)


# ---------------------------------------------------------------------------
# Scraper / maintenance endpoints (admin)
# ---------------------------------------------------------------------------


@router.post("/api/admin/carnivals/scraped")
async def ingest_scraped_carnival(
    payload: ScrapedCarnivalRequest,
    admin_id: int = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    fields = payload.model_dump(exclude_unset=True)
    external_id = fields.pop("external_id")
    envelope = await engine.ingest_scraped_carnival(session, external_id, fields)
    return envelope_response(envelope)


@router.post("/api/admin/carnivals/deactivate-past")
async def deactivate_past_carnivals(
    admin_id: int = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, carnival_service.deactivate_past_carnivals)
    return envelope_response(envelope)
