"""Carnival registration route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import get_current_user_id
from oldmanfooty.api.routes import envelope_response
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import (
    HostAddClubRequest,
    PaymentUpdate,
    RegistrationDetails,
    RejectRegistrationRequest,
    ReorderRequest,
)
from oldmanfooty.services import engine, registration_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/carnivals/{carnival_id}/registrations")
async def list_registrations(
    carnival_id: int,
    status: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session, registration_service.list_registrations, carnival_id, status=status
    )
    return envelope_response(envelope)


@router.post("/api/carnivals/{carnival_id}/registrations")
async def register_club_for_carnival(
    carnival_id: int,
    payload: RegistrationDetails,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Register the caller's club (pending until the host approves)."""
    envelope = await engine.register_club_for_carnival(
        session, carnival_id, user_id, payload.model_dump(exclude_unset=True)
    )
    return envelope_response(envelope, success_status=201)


@router.post("/api/carnivals/{carnival_id}/registrations/host-add")
async def host_add_club(
    carnival_id: int,
    payload: HostAddClubRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Host adds a club directly as approved."""
    details = payload.model_dump(exclude_unset=True)
    club_id = details.pop("club_id")
    envelope = await engine.host_add_club(session, carnival_id, user_id, club_id, details)
    return envelope_response(envelope, success_status=201)


@router.put("/api/carnivals/{carnival_id}/registrations/order")
async def reorder_registrations(
    carnival_id: int,
    payload: ReorderRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.reorder_registrations(session, carnival_id, user_id, payload.ordered_ids)
    return envelope_response(envelope)


@router.post("/api/registrations/{registration_id}/approve")
async def approve_registration(
    registration_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.approve_registration(session, registration_id, user_id)
    return envelope_response(envelope)


@router.post("/api/registrations/{registration_id}/reject")
async def reject_registration(
    registration_id: int,
    payload: RejectRegistrationRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.reject_registration(session, registration_id, user_id, payload.reason)
    return envelope_response(envelope)


@router.post("/api/registrations/{registration_id}/resubmit")
async def resubmit_registration(
    registration_id: int,
    payload: RegistrationDetails,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        registration_service.resubmit_registration,
        user_id,
        registration_id,
        payload.model_dump(exclude_unset=True),
    )
    return envelope_response(envelope)


@router.delete("/api/registrations/{registration_id}")
async def withdraw_registration(
    registration_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.withdraw_registration(session, registration_id, user_id)
    return envelope_response(envelope)


@router.put("/api/registrations/{registration_id}/payment")
async def update_payment(
    registration_id: int,
    payload: PaymentUpdate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        registration_service.update_payment,
        user_id,
        registration_id,
        payload.is_paid,
        payload.payment_amount,
    )
    return envelope_response(envelope)
