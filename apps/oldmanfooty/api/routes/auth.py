"""Authentication and delegate management route handlers."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import get_current_user_id
from oldmanfooty.api.routes import envelope_response, limiter
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import (
    AcceptInvitationRequest,
    InviteDelegateRequest,
    LoginRequest,
    RegisterUserRequest,
    TransferPrimaryDelegateRequest,
)
from oldmanfooty.services import engine, user_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/auth/register")
@limiter.limit("5/minute")
async def register(
    request: Request,
    payload: RegisterUserRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Create an account (claims a proxy club whose contact email matches)."""
    envelope = await engine.run(
        session,
        user_service.register_user,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password=payload.password,
        phone_number=payload.phone_number,
    )
    return envelope_response(envelope, success_status=201)


@router.post("/api/auth/login")
@limiter.limit("10/minute")
async def login(
    request: Request,
    payload: LoginRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Check credentials; the session middleware stores the returned user id."""
    envelope = await engine.run(session, user_service.authenticate, payload.email, payload.password)
    return envelope_response(envelope)


@router.post("/api/auth/invitations")
async def invite_delegate(
    payload: InviteDelegateRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Invite a delegate to the caller's club (primary delegate only)."""
    envelope = await engine.run(
        session,
        user_service.invite_delegate,
        user_id,
        payload.email,
        payload.first_name,
        payload.last_name,
    )
    return envelope_response(envelope, success_status=201)


@router.post("/api/auth/invitation/{token}")
async def accept_invitation(
    token: str,
    payload: AcceptInvitationRequest,
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(
        session,
        user_service.accept_invitation,
        token,
        payload.first_name,
        payload.last_name,
        payload.password,
    )
    return envelope_response(envelope)


@router.post("/api/clubs/primary-delegate")
async def transfer_primary_delegate(
    payload: TransferPrimaryDelegateRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Hand the primary delegate role to another delegate of the club."""
    envelope = await engine.run(
        session, user_service.transfer_primary_delegate, user_id, payload.new_primary_user_id
    )
    return envelope_response(envelope)
