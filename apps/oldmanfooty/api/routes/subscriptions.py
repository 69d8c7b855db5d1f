"""Public email subscription route handlers."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.api.auth_dependencies import require_admin
from oldmanfooty.api.routes import envelope_response
from oldmanfooty.database.db import get_db_session
from oldmanfooty.models.schemas import SubscribeRequest
from oldmanfooty.services import engine, rate_limiting_service, subscription_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/subscriptions")
async def subscribe(
    request: Request,
    payload: SubscribeRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Subscribe to carnival announcements (one submission per IP per interval)."""
    await rate_limiting_service.enforce_subscription_rate_limit(request)
    envelope = await engine.run(
        session,
        subscription_service.subscribe,
        payload.email,
        payload.states,
        payload.source or "homepage",
    )
    return envelope_response(envelope, success_status=201)


@router.get("/api/subscriptions/unsubscribe/{token}")
async def unsubscribe(
    token: str,
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, subscription_service.unsubscribe, token)
    return envelope_response(envelope)


@router.get("/api/admin/subscriptions/{state}")
async def find_subscriptions_by_state(
    state: str,
    admin_id: int = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    envelope = await engine.run(session, subscription_service.find_by_state, state)
    return envelope_response(envelope)
