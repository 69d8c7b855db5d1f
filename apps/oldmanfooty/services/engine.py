"""
Envelope facade over the registration engine.

Each operation returns either ``{"success": True, "data": ...}`` or
``{"success": False, "message": ..., "errorKind": ...}``. Domain errors are
caught here after the session is rolled back; anything else propagates.
Notification outcomes are moved out of ``data`` into ``details``.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.services import (
    assignment_service,
    carnival_service,
    registration_service,
)
from oldmanfooty.services.errors import EngineError

logger = logging.getLogger(__name__)


def success(data: Any = None) -> Dict:
    envelope = {"success": True, "data": data}
    if isinstance(data, dict) and "notifications" in data:
        data = dict(data)
        envelope["details"] = {"notifications": data.pop("notifications")}
        envelope["data"] = data
    return envelope


def failure(error: EngineError) -> Dict:
    return {"success": False, "message": error.message, "errorKind": error.kind.value}


async def run(
    session: AsyncSession,
    operation: Callable[..., Awaitable[Any]],
    *args,
    result: Optional[Callable[[Any], Any]] = None,
    **kwargs,
) -> Dict:
    """
    Call ``operation(session, *args, **kwargs)`` and wrap the outcome.

    ``result`` maps the operation's return value to the envelope's ``data``.
    """
    try:
        value = await operation(session, *args, **kwargs)
    except EngineError as e:
        await session.rollback()
        logger.info("%s failed: %s (%s)", operation.__name__, e.message, e.kind.value)
        return failure(e)
    return success(result(value) if result else value)


def _ok(_value) -> None:
    return None


async def register_club_for_carnival(
    session: AsyncSession, carnival_id: int, acting_user_id: int, payload: Optional[Mapping] = None
) -> Dict:
    return await run(
        session, registration_service.register_club_for_carnival, acting_user_id, carnival_id, payload
    )


async def host_add_club(
    session: AsyncSession,
    carnival_id: int,
    acting_user_id: int,
    club_id: int,
    payload: Optional[Mapping] = None,
) -> Dict:
    return await run(
        session, registration_service.host_add_club, acting_user_id, carnival_id, club_id, payload
    )


async def approve_registration(session: AsyncSession, registration_id: int, acting_user_id: int) -> Dict:
    return await run(session, registration_service.approve_registration, acting_user_id, registration_id)


async def reject_registration(
    session: AsyncSession, registration_id: int, acting_user_id: int, reason: Optional[str] = None
) -> Dict:
    return await run(
        session, registration_service.reject_registration, acting_user_id, registration_id, reason
    )


async def withdraw_registration(session: AsyncSession, registration_id: int, acting_user_id: int) -> Dict:
    return await run(
        session, registration_service.withdraw_registration, acting_user_id, registration_id, result=_ok
    )


async def reorder_registrations(
    session: AsyncSession, carnival_id: int, acting_user_id: int, ordered_ids: Sequence[int]
) -> Dict:
    return await run(
        session,
        registration_service.reorder_registrations,
        acting_user_id,
        carnival_id,
        ordered_ids,
        result=_ok,
    )


async def attach_players(
    session: AsyncSession, registration_id: int, acting_user_id: int, player_ids: Sequence[int]
) -> Dict:
    return await run(
        session, assignment_service.attach_players, acting_user_id, registration_id, player_ids
    )


async def set_attendance_status(
    session: AsyncSession,
    assignment_id: int,
    acting_user_id: int,
    status: str,
    notes: Optional[str] = None,
) -> Dict:
    return await run(
        session,
        assignment_service.set_attendance_status,
        acting_user_id,
        assignment_id,
        status,
        notes,
        result=_ok,
    )


async def claim_carnival(
    session: AsyncSession,
    carnival_id: int,
    acting_user_id: int,
    acting_club_id: Optional[int] = None,
    payload: Optional[Mapping] = None,
) -> Dict:
    return await run(
        session, carnival_service.claim_carnival, acting_user_id, carnival_id, acting_club_id, payload
    )


async def ingest_scraped_carnival(session: AsyncSession, external_id: str, fields: Mapping) -> Dict:
    return await run(session, carnival_service.ingest_scraped_carnival, external_id, fields)
