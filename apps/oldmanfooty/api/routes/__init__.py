"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, envelope responses) lives here; every
sub-router imports what it needs from this package.
"""

import os
from typing import Dict

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from oldmanfooty.services.errors import ErrorKind

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# ---------------------------------------------------------------------------
# Envelope -> HTTP response
# ---------------------------------------------------------------------------
STATUS_BY_KIND = {
    ErrorKind.VALIDATION.value: 400,
    ErrorKind.INVALID_CREDENTIALS.value: 401,
    ErrorKind.INVALID_OR_EXPIRED_TOKEN.value: 401,
    ErrorKind.NOT_AUTHORIZED.value: 403,
    ErrorKind.NOT_FOUND.value: 404,
}
CONFLICT_STATUS = 409


def envelope_response(envelope: Dict, success_status: int = 200) -> JSONResponse:
    """Serialise an engine envelope, choosing the status code from its error kind."""
    if envelope.get("success"):
        status_code = success_status
    else:
        status_code = STATUS_BY_KIND.get(envelope.get("errorKind"), CONFLICT_STATUS)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from oldmanfooty.api.routes.auth import router as auth_router  # noqa: E402
from oldmanfooty.api.routes.clubs import router as clubs_router  # noqa: E402
from oldmanfooty.api.routes.carnivals import router as carnivals_router  # noqa: E402
from oldmanfooty.api.routes.registrations import router as registrations_router  # noqa: E402
from oldmanfooty.api.routes.players import router as players_router  # noqa: E402
from oldmanfooty.api.routes.subscriptions import router as subscriptions_router  # noqa: E402

router = APIRouter()
router.include_router(auth_router)
router.include_router(clubs_router)
router.include_router(carnivals_router)
router.include_router(registrations_router)
router.include_router(players_router)
router.include_router(subscriptions_router)
