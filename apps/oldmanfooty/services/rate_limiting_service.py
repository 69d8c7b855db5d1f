"""
Rate limiting service for the public subscription endpoints.

Holds at most one entry per client IP (the time of its last accepted
submission) in process memory. Entries older than the interval are purged
on every check, so the table stays bounded by the number of IPs seen in one
interval. This is an anti-abuse optimisation only; nothing depends on it
for correctness.
"""

import os
import time
from typing import Callable, Dict, Optional
from fastapi import HTTPException, Request
from slowapi.util import get_remote_address

SUBSCRIBE_MIN_INTERVAL_SECONDS = float(os.getenv("SUBSCRIBE_MIN_INTERVAL_SECONDS", "60"))

# In-memory storage: client IP -> last submission timestamp
_ip_rate_limit_storage: Dict[str, float] = {}

_clock: Callable[[], float] = time.monotonic


def reset_ip_rate_limit_storage():
    """Reset the IP rate limit storage. Useful for testing."""
    _ip_rate_limit_storage.clear()


def set_clock(clock: Optional[Callable[[], float]]) -> None:
    """Replace the monotonic clock (None restores ``time.monotonic``)."""
    global _clock
    _clock = clock or time.monotonic


def _purge_expired(now: float, interval: float) -> None:
    expired = [ip for ip, last in _ip_rate_limit_storage.items() if now - last >= interval]
    for ip in expired:
        del _ip_rate_limit_storage[ip]


def check_ip_rate_limit(client_ip: str, interval: Optional[float] = None) -> bool:
    """
    Record a submission from ``client_ip``.

    Returns False (and records nothing) when the same IP submitted less than
    ``interval`` seconds ago.
    """
    interval = SUBSCRIBE_MIN_INTERVAL_SECONDS if interval is None else interval
    now = _clock()
    _purge_expired(now, interval)

    if client_ip in _ip_rate_limit_storage:
        return False
    _ip_rate_limit_storage[client_ip] = now
    return True


async def enforce_subscription_rate_limit(request: Request, interval: Optional[float] = None):
    """
    Check the per-IP limit for a request.

    Raises:
        HTTPException: With status code 429 if the IP submitted too recently
    """
    client_ip = get_remote_address(request) or "unknown"
    if not check_ip_rate_limit(client_ip, interval):
        raise HTTPException(
            status_code=429,
            detail="Too many subscription requests. Please try again later.",
        )


def tracked_ip_count() -> int:
    return len(_ip_rate_limit_storage)
