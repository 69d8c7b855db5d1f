"""
Email subscriptions to carnival announcements, filtered by state.
"""

import logging
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.db import unit_of_work
from oldmanfooty.database.models import EmailSubscription
from oldmanfooty.services import auth_service
from oldmanfooty.services.errors import NotFoundError
from oldmanfooty.utils.datetime_utils import utcnow, isoformat_or_none
from oldmanfooty.utils.validation import clean_str, require_email, validate_state, validate_states

logger = logging.getLogger(__name__)


def _subscription_to_dict(subscription: EmailSubscription) -> Dict:
    return {
        "id": subscription.id,
        "email": subscription.email,
        "states": list(subscription.states or []),
        "is_active": subscription.is_active,
        "source": subscription.source,
        "subscribed_at": isoformat_or_none(subscription.subscribed_at),
        "unsubscribed_at": isoformat_or_none(subscription.unsubscribed_at),
    }


async def get_subscription_by_email(session: AsyncSession, email: str) -> Optional[EmailSubscription]:
    result = await session.execute(
        select(EmailSubscription)
        .where(EmailSubscription.email == email)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def subscribe(
    session: AsyncSession, email: str, states: Iterable[str], source: str = "homepage"
) -> Dict:
    """
    Subscribe an email to announcements for ``states``.

    An existing row is updated in place; an unsubscribed row is reactivated
    with ``unsubscribed_at`` cleared.

    Raises:
        ValidationError: Bad email or no valid states
    """
    email = require_email(email)
    states = validate_states(states)
    source = clean_str(source) or "homepage"

    for attempt in range(2):
        try:
            async with unit_of_work(session):
                subscription = await get_subscription_by_email(session, email)
                if subscription is None:
                    subscription = EmailSubscription(
                        email=email,
                        unsubscribe_token=auth_service.generate_token(),
                        subscribed_at=utcnow(),
                    )
                    session.add(subscription)
                elif not subscription.is_active:
                    subscription.subscribed_at = utcnow()
                subscription.states = states
                subscription.source = source
                subscription.is_active = True
                subscription.unsubscribed_at = None
            break
        except IntegrityError:
            # Concurrent first subscription for the same email; update that row instead
            if attempt:
                raise

    logger.info("Subscription for %s now covers %s", email, ",".join(states))
    return _subscription_to_dict(subscription)


async def unsubscribe(session: AsyncSession, token: str) -> Dict:
    """
    Deactivate the subscription owning ``token``. Idempotent.

    Raises:
        NotFoundError: Unknown token
    """
    token = clean_str(token)
    if not token:
        raise NotFoundError("Subscription not found")
    async with unit_of_work(session):
        result = await session.execute(
            select(EmailSubscription)
            .where(EmailSubscription.unsubscribe_token == token)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Subscription not found")
        if subscription.is_active:
            subscription.is_active = False
            subscription.unsubscribed_at = utcnow()

    logger.info("Subscription %d unsubscribed", subscription.id)
    return _subscription_to_dict(subscription)


async def unsubscribe_email(session: AsyncSession, email: str) -> Dict:
    """Deactivate by email address (admin use)."""
    email = require_email(email)
    subscription = await get_subscription_by_email(session, email)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return await unsubscribe(session, subscription.unsubscribe_token)


async def find_by_state(session: AsyncSession, state: str) -> List[Dict]:
    """Active subscriptions interested in ``state``."""
    state = validate_state(state, required=True)
    result = await session.execute(
        select(EmailSubscription)
        .where(EmailSubscription.is_active.is_(True))
        .order_by(EmailSubscription.email)
    )
    return [_subscription_to_dict(s) for s in result.scalars().all() if s.includes_state(state)]
