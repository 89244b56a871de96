"""Delivery selector — which deliveries are due, and the worker claim/lease step."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import get_settings
from hookrelay.models import utcnow
from hookrelay.models.webhook import DeliveryStatus, WebhookDelivery, WebhookEndpoint

logger = logging.getLogger(__name__)


def due_filter(now: datetime):
    """PENDING, or RETRYING with a retry time that has passed."""
    return or_(
        WebhookDelivery.status == DeliveryStatus.PENDING.value,
        and_(
            WebhookDelivery.status == DeliveryStatus.RETRYING.value,
            WebhookDelivery.next_retry_at <= now,
        ),
    )


def lease_free_filter(now: datetime, lease_seconds: int):
    expired = now - timedelta(seconds=lease_seconds)
    return or_(WebhookDelivery.claimed_at.is_(None), WebhookDelivery.claimed_at < expired)


def eligible_endpoint_ids():
    return select(WebhookEndpoint.id).where(
        WebhookEndpoint.active.is_(True),
        WebhookEndpoint.disabled_at.is_(None),
        WebhookEndpoint.deleted_at.is_(None),
    )


async def needs_delivery(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[WebhookDelivery]:
    """All deliveries due for an attempt, oldest first. Read only."""
    now = now or utcnow()
    stmt = select(WebhookDelivery).where(due_filter(now)).order_by(WebhookDelivery.created_at)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def claim(
    db: AsyncSession,
    delivery_id: str,
    worker_id: str,
    now: Optional[datetime] = None,
    lease_seconds: Optional[int] = None,
) -> Optional[WebhookDelivery]:
    """Take the lease on a due delivery. Returns None if another worker holds it
    or the delivery is no longer due."""
    now = now or utcnow()
    if lease_seconds is None:
        lease_seconds = get_settings().claim_lease_seconds

    result = await db.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            due_filter(now),
            lease_free_filter(now, lease_seconds),
        )
        .values(claimed_by=worker_id, claimed_at=now, version=WebhookDelivery.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.debug(f"Worker {worker_id} lost claim on delivery {delivery_id}")
        return None
    return await db.get(WebhookDelivery, delivery_id, populate_existing=True)


async def claim_due(
    db: AsyncSession,
    worker_id: str,
    limit: int = 100,
    now: Optional[datetime] = None,
    skip_inactive: bool = True,
    lease_seconds: Optional[int] = None,
) -> list[WebhookDelivery]:
    """Claim up to ``limit`` due deliveries for ``worker_id``."""
    now = now or utcnow()
    if lease_seconds is None:
        lease_seconds = get_settings().claim_lease_seconds

    stmt = select(WebhookDelivery.id).where(
        due_filter(now), lease_free_filter(now, lease_seconds)
    )
    if skip_inactive:
        # Deliveries of a disabled endpoint stay queued until it is re-enabled
        stmt = stmt.where(WebhookDelivery.endpoint_id.in_(eligible_endpoint_ids()))
    stmt = stmt.order_by(WebhookDelivery.created_at).limit(limit)
    candidate_ids = list((await db.execute(stmt)).scalars().all())

    claimed = []
    for delivery_id in candidate_ids:
        delivery = await claim(db, delivery_id, worker_id, now=now, lease_seconds=lease_seconds)
        if delivery is not None:
            claimed.append(delivery)
    if claimed:
        logger.info(f"Worker {worker_id} claimed {len(claimed)} deliveries")
    return claimed
