"""Delivery ledger service — creates deliveries, records outcomes, builds signed requests."""

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hookrelay.config import get_settings
from hookrelay.models import utcnow
from hookrelay.models.webhook import (
    DeliveryStatus,
    EventType,
    WebhookDelivery,
    WebhookEndpoint,
)
from hookrelay.services import signature
from hookrelay.services.endpoint_registry import EndpointRegistry

logger = logging.getLogger(__name__)


@dataclass
class SignedRequest:
    """Everything a worker needs for the POST. ``body`` must be sent unmodified."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    method: str = "POST"
    timeout: float = field(default_factory=lambda: get_settings().webhook_timeout_seconds)


def build_signed_request(
    delivery: WebhookDelivery,
    endpoint: WebhookEndpoint,
    timestamp: Optional[int] = None,
) -> SignedRequest:
    body = delivery.body
    timestamp = int(utcnow().timestamp()) if timestamp is None else int(timestamp)
    headers = {
        "Content-Type": "application/json",
        signature.EVENT_HEADER: delivery.event_type,
        signature.DELIVERY_ID_HEADER: delivery.id,
        signature.SIGNATURE_HEADER: signature.sign(body, endpoint.secret),
        signature.TIMESTAMP_HEADER: str(timestamp),
        signature.TIMESTAMPED_SIGNATURE_HEADER: signature.sign_with_timestamp(body, endpoint.secret, timestamp),
        signature.ATTEMPT_HEADER: str(delivery.attempt),
    }
    return SignedRequest(url=endpoint.url, headers=headers, body=body)


class DeliveryService:
    """Owns the delivery state machine and its endpoint-health side effects."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.registry = EndpointRegistry(db)

    async def create_for_event(
        self,
        endpoint: WebhookEndpoint,
        event_type: Union[EventType, str],
        data: dict,
        workspace_id: Optional[int],
    ) -> WebhookDelivery:
        delivery = WebhookDelivery.for_event(endpoint, event_type, data, workspace_id)
        self.db.add(delivery)
        await self.db.commit()
        logger.info(
            f"Delivery {delivery.id} queued: {delivery.event_type} -> endpoint {endpoint.id}"
        )
        return delivery

    async def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return await self.db.get(WebhookDelivery, delivery_id)

    async def _endpoint_for(self, delivery: WebhookDelivery) -> Optional[WebhookEndpoint]:
        return await self.db.get(WebhookEndpoint, delivery.endpoint_id)

    async def _flush_delivery(self, delivery: WebhookDelivery):
        """Write the delivery's new state, or fail if another session changed it first.

        On conflict the session is rolled back and ``delivery`` is reloaded
        with the stored state.
        """
        delivery_id = delivery.id
        try:
            await self.db.flush()
        except StaleDataError as exc:
            await self.db.rollback()
            await self.db.refresh(delivery)
            logger.warning(f"Delivery {delivery_id} changed concurrently; outcome discarded")
            raise ValueError(
                f"Delivery {delivery_id} was updated by another worker (now {delivery.status})"
            ) from exc

    async def mark_success(
        self,
        delivery: WebhookDelivery,
        response_code: Optional[int],
        response_body: Optional[str] = None,
    ) -> WebhookDelivery:
        now = utcnow()
        delivery.apply_success(response_code, response_body, now=now)
        await self._flush_delivery(delivery)
        endpoint = await self._endpoint_for(delivery)
        if endpoint is not None:
            await self.registry.record_success(endpoint, now=now, commit=False)
        await self.db.commit()
        logger.info(f"Delivery {delivery.id} succeeded on attempt {delivery.attempt} ({response_code})")
        return delivery

    async def mark_failed(
        self,
        delivery: WebhookDelivery,
        response_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> WebhookDelivery:
        """Record a failed attempt.

        Every failure counts against the endpoint, whether or not the
        delivery itself has attempts left. A report that loses to a
        concurrent outcome or claim raises ValueError and counts nothing.
        """
        now = utcnow()
        delivery.apply_failure(response_code, response_body, now=now)
        await self._flush_delivery(delivery)
        endpoint = await self._endpoint_for(delivery)
        if endpoint is not None:
            await self.registry.record_failure(endpoint, now=now, commit=False)
        await self.db.commit()
        if delivery.status == DeliveryStatus.FAILED.value:
            logger.info(f"Delivery {delivery.id} failed permanently after {delivery.attempt} attempts")
        else:
            logger.info(
                f"Delivery {delivery.id} will retry (attempt {delivery.attempt} at "
                f"{delivery.next_retry_at.isoformat()})"
            )
        return delivery

    async def get_signed_delivery_request(
        self,
        delivery: WebhookDelivery,
        timestamp: Optional[int] = None,
    ) -> SignedRequest:
        endpoint = await self._endpoint_for(delivery)
        if endpoint is None:
            raise ValueError(f"Endpoint {delivery.endpoint_id} not found")
        return build_signed_request(delivery, endpoint, timestamp=timestamp)

    async def retry(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Put a delivery back in the due set for another attempt."""
        if delivery.status == DeliveryStatus.SUCCESS.value:
            raise ValueError("Cannot retry a successful delivery")
        endpoint = await self._endpoint_for(delivery)
        if endpoint is None or not endpoint.is_eligible:
            raise ValueError("Cannot retry delivery for inactive endpoint")
        delivery.requeue()
        await self._flush_delivery(delivery)
        await self.db.commit()
        logger.info(f"Delivery {delivery.id} requeued by operator")
        return delivery

    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[WebhookDelivery]:
        stmt = select(WebhookDelivery).where(WebhookDelivery.endpoint_id == endpoint_id)
        if status:
            stmt = stmt.where(WebhookDelivery.status == status)
        stmt = stmt.order_by(WebhookDelivery.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_stats(self, workspace_id: Optional[int] = None) -> dict:
        stmt = select(WebhookDelivery.status, func.count(WebhookDelivery.id)).group_by(
            WebhookDelivery.status
        )
        if workspace_id is not None:
            stmt = stmt.where(WebhookDelivery.workspace_id == workspace_id)
        rows = (await self.db.execute(stmt)).all()

        stats = {s.value: 0 for s in DeliveryStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(stats.values())
        return stats
