"""Event publisher — entry point for business code emitting webhook events."""

import logging
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models.webhook import (
    EventType,
    WebhookDelivery,
    WebhookEndpoint,
    normalize_event_type,
)
from hookrelay.services.delivery import DeliveryService
from hookrelay.services.endpoint_registry import EndpointRegistry

logger = logging.getLogger(__name__)


async def publish(
    db: AsyncSession,
    endpoint: WebhookEndpoint,
    event_type: Union[EventType, str],
    data: dict,
    workspace_id: Optional[int],
) -> Optional[WebhookDelivery]:
    """Queue one delivery for ``endpoint``, or None if it does not want the event.

    Unknown event names raise ValueError; an unsubscribed or inactive
    endpoint is not an error.
    """
    name = normalize_event_type(event_type)
    if not endpoint.should_receive(name):
        logger.debug(f"Endpoint {endpoint.id} skipped for {name}")
        return None
    return await DeliveryService(db).create_for_event(endpoint, name, data, workspace_id)


async def broadcast(
    db: AsyncSession,
    workspace_id: int,
    event_type: Union[EventType, str],
    data: dict,
) -> list[WebhookDelivery]:
    endpoints = await EndpointRegistry(db).endpoints_for_event(workspace_id, event_type)
    deliveries = []
    for endpoint in endpoints:
        delivery = await publish(db, endpoint, event_type, data, workspace_id)
        if delivery is not None:
            deliveries.append(delivery)
    if deliveries:
        logger.info(f"Event {normalize_event_type(event_type)} fanned out to {len(deliveries)} endpoints")
    return deliveries
