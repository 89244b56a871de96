"""Endpoint registry — receiver CRUD, subscription matching and health tracking."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import get_settings
from hookrelay.models import utcnow
from hookrelay.models.webhook import (
    FAILURE_THRESHOLD,
    EventType,
    WebhookEndpoint,
    normalize_event_type,
    normalize_subscription,
)
from hookrelay.services.signature import generate_secret
from hookrelay.services.url_safety import validate_webhook_url

logger = logging.getLogger(__name__)


def should_receive(endpoint: WebhookEndpoint, event_type: Union[EventType, str]) -> bool:
    """active, not disabled, not deleted, and subscribed to the event (or "*")."""
    return endpoint.should_receive(event_type)


class EndpointRegistry:
    """Receiver configuration and the health counters that drive auto-disable.

    Counter changes are issued as single UPDATE statements so concurrent
    outcome reports for the same endpoint never lose an increment.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _check_url(self, url: str) -> str:
        if get_settings().webhook_allow_private_urls:
            return url
        # DNS resolution blocks; keep it off the event loop
        return await asyncio.to_thread(validate_webhook_url, url)

    async def create(
        self,
        workspace_id: int,
        url: str,
        events: list[str],
        description: str = "",
    ) -> WebhookEndpoint:
        url = await self._check_url(url)
        endpoint = WebhookEndpoint(
            workspace_id=workspace_id,
            url=url,
            secret=generate_secret(),
            events=json.dumps(normalize_subscription(events)),
            description=description or "",
            active=True,
            consecutive_failures=0,
        )
        self.db.add(endpoint)
        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info(f"Webhook endpoint {endpoint.id} created for workspace {workspace_id}")
        return endpoint

    async def get(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        result = await self.db.execute(
            select(WebhookEndpoint).where(
                WebhookEndpoint.id == endpoint_id,
                WebhookEndpoint.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def list_endpoints(
        self,
        workspace_id: Optional[int] = None,
        active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[WebhookEndpoint]:
        stmt = select(WebhookEndpoint).where(WebhookEndpoint.deleted_at.is_(None))
        if workspace_id is not None:
            stmt = stmt.where(WebhookEndpoint.workspace_id == workspace_id)
        if active is not None:
            stmt = stmt.where(WebhookEndpoint.active == active)
        stmt = stmt.order_by(WebhookEndpoint.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def endpoints_for_event(
        self, workspace_id: int, event_type: Union[EventType, str]
    ) -> list[WebhookEndpoint]:
        """Eligible endpoints of a workspace subscribed to ``event_type``."""
        name = normalize_event_type(event_type)
        result = await self.db.execute(
            select(WebhookEndpoint)
            .where(
                WebhookEndpoint.workspace_id == workspace_id,
                WebhookEndpoint.active.is_(True),
                WebhookEndpoint.disabled_at.is_(None),
                WebhookEndpoint.deleted_at.is_(None),
            )
            .order_by(WebhookEndpoint.created_at)
        )
        # events is JSON text, so subscription matching happens here
        return [ep for ep in result.scalars().all() if ep.should_receive(name)]

    async def update_endpoint(
        self,
        endpoint: WebhookEndpoint,
        url: Optional[str] = None,
        events: Optional[list[str]] = None,
        description: Optional[str] = None,
    ) -> WebhookEndpoint:
        if url is not None:
            endpoint.url = await self._check_url(url)
        if events is not None:
            endpoint.events = json.dumps(normalize_subscription(events))
        if description is not None:
            endpoint.description = description
        await self.db.commit()
        await self.db.refresh(endpoint)
        return endpoint

    # ── Health tracking ──────────────────────────────────

    async def record_success(
        self,
        endpoint: WebhookEndpoint,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> WebhookEndpoint:
        now = now or utcnow()
        await self.db.execute(
            update(WebhookEndpoint)
            .where(WebhookEndpoint.id == endpoint.id)
            .values(consecutive_failures=0, last_triggered_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(endpoint)
        if commit:
            await self.db.commit()
        return endpoint

    async def record_failure(
        self,
        endpoint: WebhookEndpoint,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> WebhookEndpoint:
        """Count a failed attempt; the attempt that reaches the threshold disables the endpoint."""
        now = now or utcnow()
        current = func.coalesce(WebhookEndpoint.consecutive_failures, 0)
        await self.db.execute(
            update(WebhookEndpoint)
            .where(WebhookEndpoint.id == endpoint.id)
            .values(
                consecutive_failures=case(
                    (current >= FAILURE_THRESHOLD, current),
                    else_=current + 1,
                ),
                last_triggered_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            update(WebhookEndpoint)
            .where(
                WebhookEndpoint.id == endpoint.id,
                WebhookEndpoint.consecutive_failures >= FAILURE_THRESHOLD,
                WebhookEndpoint.disabled_at.is_(None),
            )
            .values(active=False, disabled_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(endpoint)
        if commit:
            await self.db.commit()
        if result.rowcount:
            logger.warning(
                f"Webhook endpoint {endpoint.id} disabled after "
                f"{endpoint.consecutive_failures} consecutive failures"
            )
        return endpoint

    # ── Operator actions ─────────────────────────────────

    async def enable(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        endpoint.active = True
        endpoint.disabled_at = None
        endpoint.consecutive_failures = 0
        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info(f"Webhook endpoint {endpoint.id} re-enabled")
        return endpoint

    async def disable(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        endpoint.active = False
        endpoint.disabled_at = endpoint.disabled_at or utcnow()
        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info(f"Webhook endpoint {endpoint.id} disabled by operator")
        return endpoint

    async def rotate_secret(self, endpoint: WebhookEndpoint) -> str:
        """Replace the signing secret; the new value is only returned here."""
        secret = generate_secret()
        endpoint.secret = secret
        await self.db.commit()
        logger.info(f"Webhook endpoint {endpoint.id} secret rotated")
        return secret

    async def delete(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        endpoint.active = False
        endpoint.deleted_at = utcnow()
        await self.db.commit()
        logger.info(f"Webhook endpoint {endpoint.id} deleted")
        return endpoint
