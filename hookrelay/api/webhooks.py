"""Webhook endpoint management and delivery history API."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.database import get_db
from hookrelay.models.webhook import WILDCARD, DeliveryStatus, EventType
from hookrelay.services.delivery import DeliveryService
from hookrelay.services.endpoint_registry import EndpointRegistry

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# ── Schemas ──────────────────────────────────────────────
class WebhookCreate(BaseModel):
    workspace_id: int
    url: str
    events: list[str] = Field(default_factory=lambda: [WILDCARD])
    description: str = ""


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None
    description: Optional[str] = None


class WebhookOut(BaseModel):
    id: str
    workspace_id: int
    url: str
    events: list[str]
    description: str
    active: bool
    disabled_at: Optional[datetime] = None
    consecutive_failures: int
    last_triggered_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, wh):
        return cls(
            id=wh.id,
            workspace_id=wh.workspace_id,
            url=wh.url,
            events=wh.event_list,
            description=wh.description or "",
            active=bool(wh.active),
            disabled_at=wh.disabled_at,
            consecutive_failures=wh.consecutive_failures or 0,
            last_triggered_at=wh.last_triggered_at,
            created_at=wh.created_at,
        )


class WebhookCreated(WebhookOut):
    """Returned once on creation; the secret is never shown again."""

    secret: str


class SecretOut(BaseModel):
    id: str
    secret: str


class DeliveryOut(BaseModel):
    id: str
    endpoint_id: str
    event_id: str
    event_type: str
    attempt: int
    status: str
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    delivered_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class StatsOut(BaseModel):
    total: int
    pending: int
    retrying: int
    success: int
    failed: int


async def _get_endpoint_or_404(registry: EndpointRegistry, webhook_id: str):
    wh = await registry.get(webhook_id)
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


# ── Endpoints ────────────────────────────────────────────
@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all available webhook event types."""
    return [e.value for e in EventType]


@router.post("/", response_model=WebhookCreated, status_code=201)
async def create_webhook(data: WebhookCreate, db: AsyncSession = Depends(get_db)):
    registry = EndpointRegistry(db)
    try:
        wh = await registry.create(data.workspace_id, data.url, data.events, data.description)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return WebhookCreated(**WebhookOut.from_model(wh).model_dump(), secret=wh.secret)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    workspace_id: Optional[int] = None,
    active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    endpoints = await EndpointRegistry(db).list_endpoints(
        workspace_id=workspace_id, active=active, skip=skip, limit=limit
    )
    return [WebhookOut.from_model(wh) for wh in endpoints]


@router.get("/stats", response_model=StatsOut)
async def delivery_stats(workspace_id: Optional[int] = None, db: AsyncSession = Depends(get_db)):
    """Delivery counts by status."""
    return await DeliveryService(db).get_stats(workspace_id)


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_endpoint_or_404(EndpointRegistry(db), webhook_id)
    return WebhookOut.from_model(wh)


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(webhook_id: str, data: WebhookUpdate, db: AsyncSession = Depends(get_db)):
    registry = EndpointRegistry(db)
    wh = await _get_endpoint_or_404(registry, webhook_id)
    try:
        wh = await registry.update_endpoint(
            wh, url=data.url, events=data.events, description=data.description
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return WebhookOut.from_model(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    registry = EndpointRegistry(db)
    wh = await _get_endpoint_or_404(registry, webhook_id)
    await registry.delete(wh)


@router.post("/{webhook_id}/enable", response_model=WebhookOut)
async def enable_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    """Re-enable an endpoint and reset its failure counter."""
    registry = EndpointRegistry(db)
    wh = await _get_endpoint_or_404(registry, webhook_id)
    return WebhookOut.from_model(await registry.enable(wh))


@router.post("/{webhook_id}/disable", response_model=WebhookOut)
async def disable_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    registry = EndpointRegistry(db)
    wh = await _get_endpoint_or_404(registry, webhook_id)
    return WebhookOut.from_model(await registry.disable(wh))


@router.post("/{webhook_id}/rotate-secret", response_model=SecretOut)
async def rotate_webhook_secret(webhook_id: str, db: AsyncSession = Depends(get_db)):
    registry = EndpointRegistry(db)
    wh = await _get_endpoint_or_404(registry, webhook_id)
    secret = await registry.rotate_secret(wh)
    return SecretOut(id=wh.id, secret=secret)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryOut])
async def list_deliveries(
    webhook_id: str,
    status: Optional[DeliveryStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a webhook, newest first."""
    await _get_endpoint_or_404(EndpointRegistry(db), webhook_id)
    return await DeliveryService(db).list_for_endpoint(
        webhook_id, status=status.value if status else None, skip=skip, limit=limit
    )


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryOut)
async def retry_delivery(delivery_id: str, db: AsyncSession = Depends(get_db)):
    service = DeliveryService(db)
    delivery = await service.get(delivery_id)
    if not delivery:
        raise HTTPException(404, "Delivery not found")
    try:
        return await service.retry(delivery)
    except ValueError as e:
        raise HTTPException(409, str(e))
