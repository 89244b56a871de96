"""Webhook models — receiver endpoints and the per-event delivery ledger."""

import json
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text

from hookrelay.database import Base
from hookrelay.models import UTCDateTime, new_uuid, utcnow


# ── Event types ──────────────────────────────────────────
class EventType(str, Enum):
    WORKSPACE_CREATED = "workspace.created"
    WORKSPACE_UPDATED = "workspace.updated"
    WORKSPACE_DELETED = "workspace.deleted"
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    BIO_CREATED = "bio.created"
    BIO_UPDATED = "bio.updated"
    BIO_DELETED = "bio.deleted"
    LINK_CREATED = "link.created"
    LINK_CLICKED = "link.clicked"
    QRCODE_CREATED = "qrcode.created"
    QRCODE_SCANNED = "qrcode.scanned"


WILDCARD = "*"


def normalize_event_type(event_type: Union[EventType, str]) -> str:
    """Return the wire name of an event type, rejecting unknown names."""
    return EventType(event_type).value


def normalize_subscription(events: list[str]) -> list[str]:
    """Validate a subscription list; keeps order, drops duplicates."""
    normalized: list[str] = []
    for evt in events:
        name = WILDCARD if evt == WILDCARD else normalize_event_type(evt)
        if name not in normalized:
            normalized.append(name)
    return normalized


# ── Delivery state machine constants ─────────────────────
class DeliveryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)

MAX_ATTEMPTS = 5
FAILURE_THRESHOLD = 10
RESPONSE_BODY_LIMIT = 10_000

# Minutes to wait before the attempt number about to be made.
# Attempt 1 is never a retry, so its entry is unreachable.
RETRY_DELAYS_MINUTES = {1: 1, 2: 5, 3: 30, 4: 120, 5: 1440}
FALLBACK_DELAY_MINUTES = 1440


def retry_delay(attempt: int) -> timedelta:
    return timedelta(minutes=RETRY_DELAYS_MINUTES.get(attempt, FALLBACK_DELAY_MINUTES))


def canonical_json(obj) -> str:
    """Compact, key-sorted JSON; the exact text that gets signed and sent."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True)


def new_event_id() -> str:
    return f"evt_{secrets.token_hex(12)}"


# ── Endpoint ─────────────────────────────────────────────
class WebhookEndpoint(Base):
    """Tenant-configured HTTP receiver subscribed to one or more event types."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    workspace_id = Column(Integer, nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(200), nullable=False)  # HMAC signing secret
    events = Column(Text, default="[]")  # JSON list of event types, "*" = all
    description = Column(String(500), default="")
    # Health
    active = Column(Boolean, default=True)
    disabled_at = Column(UTCDateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0)
    last_triggered_at = Column(UTCDateTime, nullable=True)
    # Soft delete
    deleted_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def event_list(self) -> list[str]:
        events = self.events
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return list(events or [])

    @property
    def is_eligible(self) -> bool:
        return bool(self.active) and self.disabled_at is None and self.deleted_at is None

    def should_receive(self, event_type: Union[EventType, str]) -> bool:
        name = event_type.value if isinstance(event_type, EventType) else event_type
        events = self.event_list
        return self.is_eligible and (WILDCARD in events or name in events)


# ── Delivery ─────────────────────────────────────────────
class WebhookDelivery(Base):
    """Attempt ledger for delivering one event to one endpoint.

    PENDING and RETRYING are live; SUCCESS and FAILED are terminal and
    always carry ``next_retry_at = None``. ``attempt`` starts at 1 and never
    exceeds ``MAX_ATTEMPTS``.
    """

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=new_uuid)
    endpoint_id = Column(String(36), ForeignKey("webhook_endpoints.id"), nullable=False, index=True)
    workspace_id = Column(Integer, nullable=True, index=True)
    event_id = Column(String(40), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)  # canonical JSON envelope
    attempt = Column(Integer, default=1)
    status = Column(String(20), default=DeliveryStatus.PENDING.value, index=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)
    next_retry_at = Column(UTCDateTime, nullable=True, index=True)
    # Worker lease
    claimed_by = Column(String(100), nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    # Optimistic lock; claims bump it as well
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    def for_event(
        cls,
        endpoint: WebhookEndpoint,
        event_type: Union[EventType, str],
        data: dict,
        workspace_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> "WebhookDelivery":
        """Build a PENDING delivery with its envelope; not yet persisted."""
        now = now or utcnow()
        name = normalize_event_type(event_type)
        event_id = new_event_id()
        envelope = {
            "id": event_id,
            "type": name,
            "created_at": now.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "data": data,
            "workspace_id": workspace_id,
        }
        return cls(
            id=new_uuid(),
            endpoint_id=endpoint.id,
            workspace_id=workspace_id,
            event_id=event_id,
            event_type=name,
            payload=canonical_json(envelope),
            attempt=1,
            status=DeliveryStatus.PENDING.value,
            created_at=now,
        )

    @property
    def envelope(self) -> dict:
        return json.loads(self.payload)

    @property
    def body(self) -> bytes:
        return self.payload.encode("utf-8")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_retry(self) -> bool:
        return self.attempt < MAX_ATTEMPTS and self.status != DeliveryStatus.SUCCESS.value

    def _record_response(self, response_code: Optional[int], response_body: Optional[str]):
        self.response_code = response_code
        self.response_body = response_body[:RESPONSE_BODY_LIMIT] if response_body is not None else None

    def _release(self):
        self.claimed_by = None
        self.claimed_at = None

    def apply_success(
        self,
        response_code: Optional[int],
        response_body: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "WebhookDelivery":
        if self.is_terminal:
            raise ValueError(f"Delivery {self.id} is already {self.status}")
        self.status = DeliveryStatus.SUCCESS.value
        self._record_response(response_code, response_body)
        self.delivered_at = now or utcnow()
        self.next_retry_at = None
        self._release()
        return self

    def apply_failure(
        self,
        response_code: Optional[int] = None,
        response_body: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "WebhookDelivery":
        """Advance the retry state machine after a failed attempt."""
        if self.is_terminal:
            raise ValueError(f"Delivery {self.id} is already {self.status}")
        now = now or utcnow()
        if self.attempt >= MAX_ATTEMPTS:
            self.status = DeliveryStatus.FAILED.value
            self.next_retry_at = None
        else:
            next_attempt = self.attempt + 1
            self.status = DeliveryStatus.RETRYING.value
            self.attempt = next_attempt
            self.next_retry_at = now + retry_delay(next_attempt)
        self._record_response(response_code, response_body)
        self._release()
        return self

    def requeue(self) -> "WebhookDelivery":
        """Operator redelivery: back to PENDING, attempt count kept."""
        if self.status == DeliveryStatus.SUCCESS.value:
            raise ValueError("Cannot retry a successful delivery")
        self.status = DeliveryStatus.PENDING.value
        self.next_retry_at = None
        self._release()
        return self
