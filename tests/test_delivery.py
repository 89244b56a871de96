"""Tests for the delivery service: outcomes, signed requests, retries and stats."""

from datetime import timedelta

import pytest

from hookrelay.config import get_settings
from hookrelay.database import async_session
from hookrelay.models import utcnow
from hookrelay.models.webhook import MAX_ATTEMPTS, DeliveryStatus, EventType, WebhookDelivery
from hookrelay.services import signature
from hookrelay.services.delivery import DeliveryService, build_signed_request
from hookrelay.services.endpoint_registry import EndpointRegistry
from hookrelay.services.publisher import publish
from hookrelay.services.selector import claim


@pytest.mark.asyncio
async def test_end_to_end_failure_path(db, endpoint):
    delivery = await publish(db, endpoint, "workspace.created", {"id": 42}, 1)
    assert delivery is not None
    assert delivery.status == DeliveryStatus.PENDING.value
    assert delivery.attempt == 1

    service = DeliveryService(db)
    await service.mark_failed(delivery, 500, "err")
    assert delivery.attempt == 2
    assert delivery.status == DeliveryStatus.RETRYING.value
    delay = delivery.next_retry_at - utcnow()
    assert timedelta(minutes=4, seconds=50) < delay <= timedelta(minutes=5)
    assert endpoint.consecutive_failures == 1

    for _ in range(MAX_ATTEMPTS - 1):
        await service.mark_failed(delivery, 500, "err")
    assert delivery.status == DeliveryStatus.FAILED.value
    assert delivery.attempt == MAX_ATTEMPTS
    assert delivery.next_retry_at is None
    assert endpoint.consecutive_failures == 5
    assert endpoint.active is True


@pytest.mark.asyncio
async def test_mark_success(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, EventType.WORKSPACE_CREATED, {"id": 1}, 1)
    await service.mark_failed(delivery, 502)
    await service.mark_success(delivery, 200, "ok" * 6000)

    assert delivery.status == DeliveryStatus.SUCCESS.value
    assert delivery.response_code == 200
    assert len(delivery.response_body) == 10_000
    assert delivery.delivered_at is not None
    assert delivery.next_retry_at is None
    assert endpoint.consecutive_failures == 0
    assert endpoint.last_triggered_at is not None


@pytest.mark.asyncio
async def test_terminal_delivery_rejects_outcomes(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_success(delivery, 204)
    with pytest.raises(ValueError):
        await service.mark_failed(delivery, 500)
    with pytest.raises(ValueError):
        await service.mark_success(delivery, 200)
    assert endpoint.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failures_across_deliveries_disable_endpoint(db, endpoint):
    service = DeliveryService(db)
    first = await service.create_for_event(endpoint, "workspace.created", {"n": 1}, 1)
    second = await service.create_for_event(endpoint, "workspace.created", {"n": 2}, 1)
    for _ in range(MAX_ATTEMPTS):
        await service.mark_failed(first, 500)
    for _ in range(MAX_ATTEMPTS - 1):
        await service.mark_failed(second, 500)
    assert endpoint.active is True
    assert endpoint.consecutive_failures == 9

    await service.mark_failed(second, 500)
    assert endpoint.consecutive_failures == 10
    assert endpoint.active is False
    assert endpoint.disabled_at is not None


@pytest.mark.asyncio
async def test_state_persisted(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {"id": 9}, 1)
    await service.mark_failed(delivery, 500, "boom")

    db.expunge_all()
    stored = await service.get(delivery.id)
    assert stored.status == DeliveryStatus.RETRYING.value
    assert stored.attempt == 2
    assert stored.response_body == "boom"
    assert stored.next_retry_at.tzinfo is not None


# ── Signed request ───────────────────────────────────────
@pytest.mark.asyncio
async def test_signed_request_verifies(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {"id": 42}, 1)
    req = await service.get_signed_delivery_request(delivery, timestamp=1_700_000_000)

    assert req.url == endpoint.url
    assert req.method == "POST"
    assert req.timeout == 10.0
    assert req.body == delivery.payload.encode("utf-8")
    assert req.headers["Content-Type"] == "application/json"
    assert req.headers[signature.EVENT_HEADER] == "workspace.created"
    assert req.headers[signature.DELIVERY_ID_HEADER] == delivery.id
    assert req.headers[signature.TIMESTAMP_HEADER] == "1700000000"
    assert req.headers[signature.ATTEMPT_HEADER] == "1"
    assert signature.verify(req.body, endpoint.secret, req.headers[signature.SIGNATURE_HEADER])
    assert signature.verify_with_timestamp(
        req.body,
        endpoint.secret,
        req.headers[signature.TIMESTAMPED_SIGNATURE_HEADER],
        req.headers[signature.TIMESTAMP_HEADER],
        now=1_700_000_030,
    )
    assert not signature.verify_signature_only(
        req.body, endpoint.secret, req.headers[signature.TIMESTAMPED_SIGNATURE_HEADER], "1700000999"
    )


@pytest.mark.asyncio
async def test_signed_request_follows_rotation(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    old_secret = endpoint.secret
    await EndpointRegistry(db).rotate_secret(endpoint)
    req = build_signed_request(delivery, endpoint)
    sig = req.headers[signature.SIGNATURE_HEADER]
    assert signature.verify(req.body, endpoint.secret, sig)
    assert not signature.verify(req.body, old_secret, sig)


@pytest.mark.asyncio
async def test_signed_request_attempt_header(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_failed(delivery, 500)
    req = await service.get_signed_delivery_request(delivery)
    assert req.headers[signature.ATTEMPT_HEADER] == "2"


# ── Operator retry ───────────────────────────────────────
@pytest.mark.asyncio
async def test_retry_failed_delivery(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    for _ in range(MAX_ATTEMPTS):
        await service.mark_failed(delivery, 500)
    assert delivery.status == DeliveryStatus.FAILED.value

    await service.retry(delivery)
    assert delivery.status == DeliveryStatus.PENDING.value
    assert delivery.attempt == MAX_ATTEMPTS
    assert delivery.next_retry_at is None


@pytest.mark.asyncio
async def test_retry_successful_delivery_rejected(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_success(delivery, 200)
    with pytest.raises(ValueError):
        await service.retry(delivery)


@pytest.mark.asyncio
async def test_retry_for_disabled_endpoint_rejected(db, endpoint):
    service = DeliveryService(db)
    delivery = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_failed(delivery, 500)
    await EndpointRegistry(db).disable(endpoint)
    with pytest.raises(ValueError, match="inactive"):
        await service.retry(delivery)


# ── History & stats ──────────────────────────────────────
@pytest.mark.asyncio
async def test_list_and_stats(db, endpoint):
    registry = EndpointRegistry(db)
    other = await registry.create(2, "https://other.example.com/", ["*"])
    service = DeliveryService(db)

    ok = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_success(ok, 200)
    bad = await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.mark_failed(bad, 500)
    await service.create_for_event(endpoint, "workspace.created", {}, 1)
    await service.create_for_event(other, "invoice.paid", {}, 2)

    history = await service.list_for_endpoint(endpoint.id)
    assert len(history) == 3
    retrying = await service.list_for_endpoint(endpoint.id, status="retrying")
    assert [d.id for d in retrying] == [bad.id]

    assert await service.get_stats(1) == {
        "total": 3,
        "pending": 1,
        "retrying": 1,
        "success": 1,
        "failed": 0,
    }
    assert (await service.get_stats())["total"] == 4


@pytest.mark.asyncio
async def test_signed_request_timeout_from_settings(db, endpoint, monkeypatch):
    monkeypatch.setattr(get_settings(), "webhook_timeout_seconds", 25.0)
    delivery = await DeliveryService(db).create_for_event(endpoint, "workspace.created", {}, 1)
    assert build_signed_request(delivery, endpoint).timeout == 25.0


# ── Concurrent outcome reports ───────────────────────────
@pytest.mark.asyncio
async def test_stale_failure_cannot_undo_success(db, endpoint):
    delivery = await DeliveryService(db).create_for_event(endpoint, "workspace.created", {}, 1)

    async with async_session() as first, async_session() as second:
        mine = await first.get(WebhookDelivery, delivery.id)
        stale = await second.get(WebhookDelivery, delivery.id)

        await DeliveryService(first).mark_success(mine, 200, "ok")
        with pytest.raises(ValueError, match="another worker"):
            await DeliveryService(second).mark_failed(stale, 500, "late")
        # the losing session now sees the stored outcome
        assert stale.status == DeliveryStatus.SUCCESS.value

    db.expunge_all()
    stored = await DeliveryService(db).get(delivery.id)
    assert stored.status == DeliveryStatus.SUCCESS.value
    assert stored.next_retry_at is None
    assert stored.attempt == 1
    assert stored.response_body == "ok"
    ep = await EndpointRegistry(db).get(endpoint.id)
    assert ep.consecutive_failures == 0


@pytest.mark.asyncio
async def test_stale_success_cannot_overwrite_failure(db, endpoint):
    delivery = await DeliveryService(db).create_for_event(endpoint, "workspace.created", {}, 1)

    async with async_session() as first, async_session() as second:
        mine = await first.get(WebhookDelivery, delivery.id)
        stale = await second.get(WebhookDelivery, delivery.id)

        await DeliveryService(first).mark_failed(mine, 503)
        with pytest.raises(ValueError):
            await DeliveryService(second).mark_success(stale, 200)

    db.expunge_all()
    stored = await DeliveryService(db).get(delivery.id)
    assert stored.status == DeliveryStatus.RETRYING.value
    assert stored.attempt == 2
    assert stored.delivered_at is None


@pytest.mark.asyncio
async def test_expired_lease_holder_cannot_report(db, endpoint):
    delivery = await DeliveryService(db).create_for_event(endpoint, "workspace.created", {}, 1)
    now = utcnow()

    async with async_session() as slow, async_session() as fast:
        held = await claim(slow, delivery.id, "worker-slow", now=now, lease_seconds=60)
        assert held is not None
        taken = await claim(fast, delivery.id, "worker-fast", now=now + timedelta(seconds=61), lease_seconds=60)
        assert taken is not None

        with pytest.raises(ValueError):
            await DeliveryService(slow).mark_failed(held, 500)
        assert held.claimed_by == "worker-fast"

        await DeliveryService(fast).mark_success(taken, 200)

    db.expunge_all()
    stored = await DeliveryService(db).get(delivery.id)
    assert stored.status == DeliveryStatus.SUCCESS.value
    ep = await EndpointRegistry(db).get(endpoint.id)
    assert ep.consecutive_failures == 0
