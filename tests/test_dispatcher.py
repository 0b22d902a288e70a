import asyncio
from datetime import datetime, timedelta

import httpx

from app.events import bus
from app.events.dispatcher import dispatch_batch, next_attempt_at, pattern_matches
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription


def test_pattern_matching():
    assert pattern_matches("InventoryChanged", "InventoryChanged")
    assert pattern_matches("Inventory*", "InventoryLowStock")
    assert not pattern_matches("Inventory*", "OrderCreated")
    assert not pattern_matches("", "OrderCreated")
    assert not pattern_matches("Order", "OrderCreated")


def test_backoff_is_capped():
    now = datetime(2025, 1, 1)
    assert next_attempt_at(1, now) == now + timedelta(seconds=2)
    assert next_attempt_at(5, now) == now + timedelta(seconds=32)
    assert next_attempt_at(30, now) == now + timedelta(seconds=512)


def subscribe(db, pattern, url):
    sub = EventSubscription(name="hook", topic_pattern=pattern, target_url=url, headers={"X-Token": "t"},
                            is_active=True, failure_count=0)
    db.add(sub)
    db.commit()
    return sub


def run(db, handler):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await dispatch_batch(db, client)
    return asyncio.run(go())


def test_dispatch_delivers_to_matching_subscribers(db_session):
    subscribe(db_session, "Inventory*", "https://hooks.flexvolt-partner.com/inv")
    bus.publish(db_session, "InventoryLowStock", {"sku": "DCB606"})
    bus.publish(db_session, "OrderCreated", {"order_number": "US-1"})
    db_session.commit()

    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers["X-Token"]))
        return httpx.Response(204)

    assert run(db_session, handler) == 2
    assert seen == [("/inv", "t")]
    assert db_session.query(OutboxEvent).filter(OutboxEvent.delivered == False).count() == 0  # noqa: E712


def test_failed_delivery_is_retried_later(db_session):
    sub = subscribe(db_session, "OrderCreated", "https://hooks.flexvolt-partner.com/orders")
    evt = bus.publish(db_session, "OrderCreated", {"order_number": "US-1"})
    db_session.commit()

    assert run(db_session, lambda request: httpx.Response(503, text="busy")) == 0
    db_session.refresh(evt)
    db_session.refresh(sub)
    assert evt.delivered is False
    assert evt.attempt_count == 1
    assert evt.last_error == "HTTP 503: busy"
    assert evt.available_at > datetime.utcnow()
    assert sub.failure_count == 1
