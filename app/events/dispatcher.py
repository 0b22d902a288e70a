from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

import httpx
from sqlalchemy.orm import Session

from app.db.models.common import utcnow
from app.db.session import SessionLocal
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription

logger = logging.getLogger(__name__)


def pattern_matches(pattern: str, topic: str) -> bool:
    """Exact match, or prefix match with a trailing '*'."""
    if not pattern:
        return False
    if pattern == topic:
        return True
    if pattern.endswith("*"):
        return topic.startswith(pattern[:-1])
    return False


def _get_matching_subs(db: Session, topic: str) -> list[EventSubscription]:
    subs = db.query(EventSubscription).filter(EventSubscription.is_active == True).all()  # noqa: E712
    return [s for s in subs if pattern_matches(s.topic_pattern, topic)]


async def _deliver_one(client: httpx.AsyncClient, sub: EventSubscription, evt: OutboxEvent) -> tuple[bool, str | None]:
    headers = {k: str(v) for k, v in (sub.headers or {}).items()}
    body = {
        "topic": evt.topic,
        "event_id": evt.id,
        "created_at": evt.created_at.isoformat() if evt.created_at else None,
        "payload": evt.payload or {},
    }
    try:
        resp = await client.post(sub.target_url, json=body, headers=headers, timeout=10.0)
    except httpx.HTTPError as e:
        return False, str(e)
    if 200 <= resp.status_code < 300:
        return True, None
    return False, f"HTTP {resp.status_code}: {resp.text[:300]}"


def next_attempt_at(attempt_count: int, now: datetime | None = None) -> datetime:
    # Exponential backoff capped at 10 minutes
    seconds = min(600, 2 ** min(attempt_count, 9))
    return (now or utcnow()) + timedelta(seconds=seconds)


async def dispatch_batch(db: Session, client: httpx.AsyncClient, *, limit: int = 50) -> int:
    """Deliver due events; returns how many were marked delivered."""
    now = utcnow()
    events = (
        db.query(OutboxEvent)
        .filter(OutboxEvent.delivered == False)  # noqa: E712
        .filter(OutboxEvent.available_at <= now)
        .order_by(OutboxEvent.created_at.asc())
        .limit(limit)
        .all()
    )
    delivered = 0
    for evt in events:
        subs = _get_matching_subs(db, evt.topic)
        if not subs:
            # Nobody listens; mark delivered to avoid infinite growth
            evt.delivered = True
            evt.delivered_at = utcnow()
            delivered += 1
            continue

        # Event counts as delivered when every subscriber accepted it
        all_ok = True
        last_err = None
        for sub in subs:
            ok, err = await _deliver_one(client, sub, evt)
            if ok:
                sub.last_error = None
                sub.failure_count = 0
                sub.last_delivered_at = utcnow()
            else:
                all_ok = False
                last_err = err
                sub.last_error = err
                sub.failure_count = (sub.failure_count or 0) + 1

        if all_ok:
            evt.delivered = True
            evt.delivered_at = utcnow()
            evt.last_error = None
            delivered += 1
        else:
            evt.attempt_count = (evt.attempt_count or 0) + 1
            evt.last_error = last_err
            evt.available_at = next_attempt_at(evt.attempt_count)
            logger.warning("Event %s (%s) delivery failed, attempt %s: %s", evt.id, evt.topic, evt.attempt_count, last_err)

    db.commit()
    return delivered


async def run_dispatcher_forever(*, poll_interval_seconds: float = 1.0) -> None:
    """Background worker that delivers outbox events to webhook subscribers."""
    async with httpx.AsyncClient() as client:
        while True:
            db = SessionLocal()
            try:
                await dispatch_batch(db, client)
            except Exception:
                logger.exception("Outbox dispatch failed")
                db.rollback()
            finally:
                db.close()
            await asyncio.sleep(poll_interval_seconds)
