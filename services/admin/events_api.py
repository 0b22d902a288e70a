from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.security import Principal, require_roles
from app.db.models.common import utcnow
from app.db.session import get_db
from app.events import bus
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription

router = APIRouter(prefix="/admin/events", tags=["admin_events"])

require_admin = require_roles(["ADMIN"])


class SubscriptionIn(BaseModel):
    name: str = "subscription"
    topic_pattern: str = Field(min_length=1)
    target_url: str = Field(min_length=1)
    headers: dict = Field(default_factory=dict)
    is_active: bool = True


class ToggleIn(BaseModel):
    is_active: bool | None = None


class PublishIn(BaseModel):
    topic: str = Field(min_length=1)
    payload: dict = Field(default_factory=dict)


def subscription_out(s: EventSubscription) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "topic_pattern": s.topic_pattern,
        "target_url": s.target_url,
        "headers": s.headers or {},
        "is_active": bool(s.is_active),
        "failure_count": int(s.failure_count or 0),
        "last_error": s.last_error,
        "last_delivered_at": s.last_delivered_at.isoformat() if s.last_delivered_at else None,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


@router.get("/subscriptions")
def list_subscriptions(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    subs = db.query(EventSubscription).order_by(EventSubscription.created_at.desc()).all()
    return [subscription_out(s) for s in subs]


@router.post("/subscriptions")
def create_subscription(payload: SubscriptionIn, db: Session = Depends(get_db), p: Principal = Depends(require_admin)):
    s = EventSubscription(
        name=payload.name,
        topic_pattern=payload.topic_pattern,
        target_url=payload.target_url,
        headers=payload.headers,
        is_active=payload.is_active,
        last_error=None,
        failure_count=0,
        last_delivered_at=None,
    )
    db.add(s)
    db.flush()
    audit(db, actor=p.supplier_id, action="SUBSCRIPTION_CREATED", resource_type="event_subscription",
          resource_id=s.id, details={"topic_pattern": s.topic_pattern, "target_url": s.target_url},
          event_type="CONFIGURATION_CHANGE", category="SECURITY", commit=False)
    db.commit()
    db.refresh(s)
    return {"ok": True, "id": s.id}


@router.post("/subscriptions/{sub_id}/toggle")
def toggle_subscription(sub_id: str, payload: ToggleIn | None = None, db: Session = Depends(get_db),
                        _: Principal = Depends(require_admin)):
    s = db.query(EventSubscription).filter(EventSubscription.id == sub_id).first()
    if not s:
        raise HTTPException(404, "Unknown subscription")
    wanted = payload.is_active if payload and payload.is_active is not None else not bool(s.is_active)
    s.is_active = wanted
    if wanted:
        s.failure_count = 0
        s.last_error = None
    db.commit()
    return {"ok": True, "id": s.id, "is_active": bool(s.is_active)}


@router.delete("/subscriptions/{sub_id}")
def delete_subscription(sub_id: str, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    s = db.query(EventSubscription).filter(EventSubscription.id == sub_id).first()
    if not s:
        return {"ok": True, "deleted": False}
    db.delete(s)
    db.commit()
    return {"ok": True, "deleted": True}


@router.get("/outbox")
def outbox_status(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    pending = db.query(OutboxEvent).filter(OutboxEvent.delivered == False).count()  # noqa: E712
    delivered = db.query(OutboxEvent).filter(OutboxEvent.delivered == True).count()  # noqa: E712
    return {"pending": pending, "delivered": delivered}


@router.post("/publish")
def publish_event(payload: PublishIn, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    """Admin-only test publish.

    Services publish with app.events.bus.publish(db, topic, payload) inside
    their own transaction.
    """
    evt = bus.publish(db, payload.topic, payload.payload, available_at=utcnow())
    db.commit()
    return {"ok": True, "event_id": evt.id, "topic": evt.topic}
