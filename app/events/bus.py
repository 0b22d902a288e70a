from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models.common import utcnow
from app.events.outbox import OutboxEvent


def publish(db: Session, topic: str, payload: dict, *, available_at: datetime | None = None) -> OutboxEvent:
    """Append an event to the outbox.

    Does not commit; the event lands with the caller's transaction.
    Decimals and datetimes in the payload are stored as strings.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=json.loads(json.dumps(payload or {}, default=str)),
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
