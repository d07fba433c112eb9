# src/application/notifications.py

import json
import logging
from typing import Any, Mapping, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.infrastructure.db.models import Booking, OutboxEvent

logger = logging.getLogger(__name__)


class OutboxNotifier:
    """
    Records booking notifications in the outbox table. An external
    dispatcher reads pending rows and delivers them.
    """

    AGGREGATE_TYPE = "booking"

    def __init__(self, db: Session):
        self.db = db

    def notify(
        self,
        booking: Booking,
        event_type: str,
        recipient_id: Optional[str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Optional[OutboxEvent]:
        dedupe_key = f"booking:{booking.id}:{event_type}:{booking.version}"

        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            logger.debug("Skipping duplicate outbox event %s", dedupe_key)
            return None

        body = {
            "booking_id": booking.id,
            "status": booking.status.value,
            "title": booking.title,
            **dict(payload or {}),
        }
        event = OutboxEvent(
            aggregate_type=self.AGGREGATE_TYPE,
            aggregate_id=booking.id,
            event_type=event_type,
            recipient_id=recipient_id,
            payload=json.dumps(to_jsonable_python(body), sort_keys=True),
            dedupe_key=dedupe_key,
            status="PENDING",
            attempts=0,
        )
        self.db.add(event)
        return event
