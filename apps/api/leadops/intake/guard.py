from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadops.context import get_correlation_id
from leadops.core.clock import Clock, system_clock
from leadops.errors import StorageFailure
from leadops.intake.models import INBOUND_EVENT_STATUSES, InboundEvent


logger = logging.getLogger("leadops.intake")


@dataclass(frozen=True)
class Admission:
    accepted: bool
    event_id: uuid.UUID | None = None


class IdempotencyGuard:
    """Admits each dedup key exactly once, using the store's unique index as the only arbiter."""

    def __init__(self, clock: Clock = system_clock) -> None:
        self.clock = clock

    def admit(
        self,
        session: Session,
        source: str,
        event_type: str,
        dedup_key: str,
        payload: dict[str, Any],
    ) -> Admission:
        now = self.clock.now()
        event = InboundEvent(
            source=source,
            event_type=event_type,
            idempotency_key=dedup_key,
            payload=payload,
            status="received",
            correlation_id=get_correlation_id(),
            created_at=now,
            updated_at=now,
        )
        session.add(event)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("intake.duplicate", extra={"source": source, "idempotency_key": dedup_key})
            return Admission(accepted=False)
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageFailure(f"could not record inbound event: {exc}") from exc

        return Admission(accepted=True, event_id=event.id)

    def mark_status(self, session: Session, dedup_key: str, status: str, error: str | None = None) -> None:
        if status not in INBOUND_EVENT_STATUSES:
            raise ValueError(f"invalid inbound event status: {status}")
        try:
            session.execute(
                update(InboundEvent)
                .where(InboundEvent.idempotency_key == dedup_key)
                .values(status=status, error=error[:2000] if error else None, updated_at=self.clock.now())
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageFailure(f"could not update inbound event status: {exc}") from exc
