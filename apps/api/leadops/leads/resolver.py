from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.core.clock import Clock, system_clock
from leadops.errors import StorageFailure
from leadops.leads.models import Lead
from leadops.leads.phone import normalize_phone
from leadops.leads.schemas import ContactInfo
from leadops.leads.scoring import infer_funnel, score_lead


logger = logging.getLogger("leadops.leads")
tracer = trace.get_tracer("leadops.leads")

MERGEABLE_FIELDS = (
    "email",
    "client_type",
    "project_type",
    "project_stage",
    "location",
    "estimated_deadline",
    "estimated_ticket",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "external_id",
)


@dataclass
class Resolution:
    lead: Lead
    is_new: bool
    merged_fields: list[str] = field(default_factory=list)


class ContactResolver:
    def __init__(self, clock: Clock = system_clock) -> None:
        self.clock = clock

    def resolve(self, session: Session, raw_phone: str, contact: ContactInfo, source: str) -> Resolution:
        phone_normalized = normalize_phone(raw_phone)

        with tracer.start_as_current_span("leads.resolve") as span:
            span.set_attribute("source", source)
            try:
                existing = self._find(session, phone_normalized)
                if existing is not None:
                    return self._merge(session, existing, contact, source)

                try:
                    return self._create(session, raw_phone, phone_normalized, contact, source)
                except IntegrityError:
                    # Another writer created the same phone between our lookup and insert.
                    session.rollback()
                    existing = self._find(session, phone_normalized)
                    if existing is None:
                        raise
                    return self._merge(session, existing, contact, source)
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageFailure(f"lead resolution failed: {exc}") from exc

    def find_by_phone(self, session: Session, raw_phone: str) -> Lead | None:
        return self._find(session, normalize_phone(raw_phone))

    def _find(self, session: Session, phone_normalized: str) -> Lead | None:
        return session.scalar(select(Lead).where(Lead.phone_normalized == phone_normalized))

    def _create(
        self,
        session: Session,
        raw_phone: str,
        phone_normalized: str,
        contact: ContactInfo,
        source: str,
    ) -> Resolution:
        fields = contact.model_dump(include=set(MERGEABLE_FIELDS))
        now = self.clock.now()
        lead = Lead(
            source=source,
            funnel=infer_funnel(contact.client_type),
            stage="triagem",
            name=contact.name or f"Lead {source}",
            phone=raw_phone,
            phone_normalized=phone_normalized,
            score=score_lead(source, fields),
            created_at=now,
            updated_at=now,
            **fields,
        )
        session.add(lead)
        session.flush()

        record_activity(
            session,
            lead.id,
            "lead_created",
            f"Lead received from {source}",
            {"source": source, "funnel": lead.funnel, "score": lead.score, "utm_campaign": contact.utm_campaign},
            occurred_at=now,
        )
        session.commit()
        session.refresh(lead)

        logger.info(
            "lead.created",
            extra={"lead_id": str(lead.id), "source": source, "funnel": lead.funnel, "is_new": True},
        )
        return Resolution(lead=lead, is_new=True)

    def _merge(self, session: Session, lead: Lead, contact: ContactInfo, source: str) -> Resolution:
        incoming: dict[str, Any] = contact.model_dump(include=set(MERGEABLE_FIELDS))
        merged: list[str] = []
        for name in MERGEABLE_FIELDS:
            value = incoming.get(name)
            if value is None or value == "":
                continue
            if getattr(lead, name) is None:
                setattr(lead, name, value)
                merged.append(name)

        now = self.clock.now()
        if merged:
            lead.updated_at = now
            session.add(lead)

        record_activity(
            session,
            lead.id,
            "lead_merged",
            f"Duplicate contact from {source}, data merged",
            {"source": source, "merged_fields": merged},
            occurred_at=now,
        )
        session.commit()
        session.refresh(lead)

        logger.info(
            "lead.merged",
            extra={"lead_id": str(lead.id), "source": source, "merged_fields": merged, "is_new": False},
        )
        return Resolution(lead=lead, is_new=False, merged_fields=merged)
