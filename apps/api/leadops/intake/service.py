from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.commitments.engine import CommitmentEngine
from leadops.connectors.crm import CRMClient, build_crm_client
from leadops.connectors.messaging import MessagingClient, build_messaging_client
from leadops.core.clock import Clock, system_clock
from leadops.core.config import get_settings
from leadops.errors import InvalidContactError
from leadops.intake.guard import IdempotencyGuard
from leadops.intake.models import InboundEvent
from leadops.leads.models import Lead
from leadops.leads.phone import normalize_phone
from leadops.leads.resolver import ContactResolver, Resolution
from leadops.leads.schemas import ContactInfo
from leadops.metrics import observe_inbound_event
from leadops.sequences.engine import SequencingEngine


logger = logging.getLogger("leadops.intake")
tracer = trace.get_tracer("leadops.intake")

BestEffortAction = tuple[str, Callable[[], Any]]

CRM_ACTIVITY_COMPLETIONS = {
    "call": "response_5min",
    "email": "response_5min",
    "meeting": "meeting_48h",
}

# Failed events whose error carries this prefix are never picked up for replay.
NON_RETRYABLE_PREFIX = "non_retryable: "


def failure_reason(exc: Exception) -> str:
    if isinstance(exc, InvalidContactError):
        return f"{NON_RETRYABLE_PREFIX}{exc}"
    return str(exc)


@dataclass
class IngestResult:
    status: str
    event_id: uuid.UUID | None = None
    lead_id: uuid.UUID | None = None
    is_new: bool = False
    warnings: list[str] = field(default_factory=list)


class IntakeService:
    """Guard, resolve, then run the best-effort follow-ups for one inbound event.

    Admission and contact resolution are required: if either fails the event is
    marked ``failed`` and the error propagates. Everything after that is a list of
    independent actions whose failures are collected as warnings and never undo
    what was already committed.
    """

    def __init__(
        self,
        *,
        crm: CRMClient | None = None,
        messaging: MessagingClient | None = None,
        clock: Clock = system_clock,
        guard: IdempotencyGuard | None = None,
        resolver: ContactResolver | None = None,
        commitments: CommitmentEngine | None = None,
        sequences: SequencingEngine | None = None,
    ) -> None:
        self.crm = crm or build_crm_client()
        self.messaging = messaging or build_messaging_client()
        self.clock = clock
        self.guard = guard or IdempotencyGuard(clock=clock)
        self.resolver = resolver or ContactResolver(clock=clock)
        self.commitments = commitments or CommitmentEngine(messaging=self.messaging, clock=clock)
        self.sequences = sequences or SequencingEngine(messaging=self.messaging, clock=clock)

    def ingest(
        self,
        session: Session,
        source: str,
        event_type: str,
        dedup_key: str,
        contact: ContactInfo,
        payload: dict[str, Any] | None = None,
    ) -> IngestResult:
        body = dict(payload or {})
        with tracer.start_as_current_span("intake.ingest") as span:
            span.set_attribute("source", source)
            span.set_attribute("event_type", event_type)
            span.set_attribute("idempotency_key", dedup_key)

            # Contacts that cannot identify a lead are rejected before the event row is written.
            try:
                normalize_phone(contact.phone)
            except InvalidContactError as exc:
                observe_inbound_event(source, "rejected")
                logger.warning(
                    "intake.rejected",
                    extra={"source": source, "event_type": event_type, "idempotency_key": dedup_key, "error": str(exc)},
                )
                raise

            envelope = {"contact": contact.model_dump(mode="json", exclude_none=True), "body": body}
            admission = self.guard.admit(session, source, event_type, dedup_key, envelope)
            if not admission.accepted:
                observe_inbound_event(source, "duplicate")
                return IngestResult(status="duplicate")

            result = self._process_contact_event(session, source, event_type, dedup_key, contact, body)
            result.event_id = admission.event_id
            span.set_attribute("status", result.status)
            return result

    def handle_crm_event(
        self,
        session: Session,
        dedup_key: str,
        event_type: str,
        deal_id: str,
        activity_type: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> IngestResult:
        """CRM change notifications: completed activities close commitments, stage moves stop sequences."""
        envelope = {"deal_id": str(deal_id), "activity_type": activity_type, "body": dict(payload or {})}
        admission = self.guard.admit(session, "crm", event_type, dedup_key, envelope)
        if not admission.accepted:
            observe_inbound_event("crm", "duplicate")
            return IngestResult(status="duplicate")

        result = self._apply_crm_event(session, dedup_key, event_type, str(deal_id), activity_type)
        result.event_id = admission.event_id
        return result

    def reprocess_failed(self, session: Session, limit: int | None = None) -> int:
        """Replay resolution and follow-ups for ``failed`` events from their stored payload."""
        batch_size = limit or get_settings().reprocess_batch_size
        events = session.scalars(
            select(InboundEvent)
            .where(
                InboundEvent.status == "failed",
                or_(InboundEvent.error.is_(None), InboundEvent.error.not_like(f"{NON_RETRYABLE_PREFIX}%")),
            )
            .order_by(InboundEvent.updated_at, InboundEvent.created_at)
            .limit(batch_size)
        ).all()

        replayed = 0
        for event in events:
            event_id = event.id
            dedup_key = event.idempotency_key
            source = event.source
            event_type = event.event_type
            stored = dict(event.payload or {})

            claimed = session.execute(
                update(InboundEvent)
                .where(InboundEvent.id == event_id, InboundEvent.status == "failed")
                .values(status="processing", updated_at=self.clock.now())
            )
            session.commit()
            if not claimed.rowcount:
                continue

            try:
                if source == "crm":
                    self._apply_crm_event(
                        session,
                        dedup_key,
                        event_type,
                        str(stored.get("deal_id", "")),
                        stored.get("activity_type"),
                    )
                else:
                    contact = ContactInfo.model_validate(stored.get("contact") or {})
                    self._process_contact_event(session, source, event_type, dedup_key, contact, stored.get("body") or {})
            except Exception as exc:
                session.rollback()
                self.guard.mark_status(session, dedup_key, "failed", failure_reason(exc))
                logger.warning(
                    "intake.reprocess_failed",
                    extra={"event_id": str(event_id), "idempotency_key": dedup_key, "error": str(exc)},
                )
                continue

            replayed += 1
            logger.info("intake.reprocessed", extra={"event_id": str(event_id), "idempotency_key": dedup_key})

        return replayed

    def _process_contact_event(
        self,
        session: Session,
        source: str,
        event_type: str,
        dedup_key: str,
        contact: ContactInfo,
        body: dict[str, Any],
    ) -> IngestResult:
        self.guard.mark_status(session, dedup_key, "processing")
        try:
            resolution = self.resolver.resolve(session, contact.phone, contact, source)
        except Exception as exc:
            session.rollback()
            self.guard.mark_status(session, dedup_key, "failed", failure_reason(exc))
            observe_inbound_event(source, "failed")
            logger.warning(
                "intake.failed",
                extra={"source": source, "event_type": event_type, "idempotency_key": dedup_key, "error": str(exc)},
            )
            raise

        lead_id = resolution.lead.id
        warnings = self._run_best_effort(session, lead_id, self._follow_ups(session, resolution, event_type, body))

        self.guard.mark_status(session, dedup_key, "processed", "; ".join(warnings) or None)
        status = "accepted_with_warnings" if warnings else "accepted"
        observe_inbound_event(source, status)
        logger.info(
            "intake.processed",
            extra={
                "source": source,
                "event_type": event_type,
                "idempotency_key": dedup_key,
                "lead_id": str(lead_id),
                "is_new": resolution.is_new,
                "status": status,
                "warnings": warnings,
            },
        )
        return IngestResult(status=status, lead_id=lead_id, is_new=resolution.is_new, warnings=warnings)

    def _follow_ups(
        self,
        session: Session,
        resolution: Resolution,
        event_type: str,
        body: dict[str, Any],
    ) -> list[BestEffortAction]:
        lead = resolution.lead
        if resolution.is_new:
            return [
                ("commitment", lambda: self.commitments.start(session, lead.id, "response_5min")),
                ("crm_sync", lambda: self.sync_crm(session, lead)),
                ("notification", lambda: self._notify_new_lead(lead)),
                ("sequence", lambda: self.sequences.start(session, lead)),
            ]
        if event_type == "message_received":
            return [
                ("inbound_message", lambda: self._record_inbound_message(session, lead, body)),
                ("sequence_cancel", lambda: self.sequences.cancel(session, lead.id, "responded")),
            ]
        return []

    def _run_best_effort(self, session: Session, lead_id: uuid.UUID, actions: list[BestEffortAction]) -> list[str]:
        warnings: list[str] = []
        for name, action in actions:
            try:
                action()
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "intake.action_failed",
                    extra={"operation": name, "lead_id": str(lead_id), "error": str(exc)},
                )
                warnings.append(f"{name}: {exc}")
        return warnings

    def sync_crm(self, session: Session, lead: Lead) -> None:
        """Find-or-create the CRM person and create the deal once; deal creation is never retried."""
        if lead.crm_deal_id:
            return

        contact = self.crm.find_contact(lead.phone_normalized)
        if contact is None:
            contact = self.crm.create_contact(lead.name, lead.phone, lead.email)
        deal = self.crm.create_deal(f"{lead.name} - {lead.source}", contact.id, lead.estimated_ticket)

        lead.crm_person_id = contact.id
        lead.crm_deal_id = deal.id
        lead.updated_at = self.clock.now()
        session.add(lead)
        record_activity(
            session,
            lead.id,
            "crm_synced",
            "Lead synced to CRM",
            {"crm_person_id": contact.id, "crm_deal_id": deal.id},
            occurred_at=self.clock.now(),
        )
        session.commit()
        logger.info("intake.crm_synced", extra={"lead_id": str(lead.id)})

        # Ids are stored first so a failing note never leads to a second deal.
        self.crm.add_deal_note(deal.id, self._deal_note(lead))

    def _deal_note(self, lead: Lead) -> str:
        lines = [
            f"Origem: {lead.source}",
            f"Funil: {lead.funnel}",
            f"Score: {lead.score}",
        ]
        for label, value in (
            ("Tipo de cliente", lead.client_type),
            ("Projeto", lead.project_type),
            ("Fase", lead.project_stage),
            ("Local", lead.location),
            ("Prazo", lead.estimated_deadline),
            ("Ticket estimado", lead.estimated_ticket),
            ("Campanha", lead.utm_campaign),
        ):
            if value:
                lines.append(f"{label}: {value}")
        return "\n".join(lines)

    def _notify_new_lead(self, lead: Lead) -> None:
        group_id = get_settings().whatsapp_sdr_group
        if not group_id:
            logger.warning("intake.notify_skipped", extra={"lead_id": str(lead.id)})
            return

        lines = [
            "*Novo Lead*",
            "",
            f"Nome: {lead.name}",
            f"Telefone: {lead.phone}",
            f"Origem: {lead.source}",
        ]
        if lead.project_type:
            lines.append(f"Tipo: {lead.project_type}")
        if lead.location:
            lines.append(f"Local: {lead.location}")
        lines.extend(["", "SLA: Responder em 5 min"])
        self.messaging.send_group_message(group_id, "\n".join(lines))

    def _record_inbound_message(self, session: Session, lead: Lead, body: dict[str, Any]) -> None:
        text = str(body.get("text") or "")
        record_activity(
            session,
            lead.id,
            "whatsapp_received",
            text[:500] or None,
            {"message_id": body.get("message_id")},
            occurred_at=self.clock.now(),
        )
        session.commit()

    def _apply_crm_event(
        self,
        session: Session,
        dedup_key: str,
        event_type: str,
        deal_id: str,
        activity_type: str | None,
    ) -> IngestResult:
        self.guard.mark_status(session, dedup_key, "processing")
        try:
            lead = session.scalar(select(Lead).where(Lead.crm_deal_id == deal_id)) if deal_id else None
            if lead is None:
                logger.warning("intake.crm_unknown_deal", extra={"idempotency_key": dedup_key, "event_type": event_type})
                self.guard.mark_status(session, dedup_key, "processed")
                observe_inbound_event("crm", "accepted")
                return IngestResult(status="accepted")

            lead_id = lead.id
            if event_type == "activity_completed":
                completion = CRM_ACTIVITY_COMPLETIONS.get(activity_type or "")
                if completion is not None:
                    self.commitments.complete(session, lead_id, completion)
                if activity_type == "meeting":
                    self.commitments.start(session, lead_id, "proposal_72h")
            elif event_type == "deal_stage_changed":
                record_activity(
                    session,
                    lead_id,
                    "stage_change",
                    "Deal stage changed in CRM",
                    {"crm_deal_id": deal_id},
                    occurred_at=self.clock.now(),
                )
                session.commit()
                self.sequences.cancel(session, lead_id, "cancelled")
        except Exception as exc:
            session.rollback()
            self.guard.mark_status(session, dedup_key, "failed", str(exc))
            observe_inbound_event("crm", "failed")
            raise

        self.guard.mark_status(session, dedup_key, "processed")
        observe_inbound_event("crm", "accepted")
        logger.info(
            "intake.crm_applied",
            extra={"idempotency_key": dedup_key, "event_type": event_type, "lead_id": str(lead_id)},
        )
        return IngestResult(status="accepted", lead_id=lead_id)
