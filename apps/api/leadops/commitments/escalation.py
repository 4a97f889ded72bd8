from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.commitments.engine import COMMITMENT_LABELS
from leadops.commitments.models import CommitmentEvent, EscalationRecord
from leadops.connectors.alerts import AlertClient, build_alert_client
from leadops.connectors.messaging import MessagingClient, build_messaging_client
from leadops.core.clock import Clock, ensure_utc, system_clock
from leadops.core.config import get_settings
from leadops.leads.models import Lead
from leadops.metrics import observe_escalation_fired


logger = logging.getLogger("leadops.escalation")
tracer = trace.get_tracer("leadops.escalation")


@dataclass(frozen=True)
class EscalationContext:
    commitment: CommitmentEvent
    lead: Lead
    minutes_since_breach: int


def format_ticket(value: Decimal | None) -> str:
    if not value:
        return "sem valor estimado"
    whole = f"{int(value):,}".replace(",", ".")
    return f"R$ {whole}"


class EscalationChain:
    """Fires each severity level once per breached commitment.

    A level is reserved by inserting its ``escalation_record`` row; the unique
    (commitment, level) constraint makes the reservation the dedup point. When the
    primary send fails the reservation is removed so the next cycle retries it.
    """

    def __init__(
        self,
        alerts: AlertClient | None = None,
        messaging: MessagingClient | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.alerts = alerts or build_alert_client()
        self.messaging = messaging or build_messaging_client()
        self.clock = clock

    def thresholds(self) -> list[tuple[int, int]]:
        settings = get_settings()
        return [(1, settings.escalation_level1_minutes), (2, settings.escalation_level2_minutes)]

    def run(self, session: Session) -> int:
        now = self.clock.now()
        with tracer.start_as_current_span("escalation.run") as span:
            rows = session.execute(
                select(CommitmentEvent, Lead)
                .join(Lead, Lead.id == CommitmentEvent.lead_id)
                .where(CommitmentEvent.breached.is_(True), CommitmentEvent.completed_at.is_(None))
            ).all()

            fired = 0
            for commitment, lead in rows:
                elapsed = now - ensure_utc(commitment.deadline_at)
                context = EscalationContext(
                    commitment=commitment,
                    lead=lead,
                    minutes_since_breach=int(elapsed.total_seconds() // 60),
                )
                # Every threshold is checked on every cycle so skipped cycles heal themselves.
                for level, threshold in self.thresholds():
                    if context.minutes_since_breach < threshold:
                        continue
                    if self._fire_level(session, context, level):
                        fired += 1

            span.set_attribute("count", fired)
            if fired:
                logger.info("escalation.processed", extra={"count": fired})
            return fired

    def _fire_level(self, session: Session, context: EscalationContext, level: int) -> bool:
        commitment = context.commitment
        already = session.scalar(
            select(EscalationRecord.id).where(
                EscalationRecord.commitment_id == commitment.id,
                EscalationRecord.level == level,
            )
        )
        if already is not None:
            return False

        record = EscalationRecord(
            commitment_id=commitment.id,
            lead_id=commitment.lead_id,
            level=level,
            fired_at=self.clock.now(),
        )
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return False

        try:
            if level == 1:
                self._send_level1(context)
            else:
                self._send_level2(context)
        except Exception as exc:
            logger.exception(
                "escalation.send_failed",
                extra={"commitment_id": str(commitment.id), "level": level, "error": str(exc)},
            )
            session.execute(delete(EscalationRecord).where(EscalationRecord.id == record.id))
            session.commit()
            return False

        record_activity(
            session,
            commitment.lead_id,
            f"escalation_level_{level}",
            f"Escalation level {level}: {commitment.commitment_type}",
            {
                "commitment_id": str(commitment.id),
                "level": level,
                "minutes_since_breach": context.minutes_since_breach,
            },
            occurred_at=self.clock.now(),
        )
        session.commit()

        observe_escalation_fired(level)
        logger.warning(
            "escalation.fired",
            extra={
                "lead_id": str(commitment.lead_id),
                "commitment_id": str(commitment.id),
                "commitment_type": commitment.commitment_type,
                "level": level,
                "minutes_since_breach": context.minutes_since_breach,
            },
        )
        return True

    def _send_level1(self, context: EscalationContext) -> None:
        label = COMMITMENT_LABELS.get(context.commitment.commitment_type, context.commitment.commitment_type)
        self.alerts.send_alert(
            "warning",
            f"SLA Breach - {label}",
            f"*Lead:* {context.lead.name}\n*SLA:* {label}\n"
            f"*Tempo desde breach:* {context.minutes_since_breach} min\n\nNecessita atencao imediata.",
        )

    def _send_level2(self, context: EscalationContext) -> None:
        label = COMMITMENT_LABELS.get(context.commitment.commitment_type, context.commitment.commitment_type)
        ticket = format_ticket(context.lead.estimated_ticket)
        self.alerts.send_alert(
            "critical",
            f"CRITICO: SLA {label} - {context.lead.name}",
            f"*Lead:* {context.lead.name}\n*SLA:* {label}\n"
            f"*Tempo:* {context.minutes_since_breach} min sem resolucao\n*Valor:* {ticket}\n\n"
            "*ACAO IMEDIATA NECESSARIA*",
        )

        ops_group = get_settings().whatsapp_ops_group
        if not ops_group:
            return
        try:
            self.messaging.send_group_message(
                ops_group,
                f"*ESCALACAO CRITICA*\n\nLead: {context.lead.name}\nSLA: {label}\n"
                f"Tempo: {context.minutes_since_breach} min\nValor: {ticket}\n\nResolucao urgente necessaria!",
            )
        except Exception as exc:
            logger.exception(
                "escalation.ops_message_failed",
                extra={"commitment_id": str(context.commitment.id), "level": 2, "error": str(exc)},
            )
