from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.connectors.messaging import MessagingClient, build_messaging_client
from leadops.core.clock import Clock, system_clock
from leadops.core.config import get_settings
from leadops.leads.models import Lead, LeadActivity
from leadops.metrics import observe_sequence_message
from leadops.sequences.models import SequenceExecution


logger = logging.getLogger("leadops.sequences.sweeper")

EARLY_STAGES = ("triagem", "qualificado", "reuniao")

STALE_FOLLOW_UP_TEMPLATE = (
    "Ola {name}! Aqui e a Parket. Notamos que voce demonstrou interesse em nossos pisos de madeira. "
    "Podemos ajudar com alguma duvida sobre seu projeto? Estamos a disposicao para agendar uma conversa."
)


class StaleLeadSweeper:
    """Nudges early-stage leads that went quiet and are not in any running sequence."""

    def __init__(self, messaging: MessagingClient | None = None, clock: Clock = system_clock) -> None:
        self.messaging = messaging or build_messaging_client()
        self.clock = clock

    def find_stale(self, session: Session) -> list[Lead]:
        threshold = self.clock.now() - timedelta(hours=get_settings().stale_lead_hours)
        recent_activity = exists().where(LeadActivity.lead_id == Lead.id, LeadActivity.created_at > threshold)
        active_sequence = exists().where(
            SequenceExecution.lead_id == Lead.id,
            SequenceExecution.status == "active",
        )
        return list(
            session.scalars(
                select(Lead)
                .where(
                    Lead.stage.in_(EARLY_STAGES),
                    Lead.created_at < threshold,
                    ~recent_activity,
                    ~active_sequence,
                )
                .order_by(Lead.created_at)
            ).all()
        )

    def run(self, session: Session) -> int:
        sent = 0
        for lead in self.find_stale(session):
            lead_id = lead.id
            try:
                self.messaging.send_message(lead.phone_normalized, STALE_FOLLOW_UP_TEMPLATE.format(name=lead.name))
            except Exception as exc:
                observe_sequence_message("whatsapp", "failed")
                logger.exception("sweeper.follow_up_failed", extra={"lead_id": str(lead_id), "error": str(exc)})
                continue

            record_activity(
                session,
                lead_id,
                "follow_up",
                "Automated follow-up sent to stale lead",
                {"auto": True, "reason": "stale"},
                occurred_at=self.clock.now(),
            )
            session.commit()
            observe_sequence_message("whatsapp", "sent")
            sent += 1
            logger.info("sweeper.follow_up_sent", extra={"lead_id": str(lead_id)})

        return sent
