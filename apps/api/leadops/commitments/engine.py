from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.commitments.models import CommitmentEvent
from leadops.connectors.messaging import MessagingClient, build_messaging_client
from leadops.core.clock import Clock, ensure_utc, system_clock
from leadops.core.config import get_settings
from leadops.errors import StorageFailure, UnknownCommitmentType
from leadops.leads.models import Lead
from leadops.metrics import observe_commitment_breached


logger = logging.getLogger("leadops.commitments")
tracer = trace.get_tracer("leadops.commitments")

COMMITMENT_DURATIONS: dict[str, timedelta] = {
    "response_5min": timedelta(minutes=5),
    "qualification_15min": timedelta(minutes=15),
    "meeting_48h": timedelta(hours=48),
    "proposal_72h": timedelta(hours=72),
    "handoff_24h": timedelta(hours=24),
}

COMMITMENT_LABELS = {
    "response_5min": "Resposta (5 min)",
    "qualification_15min": "Qualificacao (15 min)",
    "meeting_48h": "Reuniao (48h)",
    "proposal_72h": "Proposta (72h)",
    "handoff_24h": "Handoff Obras (24h)",
}


def _open_filter(lead_id: uuid.UUID, commitment_type: str):  # type: ignore[no-untyped-def]
    return (
        CommitmentEvent.lead_id == lead_id,
        CommitmentEvent.commitment_type == commitment_type,
        CommitmentEvent.completed_at.is_(None),
        CommitmentEvent.breached.is_(False),
    )


class CommitmentEngine:
    """Opens, completes and breaches time-bound obligations per lead.

    Every state change is a conditional UPDATE against the previously observed
    state, so overlapping poll cycles can never breach or notify a row twice.
    """

    def __init__(self, messaging: MessagingClient | None = None, clock: Clock = system_clock) -> None:
        self.messaging = messaging or build_messaging_client()
        self.clock = clock

    def start(self, session: Session, lead_id: uuid.UUID, commitment_type: str) -> CommitmentEvent:
        duration = COMMITMENT_DURATIONS.get(commitment_type)
        if duration is None:
            raise UnknownCommitmentType(commitment_type)

        existing = session.scalar(select(CommitmentEvent).where(*_open_filter(lead_id, commitment_type)))
        if existing is not None:
            logger.info(
                "commitment.already_open",
                extra={"lead_id": str(lead_id), "commitment_id": str(existing.id), "commitment_type": commitment_type},
            )
            return existing

        now = self.clock.now()
        commitment = CommitmentEvent(
            lead_id=lead_id,
            commitment_type=commitment_type,
            started_at=now,
            deadline_at=now + duration,
            created_at=now,
        )
        session.add(commitment)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = session.scalar(select(CommitmentEvent).where(*_open_filter(lead_id, commitment_type)))
            if existing is None:
                raise
            return existing

        session.refresh(commitment)
        logger.info(
            "commitment.started",
            extra={
                "lead_id": str(lead_id),
                "commitment_id": str(commitment.id),
                "commitment_type": commitment_type,
                "deadline_at": commitment.deadline_at.isoformat(),
            },
        )
        return commitment

    def complete(self, session: Session, lead_id: uuid.UUID, commitment_type: str) -> CommitmentEvent | None:
        if commitment_type not in COMMITMENT_DURATIONS:
            raise UnknownCommitmentType(commitment_type)

        try:
            commitment = session.scalar(
                select(CommitmentEvent)
                .where(
                    CommitmentEvent.lead_id == lead_id,
                    CommitmentEvent.commitment_type == commitment_type,
                    CommitmentEvent.completed_at.is_(None),
                )
                .order_by(CommitmentEvent.started_at.desc())
                .limit(1)
            )
            if commitment is None:
                logger.info("commitment.complete_noop", extra={"lead_id": str(lead_id), "commitment_type": commitment_type})
                return None

            now = self.clock.now()
            result = session.execute(
                update(CommitmentEvent)
                .where(CommitmentEvent.id == commitment.id, CommitmentEvent.completed_at.is_(None))
                .values(completed_at=now)
            )
            session.commit()
            session.refresh(commitment)
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageFailure(f"could not complete commitment: {exc}") from exc

        if result.rowcount:
            logger.info(
                "commitment.completed",
                extra={
                    "lead_id": str(lead_id),
                    "commitment_id": str(commitment.id),
                    "commitment_type": commitment_type,
                    "status": "late" if commitment.breached else "on_time",
                },
            )
        return commitment

    def check_breaches(self, session: Session) -> int:
        now = self.clock.now()
        with tracer.start_as_current_span("commitments.check_breaches") as span:
            candidates = session.scalars(
                select(CommitmentEvent).where(
                    CommitmentEvent.completed_at.is_(None),
                    CommitmentEvent.breached.is_(False),
                    CommitmentEvent.deadline_at < now,
                )
            ).all()

            breached = 0
            for commitment in candidates:
                result = session.execute(
                    update(CommitmentEvent)
                    .where(
                        CommitmentEvent.id == commitment.id,
                        CommitmentEvent.breached.is_(False),
                        CommitmentEvent.completed_at.is_(None),
                    )
                    .values(breached=True)
                )
                if not result.rowcount:
                    session.rollback()
                    continue

                record_activity(
                    session,
                    commitment.lead_id,
                    "sla_breach",
                    f"SLA breached: {COMMITMENT_LABELS[commitment.commitment_type]}",
                    {
                        "commitment_id": str(commitment.id),
                        "commitment_type": commitment.commitment_type,
                        "deadline_at": ensure_utc(commitment.deadline_at).isoformat(),
                    },
                    occurred_at=now,
                )
                session.commit()
                breached += 1
                observe_commitment_breached(commitment.commitment_type)
                logger.warning(
                    "commitment.breached",
                    extra={
                        "lead_id": str(commitment.lead_id),
                        "commitment_id": str(commitment.id),
                        "commitment_type": commitment.commitment_type,
                    },
                )

            self._notify_breaches(session)
            span.set_attribute("count", breached)
            return breached

    def _notify_breaches(self, session: Session) -> None:
        # Also picks up rows whose notification failed on an earlier cycle.
        rows = session.execute(
            select(CommitmentEvent, Lead)
            .join(Lead, Lead.id == CommitmentEvent.lead_id)
            .where(
                CommitmentEvent.breached.is_(True),
                CommitmentEvent.notified.is_(False),
                CommitmentEvent.completed_at.is_(None),
            )
        ).all()

        group_id = get_settings().whatsapp_sdr_group
        for commitment, lead in rows:
            claimed = session.execute(
                update(CommitmentEvent)
                .where(CommitmentEvent.id == commitment.id, CommitmentEvent.notified.is_(False))
                .values(notified=True)
            )
            session.commit()
            if not claimed.rowcount:
                continue
            if not group_id:
                logger.warning("commitment.notify_skipped", extra={"commitment_id": str(commitment.id)})
                continue

            try:
                self.messaging.send_group_message(group_id, self._breach_message(commitment, lead))
            except Exception as exc:
                logger.exception(
                    "commitment.notify_failed",
                    extra={"commitment_id": str(commitment.id), "error": str(exc)},
                )
                session.execute(
                    update(CommitmentEvent)
                    .where(CommitmentEvent.id == commitment.id, CommitmentEvent.notified.is_(True))
                    .values(notified=False)
                )
                session.commit()

    def _breach_message(self, commitment: CommitmentEvent, lead: Lead) -> str:
        deadline = ensure_utc(commitment.deadline_at).strftime("%d/%m/%Y %H:%M UTC")
        return "\n".join(
            [
                "*SLA ESTOURADO*",
                "",
                f"Lead: {lead.name}",
                f"Tel: {lead.phone}",
                f"SLA: {COMMITMENT_LABELS[commitment.commitment_type]}",
                f"Deadline: {deadline}",
                "",
                "Acao imediata necessaria!",
            ]
        )
