from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadops.audit import record_activity
from leadops.connectors.messaging import MessagingClient, build_messaging_client
from leadops.core.clock import Clock, system_clock
from leadops.errors import TemplateRenderFailure
from leadops.leads.models import Lead
from leadops.metrics import observe_sequence_message
from leadops.sequences.models import FollowUpSequence, FollowUpStep, SequenceExecution
from leadops.sequences.templates import lead_context, render_template


logger = logging.getLogger("leadops.sequences")
tracer = trace.get_tracer("leadops.sequences")

TERMINAL_REASONS = {"cancelled", "responded"}


class SequencingEngine:
    def __init__(self, messaging: MessagingClient | None = None, clock: Clock = system_clock) -> None:
        self.messaging = messaging or build_messaging_client()
        self.clock = clock

    def start(self, session: Session, lead: Lead) -> SequenceExecution | None:
        active = session.scalar(
            select(SequenceExecution.id).where(
                SequenceExecution.lead_id == lead.id,
                SequenceExecution.status == "active",
            )
        )
        if active is not None:
            logger.debug("sequence.already_active", extra={"lead_id": str(lead.id), "execution_id": str(active)})
            return None

        sequence = session.scalar(
            select(FollowUpSequence)
            .where(FollowUpSequence.funnel == lead.funnel, FollowUpSequence.active.is_(True))
            .order_by(FollowUpSequence.created_at)
            .limit(1)
        )
        if sequence is None:
            logger.warning("sequence.not_configured", extra={"lead_id": str(lead.id), "funnel": lead.funnel})
            return None

        first_step = self._step(session, sequence.id, 1)
        if first_step is None:
            logger.warning("sequence.no_steps", extra={"sequence_id": str(sequence.id)})
            return None

        now = self.clock.now()
        execution = SequenceExecution(
            lead_id=lead.id,
            sequence_id=sequence.id,
            current_step=0,
            status="active",
            next_run_at=now + timedelta(minutes=first_step.delay_minutes),
            started_at=now,
        )
        session.add(execution)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent start won the single-active-execution index.
            session.rollback()
            return None

        session.refresh(execution)
        logger.info(
            "sequence.started",
            extra={
                "lead_id": str(lead.id),
                "sequence_id": str(sequence.id),
                "execution_id": str(execution.id),
            },
        )
        return execution

    def cancel(self, session: Session, lead_id: uuid.UUID, reason: str = "cancelled") -> int:
        if reason not in TERMINAL_REASONS:
            raise ValueError(f"invalid cancellation reason: {reason}")

        result = session.execute(
            update(SequenceExecution)
            .where(SequenceExecution.lead_id == lead_id, SequenceExecution.status == "active")
            .values(status=reason, completed_at=self.clock.now(), next_run_at=None)
        )
        session.commit()
        if result.rowcount:
            logger.info("sequence.cancelled", extra={"lead_id": str(lead_id), "reason": reason, "count": result.rowcount})
        return result.rowcount

    def process_due(self, session: Session) -> int:
        now = self.clock.now()
        with tracer.start_as_current_span("sequences.process_due") as span:
            due = session.execute(
                select(SequenceExecution, Lead)
                .join(Lead, Lead.id == SequenceExecution.lead_id)
                .where(SequenceExecution.status == "active", SequenceExecution.next_run_at <= now)
                .order_by(SequenceExecution.next_run_at)
            ).all()

            processed = 0
            for execution, lead in due:
                try:
                    if self._advance(session, execution, lead):
                        processed += 1
                except Exception as exc:
                    session.rollback()
                    logger.exception(
                        "sequence.step_failed",
                        extra={"execution_id": str(execution.id), "lead_id": str(lead.id), "error": str(exc)},
                    )

            span.set_attribute("count", processed)
            if due:
                logger.info("sequence.cycle", extra={"processed": processed, "count": len(due)})
            return processed

    def _advance(self, session: Session, execution: SequenceExecution, lead: Lead) -> bool:
        execution_id = execution.id
        observed_step = execution.current_step
        previous_run_at = execution.next_run_at
        step_order = observed_step + 1

        step = self._step(session, execution.sequence_id, step_order)
        if step is None:
            if self._claim(session, execution_id, observed_step, observed_step, None):
                logger.info("sequence.completed", extra={"execution_id": str(execution_id), "lead_id": str(lead.id)})
            return False

        try:
            message = render_template(step.template, lead_context(lead), template_name=f"step-{step_order}")
        except TemplateRenderFailure as exc:
            observe_sequence_message(step.channel, "render_failed")
            logger.error(
                "sequence.render_failed",
                extra={"execution_id": str(execution_id), "step_order": step_order, "error": exc.detail},
            )
            return False

        now = self.clock.now()
        next_step = self._step(session, execution.sequence_id, step_order + 1)
        next_run_at = now + timedelta(minutes=next_step.delay_minutes) if next_step is not None else None

        # The step is claimed before sending so a worker holding a stale row never sends it again.
        if not self._claim(session, execution_id, observed_step, step_order, next_run_at):
            logger.info(
                "sequence.step_superseded",
                extra={"execution_id": str(execution_id), "lead_id": str(lead.id), "step_order": step_order},
            )
            return False

        try:
            self._dispatch(step.channel, lead, message)
        except Exception:
            self._release(session, execution_id, observed_step, step_order, previous_run_at)
            raise
        observe_sequence_message(step.channel, "sent")

        record_activity(
            session,
            lead.id,
            "follow_up",
            f"Sequence step {step_order}: {message[:200]}",
            {
                "sequence_id": str(execution.sequence_id),
                "execution_id": str(execution_id),
                "step_order": step_order,
                "channel": step.channel,
                "auto": True,
            },
            occurred_at=now,
        )
        session.commit()

        logger.info(
            "sequence.step_sent",
            extra={
                "execution_id": str(execution_id),
                "lead_id": str(lead.id),
                "step_order": step_order,
                "channel": step.channel,
            },
        )
        return True

    def _dispatch(self, channel: str, lead: Lead, message: str) -> None:
        if channel == "whatsapp":
            self.messaging.send_message(lead.phone_normalized, message)
            return
        # Email delivery lives outside this service; the step is logged and the sequence moves on.
        logger.warning("sequence.channel_unsupported", extra={"lead_id": str(lead.id), "channel": channel})

    def _claim(
        self,
        session: Session,
        execution_id: uuid.UUID,
        observed_step: int,
        new_step: int,
        next_run_at: datetime | None,
    ) -> bool:
        """Move an active execution off the observed step; no next run means the sequence is done."""
        values: dict[str, object] = {"current_step": new_step, "next_run_at": next_run_at}
        if next_run_at is None:
            values.update(status="completed", completed_at=self.clock.now())

        result = session.execute(
            update(SequenceExecution)
            .where(
                SequenceExecution.id == execution_id,
                SequenceExecution.status == "active",
                SequenceExecution.current_step == observed_step,
            )
            .values(**values)
        )
        session.commit()
        return bool(result.rowcount)

    def _release(
        self,
        session: Session,
        execution_id: uuid.UUID,
        observed_step: int,
        claimed_step: int,
        previous_run_at: datetime | None,
    ) -> None:
        session.execute(
            update(SequenceExecution)
            .where(
                SequenceExecution.id == execution_id,
                SequenceExecution.current_step == claimed_step,
                SequenceExecution.status.in_(("active", "completed")),
            )
            .values(current_step=observed_step, status="active", completed_at=None, next_run_at=previous_run_at)
        )
        session.commit()

    def _step(self, session: Session, sequence_id: uuid.UUID, step_order: int) -> FollowUpStep | None:
        return session.scalar(
            select(FollowUpStep).where(FollowUpStep.sequence_id == sequence_id, FollowUpStep.step_order == step_order)
        )
