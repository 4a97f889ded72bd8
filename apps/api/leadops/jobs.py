from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from celery import Celery
from opentelemetry import trace
from sqlalchemy.orm import Session

from leadops.context import correlation_scope
from leadops.core.celery_app import celery_app
from leadops.core.config import Settings, get_settings
from leadops.core.database import SessionLocal
from leadops.dependencies import (
    get_commitment_engine,
    get_escalation_chain,
    get_intake_service,
    get_sequencing_engine,
    get_stale_lead_sweeper,
)
from leadops.metrics import observe_job


logger = logging.getLogger("leadops.jobs")
tracer = trace.get_tracer("leadops.jobs")

SCHEDULE_PREFIX = "leadops."


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    task: str
    interval_setting: str


PERIODIC_JOBS = (
    PeriodicJob("commitments.check_breaches", "leadops.jobs.check_commitment_breaches", "breach_check_interval_seconds"),
    PeriodicJob("commitments.escalate", "leadops.jobs.run_escalation", "escalation_interval_seconds"),
    PeriodicJob("sequences.process_due", "leadops.jobs.process_due_sequences", "sequence_interval_seconds"),
    PeriodicJob("sequences.sweep_stale", "leadops.jobs.sweep_stale_leads", "stale_sweep_interval_seconds"),
    PeriodicJob("intake.reprocess_failed", "leadops.jobs.reprocess_failed_events", "reprocess_interval_seconds"),
)


def register_periodic_jobs(app: Celery, settings: Settings | None = None) -> dict[str, dict[str, Any]]:
    """(Re)build this service's beat entries; safe to call any number of times."""
    settings = settings or get_settings()
    schedule = {
        key: value for key, value in dict(app.conf.beat_schedule or {}).items() if not key.startswith(SCHEDULE_PREFIX)
    }
    for job in PERIODIC_JOBS:
        schedule[f"{SCHEDULE_PREFIX}{job.name}"] = {
            "task": job.task,
            "schedule": float(getattr(settings, job.interval_setting)),
            "options": {"expires": float(getattr(settings, job.interval_setting))},
        }
    app.conf.beat_schedule = schedule
    logger.info("jobs.registered", extra={"count": len(PERIODIC_JOBS)})
    return schedule


def run_job(
    job_name: str,
    work: Callable[[Session], int],
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    """Run one poll cycle in its own session and correlation scope."""
    with correlation_scope() as correlation_id, tracer.start_as_current_span("leadops.job.run") as span:
        span.set_attribute("job_name", job_name)
        span.set_attribute("correlation_id", correlation_id)
        logger.info("job.started", extra={"job_name": job_name, "status": "running"})

        started = time.perf_counter()
        session = session_factory()
        try:
            count = work(session)
        except Exception as exc:
            session.rollback()
            duration = time.perf_counter() - started
            observe_job(job_name, "failed", duration)
            logger.exception(
                "job.failed",
                extra={"job_name": job_name, "status": "failed", "duration_ms": round(duration * 1000, 2), "error": str(exc)},
            )
            raise
        finally:
            session.close()

        duration = time.perf_counter() - started
        observe_job(job_name, "succeeded", duration)
        span.set_attribute("count", count)
        logger.info(
            "job.finished",
            extra={"job_name": job_name, "status": "succeeded", "duration_ms": round(duration * 1000, 2), "count": count},
        )
        return count


@celery_app.task(name="leadops.jobs.check_commitment_breaches")
def check_commitment_breaches() -> int:
    return run_job("commitments.check_breaches", get_commitment_engine().check_breaches)


@celery_app.task(name="leadops.jobs.run_escalation")
def run_escalation() -> int:
    return run_job("commitments.escalate", get_escalation_chain().run)


@celery_app.task(name="leadops.jobs.process_due_sequences")
def process_due_sequences() -> int:
    return run_job("sequences.process_due", get_sequencing_engine().process_due)


@celery_app.task(name="leadops.jobs.sweep_stale_leads")
def sweep_stale_leads() -> int:
    return run_job("sequences.sweep_stale", get_stale_lead_sweeper().run)


@celery_app.task(name="leadops.jobs.reprocess_failed_events")
def reprocess_failed_events() -> int:
    return run_job("intake.reprocess_failed", get_intake_service().reprocess_failed)
