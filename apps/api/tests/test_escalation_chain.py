from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadops.commitments.engine import CommitmentEngine
from leadops.commitments.escalation import EscalationChain, format_ticket
from leadops.commitments.models import EscalationRecord
from leadops.connectors.alerts import StubAlertClient
from leadops.connectors.messaging import StubMessagingClient
from leadops.core.clock import FrozenClock
from leadops.core.config import get_settings
from leadops.core.database import Base
from leadops.errors import ExternalSyncFailure
from leadops.intake.service import IntakeService  # noqa: F401  registers every mapped table
from leadops.leads.models import Lead, LeadActivity


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def groups(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WHATSAPP_SDR_GROUP", "sdr-group@g.us")
    monkeypatch.setenv("WHATSAPP_OPS_GROUP", "ops-group@g.us")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture()
def messaging() -> StubMessagingClient:
    return StubMessagingClient()


@pytest.fixture()
def alerts() -> StubAlertClient:
    return StubAlertClient()


@pytest.fixture()
def chain(alerts: StubAlertClient, messaging: StubMessagingClient, clock: FrozenClock) -> EscalationChain:
    return EscalationChain(alerts=alerts, messaging=messaging, clock=clock)


@pytest.fixture()
def breached_lead_id(db_session: Session, messaging: StubMessagingClient, clock: FrozenClock) -> uuid.UUID:
    lead = Lead(
        source="meta_ads",
        funnel="end_client",
        name="Diego",
        phone="11977776666",
        phone_normalized="5511977776666",
        estimated_ticket=Decimal("250000"),
        created_at=NOW,
        updated_at=NOW,
    )
    db_session.add(lead)
    db_session.commit()

    engine = CommitmentEngine(messaging=messaging, clock=clock)
    engine.start(db_session, lead.id, "response_5min")
    clock.advance(minutes=5, seconds=1)
    assert engine.check_breaches(db_session) == 1
    return lead.id


def test_levels_fire_exactly_once_over_many_cycles(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    messaging: StubMessagingClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    for _ in range(100):
        clock.advance(minutes=1)
        chain.run(db_session)

    records = db_session.scalars(select(EscalationRecord).order_by(EscalationRecord.level)).all()
    assert [record.level for record in records] == [1, 2]
    assert [severity for severity, _, _ in alerts.alerts] == ["warning", "critical"]
    ops_messages = [text for group, text in messaging.group_messages if group == "ops-group@g.us"]
    assert len(ops_messages) == 1
    assert "R$ 250.000" in ops_messages[0]

    activity_types = db_session.scalars(
        select(LeadActivity.activity_type).where(LeadActivity.activity_type.like("escalation_level_%"))
    ).all()
    assert sorted(activity_types) == ["escalation_level_1", "escalation_level_2"]


def test_thresholds_are_respected(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    clock.advance(minutes=10)
    assert chain.run(db_session) == 0

    clock.advance(minutes=5)
    assert chain.run(db_session) == 1
    assert alerts.alerts[-1][0] == "warning"

    clock.advance(minutes=14)
    assert chain.run(db_session) == 0

    clock.advance(minutes=1)
    assert chain.run(db_session) == 1
    assert alerts.alerts[-1][0] == "critical"


def test_skipped_cycles_fire_every_reached_level(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    clock.advance(minutes=45)

    assert chain.run(db_session) == 2
    assert chain.run(db_session) == 0
    assert len(alerts.alerts) == 2


def test_failed_alert_releases_reservation_and_retries(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    clock.advance(minutes=16)
    alerts.fail_with = ExternalSyncFailure("slack", "send_alert", "HTTP 500")

    assert chain.run(db_session) == 0
    assert db_session.scalar(select(func.count()).select_from(EscalationRecord)) == 0

    alerts.fail_with = None
    clock.advance(minutes=1)
    assert chain.run(db_session) == 1
    assert db_session.scalar(select(func.count()).select_from(EscalationRecord)) == 1


def test_ops_message_failure_does_not_undo_level_two(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    messaging: StubMessagingClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    clock.advance(minutes=31)
    messaging.fail_with = ExternalSyncFailure("whatsapp", "send_group_message", "timeout")

    assert chain.run(db_session) == 2
    assert chain.run(db_session) == 0
    assert [severity for severity, _, _ in alerts.alerts] == ["warning", "critical"]


def test_completed_commitments_are_not_escalated(
    db_session: Session,
    chain: EscalationChain,
    alerts: StubAlertClient,
    messaging: StubMessagingClient,
    clock: FrozenClock,
    breached_lead_id: uuid.UUID,
) -> None:
    CommitmentEngine(messaging=messaging, clock=clock).complete(db_session, breached_lead_id, "response_5min")
    clock.advance(minutes=60)

    assert chain.run(db_session) == 0
    assert alerts.alerts == []


def test_format_ticket() -> None:
    assert format_ticket(Decimal("1500000.00")) == "R$ 1.500.000"
    assert format_ticket(None) == "sem valor estimado"
