from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadops.commitments.engine import CommitmentEngine
from leadops.commitments.models import CommitmentEvent
from leadops.connectors.crm import StubCRMClient
from leadops.connectors.messaging import StubMessagingClient
from leadops.core.auth import AuthUser, get_current_user
from leadops.core.config import get_settings
from leadops.core.database import Base, get_db
from leadops.dependencies import get_commitment_engine, get_intake_service, get_sequencing_engine
from leadops.errors import ExternalSyncFailure
from leadops.intake.models import InboundEvent
from leadops.intake.service import IntakeService
from leadops.leads.models import Lead
from leadops.main import app
from leadops.sequences.models import SequenceExecution
from leadops.sequences.seed import seed_default_sequences


OPERATOR_ROLES = ["leads.commitments.manage", "leads.sequences.manage"]


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WHATSAPP_SDR_GROUP", "sdr-group@g.us")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def crm() -> StubCRMClient:
    return StubCRMClient()


@pytest.fixture()
def messaging() -> StubMessagingClient:
    return StubMessagingClient()


@pytest.fixture()
def intake(crm: StubCRMClient, messaging: StubMessagingClient) -> IntakeService:
    return IntakeService(crm=crm, messaging=messaging)


@pytest.fixture()
def roles() -> list[str]:
    return list(OPERATOR_ROLES)


@pytest.fixture()
def client(db_session: Session, intake: IntakeService, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="operator-1", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_intake_service] = lambda: intake
    app.dependency_overrides[get_commitment_engine] = lambda: intake.commitments
    app.dependency_overrides[get_sequencing_engine] = lambda: intake.sequences
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _event(key: str | None = "evt-1", phone: str = "11999887766") -> dict:
    body: dict = {
        "source": "website",
        "event_type": "contact_form",
        "contact": {"phone": phone, "name": "Ana", "client_type": "end_client"},
        "payload": {"page": "/orcamento"},
    }
    if key is not None:
        body["idempotency_key"] = key
    return body


def test_event_is_accepted_then_reported_as_duplicate(client: TestClient, db_session: Session) -> None:
    first = client.post("/api/events", json=_event())
    second = client.post("/api/events", json=_event())

    assert first.status_code == 200
    assert first.json()["status"] == "accepted"
    assert first.json()["is_new"] is True
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 1


def test_idempotency_key_header_is_used_when_body_has_none(client: TestClient, db_session: Session) -> None:
    headers = {"Idempotency-Key": "header-key-1"}
    first = client.post("/api/events", json=_event(key=None), headers=headers)
    second = client.post("/api/events", json=_event(key=None), headers=headers)

    assert first.json()["status"] == "accepted"
    assert second.json()["status"] == "duplicate"
    stored = db_session.scalar(select(InboundEvent.idempotency_key))
    assert stored == "header-key-1"


def test_warnings_return_202(client: TestClient, crm: StubCRMClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_create_deal(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise ExternalSyncFailure("pipedrive", "create_deal", "HTTP 502")

    monkeypatch.setattr(crm, "create_deal", failing_create_deal)

    response = client.post("/api/events", json=_event("evt-warn"))

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "accepted_with_warnings"
    assert body["warnings"][0].startswith("crm_sync:")


def test_invalid_contact_returns_error_envelope(client: TestClient) -> None:
    response = client.post(
        "/api/events",
        json=_event("evt-invalid", phone="sem numero"),
        headers={"X-Correlation-Id": "corr-invalid-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "invalid_contact"
    assert body["details"] == {"phone": "sem numero"}
    assert body["correlation_id"] == "corr-invalid-1"
    assert response.headers["x-correlation-id"] == "corr-invalid-1"


def test_lead_form_webhook_dedups_by_external_id(client: TestClient, db_session: Session) -> None:
    payload = {
        "name": "Bruno",
        "phone": "(11) 98765-4321",
        "source": "meta_ads",
        "external_id": "fb-lead-1",
        "client_type": "developer",
        "utm_campaign": "lancamento",
    }

    first = client.post("/webhooks/lead", json=payload)
    second = client.post("/webhooks/lead", json=payload)

    assert first.json()["status"] == "accepted"
    assert second.json()["status"] == "duplicate"
    lead = db_session.scalar(select(Lead))
    assert lead is not None
    assert lead.funnel == "developers"
    assert lead.utm_campaign == "lancamento"
    event = db_session.scalar(select(InboundEvent))
    assert event is not None
    assert event.idempotency_key == "lead:meta_ads:fb-lead-1"


def test_whatsapp_webhook_ignores_own_and_group_messages(client: TestClient, db_session: Session) -> None:
    own = {
        "event": "messages.upsert",
        "data": {"key": {"remoteJid": "5511999887766@s.whatsapp.net", "fromMe": True, "id": "A1"}},
    }
    group = {
        "event": "messages.upsert",
        "data": {"key": {"remoteJid": "120363000000@g.us", "fromMe": False, "id": "A2"}},
    }
    status_update = {"event": "connection.update", "data": None}

    for payload in (own, group, status_update):
        response = client.post("/webhooks/whatsapp", json=payload)
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    assert db_session.scalar(select(func.count()).select_from(InboundEvent)) == 0


def test_whatsapp_reply_stops_active_sequence(client: TestClient, db_session: Session) -> None:
    seed_default_sequences(db_session)
    created = client.post("/api/events", json=_event("evt-seq"))
    lead_id = uuid.UUID(created.json()["lead_id"])

    message = {
        "event": "messages.upsert",
        "data": {
            "key": {"remoteJid": "5511999887766@s.whatsapp.net", "fromMe": False, "id": "MSG-9"},
            "pushName": "Ana",
            "message": {"conversation": "Quero um orcamento"},
            "messageTimestamp": 1767000000,
        },
    }
    first = client.post("/webhooks/whatsapp", json=message)
    second = client.post("/webhooks/whatsapp", json=message)

    assert first.json()["status"] == "accepted"
    assert first.json()["is_new"] is False
    assert second.json()["status"] == "duplicate"
    execution = db_session.scalar(select(SequenceExecution).where(SequenceExecution.lead_id == lead_id))
    assert execution is not None
    assert execution.status == "responded"


def test_crm_webhook_completes_response_commitment(client: TestClient, db_session: Session) -> None:
    created = client.post("/api/events", json=_event("evt-crm"))
    lead = db_session.get(Lead, uuid.UUID(created.json()["lead_id"]))
    assert lead is not None and lead.crm_deal_id is not None

    payload = {
        "meta": {"id": 555, "object": "activity", "action": "updated"},
        "current": {"done": True, "deal_id": int(lead.crm_deal_id), "type": "call"},
        "previous": {"done": False},
    }
    response = client.post("/webhooks/crm", json=payload)

    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    commitment = db_session.scalar(select(CommitmentEvent).where(CommitmentEvent.lead_id == lead.id))
    assert commitment is not None
    assert commitment.completed_at is not None
    assert client.post("/webhooks/crm", json=payload).json()["status"] == "duplicate"


def test_crm_webhook_ignores_unrelated_changes(client: TestClient) -> None:
    payload = {"meta": {"id": 1, "object": "person", "action": "updated"}, "current": {"id": 9}}

    assert client.post("/webhooks/crm", json=payload).json()["status"] == "ignored"


def test_complete_commitment_endpoint(client: TestClient, db_session: Session) -> None:
    created = client.post("/api/events", json=_event("evt-complete"))
    lead_id = created.json()["lead_id"]

    response = client.post(f"/api/leads/{lead_id}/commitments/response_5min/complete")
    again = client.post(f"/api/leads/{lead_id}/commitments/response_5min/complete")
    unknown = client.post(f"/api/leads/{lead_id}/commitments/response_1min/complete")

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["commitment"]["commitment_type"] == "response_5min"
    assert again.json()["status"] == "noop"
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "unknown_commitment_type"


def test_complete_commitment_storage_failure_returns_503(client: TestClient, db_session: Session) -> None:
    CommitmentEvent.__table__.drop(bind=db_session.get_bind())

    response = client.post(
        f"/api/leads/{uuid.uuid4()}/commitments/response_5min/complete",
        headers={"X-Correlation-Id": "corr-storage-1"},
    )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "storage_unavailable"
    assert body["correlation_id"] == "corr-storage-1"


def test_cancel_sequence_endpoint(client: TestClient, db_session: Session) -> None:
    seed_default_sequences(db_session)
    created = client.post("/api/events", json=_event("evt-cancel"))
    lead_id = created.json()["lead_id"]

    response = client.post(f"/api/leads/{lead_id}/sequences/cancel", json={"reason": "cancelled"})

    assert response.status_code == 200
    assert response.json() == {"cancelled": 1}


@pytest.mark.parametrize("roles", [["leads.sequences.manage"]])
def test_operator_endpoints_require_permission(client: TestClient) -> None:
    response = client.post(f"/api/leads/{uuid.uuid4()}/commitments/response_5min/complete")

    assert response.status_code == 403
    assert "leads.commitments.manage" in response.json()["detail"]


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_commitment_engine_dependency_is_shared_with_intake() -> None:
    assert isinstance(get_commitment_engine(), CommitmentEngine)
    assert get_commitment_engine() is get_intake_service().commitments
