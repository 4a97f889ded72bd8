from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadops.connectors.crm import StubCRMClient
from leadops.connectors.messaging import StubMessagingClient
from leadops.context import correlation_scope
from leadops.core.config import get_settings
from leadops.core.database import Base, get_db
from leadops.dependencies import get_intake_service
from leadops.intake.service import IntakeService
from leadops.leads.models import LeadActivity
from leadops.logging import JsonLogFormatter
from leadops.main import app


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    intake = IntakeService(crm=StubCRMClient(), messaging=StubMessagingClient())
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_intake_service] = lambda: intake
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _event(key: str) -> dict:
    return {
        "source": "website",
        "event_type": "contact_form",
        "idempotency_key": key,
        "contact": {"phone": "11999887766", "name": "Log Lead"},
    }


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.post("/api/events", json=_event("log-evt-0"))

    assert response.status_code == 200
    assert response.headers.get("x-correlation-id")


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/events", json=_event("log-evt-1"), headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "abc-123"

    records = [
        record for record in caplog.records if record.name == "leadops.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "POST"
        and getattr(record, "path", None) == "/api/events"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )

    intake_records = [record for record in caplog.records if record.getMessage() == "intake.processed"]
    assert any(getattr(record, "correlation_id", None) == "abc-123" for record in intake_records)


def test_activity_entries_carry_request_correlation_id(client: TestClient, db_session: Session) -> None:
    client.post("/api/events", json=_event("log-evt-2"), headers={"X-Correlation-Id": "corr-activity-1"})

    activities = db_session.query(LeadActivity).all()
    assert activities
    assert all(activity.correlation_id == "corr-activity-1" for activity in activities)


def test_json_formatter_keeps_whitelisted_fields_only() -> None:
    record = logging.LogRecord("leadops.intake", logging.INFO, __file__, 1, "intake.duplicate", None, None)
    record.idempotency_key = "evt-1"
    record.secret = "do-not-log"
    with correlation_scope("corr-format-1"):
        record.correlation_id = "corr-format-1"
        payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "intake.duplicate"
    assert payload["correlation_id"] == "corr-format-1"
    assert payload["fields"] == {"idempotency_key": "evt-1"}
