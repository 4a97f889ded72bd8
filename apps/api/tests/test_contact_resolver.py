from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadops.core.clock import FrozenClock
from leadops.core.database import Base
from leadops.errors import InvalidContactError
from leadops.intake.service import IntakeService  # noqa: F401  registers every mapped table
from leadops.leads.models import Lead, LeadActivity
from leadops.leads.resolver import ContactResolver
from leadops.leads.schemas import ContactInfo


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


@pytest.fixture()
def resolver() -> ContactResolver:
    return ContactResolver(clock=FrozenClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)))


def test_resolve_creates_lead_with_funnel_and_score(db_session: Session, resolver: ContactResolver) -> None:
    contact = ContactInfo(phone="11999887766", name="Ana", client_type="architect", location="Sao Paulo")

    resolution = resolver.resolve(db_session, contact.phone, contact, "website")

    assert resolution.is_new is True
    lead = resolution.lead
    assert lead.phone_normalized == "5511999887766"
    assert lead.funnel == "architects"
    assert lead.stage == "triagem"
    assert lead.score > 0
    activities = db_session.scalars(select(LeadActivity).where(LeadActivity.lead_id == lead.id)).all()
    assert [activity.activity_type for activity in activities] == ["lead_created"]


def test_resolve_without_name_uses_source_placeholder(db_session: Session, resolver: ContactResolver) -> None:
    contact = ContactInfo(phone="11999887766")

    resolution = resolver.resolve(db_session, contact.phone, contact, "instagram")

    assert resolution.lead.name == "Lead instagram"


def test_merge_fills_missing_fields_and_never_overwrites(db_session: Session, resolver: ContactResolver) -> None:
    first = ContactInfo(phone="11999887766", name="Ana", email="ana@example.com")
    resolver.resolve(db_session, first.phone, first, "website")

    second = ContactInfo(
        phone="+55 (11) 99988-7766",
        name="Ana Paula",
        email="other@example.com",
        location="Campinas",
        estimated_ticket=Decimal("75000"),
    )
    resolution = resolver.resolve(db_session, second.phone, second, "meta_ads")

    assert resolution.is_new is False
    assert sorted(resolution.merged_fields) == ["estimated_ticket", "location"]
    lead = resolution.lead
    assert lead.name == "Ana"
    assert lead.email == "ana@example.com"
    assert lead.location == "Campinas"
    assert lead.estimated_ticket == Decimal("75000")
    assert lead.source == "website"
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 1

    merged = db_session.scalar(select(LeadActivity).where(LeadActivity.activity_type == "lead_merged"))
    assert merged is not None
    assert merged.activity_metadata["source"] == "meta_ads"


def test_invalid_phone_raises_before_any_write(db_session: Session, resolver: ContactResolver) -> None:
    contact = ContactInfo(phone="sem telefone")

    with pytest.raises(InvalidContactError):
        resolver.resolve(db_session, contact.phone, contact, "website")

    assert db_session.scalar(select(func.count()).select_from(Lead)) == 0
    assert db_session.scalar(select(func.count()).select_from(LeadActivity)) == 0


def test_find_by_phone_uses_normalized_form(db_session: Session, resolver: ContactResolver) -> None:
    contact = ContactInfo(phone="1198765432", name="Bruno")
    created = resolver.resolve(db_session, contact.phone, contact, "referral").lead

    assert resolver.find_by_phone(db_session, "551198765432").id == created.id
    assert resolver.find_by_phone(db_session, "21912345678") is None
