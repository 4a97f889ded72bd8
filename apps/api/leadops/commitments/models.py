from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid, false
from sqlalchemy.orm import Mapped, mapped_column

from leadops.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommitmentEvent(Base):
    __tablename__ = "commitment_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lead.id", ondelete="RESTRICT"),
        nullable=False,
    )
    commitment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_commitment_event_lead_type", "lead_id", "commitment_type"),
        Index("ix_commitment_event_breach_scan", "breached", "completed_at", "deadline_at"),
        # One open timer per (lead, type); breached or completed rows fall out of the index.
        Index(
            "uq_commitment_event_open",
            "lead_id",
            "commitment_type",
            unique=True,
            postgresql_where=(completed_at.is_(None) & (breached == false())),
            sqlite_where=(completed_at.is_(None) & (breached == false())),
        ),
    )


class EscalationRecord(Base):
    __tablename__ = "escalation_record"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    commitment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("commitment_event.id", ondelete="RESTRICT"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("commitment_id", "level", name="uq_escalation_record_commitment_level"),
    )
