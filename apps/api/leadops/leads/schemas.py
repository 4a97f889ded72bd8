from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


ClientType = Literal["architect", "developer", "contractor", "end_client"]
ProjectStage = Literal["planta", "obra_iniciada", "acabamentos"]


class ContactInfo(BaseModel):
    """Contact data carried by an inbound event; everything except the phone is optional."""

    phone: str = Field(min_length=1)
    name: str | None = None
    email: str | None = None
    client_type: ClientType | None = None
    project_type: str | None = None
    project_stage: ProjectStage | None = None
    location: str | None = None
    estimated_deadline: str | None = None
    estimated_ticket: Decimal | None = Field(default=None, ge=0)
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    external_id: str | None = None
