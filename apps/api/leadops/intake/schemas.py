from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from leadops.leads.schemas import ClientType, ContactInfo, ProjectStage


LeadSource = Literal[
    "meta_ads",
    "google_ads",
    "website",
    "instagram",
    "whatsapp",
    "referral",
    "architect",
    "api",
    "other",
]

IngestStatus = Literal["duplicate", "accepted", "accepted_with_warnings"]


class EventCreate(BaseModel):
    source: str = Field(min_length=1, max_length=32)
    event_type: str = Field(min_length=1, max_length=64)
    idempotency_key: str | None = Field(default=None, max_length=255)
    contact: ContactInfo
    payload: dict[str, Any] = Field(default_factory=dict)


class LeadFormWebhook(BaseModel):
    """Normalized lead-form submission (ad platforms, site forms)."""

    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    source: LeadSource
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

    def to_contact(self) -> ContactInfo:
        return ContactInfo.model_validate(self.model_dump(exclude={"source"}))


class WhatsAppMessageKey(BaseModel):
    remoteJid: str
    fromMe: bool = False
    id: str


class WhatsAppMessageContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    conversation: str | None = None
    extendedTextMessage: dict[str, Any] | None = None


class WhatsAppMessageData(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: WhatsAppMessageKey
    pushName: str | None = None
    message: WhatsAppMessageContent | None = None
    messageTimestamp: int | None = None

    def text(self) -> str:
        if self.message is None:
            return ""
        if self.message.conversation:
            return self.message.conversation
        extended = self.message.extendedTextMessage or {}
        return str(extended.get("text") or "")


class WhatsAppWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str | None = None
    data: WhatsAppMessageData | None = None


class CRMWebhookMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    object: str
    action: str


class CRMWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    meta: CRMWebhookMeta
    current: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None


class IngestResponse(BaseModel):
    status: IngestStatus | Literal["ignored"]
    event_id: UUID | None = None
    lead_id: UUID | None = None
    is_new: bool = False
    warnings: list[str] = Field(default_factory=list)
