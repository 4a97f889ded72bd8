from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadops.api.errors import error_response
from leadops.core.database import get_db
from leadops.dependencies import get_intake_service
from leadops.errors import InvalidContactError, StorageFailure
from leadops.intake.keys import api_event_key, crm_key, lead_form_key, messaging_key
from leadops.intake.schemas import CRMWebhook, EventCreate, IngestResponse, LeadFormWebhook, WhatsAppWebhook
from leadops.intake.service import IngestResult, IntakeService
from leadops.leads.schemas import ContactInfo


events_router = APIRouter(prefix="/api", tags=["intake.events"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["intake.webhooks"])


def _to_response(result: IngestResult, response: Response) -> IngestResponse:
    if result.status == "accepted_with_warnings":
        response.status_code = status.HTTP_202_ACCEPTED
    return IngestResponse(
        status=result.status,  # type: ignore[arg-type]
        event_id=result.event_id,
        lead_id=result.lead_id,
        is_new=result.is_new,
        warnings=result.warnings,
    )


def _intake_error(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, InvalidContactError):
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="invalid_contact",
            message=str(exc),
            details={"phone": exc.raw_phone},
        )
    return error_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="storage_unavailable",
        message=str(exc),
    )


@events_router.post("/events", response_model=IngestResponse)
def ingest_event(
    request: Request,
    response: Response,
    dto: EventCreate,
    db: Session = Depends(get_db),
    intake: IntakeService = Depends(get_intake_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> IngestResponse | JSONResponse:
    dedup_key = api_event_key(dto.idempotency_key or idempotency_key)
    try:
        result = intake.ingest(db, dto.source, dto.event_type, dedup_key, dto.contact, dto.payload)
    except (InvalidContactError, StorageFailure) as exc:
        return _intake_error(request, exc)
    return _to_response(result, response)


@webhooks_router.post("/lead", response_model=IngestResponse)
def lead_form_webhook(
    request: Request,
    response: Response,
    dto: LeadFormWebhook,
    db: Session = Depends(get_db),
    intake: IntakeService = Depends(get_intake_service),
) -> IngestResponse | JSONResponse:
    try:
        dedup_key = lead_form_key(dto.source, dto.external_id, dto.phone, intake.clock.now())
        result = intake.ingest(
            db,
            dto.source,
            "lead_form",
            dedup_key,
            dto.to_contact(),
            dto.model_dump(mode="json", exclude_none=True),
        )
    except (InvalidContactError, StorageFailure) as exc:
        return _intake_error(request, exc)
    return _to_response(result, response)


@webhooks_router.post("/whatsapp", response_model=IngestResponse)
def whatsapp_webhook(
    request: Request,
    response: Response,
    dto: WhatsAppWebhook,
    db: Session = Depends(get_db),
    intake: IntakeService = Depends(get_intake_service),
    event_header: str | None = Header(default=None, alias="x-event"),
) -> IngestResponse | JSONResponse:
    event_type = dto.event or event_header or "unknown"
    data = dto.data
    if event_type != "messages.upsert" or data is None or data.key.fromMe or data.key.remoteJid.endswith("@g.us"):
        return IngestResponse(status="ignored")

    phone = data.key.remoteJid.split("@", 1)[0]
    contact = ContactInfo(phone=phone, name=data.pushName or "WhatsApp Lead", external_id=data.key.id)
    try:
        result = intake.ingest(
            db,
            "whatsapp",
            "message_received",
            messaging_key(data.key.id),
            contact,
            {"message_id": data.key.id, "text": data.text(), "timestamp": data.messageTimestamp},
        )
    except (InvalidContactError, StorageFailure) as exc:
        return _intake_error(request, exc)
    return _to_response(result, response)


@webhooks_router.post("/crm", response_model=IngestResponse)
def crm_webhook(
    request: Request,
    response: Response,
    dto: CRMWebhook,
    db: Session = Depends(get_db),
    intake: IntakeService = Depends(get_intake_service),
) -> IngestResponse | JSONResponse:
    current = dto.current or {}
    previous = dto.previous or {}
    meta = dto.meta

    if meta.object == "activity" and meta.action == "updated" and current.get("done") is True and current.get("deal_id"):
        event_type = "activity_completed"
        deal_id = str(current["deal_id"])
        activity_type = str(current.get("type") or "")
    elif (
        meta.object == "deal"
        and meta.action == "updated"
        and current.get("id")
        and current.get("stage_id") != previous.get("stage_id")
    ):
        event_type = "deal_stage_changed"
        deal_id = str(current["id"])
        activity_type = None
    else:
        return IngestResponse(status="ignored")

    dedup_key = crm_key(meta.id if meta.id is not None else uuid.uuid4().hex, meta.action)
    try:
        result = intake.handle_crm_event(
            db,
            dedup_key,
            event_type,
            deal_id,
            activity_type,
            dto.model_dump(mode="json"),
        )
    except StorageFailure as exc:
        return _intake_error(request, exc)
    return _to_response(result, response)
