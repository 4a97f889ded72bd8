from __future__ import annotations

import uuid
from datetime import datetime

from leadops.leads.phone import normalize_phone


def lead_form_key(source: str, external_id: str | None, phone: str, received_at: datetime) -> str:
    """Ad-platform forms carry a lead id; without one the phone is deduplicated per day."""
    if external_id:
        return f"lead:{source}:{external_id}"
    return f"lead:{source}:{normalize_phone(phone)}:{received_at.date().isoformat()}"


def messaging_key(message_id: str) -> str:
    return f"wa_{message_id}"


def crm_key(event_id: str | int, action: str | None = None) -> str:
    if action:
        return f"crm_{event_id}_{action}"
    return f"crm_{event_id}"


def api_event_key(idempotency_key: str | None) -> str:
    return idempotency_key or f"evt:{uuid.uuid4()}"
