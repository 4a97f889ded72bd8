from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from leadops.context import get_correlation_id
from leadops.leads.models import LeadActivity


def record_activity(
    session: Session,
    lead_id: uuid.UUID,
    activity_type: str,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
    occurred_at: datetime | None = None,
) -> LeadActivity:
    """Stage an activity row for the lead; the caller owns the commit."""
    entry = LeadActivity(
        lead_id=lead_id,
        activity_type=activity_type,
        description=description[:500] if description else description,
        activity_metadata=dict(metadata or {}),
        correlation_id=correlation_id or get_correlation_id(),
    )
    if occurred_at is not None:
        entry.created_at = occurred_at
    session.add(entry)
    return entry
