from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from leadops.core.auth import AuthUser
from leadops.core.database import get_db
from leadops.core.rbac import require_permissions
from leadops.dependencies import get_sequencing_engine
from leadops.sequences.engine import SequencingEngine
from leadops.sequences.schemas import SequenceCancelRequest, SequenceCancelResponse


router = APIRouter(prefix="/api/leads", tags=["leads.sequences"])


@router.post("/{lead_id}/sequences/cancel", response_model=SequenceCancelResponse)
def cancel_sequence(
    lead_id: uuid.UUID,
    dto: SequenceCancelRequest | None = None,
    db: Session = Depends(get_db),
    engine: SequencingEngine = Depends(get_sequencing_engine),
    user: AuthUser = Depends(require_permissions("leads.sequences.manage")),
) -> SequenceCancelResponse:
    reason = dto.reason if dto is not None else "cancelled"
    return SequenceCancelResponse(cancelled=engine.cancel(db, lead_id, reason))
