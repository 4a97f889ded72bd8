from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadops.api.errors import error_response
from leadops.commitments.engine import CommitmentEngine
from leadops.commitments.schemas import CommitmentCompleteResponse, CommitmentRead
from leadops.core.auth import AuthUser
from leadops.core.database import get_db
from leadops.core.rbac import require_permissions
from leadops.dependencies import get_commitment_engine
from leadops.errors import StorageFailure, UnknownCommitmentType


router = APIRouter(prefix="/api/leads", tags=["leads.commitments"])


@router.post("/{lead_id}/commitments/{commitment_type}/complete", response_model=CommitmentCompleteResponse)
def complete_commitment(
    request: Request,
    lead_id: uuid.UUID,
    commitment_type: str,
    db: Session = Depends(get_db),
    engine: CommitmentEngine = Depends(get_commitment_engine),
    user: AuthUser = Depends(require_permissions("leads.commitments.manage")),
) -> CommitmentCompleteResponse | JSONResponse:
    try:
        commitment = engine.complete(db, lead_id, commitment_type)
    except UnknownCommitmentType as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="unknown_commitment_type",
            message=str(exc),
            details={"commitment_type": commitment_type},
        )
    except StorageFailure as exc:
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="storage_unavailable",
            message=str(exc),
        )

    if commitment is None:
        return CommitmentCompleteResponse(status="noop")
    return CommitmentCompleteResponse(status="completed", commitment=CommitmentRead.model_validate(commitment))
