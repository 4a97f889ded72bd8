from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class CommitmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    commitment_type: str
    started_at: datetime
    deadline_at: datetime
    completed_at: datetime | None
    breached: bool
    notified: bool


class CommitmentCompleteResponse(BaseModel):
    status: str
    commitment: CommitmentRead | None = None
