from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class SequenceCancelRequest(BaseModel):
    reason: Literal["cancelled", "responded"] = "cancelled"


class SequenceCancelResponse(BaseModel):
    cancelled: int
