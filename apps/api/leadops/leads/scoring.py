from __future__ import annotations

from decimal import Decimal
from typing import Any

FUNNEL_BY_CLIENT_TYPE = {
    "architect": "architects",
    "developer": "developers",
    "contractor": "developers",
}
DEFAULT_FUNNEL = "end_client"

SOURCE_SCORES = {
    "architect": 25,
    "referral": 20,
    "website": 15,
    "instagram": 12,
    "meta_ads": 10,
    "google_ads": 10,
    "whatsapp": 8,
}
DEFAULT_SOURCE_SCORE = 5

CLIENT_TYPE_SCORES = {"architect": 20, "developer": 15, "end_client": 10}

PROJECT_STAGE_SCORES = {"acabamentos": 20, "obra_iniciada": 12, "planta": 5}

# (minimum ticket, points), checked top-down; any other positive ticket scores the floor.
TICKET_BRACKETS = ((Decimal("100000"), 20), (Decimal("50000"), 15), (Decimal("20000"), 10))
TICKET_FLOOR_SCORE = 5

COMPLETENESS_FIELDS = (
    "email",
    "client_type",
    "project_type",
    "project_stage",
    "location",
    "estimated_deadline",
    "estimated_ticket",
)
COMPLETENESS_MAX = 15


def infer_funnel(client_type: str | None) -> str:
    return FUNNEL_BY_CLIENT_TYPE.get(client_type or "", DEFAULT_FUNNEL)


def _ticket_score(ticket: Any) -> int:
    if not ticket:
        return 0
    value = Decimal(str(ticket))
    if value <= 0:
        return 0
    for minimum, points in TICKET_BRACKETS:
        if value >= minimum:
            return points
    return TICKET_FLOOR_SCORE


def score_lead(source: str, fields: dict[str, Any]) -> int:
    """Initial qualification score in [0, 100].

    Source quality, client type, project readiness, deal size and data
    completeness each contribute a capped amount.
    """
    score = SOURCE_SCORES.get(source, DEFAULT_SOURCE_SCORE)
    score += CLIENT_TYPE_SCORES.get(fields.get("client_type") or "", 0)
    score += PROJECT_STAGE_SCORES.get(fields.get("project_stage") or "", 0)
    score += _ticket_score(fields.get("estimated_ticket"))

    filled = sum(1 for name in COMPLETENESS_FIELDS if fields.get(name))
    score += round(filled / len(COMPLETENESS_FIELDS) * COMPLETENESS_MAX)

    return max(0, min(score, 100))
