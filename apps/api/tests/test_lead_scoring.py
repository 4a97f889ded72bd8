from __future__ import annotations

from decimal import Decimal

import pytest

from leadops.leads.scoring import infer_funnel, score_lead


@pytest.mark.parametrize(
    ("client_type", "funnel"),
    [
        ("architect", "architects"),
        ("developer", "developers"),
        ("contractor", "developers"),
        ("end_client", "end_client"),
        (None, "end_client"),
    ],
)
def test_infer_funnel(client_type: str | None, funnel: str) -> None:
    assert infer_funnel(client_type) == funnel


def test_score_for_bare_contact_is_source_only() -> None:
    assert score_lead("whatsapp", {}) == 8
    assert score_lead("unknown-source", {}) == 5


def test_score_for_complete_high_value_ad_lead() -> None:
    fields = {
        "email": "ana@example.com",
        "client_type": "architect",
        "project_type": "residencial",
        "project_stage": "acabamentos",
        "location": "Sao Paulo",
        "estimated_deadline": "30 dias",
        "estimated_ticket": Decimal("150000"),
    }
    # 10 source + 20 client type + 20 stage + 20 ticket + 15 completeness
    assert score_lead("meta_ads", fields) == 85
    assert score_lead("meta_ads", fields) >= 80


def test_score_for_ad_lead_with_only_stage_and_ticket() -> None:
    fields = {"project_stage": "acabamentos", "estimated_ticket": Decimal("150000")}
    # 10 source + 20 stage + 20 ticket + round(2/7 * 15)
    assert score_lead("meta_ads", fields) == 54


def test_score_ticket_brackets() -> None:
    base = score_lead("website", {})
    assert score_lead("website", {"estimated_ticket": Decimal("1000")}) == base + 5 + 2
    assert score_lead("website", {"estimated_ticket": Decimal("20000")}) == base + 10 + 2
    assert score_lead("website", {"estimated_ticket": Decimal("50000")}) == base + 15 + 2
    assert score_lead("website", {"estimated_ticket": Decimal("100000")}) == base + 20 + 2
    assert score_lead("website", {"estimated_ticket": Decimal("0")}) == base


def test_score_is_clamped_to_one_hundred() -> None:
    fields = {
        "email": "x@example.com",
        "client_type": "architect",
        "project_type": "comercial",
        "project_stage": "acabamentos",
        "location": "Rio",
        "estimated_deadline": "imediato",
        "estimated_ticket": Decimal("500000"),
    }
    assert score_lead("architect", fields) == 100
