from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from opentelemetry import trace

from leadops.connectors.http import RetryingHttpClient
from leadops.context import get_correlation_id
from leadops.core.config import Settings, get_settings


logger = logging.getLogger("leadops.connectors.crm")
tracer = trace.get_tracer("leadops.connectors.crm")


@dataclass
class CRMContact:
    id: str
    name: str
    phone: str | None = None
    email: str | None = None


@dataclass
class CRMDeal:
    id: str
    title: str
    person_id: str
    value: Decimal | None = None


class CRMClient(Protocol):
    def find_contact(self, phone: str) -> CRMContact | None: ...

    def create_contact(self, name: str, phone: str, email: str | None = None) -> CRMContact: ...

    def create_deal(self, title: str, person_id: str, value: Decimal | None = None) -> CRMDeal: ...

    def add_deal_note(self, deal_id: str, text: str) -> None: ...

    def update_deal_stage(self, deal_id: str, stage_id: str) -> None: ...


class PipedriveCRMClient:
    def __init__(self, company_domain: str, api_token: str, http: RetryingHttpClient | None = None) -> None:
        self.http = http or RetryingHttpClient(
            "pipedrive",
            f"https://{company_domain}/api/v1",
            params={"api_token": api_token},
        )

    def find_contact(self, phone: str) -> CRMContact | None:
        body = self.http.request(
            "GET",
            "/persons/search",
            operation="find_contact",
            params={"term": phone, "fields": "phone", "limit": 1},
        )
        items = ((body or {}).get("data") or {}).get("items") or []
        if not items:
            return None
        return self._to_contact(items[0].get("item") or {})

    def create_contact(self, name: str, phone: str, email: str | None = None) -> CRMContact:
        payload: dict[str, Any] = {"name": name, "phone": [{"value": phone, "primary": True}]}
        if email:
            payload["email"] = [{"value": email, "primary": True}]
        body = self.http.request("POST", "/persons", operation="create_contact", retry=False, json=payload)
        return self._to_contact((body or {}).get("data") or {})

    def create_deal(self, title: str, person_id: str, value: Decimal | None = None) -> CRMDeal:
        payload: dict[str, Any] = {"title": title, "person_id": int(person_id)}
        if value is not None:
            payload["value"] = float(value)
        body = self.http.request("POST", "/deals", operation="create_deal", retry=False, json=payload)
        data = (body or {}).get("data") or {}
        return CRMDeal(id=str(data["id"]), title=str(data.get("title", title)), person_id=person_id, value=value)

    def add_deal_note(self, deal_id: str, text: str) -> None:
        self.http.request(
            "POST",
            "/notes",
            operation="add_deal_note",
            retry=False,
            json={"deal_id": int(deal_id), "content": text},
        )

    def update_deal_stage(self, deal_id: str, stage_id: str) -> None:
        self.http.request("PUT", f"/deals/{deal_id}", operation="update_deal_stage", json={"stage_id": int(stage_id)})

    def _to_contact(self, item: dict[str, Any]) -> CRMContact:
        phones = item.get("phone") or item.get("phones") or []
        emails = item.get("email") or item.get("emails") or []
        return CRMContact(
            id=str(item["id"]),
            name=str(item.get("name", "")),
            phone=_first_value(phones),
            email=_first_value(emails),
        )


def _first_value(values: Any) -> str | None:
    if isinstance(values, list) and values:
        first = values[0]
        if isinstance(first, dict):
            value = first.get("value")
            return str(value) if value else None
        return str(first)
    if isinstance(values, str) and values:
        return values
    return None


@dataclass
class StubCRMClient:
    """In-process CRM used when no Pipedrive credentials are configured and in tests."""

    contacts: dict[str, CRMContact] = field(default_factory=dict)
    deals: dict[str, CRMDeal] = field(default_factory=dict)
    notes: list[tuple[str, str]] = field(default_factory=list)
    stage_updates: list[tuple[str, str]] = field(default_factory=list)
    calls: list[str] = field(default_factory=list)

    def find_contact(self, phone: str) -> CRMContact | None:
        with tracer.start_as_current_span("crm.find_contact") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            self.calls.append("find_contact")
            for contact in self.contacts.values():
                if contact.phone == phone:
                    return contact
            return None

    def create_contact(self, name: str, phone: str, email: str | None = None) -> CRMContact:
        with tracer.start_as_current_span("crm.create_contact") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            self.calls.append("create_contact")
            contact = CRMContact(id=str(len(self.contacts) + 1), name=name, phone=phone, email=email)
            self.contacts[contact.id] = contact
            return contact

    def create_deal(self, title: str, person_id: str, value: Decimal | None = None) -> CRMDeal:
        with tracer.start_as_current_span("crm.create_deal") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            self.calls.append("create_deal")
            deal = CRMDeal(id=str(1000 + len(self.deals) + 1), title=title, person_id=person_id, value=value)
            self.deals[deal.id] = deal
            return deal

    def add_deal_note(self, deal_id: str, text: str) -> None:
        self.calls.append("add_deal_note")
        self.notes.append((deal_id, text))

    def update_deal_stage(self, deal_id: str, stage_id: str) -> None:
        self.calls.append("update_deal_stage")
        self.stage_updates.append((deal_id, stage_id))


def build_crm_client(settings: Settings | None = None) -> CRMClient:
    settings = settings or get_settings()
    if settings.pipedrive_company_domain and settings.pipedrive_api_token:
        return PipedriveCRMClient(settings.pipedrive_company_domain, settings.pipedrive_api_token)
    logger.warning("connector.stub_in_use", extra={"system": "crm"})
    return StubCRMClient()
