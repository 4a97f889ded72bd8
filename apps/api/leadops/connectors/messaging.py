from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from opentelemetry import trace

from leadops.connectors.http import RetryingHttpClient
from leadops.context import get_correlation_id
from leadops.core.config import Settings, get_settings


logger = logging.getLogger("leadops.connectors.messaging")
tracer = trace.get_tracer("leadops.connectors.messaging")


class MessagingClient(Protocol):
    def send_message(self, destination: str, text: str) -> None: ...

    def send_group_message(self, group_id: str, text: str) -> None: ...


class EvolutionMessagingClient:
    """WhatsApp through an Evolution API instance."""

    def __init__(self, api_url: str, api_key: str, instance: str, http: RetryingHttpClient | None = None) -> None:
        self.instance = instance
        self.http = http or RetryingHttpClient(
            "whatsapp",
            api_url,
            headers={"apikey": api_key, "Content-Type": "application/json"},
        )

    def send_message(self, destination: str, text: str) -> None:
        self.http.request(
            "POST",
            f"/message/sendText/{self.instance}",
            operation="send_message",
            json={"number": destination, "text": text},
        )

    def send_group_message(self, group_id: str, text: str) -> None:
        self.http.request(
            "POST",
            f"/message/sendText/{self.instance}",
            operation="send_group_message",
            json={"number": group_id, "text": text},
        )


@dataclass
class StubMessagingClient:
    sent: list[tuple[str, str]] = field(default_factory=list)
    group_messages: list[tuple[str, str]] = field(default_factory=list)
    fail_with: Exception | None = None

    def send_message(self, destination: str, text: str) -> None:
        with tracer.start_as_current_span("messaging.send_message") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            if self.fail_with is not None:
                raise self.fail_with
            self.sent.append((destination, text))

    def send_group_message(self, group_id: str, text: str) -> None:
        with tracer.start_as_current_span("messaging.send_group_message") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            if self.fail_with is not None:
                raise self.fail_with
            self.group_messages.append((group_id, text))


def build_messaging_client(settings: Settings | None = None) -> MessagingClient:
    settings = settings or get_settings()
    if settings.whatsapp_api_url and settings.whatsapp_api_key:
        return EvolutionMessagingClient(settings.whatsapp_api_url, settings.whatsapp_api_key, settings.whatsapp_instance)
    logger.warning("connector.stub_in_use", extra={"system": "whatsapp"})
    return StubMessagingClient()
