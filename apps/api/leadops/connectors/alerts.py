from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

from opentelemetry import trace

from leadops.connectors.http import RetryingHttpClient
from leadops.context import get_correlation_id
from leadops.core.config import Settings, get_settings


logger = logging.getLogger("leadops.connectors.alerts")
tracer = trace.get_tracer("leadops.connectors.alerts")

Severity = Literal["info", "warning", "critical"]

_SEVERITY_PREFIX = {"info": ":information_source:", "warning": ":warning:", "critical": ":rotating_light:"}


class AlertClient(Protocol):
    def send_alert(self, severity: Severity, title: str, body: str) -> None: ...


class SlackAlertClient:
    def __init__(self, webhook_url: str, http: RetryingHttpClient | None = None) -> None:
        self.webhook_url = webhook_url
        self.http = http or RetryingHttpClient("slack", attempts=2)

    def send_alert(self, severity: Severity, title: str, body: str) -> None:
        heading = f"{_SEVERITY_PREFIX.get(severity, '')} {title}".strip()
        self.http.request(
            "POST",
            self.webhook_url,
            operation="send_alert",
            json={
                "text": heading,
                "blocks": [
                    {"type": "header", "text": {"type": "plain_text", "text": heading}},
                    {"type": "section", "text": {"type": "mrkdwn", "text": body}},
                    {
                        "type": "context",
                        "elements": [{"type": "mrkdwn", "text": f"*Severity:* {severity}"}],
                    },
                ],
            },
        )


@dataclass
class StubAlertClient:
    alerts: list[tuple[str, str, str]] = field(default_factory=list)
    fail_with: Exception | None = None

    def send_alert(self, severity: Severity, title: str, body: str) -> None:
        with tracer.start_as_current_span("alerts.send_alert") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            span.set_attribute("severity", severity)
            if self.fail_with is not None:
                raise self.fail_with
            self.alerts.append((severity, title, body))


def build_alert_client(settings: Settings | None = None) -> AlertClient:
    settings = settings or get_settings()
    if settings.slack_webhook_url:
        return SlackAlertClient(settings.slack_webhook_url)
    logger.warning("connector.stub_in_use", extra={"system": "slack"})
    return StubAlertClient()
