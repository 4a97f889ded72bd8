from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from opentelemetry import trace

from leadops.context import get_correlation_id
from leadops.core.config import get_settings
from leadops.errors import ExternalSyncFailure


logger = logging.getLogger("leadops.connectors")
tracer = trace.get_tracer("leadops.connectors")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RetryingHttpClient:
    """Thin httpx wrapper shared by the outbound connectors.

    Transport errors, 429 and 5xx responses are retried with exponential backoff.
    Calls made with ``retry=False`` get a single attempt so non-idempotent writes
    never hit the external system twice.
    """

    def __init__(
        self,
        system: str,
        base_url: str = "",
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
        attempts: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.system = system
        self.attempts = max(1, attempts if attempts is not None else settings.http_retry_attempts)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.http_retry_backoff_seconds
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            params=params,
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, url: str, *, operation: str, retry: bool = True, **kwargs: Any) -> Any:
        max_attempts = self.attempts if retry else 1

        with tracer.start_as_current_span(f"{self.system}.{operation}") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            span.set_attribute("http.method", method)

            for attempt in range(1, max_attempts + 1):
                span.set_attribute("attempt", attempt)
                try:
                    response = self._client.request(method, url, **kwargs)
                except httpx.TransportError as exc:
                    detail = f"{type(exc).__name__}: {exc}"
                else:
                    if response.status_code < 400:
                        if not response.content:
                            return None
                        return response.json()
                    detail = f"HTTP {response.status_code}: {response.text[:200]}"
                    if response.status_code not in RETRYABLE_STATUS_CODES:
                        raise ExternalSyncFailure(self.system, operation, detail)

                if attempt < max_attempts:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "connector.retry",
                        extra={"system": self.system, "operation": operation, "attempt": attempt, "error": detail},
                    )
                    self._sleep(delay)

            raise ExternalSyncFailure(self.system, operation, detail)
