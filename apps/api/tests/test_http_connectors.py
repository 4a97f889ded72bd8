from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from leadops.connectors.alerts import SlackAlertClient
from leadops.connectors.crm import PipedriveCRMClient
from leadops.connectors.http import RetryingHttpClient
from leadops.connectors.messaging import EvolutionMessagingClient
from leadops.errors import ExternalSyncFailure


class Recorder:
    def __init__(self, responses: list[httpx.Response | Exception]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(recorder: Recorder, system: str = "pipedrive", base_url: str = "https://crm.test/api/v1") -> RetryingHttpClient:
    return RetryingHttpClient(
        system,
        base_url,
        params={"api_token": "token"},
        attempts=3,
        backoff_seconds=0.5,
        transport=httpx.MockTransport(recorder),
        sleep=lambda _: None,
    )


def test_retries_transient_failures_then_succeeds() -> None:
    recorder = Recorder(
        [
            httpx.ConnectError("connection refused"),
            httpx.Response(503, text="busy"),
            httpx.Response(200, json={"data": {"items": []}}),
        ]
    )
    crm = PipedriveCRMClient("crm.test", "token", http=_client(recorder))

    assert crm.find_contact("5511999887766") is None
    assert len(recorder.requests) == 3
    assert recorder.requests[0].url.params["term"] == "5511999887766"
    assert recorder.requests[0].url.params["api_token"] == "token"


def test_gives_up_after_max_attempts() -> None:
    recorder = Recorder([httpx.Response(429), httpx.Response(500), httpx.Response(502)])
    client = _client(recorder)

    with pytest.raises(ExternalSyncFailure) as exc_info:
        client.request("GET", "/persons/search", operation="find_contact")

    assert exc_info.value.system == "pipedrive"
    assert exc_info.value.operation == "find_contact"
    assert len(recorder.requests) == 3


def test_client_errors_are_not_retried() -> None:
    recorder = Recorder([httpx.Response(400, json={"error": "bad"})])

    with pytest.raises(ExternalSyncFailure):
        _client(recorder).request("GET", "/persons/search", operation="find_contact")

    assert len(recorder.requests) == 1


def test_create_deal_is_never_retried() -> None:
    recorder = Recorder([httpx.Response(500), httpx.Response(201, json={"data": {"id": 7, "title": "x"}})])
    crm = PipedriveCRMClient("crm.test", "token", http=_client(recorder))

    with pytest.raises(ExternalSyncFailure):
        crm.create_deal("Ana - website", "12", Decimal("1000"))

    assert len(recorder.requests) == 1
    assert json.loads(recorder.requests[0].content) == {"title": "Ana - website", "person_id": 12, "value": 1000.0}


def test_create_contact_parses_response() -> None:
    recorder = Recorder(
        [
            httpx.Response(
                201,
                json={"data": {"id": 42, "name": "Ana", "phone": [{"value": "5511999887766"}], "email": []}},
            )
        ]
    )
    crm = PipedriveCRMClient("crm.test", "token", http=_client(recorder))

    contact = crm.create_contact("Ana", "5511999887766")

    assert contact.id == "42"
    assert contact.phone == "5511999887766"
    assert contact.email is None


def test_messaging_posts_to_instance_endpoint() -> None:
    recorder = Recorder([httpx.Response(201, json={"key": {"id": "abc"}})])
    http = RetryingHttpClient(
        "whatsapp",
        "https://wa.test",
        headers={"apikey": "secret"},
        transport=httpx.MockTransport(recorder),
        sleep=lambda _: None,
    )
    client = EvolutionMessagingClient("https://wa.test", "secret", "main", http=http)

    client.send_group_message("sdr@g.us", "Novo lead")

    request = recorder.requests[0]
    assert request.url.path == "/message/sendText/main"
    assert request.headers["apikey"] == "secret"
    assert json.loads(request.content) == {"number": "sdr@g.us", "text": "Novo lead"}


def test_slack_alert_payload() -> None:
    recorder = Recorder([httpx.Response(200, text="")])
    http = RetryingHttpClient("slack", transport=httpx.MockTransport(recorder), sleep=lambda _: None)
    client = SlackAlertClient("https://hooks.slack.test/services/x", http=http)

    client.send_alert("critical", "CRITICO", "*Lead:* Ana")

    body = json.loads(recorder.requests[0].content)
    assert body["text"].endswith("CRITICO")
    assert body["blocks"][1]["text"]["text"] == "*Lead:* Ana"


def test_deal_note_and_stage_update_requests() -> None:
    recorder = Recorder([httpx.Response(201, json={"data": {"id": 1}}), httpx.Response(200, json={"data": {"id": 7}})])
    crm = PipedriveCRMClient("crm.test", "token", http=_client(recorder))

    crm.add_deal_note("7", "Origem: website")
    crm.update_deal_stage("7", "3")

    note, stage = recorder.requests
    assert note.url.path == "/api/v1/notes"
    assert json.loads(note.content) == {"deal_id": 7, "content": "Origem: website"}
    assert stage.method == "PUT"
    assert stage.url.path == "/api/v1/deals/7"
    assert json.loads(stage.content) == {"stage_id": 3}
