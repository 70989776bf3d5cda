"""Integration tests for the notifier HTTP client against the mock SMS gateway"""

import asyncio
import httpx
from hostel_billing.domain.models import NotificationMessage
from hostel_billing.infrastructure.clients.notifier import NotifierClient

REMINDER = NotificationMessage(template="rent_reminder", params={"name": "Rahim", "total_due": "1500"})


def _counting_transport(status_code: int, calls: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json={"detail": "nope"})

    return httpx.MockTransport(handler)


def test_notify_delivers(gateway, gateway_client):
    outcome = asyncio.run(gateway_client.notify("01711111111", REMINDER))

    assert outcome.delivered is True
    assert gateway.sent == [
        {"to": "01711111111", "template": "rent_reminder", "params": {"name": "Rahim", "total_due": "1500"}}
    ]


def test_undeliverable_number_is_an_outcome_not_an_exception(gateway, gateway_client):
    outcome = asyncio.run(gateway_client.notify("00000000000", REMINDER))

    assert outcome.delivered is False
    assert outcome.reason == "undeliverable number"
    assert gateway.sent == []


def test_notify_many_sends_one_batch(gateway, gateway_client):
    pairs = [("01711111111", REMINDER), ("01722222222", REMINDER)]

    outcome = asyncio.run(gateway_client.notify_many(pairs))

    assert outcome.delivered is True
    assert [m["to"] for m in gateway.sent] == ["01711111111", "01722222222"]


def test_notify_many_reports_partial_failure(gateway, gateway_client):
    pairs = [("01711111111", REMINDER), ("00000000000", REMINDER)]

    outcome = asyncio.run(gateway_client.notify_many(pairs))

    assert outcome.delivered is False
    assert "00000000000" in outcome.reason
    assert [(r.delivered, r.reason) for r in outcome.results] == [(True, None), (False, "undeliverable number")]
    assert [m["to"] for m in gateway.sent] == ["01711111111"]


def test_notify_many_with_no_messages_makes_no_call():
    calls = []
    client = NotifierClient(base_url="http://sms-gateway", transport=_counting_transport(200, calls))

    outcome = asyncio.run(client.notify_many([]))

    assert outcome.delivered is False
    assert calls == []


def test_server_errors_are_retried_then_reported():
    calls = []
    client = NotifierClient(base_url="http://sms-gateway", transport=_counting_transport(503, calls))
    client.backoff_base = 0

    outcome = asyncio.run(client.notify("01711111111", REMINDER))

    assert outcome.delivered is False
    assert outcome.reason == "Notifier error: 503"
    assert len(calls) == client.max_retries


def test_client_errors_are_final():
    calls = []
    client = NotifierClient(base_url="http://sms-gateway", transport=_counting_transport(422, calls))
    client.backoff_base = 0

    outcome = asyncio.run(client.notify("01711111111", REMINDER))

    assert outcome.delivered is False
    assert "422" in outcome.reason
    assert len(calls) == 1


def test_network_failure_recovers_on_retry():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"delivered": True})

    client = NotifierClient(base_url="http://sms-gateway", transport=httpx.MockTransport(handler))
    client.backoff_base = 0

    outcome = asyncio.run(client.notify("01711111111", REMINDER))

    assert outcome.delivered is True
    assert len(calls) == 2


def test_api_key_sent_when_configured():
    calls = []
    client = NotifierClient(base_url="http://sms-gateway", api_key="secret", transport=_counting_transport(200, calls))

    asyncio.run(client.notify("01711111111", REMINDER))

    assert calls[0].headers["X-Api-Key"] == "secret"
