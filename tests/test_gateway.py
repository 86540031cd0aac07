from decimal import Decimal

import pytest
import requests

from trustwork.errors import GatewayError
from trustwork.services import payment_service


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


@pytest.fixture
def live(app, monkeypatch):
    app.config["GATEWAY_DRY_RUN"] = False
    app.config["GATEWAY_MAX_RETRIES"] = 3
    sleeps = []
    monkeypatch.setattr(payment_service.time, "sleep", sleeps.append)
    return sleeps


def _script(monkeypatch, outcomes):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers})
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(payment_service.requests, "post", fake_post)
    return calls


def test_dry_run_sends_nothing(app, monkeypatch):
    calls = _script(monkeypatch, [FakeResponse(200)])
    out = payment_service.capture(correlation_id="x-1", amount=Decimal("10"))
    assert out["dry_run"] is True
    assert calls == []


def test_transient_failures_are_retried(live, monkeypatch):
    calls = _script(monkeypatch, [
        requests.ConnectionError("reset"),
        FakeResponse(503),
        FakeResponse(200, {"id": "po-1"}),
    ])
    out = payment_service.payout(correlation_id="x-2", amount=Decimal("4500"), currency="zar", recipient_id=7)
    assert out == {"id": "po-1"}
    assert len(calls) == 3
    assert len(live) == 2
    body = calls[-1]["json"]
    assert body == {"m_payment_id": "x-2", "amount": "4500.00", "currency": "ZAR", "recipient": "7"}
    assert calls[-1]["url"].endswith("/payouts")


def test_exhausted_retries_are_retryable(live, monkeypatch):
    calls = _script(monkeypatch, [requests.Timeout("slow")])
    with pytest.raises(GatewayError) as exc:
        payment_service.refund(correlation_id="x-3", amount=Decimal("1"))
    assert exc.value.retryable is True
    assert exc.value.code == "RETRYABLE"
    assert exc.value.details["correlation_id"] == "x-3"
    assert len(calls) == 3


def test_client_errors_are_permanent(live, monkeypatch):
    calls = _script(monkeypatch, [FakeResponse(400, {"error": "bad amount"})])
    with pytest.raises(GatewayError) as exc:
        payment_service.capture(correlation_id="x-4", amount=Decimal("1"))
    assert exc.value.retryable is False
    assert exc.value.http_status == 502
    assert len(calls) == 1
    assert live == []
