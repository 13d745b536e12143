import hashlib
import hmac

import pytest
import requests

from payfesa.errors import GatewayNotConfigured
from payfesa.utils.paychangu_client import (
    GatewayRequest,
    PaychanguGateway,
    format_amount,
    map_status,
    verify_signature,
)
from payfesa.utils.rails import resolve_rail

from conftest import BANK, MOBILE


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.content = b"{}" if body is not None else b""

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture()
def paychangu(app):
    return PaychanguGateway("sk-test", base_url="https://api.paychangu.test/", timeout=5)


@pytest.fixture()
def posted(monkeypatch):
    calls = []
    responses = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        r = responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    monkeypatch.setattr(requests, "post", fake_post)
    return calls, responses


def _ok(transaction=None, **data):
    return FakeResponse(200, {"status": "success", "data": {"transaction": transaction or {}, **data}})


def test_mobile_money_payout_payload(paychangu, posted):
    calls, responses = posted
    responses.append(_ok({"ref_id": "PC-REF-1", "trace_id": "TR-1", "status": "pending"}))

    res = paychangu.initiate(GatewayRequest("payout", resolve_rail("mobile_money", MOBILE), 92_000, "payout:7"))

    assert res.success
    assert res.status == "processing"
    assert res.external_ref == "PC-REF-1"
    assert res.trace_id == "TR-1"
    call = calls[0]
    assert call["url"] == "https://api.paychangu.test/direct-charge/payouts/initialize"
    assert call["timeout"] == 5
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["json"] == {
        "amount": "920.00",
        "currency": "MWK",
        "charge_id": "payout:7",
        "bank_uuid": "e8d5fca0-e5ac-4714-a518-484be9011326",
        "account_number": "991234567",
        "account_name": "Chikondi Banda",
    }


def test_bank_payout_uses_bank_uuid(paychangu, posted):
    calls, responses = posted
    responses.append(_ok({"ref_id": "R"}))

    paychangu.initiate(GatewayRequest("refund", resolve_rail("bank_transfer", BANK), 5_000, "DISPUTE-1"))

    body = calls[0]["json"]
    assert body["bank_uuid"] == "82310dd1-ec9b-4fe7-a32c-2f262ef08681"
    assert body["account_number"] == "1001234567"
    assert body["amount"] == "50.00"


def test_mobile_money_collection_payload(paychangu, posted):
    calls, responses = posted
    responses.append(_ok({"ref_id": "R"}))

    paychangu.initiate(GatewayRequest("collection", resolve_rail("mobile_money", MOBILE), 50_000, "PC1"))

    assert calls[0]["url"].endswith("/mobile-money/payments/initialize")
    assert calls[0]["json"] == {
        "mobile": "991234567",
        "mobile_money_operator_ref_id": "20be6c20-adeb-4b5b-a7ba-0769820df4fb",
        "amount": "500.00",
        "charge_id": "PC1",
    }


def test_bank_collection_returns_virtual_account(paychangu, posted):
    calls, responses = posted
    account = {"bank_name": "NBM", "account_number": "7000001", "account_name": "PayChangu Collections"}
    responses.append(_ok({"ref_id": "R"}, payment_account_details=account))

    res = paychangu.initiate(GatewayRequest("collection", resolve_rail("bank_transfer", BANK), 50_000, "PC2"))

    assert calls[0]["url"].endswith("/direct-charge/payments/initialize")
    assert calls[0]["json"]["payment_method"] == "mobile_bank_transfer"
    assert calls[0]["json"]["create_permanent_account"] == "false"
    assert res.payment_account_details == account


def test_non_2xx_is_rejected_with_rail_message(paychangu, posted):
    _, responses = posted
    responses.append(FakeResponse(400, {"status": "failed", "message": "insufficient float"}))

    res = paychangu.initiate(GatewayRequest("payout", resolve_rail("bank_transfer", BANK), 184_000, "payout:9"))

    assert not res.success
    assert res.error == "insufficient float"
    assert res.error_kind == "GatewayRejected"
    assert not res.timed_out


def test_success_flag_false_is_rejected(paychangu, posted):
    _, responses = posted
    responses.append(FakeResponse(200, {"status": "failed", "message": "Account is blocked"}))

    res = paychangu.initiate(GatewayRequest("payout", resolve_rail("mobile_money", MOBILE), 1_000, "k"))

    assert not res.success
    assert res.error == "Account is blocked"


def test_read_timeout_is_reported_as_timeout(paychangu, posted):
    _, responses = posted
    responses.append(requests.exceptions.ReadTimeout("read timed out"))

    res = paychangu.initiate(GatewayRequest("payout", resolve_rail("mobile_money", MOBILE), 1_000, "k"))

    assert not res.success
    assert res.timed_out


def test_connect_timeout_is_rejected(paychangu, posted):
    _, responses = posted
    responses.append(requests.exceptions.ConnectTimeout("no route"))

    res = paychangu.initiate(GatewayRequest("payout", resolve_rail("mobile_money", MOBILE), 1_000, "k"))

    assert not res.success
    assert not res.timed_out
    assert res.error_kind == "GatewayRejected"


def test_verify_maps_gateway_status(paychangu, posted):
    calls, responses = posted
    responses.append(FakeResponse(200, {"status": "success", "data": {"status": "successful", "ref_id": "PC-9"}}))

    res = paychangu.verify("payout:9")

    assert calls[0]["url"] == "https://api.paychangu.test/verify-payment"
    assert calls[0]["json"] == {"tx_ref": "payout:9"}
    assert res.success
    assert res.status == "completed"
    assert res.external_ref == "PC-9"


def test_unconfigured_gateway_refuses(app):
    with pytest.raises(GatewayNotConfigured):
        PaychanguGateway("").initiate(GatewayRequest("payout", resolve_rail("mobile_money", MOBILE), 1, "k"))


@pytest.mark.parametrize("raw,expected", [
    ("success", "completed"),
    ("Successful", "completed"),
    ("completed", "completed"),
    ("failed", "failed"),
    ("FAILURE", "failed"),
    ("declined", "failed"),
    ("pending", "processing"),
    ("", "processing"),
    (None, "processing"),
])
def test_map_status(raw, expected):
    assert map_status(raw) == expected


def test_format_amount():
    assert format_amount(12_345) == "123.45"
    assert format_amount(5) == "0.05"
    assert format_amount(700, 0) == "700"


def test_verify_signature():
    body = b'{"event_type":"api.charge.payment"}'
    sig = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    assert verify_signature("whsec", body, sig)
    assert not verify_signature("whsec", body, "0" * 64)
    assert not verify_signature("whsec", body, None)
    assert not verify_signature("", body, sig)
