"""Tests for the Paystack gateway client."""

import asyncio
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from utils import paystack
from utils.paystack import PaystackError


def _mock_client(monkeypatch, handler):
    def _factory():
        return httpx.AsyncClient(base_url="https://api.paystack.test", transport=httpx.MockTransport(handler))
    monkeypatch.setattr(paystack, "_client", _factory)


class TestMinorUnits:
    def test_whole_amount(self):
        assert paystack.to_minor_units(Decimal("1000.00")) == 100000

    def test_float_rounding_is_stable(self):
        # 0.29 * 100 is 28.999... in binary floating point
        assert paystack.to_minor_units(0.29) == 29
        assert paystack.to_minor_units(19.99) == 1999

    def test_half_cent_rounds_up(self):
        assert paystack.to_minor_units("10.005") == 1001

    def test_from_minor_units(self):
        assert paystack.from_minor_units(100000) == 1000.0
        assert paystack.from_minor_units(99950) == 999.5


class TestWebhookSignature:
    body = b'{"event":"charge.success","data":{"reference":"ORD-1","amount":100000}}'

    def _sig(self, body, secret="sk_test_paydesk"):
        return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()

    def test_valid_signature(self):
        assert paystack.verify_webhook_signature(self.body, self._sig(self.body)) is True

    def test_signature_is_over_raw_bytes(self):
        # Re-serialising the JSON changes whitespace and breaks the signature
        reserialised = json.dumps(json.loads(self.body)).encode()
        assert reserialised != self.body
        assert paystack.verify_webhook_signature(reserialised, self._sig(self.body)) is False

    def test_wrong_secret(self):
        assert paystack.verify_webhook_signature(self.body, self._sig(self.body, "sk_other")) is False

    def test_missing_signature(self):
        assert paystack.verify_webhook_signature(self.body, None) is False
        assert paystack.verify_webhook_signature(self.body, "") is False

    def test_non_ascii_signature(self):
        assert paystack.verify_webhook_signature(self.body, "caf\xe9") is False

    def test_no_secret_configured(self, monkeypatch):
        monkeypatch.setattr(paystack, "PAYSTACK_SECRET_KEY", "")
        assert paystack.verify_webhook_signature(self.body, self._sig(self.body)) is False


class TestInitializeTransaction:
    def test_posts_minor_units_and_returns_checkout(self, monkeypatch):
        seen = {}

        def handler(request: httpx.Request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "ORD-1",
                },
            })

        _mock_client(monkeypatch, handler)
        tx = asyncio.run(paystack.initialize_transaction(
            email="buyer@example.com",
            amount=100000,
            reference="ORD-1",
            callback_url="http://localhost:3000/payment/callback",
            metadata={"orderId": "o1"},
        ))

        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == "Bearer sk_test_paydesk"
        assert seen["body"]["amount"] == "100000"
        assert seen["body"]["currency"] == "KES"
        assert seen["body"]["metadata"] == {"orderId": "o1"}
        assert tx.authorization_url == "https://checkout.paystack.com/abc"
        assert tx.access_code == "abc"
        assert tx.reference == "ORD-1"

    def test_generates_reference_when_missing(self, monkeypatch):
        def handler(request: httpx.Request):
            ref = json.loads(request.content)["reference"]
            return httpx.Response(200, json={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x", "access_code": "x", "reference": ref},
            })

        _mock_client(monkeypatch, handler)
        tx = asyncio.run(paystack.initialize_transaction(email="a@example.com", amount=500))
        assert tx.reference.startswith("txn_")

    def test_gateway_rejection_raises(self, monkeypatch):
        def handler(request: httpx.Request):
            return httpx.Response(400, json={"status": False, "message": "Duplicate Transaction Reference"})

        _mock_client(monkeypatch, handler)
        with pytest.raises(PaystackError, match="Duplicate Transaction Reference"):
            asyncio.run(paystack.initialize_transaction(email="a@example.com", amount=500, reference="ORD-1"))

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.setattr(paystack, "PAYSTACK_SECRET_KEY", "")
        with pytest.raises(PaystackError, match="not configured"):
            asyncio.run(paystack.initialize_transaction(email="a@example.com", amount=500))


class TestVerifyTransaction:
    def test_parses_transaction(self, monkeypatch):
        def handler(request: httpx.Request):
            assert request.url.path == "/transaction/verify/ORD-1"
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {
                    "status": "success",
                    "reference": "ORD-1",
                    "amount": 100000,
                    "currency": "KES",
                    "paid_at": "2026-10-18T10:00:00.000Z",
                    "gateway_response": "Successful",
                    "metadata": {"orderId": "o1"},
                },
            })

        _mock_client(monkeypatch, handler)
        tx = asyncio.run(paystack.verify_transaction("ORD-1"))
        assert tx.status == "success"
        assert tx.amount == 100000
        assert tx.currency == "KES"
        assert tx.paid_at == "2026-10-18T10:00:00.000Z"
        assert tx.metadata == {"orderId": "o1"}

    def test_failed_transaction_is_a_status_not_an_error(self, monkeypatch):
        def handler(request: httpx.Request):
            return httpx.Response(200, json={
                "status": True,
                "data": {"status": "failed", "reference": "ORD-1", "amount": 100000, "currency": "KES"},
            })

        _mock_client(monkeypatch, handler)
        tx = asyncio.run(paystack.verify_transaction("ORD-1"))
        assert tx.status == "failed"

    def test_reference_is_encoded_into_one_path_segment(self, monkeypatch):
        seen = {}

        def handler(request: httpx.Request):
            seen["raw_path"] = request.url.raw_path
            seen["query"] = request.url.query
            return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})

        _mock_client(monkeypatch, handler)
        with pytest.raises(PaystackError):
            asyncio.run(paystack.verify_transaction("../customer?perPage=100"))
        assert seen["raw_path"] == b"/transaction/verify/..%2Fcustomer%3FperPage%3D100"
        assert seen["query"] == b""

    def test_network_error_raises(self, monkeypatch):
        def handler(request: httpx.Request):
            raise httpx.ConnectError("connection refused", request=request)

        _mock_client(monkeypatch, handler)
        with pytest.raises(PaystackError, match="Failed to reach Paystack"):
            asyncio.run(paystack.verify_transaction("ORD-1"))

    def test_unknown_reference_raises(self, monkeypatch):
        def handler(request: httpx.Request):
            return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})

        _mock_client(monkeypatch, handler)
        with pytest.raises(PaystackError) as exc:
            asyncio.run(paystack.verify_transaction("nope"))
        assert exc.value.status_code == 404
