import asyncio
import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FakeDaraja, GATEWAY_CONFIG
from shared.cache import TTLCache
from payment_service.gateway import (
    DarajaClient,
    GatewayConfig,
    PaymentError,
    make_password,
    make_timestamp,
    whole_amount,
)

FIXED_NOW = datetime(2024, 1, 5, 11, 30, 0, tzinfo=timezone.utc)


def _client(daraja: FakeDaraja, cache=None) -> DarajaClient:
    return DarajaClient(
        GATEWAY_CONFIG,
        httpx.AsyncClient(transport=httpx.MockTransport(daraja)),
        token_cache=cache if cache is not None else TTLCache(default_ttl=3000),
        now=lambda: FIXED_NOW,
    )


def test_timestamp_is_east_africa_time():
    assert make_timestamp(datetime(2024, 1, 1, 21, 0, 0, tzinfo=timezone.utc)) == "20240102000000"


def test_password_is_base64_of_shortcode_passkey_timestamp():
    pw = make_password("174379", "passkey", "20240105143000")
    assert base64.b64decode(pw).decode() == "174379passkey20240105143000"


@pytest.mark.parametrize("amount,expected", [(1000, 1000), (999.5, 1000), ("1024.49", 1024), (0.5, 1)])
def test_amount_rounds_half_up_to_whole_shillings(amount, expected):
    assert whole_amount(amount) == expected


def test_push_payload_and_auth_headers():
    daraja = FakeDaraja()
    result = asyncio.run(_client(daraja).stk_push("254712345678", 1500.4, "Order-1", "Payment for Order 1"))

    assert result.checkout_request_id == "ws_CO_1"
    assert result.merchant_request_id == "29115-1"

    oauth = daraja.calls_to("/oauth/v1/generate")[0]
    assert oauth.url.params["grant_type"] == "client_credentials"
    assert oauth.headers["Authorization"] == "Basic " + base64.b64encode(b"key:secret").decode()

    push = daraja.calls_to("/mpesa/stkpush/v1/processrequest")[0]
    assert push.headers["Authorization"] == "Bearer tok-123"
    body = json.loads(push.content)
    assert body["Timestamp"] == "20240105143000"
    assert body["Password"] == make_password("174379", "passkey", "20240105143000")
    assert body["Amount"] == 1500
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == body["BusinessShortCode"] == "174379"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["CallBackURL"] == "https://shop.test/mpesa/callback"


def test_token_is_reused_while_fresh():
    daraja = FakeDaraja()
    client = _client(daraja)

    async def two_pushes():
        await client.stk_push("254712345678", 10, "a", "a")
        await client.stk_push("254712345678", 10, "b", "b")

    asyncio.run(two_pushes())
    assert len(daraja.calls_to("/oauth/v1/generate")) == 1
    assert len(daraja.calls_to("/mpesa/stkpush/v1/processrequest")) == 2


def test_oauth_failure():
    daraja = FakeDaraja()
    daraja.oauth_status = 400
    with pytest.raises(PaymentError, match="Failed to get OAuth token"):
        asyncio.run(_client(daraja).stk_push("254712345678", 10, "a", "a"))
    assert daraja.calls_to("/mpesa/stkpush/v1/processrequest") == []


def test_gateway_rejection_carries_error_message():
    daraja = FakeDaraja()
    daraja.push_status = 400
    daraja.push_body = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}
    with pytest.raises(PaymentError, match="STK Push failed: Bad Request - Invalid PhoneNumber"):
        asyncio.run(_client(daraja).stk_push("254000", 10, "a", "a"))


def test_unauthorized_push_drops_cached_token():
    daraja = FakeDaraja()
    daraja.push_status = 401
    daraja.push_body = {"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"}
    cache = TTLCache(default_ttl=3000)
    with pytest.raises(PaymentError):
        asyncio.run(_client(daraja, cache).stk_push("254712345678", 10, "a", "a"))
    assert len(cache) == 0


def test_missing_credentials(monkeypatch):
    for name in ("MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_BUSINESS_SHORTCODE", "MPESA_PASSKEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(PaymentError, match="Missing M-Pesa API credentials"):
        GatewayConfig.from_env()


def test_config_from_env_defaults_callback_url(monkeypatch):
    monkeypatch.setenv("MPESA_CONSUMER_KEY", "k")
    monkeypatch.setenv("MPESA_CONSUMER_SECRET", "s")
    monkeypatch.setenv("MPESA_BUSINESS_SHORTCODE", "174379")
    monkeypatch.setenv("MPESA_PASSKEY", "p")
    monkeypatch.delenv("MPESA_CALLBACK_URL", raising=False)
    monkeypatch.delenv("MPESA_BASE_URL", raising=False)
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://api.smarthub.test/")

    cfg = GatewayConfig.from_env()
    assert cfg.callback_url == "https://api.smarthub.test/mpesa/callback"
    assert cfg.base_url == "https://sandbox.safaricom.co.ke"
