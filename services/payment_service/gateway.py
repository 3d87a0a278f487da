import os
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

import httpx

from shared.cache import TTLCache

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"

# Daraja timestamps are in Kenyan local time, which has no DST
EAT = timezone(timedelta(hours=3), "EAT")

# Refresh tokens a minute before the gateway expires them
TOKEN_EXPIRY_MARGIN = 60

_token_cache: TTLCache[str] = TTLCache(default_ttl=3000)


class PaymentError(Exception):
    """Any failure of the STK push path; surfaced to the caller as a 400."""


@dataclass(frozen=True)
class GatewayConfig:
    consumer_key: str
    consumer_secret: str
    business_short_code: str
    passkey: str
    callback_url: str
    base_url: str = SANDBOX_URL

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        consumer_key = os.getenv("MPESA_CONSUMER_KEY")
        consumer_secret = os.getenv("MPESA_CONSUMER_SECRET")
        short_code = os.getenv("MPESA_BUSINESS_SHORTCODE")
        passkey = os.getenv("MPESA_PASSKEY")
        if not consumer_key or not consumer_secret or not short_code or not passkey:
            raise PaymentError("Missing M-Pesa API credentials")

        callback_url = os.getenv("MPESA_CALLBACK_URL")
        if not callback_url:
            public_url = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
            callback_url = f"{public_url}/mpesa/callback"

        return cls(
            consumer_key=consumer_key,
            consumer_secret=consumer_secret,
            business_short_code=short_code,
            passkey=passkey,
            callback_url=callback_url,
            base_url=os.getenv("MPESA_BASE_URL", SANDBOX_URL).rstrip("/"),
        )


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    customer_message: str


def make_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def make_password(short_code: str, passkey: str, timestamp: str) -> str:
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def whole_amount(amount) -> int:
    # The gateway only accepts whole shillings
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class DarajaClient:
    """
    Thin client over the M-Pesa Daraja API.

    One attempt per call, no retries: a push that reached the customer's
    phone cannot be recalled, so the storefront lets the user retry.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient,
        token_cache: Optional[TTLCache[str]] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.http = http_client
        self.token_cache = _token_cache if token_cache is None else token_cache
        self._now = now

    def _auth_header(self) -> str:
        raw = f"{self.config.consumer_key}:{self.config.consumer_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    async def get_access_token(self) -> str:
        cache_key = (self.config.base_url, self.config.consumer_key)
        cached = self.token_cache.get(cache_key)
        if cached:
            return cached

        try:
            r = await self.http.get(
                f"{self.config.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": self._auth_header()},
            )
        except httpx.RequestError as e:
            raise PaymentError("Failed to get OAuth token") from e

        if r.status_code != 200:
            logger.warning("OAuth request rejected status=%s body=%s", r.status_code, r.text)
            raise PaymentError("Failed to get OAuth token")

        try:
            data = r.json()
            token = data["access_token"]
        except (ValueError, KeyError) as e:
            raise PaymentError("Failed to get OAuth token") from e

        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        self.token_cache.set(cache_key, token, ttl=expires_in - TOKEN_EXPIRY_MARGIN)

        logger.info("OAuth token obtained")
        return token

    def build_push_payload(
        self,
        phone: str,
        amount,
        account_reference: str,
        transaction_desc: str,
    ) -> dict:
        timestamp = make_timestamp(self._now())
        short_code = self.config.business_short_code
        return {
            "BusinessShortCode": short_code,
            "Password": make_password(short_code, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount(amount),
            "PartyA": phone,
            "PartyB": short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

    async def stk_push(
        self,
        phone: str,
        amount,
        account_reference: str,
        transaction_desc: str,
    ) -> StkPushResult:
        token = await self.get_access_token()
        payload = self.build_push_payload(phone, amount, account_reference, transaction_desc)
        logger.info(
            "STK push phone=%s amount=%s reference=%s",
            phone, payload["Amount"], account_reference,
        )

        try:
            r = await self.http.post(
                f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            raise PaymentError(f"STK Push failed: {e!r}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}

        if r.status_code != 200 or data.get("errorCode"):
            if r.status_code == 401:
                self.token_cache.invalidate((self.config.base_url, self.config.consumer_key))
            message = data.get("errorMessage") or "Unknown error"
            logger.warning("STK push rejected status=%s body=%s", r.status_code, data)
            raise PaymentError(f"STK Push failed: {message}")

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise PaymentError("STK Push failed: no CheckoutRequestID in response")

        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID", ""),
            customer_message=data.get("CustomerMessage", ""),
        )
