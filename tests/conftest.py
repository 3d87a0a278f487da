import os
import tempfile
from decimal import Decimal

_TMP = tempfile.mkdtemp(prefix="smarthub-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EVENT_BACKEND"] = "local"
os.environ.pop("JWT_ISSUER", None)
os.environ.pop("JWT_AUDIENCE", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from shared.cache import TTLCache  # noqa: E402
from shared.db import Base, SessionLocal, engine, init_schema  # noqa: E402
from shared.events import subscribe_local  # noqa: E402
from shared.models import Order  # noqa: E402
from payment_service import main as payment_main  # noqa: E402
from payment_service.gateway import DarajaClient, GatewayConfig  # noqa: E402
from payment_service.realtime import feed  # noqa: E402
from order_service import main as order_main  # noqa: E402

GATEWAY_CONFIG = GatewayConfig(
    consumer_key="key",
    consumer_secret="secret",
    business_short_code="174379",
    passkey="passkey",
    callback_url="https://shop.test/mpesa/callback",
    base_url="https://daraja.test",
)


@pytest.fixture(autouse=True)
def fresh_db():
    init_schema()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_feed():
    yield
    for sub in list(feed._subs):
        sub.close()


@pytest.fixture
def events():
    received = []
    remove = subscribe_local(lambda t, p: received.append((t, p)))
    yield received
    remove()


def add(*objs):
    with SessionLocal() as s:
        s.add_all(objs)
        s.commit()
        ids = [o.id for o in objs]
    return ids


def fetch(model, key):
    with SessionLocal() as s:
        obj = s.get(model, key)
        if obj is not None:
            s.expunge(obj)
        return obj


def query(stmt):
    with SessionLocal() as s:
        rows = s.execute(stmt).scalars().all()
        for r in rows:
            s.expunge(r)
        return rows


def make_order(order_id="o1", status="pending", total="1000.00", **kw) -> Order:
    fields = dict(
        id=order_id,
        user_id="user-1",
        quantity=1,
        total_amount=Decimal(total),
        customer_name="Jane Wanjiku",
        customer_email="jane@example.com",
        customer_phone="0712345678",
        shipping_address="Moi Avenue, Nairobi",
        payment_method="ncba_loop",
        status=status,
    )
    fields.update(kw)
    return Order(**fields)


def bearer(sub="user-1", admin=False) -> dict:
    claims = {"sub": sub}
    if admin:
        claims["is_admin"] = True
    token = jwt.encode(claims, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


class FakeDaraja:
    """httpx.MockTransport handler standing in for the Daraja sandbox."""

    def __init__(self):
        self.requests = []
        self.oauth_status = 200
        self.push_status = 200
        self.push_body = None
        self.pushes = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            if self.oauth_status != 200:
                return httpx.Response(self.oauth_status, text="unauthorized")
            return httpx.Response(200, json={"access_token": "tok-123", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            if self.push_body is not None:
                return httpx.Response(self.push_status, json=self.push_body)
            self.pushes += 1
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{self.pushes}",
                    "CheckoutRequestID": f"ws_CO_{self.pushes}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        return httpx.Response(404)

    def calls_to(self, path: str):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def payment_client(daraja):
    cache = TTLCache(default_ttl=3000)

    def _gateway():
        return DarajaClient(
            GATEWAY_CONFIG,
            httpx.AsyncClient(transport=httpx.MockTransport(daraja)),
            token_cache=cache,
        )

    payment_main.app.dependency_overrides[payment_main.get_gateway] = lambda: _gateway
    yield TestClient(payment_main.app)
    payment_main.app.dependency_overrides.clear()


@pytest.fixture
def order_client():
    return TestClient(order_main.app)


def stk_callback(checkout_request_id, result_code=0, result_desc=None, receipt="QKL1ABC2DE", amount=1000):
    cb = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc
        or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if result_code == 0:
        cb["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20240105143000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": cb}}
