from sqlalchemy import select

from conftest import add, fetch, make_order, query, stk_callback
from shared.models import NcbaLoopPayment, Order, ProcessedCallback


def _stk_sent(order_id="o1", checkout_request_id="ws_CO_1", **kw):
    return NcbaLoopPayment(
        order_id=order_id,
        amount=1000,
        phone_number="254712345678",
        status="stk_sent",
        checkout_request_id=checkout_request_id,
        **kw,
    )


def _by_checkout(checkout_request_id="ws_CO_1") -> NcbaLoopPayment:
    [p] = query(select(NcbaLoopPayment).where(NcbaLoopPayment.checkout_request_id == checkout_request_id))
    return p


def test_happy_path_end_to_end(payment_client):
    add(make_order("o1"))

    r = payment_client.post(
        "/mpesa/stk-push",
        json={"order_id": "o1", "phone_number": "0712345678", "amount": 1000},
    )
    assert r.status_code == 200
    checkout_id = r.json()["CheckoutRequestID"]
    assert checkout_id

    payment = _by_checkout(checkout_id)
    assert payment.status in {"pending", "stk_sent"}

    r = payment_client.post("/mpesa/callback", json=stk_callback(checkout_id))
    assert r.status_code == 200
    assert r.text == "OK"

    payment = _by_checkout(checkout_id)
    assert payment.status == "confirmed"
    assert payment.confirmed_at is not None
    assert payment.mpesa_receipt_number == "QKL1ABC2DE"
    assert payment.message == (
        "M-Pesa Payment Confirmed - Receipt: QKL1ABC2DE, Date: 20240105143000, "
        "Phone: 254712345678, Amount: 1000"
    )
    assert fetch(Order, "o1").status == "confirmed"


def test_failed_payment_marks_both_rows_failed(payment_client):
    add(make_order("o1"))
    add(_stk_sent())

    r = payment_client.post(
        "/mpesa/callback",
        json=stk_callback("ws_CO_1", result_code=1, result_desc="Insufficient funds"),
    )
    assert r.status_code == 200

    payment = _by_checkout()
    assert payment.status == "failed"
    assert payment.message == "Payment Failed: Insufficient funds"
    assert fetch(Order, "o1").status == "failed"


def test_unmatched_callback_is_404_and_changes_nothing(payment_client):
    add(make_order("o1"))
    add(_stk_sent())

    r = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_never_issued"))
    assert r.status_code == 404
    assert r.text == "Payment record not found"

    assert _by_checkout().status == "stk_sent"
    assert fetch(Order, "o1").status == "pending"
    assert query(select(ProcessedCallback)) == []
    assert len(query(select(NcbaLoopPayment))) == 1


def test_replayed_callback_is_acknowledged_without_changes(payment_client, events):
    add(make_order("o1"))
    add(_stk_sent())

    first = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))
    assert first.status_code == 200
    confirmed_at = _by_checkout().confirmed_at

    again = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))
    assert again.status_code == 200
    assert again.text == "OK"

    assert _by_checkout().confirmed_at == confirmed_at
    assert len(query(select(ProcessedCallback))) == 1
    assert [t for t, _ in events if t == "payment.confirmed"] == ["payment.confirmed"]


def test_late_failure_after_confirmation_is_ignored(payment_client):
    add(make_order("o1"))
    add(_stk_sent())

    payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))
    r = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1", result_code=1032))
    assert r.status_code == 200

    assert _by_checkout().status == "confirmed"
    assert fetch(Order, "o1").status == "confirmed"


def test_orphaned_payment_is_still_confirmed(payment_client):
    add(_stk_sent(order_id=None))

    r = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))
    assert r.status_code == 200
    assert _by_checkout().status == "confirmed"


def test_cancelled_order_is_not_resurrected(payment_client):
    add(make_order("o1", status="cancelled"))
    add(_stk_sent())

    r = payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))
    assert r.status_code == 200
    assert _by_checkout().status == "confirmed"
    assert fetch(Order, "o1").status == "cancelled"


def test_callback_without_stk_callback_is_ok(payment_client):
    r = payment_client.post("/mpesa/callback", json={"Body": {}})
    assert r.status_code == 200
    assert r.text == "OK"


def test_malformed_body_is_500(payment_client):
    r = payment_client.post(
        "/mpesa/callback",
        content=b"not json",
        headers={"content-type": "application/json"},
    )
    assert r.status_code == 500

    r = payment_client.post("/mpesa/callback", json={"Body": {"stkCallback": {"ResultCode": "zero"}}})
    assert r.status_code == 500


def test_outcome_events_are_published(payment_client, events):
    add(make_order("o1"))
    add(_stk_sent())

    payment_client.post("/mpesa/callback", json=stk_callback("ws_CO_1"))

    [(_, payload)] = [(t, p) for t, p in events if t == "payment.confirmed"]
    assert payload["order_id"] == "o1"
    assert payload["email"] == "jane@example.com"
    assert payload["receipt"] == "QKL1ABC2DE"

    updates = [p for t, p in events if t == "payments.updated"]
    assert updates[-1]["row"]["status"] == "confirmed"


def test_retry_after_failure_gets_a_new_payment_row(payment_client):
    add(make_order("o1"))

    first = payment_client.post(
        "/mpesa/stk-push", json={"order_id": "o1", "phone_number": "0712345678", "amount": 1000}
    ).json()["CheckoutRequestID"]
    payment_client.post("/mpesa/callback", json=stk_callback(first, result_code=1, result_desc="Insufficient funds"))
    assert fetch(Order, "o1").status == "failed"

    second = payment_client.post(
        "/mpesa/stk-push", json={"order_id": "o1", "phone_number": "0712345678", "amount": 1000}
    ).json()["CheckoutRequestID"]
    assert second != first
    payment_client.post("/mpesa/callback", json=stk_callback(second))

    assert _by_checkout(first).status == "failed"
    assert _by_checkout(second).status == "confirmed"
    assert fetch(Order, "o1").status == "confirmed"
