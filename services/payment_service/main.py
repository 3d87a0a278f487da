import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

import httpx
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.db import SessionLocal, get_db
from shared.models import MpesaPayment, NcbaLoopPayment
from shared.security import require_admin
from .callbacks import extract_stk_callback
from .gateway import DarajaClient, GatewayConfig, PaymentError
from .phone import normalize_phone
from .processing import (
    CallbackOutcome,
    InvalidPaymentTransition,
    apply_callback,
    confirm_manual_payment,
    ensure_order_payable,
    record_stk_sent,
)
from .realtime import NCBA_LOOP_TABLE, TERMINAL_PAYMENT_STATUSES, feed, payment_row
from .schemas import (
    ErrorOut,
    ManualDecisionIn,
    MpesaPaymentOut,
    NcbaLoopPaymentOut,
    StkPushIn,
    StkPushOut,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

HTTP_TIMEOUT = float(os.getenv("MPESA_HTTP_TIMEOUT", "10"))
STREAM_KEEPALIVE = float(os.getenv("PAYMENT_STREAM_KEEPALIVE", "15"))
STREAM_MAX_SECONDS = float(os.getenv("PAYMENT_STREAM_MAX_SECONDS", "180"))

_http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Keep cold start lightweight for Lambda.
    Run schema creation/migrations at deploy-time, not here.
    """
    global _http_client
    _http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    yield
    if _http_client:
        await _http_client.aclose()
        _http_client = None


app = FastAPI(title="payment-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in prod
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logger.warning("STK push error: %s", exc)
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


def get_gateway() -> Callable[[], DarajaClient]:
    """
    Gateway config is read when the handler builds the client, so a request
    with missing fields is rejected before credentials are looked at.
    """
    def build() -> DarajaClient:
        global _http_client
        if _http_client is None:
            # fallback in case lifespan didn't run
            _http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        return DarajaClient(GatewayConfig.from_env(), _http_client)

    return build


@app.post("/mpesa/stk-push", response_model=StkPushOut, responses={400: {"model": ErrorOut}})
async def stk_push(
    payload: StkPushIn,
    db: Session = Depends(get_db),
    build_gateway: Callable[[], DarajaClient] = Depends(get_gateway),
):
    if not payload.order_id or not payload.phone_number or not payload.amount:
        raise PaymentError("Missing required fields: order_id, phone_number, amount")

    order_id = payload.order_id
    try:
        phone = normalize_phone(payload.phone_number)
    except ValueError as e:
        raise PaymentError(str(e))

    logger.info("STK push request order=%s phone=%s amount=%s", order_id, phone, payload.amount)
    ensure_order_payable(db, order_id)

    gateway = build_gateway()
    result = await gateway.stk_push(
        phone=phone,
        amount=payload.amount,
        account_reference=payload.account_reference or order_id,
        transaction_desc=payload.transaction_desc or f"Payment for Order {order_id}",
    )

    record_stk_sent(db, order_id, phone, payload.amount, result)

    return StkPushOut(
        checkout_request_id=result.checkout_request_id,
        merchant_request_id=result.merchant_request_id,
        customer_message=result.customer_message,
    )


@app.post("/mpesa/callback")
async def mpesa_callback(request: Request, db: Session = Depends(get_db)):
    """
    Daraja result webhook. Unauthenticated; answers in plain text.
    200 once a payment row is matched so the gateway stops redelivering.
    """
    try:
        body = await request.json()
        logger.info("M-Pesa callback received: %s", json.dumps(body))

        cb = extract_stk_callback(body)
        if cb is None:
            logger.info("No stkCallback found in request")
            return PlainTextResponse("OK", status_code=200)

        logger.info(
            "Processing callback checkout_request_id=%s merchant_request_id=%s result_code=%s result_desc=%s",
            cb.checkout_request_id, cb.merchant_request_id, cb.result_code, cb.result_desc,
        )

        outcome, _ = apply_callback(db, cb)
    except (ValueError, ValidationError, SQLAlchemyError, InvalidPaymentTransition):
        logger.exception("Callback processing error")
        return PlainTextResponse("Internal Server Error", status_code=500)

    if outcome is CallbackOutcome.NOT_FOUND:
        logger.error("Payment record not found checkout_request_id=%s", cb.checkout_request_id)
        return PlainTextResponse("Payment record not found", status_code=404)

    return PlainTextResponse("OK", status_code=200)


def _get_by_checkout_id(db: Session, checkout_request_id: str) -> NcbaLoopPayment:
    payment = db.execute(
        select(NcbaLoopPayment).where(NcbaLoopPayment.checkout_request_id == checkout_request_id)
    ).scalar_one_or_none()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@app.get("/mpesa/payments/{checkout_request_id}", response_model=NcbaLoopPaymentOut)
def get_payment_status(checkout_request_id: str, db: Session = Depends(get_db)):
    return _get_by_checkout_id(db, checkout_request_id)


def _sse(event: dict) -> str:
    return f"event: {event['event'].lower()}\ndata: {json.dumps(event)}\n\n"


@app.get("/mpesa/payments/{checkout_request_id}/events")
async def stream_payment_updates(checkout_request_id: str, db: Session = Depends(get_db)):
    """
    Server-sent events for one payment row. The first event is the current
    row; the stream ends after the first terminal status.
    """
    _get_by_checkout_id(db, checkout_request_id)

    async def events():
        # Subscribe before the row is read so no update falls in between.
        # Nothing is registered until the client starts reading.
        sub = feed.subscribe(NCBA_LOOP_TABLE, "checkout_request_id", checkout_request_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + STREAM_MAX_SECONDS
        try:
            with SessionLocal() as s:
                snapshot = payment_row(_get_by_checkout_id(s, checkout_request_id))
            yield _sse({"event": "SNAPSHOT", "table": NCBA_LOOP_TABLE, "new": snapshot})
            if snapshot["status"] in TERMINAL_PAYMENT_STATUSES:
                return
            while loop.time() < deadline:
                try:
                    event = await sub.next_event(timeout=min(STREAM_KEEPALIVE, deadline - loop.time()))
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event)
                if event["new"].get("status") in TERMINAL_PAYMENT_STATUSES:
                    return
        finally:
            sub.close()

    return StreamingResponse(events(), media_type="text/event-stream")


# Admin endpoints
@app.get("/admin/mpesa-payments", response_model=List[MpesaPaymentOut])
def admin_list_mpesa_payments(
    status: Optional[str] = None,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    q = select(MpesaPayment).order_by(MpesaPayment.created_at.desc())
    if status:
        q = q.where(MpesaPayment.status == status)
    return db.execute(q).scalars().all()


@app.get("/admin/ncba-loop-payments", response_model=List[NcbaLoopPaymentOut])
def admin_list_ncba_loop_payments(
    status: Optional[str] = None,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    q = select(NcbaLoopPayment).order_by(NcbaLoopPayment.created_at.desc())
    if status:
        q = q.where(NcbaLoopPayment.status == status)
    return db.execute(q).scalars().all()


@app.post("/admin/mpesa-payments/{payment_id}/confirm", response_model=MpesaPaymentOut)
def admin_confirm_mpesa_payment(
    payment_id: str,
    payload: ManualDecisionIn,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        return confirm_manual_payment(db, payment_id, payload.status, admin_id=str(claims["sub"]))
    except LookupError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except InvalidPaymentTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError:
        raise HTTPException(status_code=500, detail="Failed to update payment")


@app.get("/health")
def health():
    return {"ok": True}
