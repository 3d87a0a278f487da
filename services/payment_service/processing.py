import enum
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shared import order_status
from shared.events import publish
from shared.models import MpesaPayment, NcbaLoopPayment, Order, ProcessedCallback
from .callbacks import StkCallback
from .gateway import PaymentError, StkPushResult
from .realtime import broadcast_payment

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PENDING = "pending"
STK_SENT = "stk_sent"
CONFIRMED = "confirmed"
FAILED = "failed"

TERMINAL = {CONFIRMED, FAILED}

# stk_sent -> stk_sent is a re-push that overwrites the correlation id
_PAYMENT_TRANSITIONS = {
    PENDING: {STK_SENT, CONFIRMED, FAILED},
    STK_SENT: {STK_SENT, CONFIRMED, FAILED},
    CONFIRMED: set(),
    FAILED: set(),
}


class InvalidPaymentTransition(ValueError):
    pass


class CallbackOutcome(str, enum.Enum):
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def check_payment_transition(current: Optional[str], target: str) -> None:
    current = current or PENDING
    if target not in _PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidPaymentTransition(f"Cannot move payment from {current} to {target}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _open_ncba_payment(db: Session, order_id: str) -> Optional[NcbaLoopPayment]:
    """Latest payment row for the order that has not failed."""
    return db.execute(
        select(NcbaLoopPayment)
        .where(NcbaLoopPayment.order_id == order_id, NcbaLoopPayment.status != FAILED)
        .order_by(NcbaLoopPayment.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def ensure_order_payable(db: Session, order_id: str) -> Order:
    """Checks made before anything is sent to the gateway."""
    order = db.get(Order, order_id)
    if order is None:
        raise PaymentError(f"Order {order_id} not found")

    payment = _open_ncba_payment(db, order_id)
    if payment is not None and payment.status == CONFIRMED:
        raise PaymentError(f"Payment for order {order_id} is already confirmed")
    if not order_status.can_transition(order.status, order_status.CONFIRMED):
        raise PaymentError(f"Cannot pay order in status {order.status}")
    return order


def record_stk_sent(
    db: Session,
    order_id: str,
    phone: str,
    amount,
    result: StkPushResult,
) -> Optional[NcbaLoopPayment]:
    """
    Point the order's STK payment row at the new correlation id.

    The push has already reached the customer, so a database failure here is
    logged rather than reported: the callback for this push will 404.
    """
    try:
        payment = _open_ncba_payment(db, order_id)
        if payment is None:
            # a failed attempt stays failed; a retry gets its own row
            payment = NcbaLoopPayment(order_id=order_id, amount=amount, phone_number=phone, status=PENDING)
            db.add(payment)
        else:
            check_payment_transition(payment.status, STK_SENT)
            if payment.checkout_request_id and payment.checkout_request_id != result.checkout_request_id:
                logger.warning(
                    "Re-push for order=%s replaces checkout_request_id=%s",
                    order_id, payment.checkout_request_id,
                )

        payment.status = STK_SENT
        payment.checkout_request_id = result.checkout_request_id
        payment.merchant_request_id = result.merchant_request_id
        payment.phone_number = phone
        db.commit()
        db.refresh(payment)
    except (SQLAlchemyError, InvalidPaymentTransition) as e:
        db.rollback()
        logger.error("Error updating payment record order=%s error=%r", order_id, e)
        return None

    broadcast_payment(payment)
    return payment


def _success_message(cb: StkCallback) -> str:
    return (
        f"M-Pesa Payment Confirmed - Receipt: {cb.receipt_number or ''}, "
        f"Date: {cb.transaction_date}, Phone: {cb.phone_number}, Amount: {cb.amount}"
    )


def _move_order(db: Session, order_id: Optional[str], target: str) -> None:
    if not order_id:
        logger.warning("Payment has no order; nothing to move to %s", target)
        return
    order = db.get(Order, order_id)
    if order is None:
        logger.warning("Order %s referenced by payment does not exist", order_id)
        return
    if not order_status.can_transition(order.status, target):
        logger.warning("Order %s left in %s; cannot move to %s", order.id, order.status, target)
        return
    order.status = target


def apply_callback(db: Session, cb: StkCallback) -> Tuple[CallbackOutcome, Optional[NcbaLoopPayment]]:
    """
    Apply one gateway callback.

    The payment row, the order row and the ledger entry are written in one
    transaction. A replayed callback, or one for a payment that already
    reached a terminal state, changes nothing.
    """
    payment = db.execute(
        select(NcbaLoopPayment)
        .where(NcbaLoopPayment.checkout_request_id == cb.checkout_request_id)
        .with_for_update()
    ).scalar_one_or_none()
    if payment is None:
        db.rollback()
        return CallbackOutcome.NOT_FOUND, None

    dedupe_key = cb.dedupe_key()
    seen = db.execute(
        select(ProcessedCallback.id).where(ProcessedCallback.dedupe_key == dedupe_key)
    ).first()
    if seen is not None or payment.status in TERMINAL:
        db.rollback()
        logger.info(
            "Ignoring replayed callback checkout_request_id=%s status=%s",
            cb.checkout_request_id, payment.status,
        )
        return CallbackOutcome.DUPLICATE, payment

    if cb.succeeded:
        target = CONFIRMED
        payment.confirmed_at = _now()
        payment.mpesa_receipt_number = cb.receipt_number
        payment.message = _success_message(cb)
    else:
        target = FAILED
        payment.message = f"Payment Failed: {cb.result_desc}"

    check_payment_transition(payment.status, target)
    payment.status = target
    _move_order(db, payment.order_id, target)
    db.add(
        ProcessedCallback(
            dedupe_key=dedupe_key,
            checkout_request_id=cb.checkout_request_id,
            result_code=cb.result_code,
        )
    )

    try:
        db.commit()
    except IntegrityError:
        # a concurrent delivery of the same callback won the ledger insert
        db.rollback()
        return CallbackOutcome.DUPLICATE, payment
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(payment)
    logger.info(
        "Callback applied checkout_request_id=%s payment=%s order=%s status=%s",
        cb.checkout_request_id, payment.id, payment.order_id, target,
    )

    broadcast_payment(payment)
    _publish_outcome(db, payment, cb)
    outcome = CallbackOutcome.CONFIRMED if target == CONFIRMED else CallbackOutcome.FAILED
    return outcome, payment


def _publish_outcome(db: Session, payment: NcbaLoopPayment, cb: StkCallback) -> None:
    order = db.get(Order, payment.order_id) if payment.order_id else None
    publish(
        f"payment.{payment.status}",
        {
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "email": order.customer_email if order else None,
            "customer_name": order.customer_name if order else None,
            "amount": str(payment.amount),
            "receipt": payment.mpesa_receipt_number,
            "reason": None if cb.succeeded else cb.result_desc,
        },
        safe=True,
    )


MANUAL_CONFIRM_DESC = "Payment confirmed manually by admin"
MANUAL_FAIL_DESC = "Payment failed - manually marked by admin"


def confirm_manual_payment(db: Session, payment_id: str, status: str, admin_id: str) -> MpesaPayment:
    """
    Admin decision on a pasted-SMS M-Pesa payment. Only pending rows can be
    decided; a confirmed payment moves its order to processing.
    """
    payment = db.execute(
        select(MpesaPayment).where(MpesaPayment.id == payment_id).with_for_update()
    ).scalar_one_or_none()
    if payment is None:
        raise LookupError("Payment not found")

    if status not in TERMINAL or (payment.status or PENDING) != PENDING:
        raise InvalidPaymentTransition(f"Cannot move payment from {payment.status} to {status}")

    payment.status = status
    payment.confirmed_by = admin_id
    payment.result_desc = MANUAL_CONFIRM_DESC if status == CONFIRMED else MANUAL_FAIL_DESC
    if status == CONFIRMED:
        _move_order(db, payment.order_id, order_status.PROCESSING)

    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(payment)

    logger.info("Manual payment decision id=%s status=%s by=%s", payment.id, status, admin_id)
    broadcast_payment(payment)
    return payment
