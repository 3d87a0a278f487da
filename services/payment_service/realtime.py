"""
Realtime bridge for payment rows.

Row-level UPDATE events are pushed to subscribers filtered on a single
column value (in practice the checkout request id), and mirrored to the
event backend so out-of-process consumers see the same stream.
"""
import asyncio
import enum
import logging
from typing import Any, Dict, List, Optional

from shared.events import publish
from shared.models import NcbaLoopPayment, MpesaPayment

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

NCBA_LOOP_TABLE = NcbaLoopPayment.__tablename__
MPESA_TABLE = MpesaPayment.__tablename__

TERMINAL_PAYMENT_STATUSES = {"confirmed", "failed"}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def payment_row(p: NcbaLoopPayment | MpesaPayment) -> Dict[str, Any]:
    row = {
        "id": p.id,
        "order_id": p.order_id,
        "amount": str(p.amount) if p.amount is not None else None,
        "phone_number": p.phone_number,
        "status": p.status,
        "updated_at": _iso(p.updated_at),
    }
    if isinstance(p, NcbaLoopPayment):
        row.update(
            checkout_request_id=p.checkout_request_id,
            merchant_request_id=p.merchant_request_id,
            mpesa_receipt_number=p.mpesa_receipt_number,
            message=p.message,
            confirmed_at=_iso(p.confirmed_at),
        )
    else:
        row.update(result_desc=p.result_desc, confirmed_by=p.confirmed_by)
    return row


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, column: str, value: Any):
        self.feed = feed
        self.table = table
        self.column = column
        self.value = value
        self.queue: asyncio.Queue = asyncio.Queue()
        self.loop = asyncio.get_running_loop()

    def matches(self, table: str, row: Dict[str, Any]) -> bool:
        return table == self.table and row.get(self.column) == self.value

    def deliver(self, event: Dict[str, Any]) -> None:
        # Publishers may run on another thread or loop than the subscriber
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def next_event(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        self.feed.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self.next_event()


class ChangeFeed:
    def __init__(self):
        self._subs: List[Subscription] = []

    def subscribe(self, table: str, column: str, value: Any) -> Subscription:
        """Must be called from inside a running event loop."""
        sub = Subscription(self, table, column, value)
        self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def publish_update(self, table: str, row: Dict[str, Any]) -> int:
        event = {"event": "UPDATE", "table": table, "new": row}
        delivered = 0
        for sub in list(self._subs):
            if sub.matches(table, row):
                try:
                    sub.deliver(event)
                    delivered += 1
                except RuntimeError:
                    # subscriber's loop is gone
                    self.unsubscribe(sub)
        publish("payments.updated", {"table": table, "row": row}, safe=True)
        return delivered


feed = ChangeFeed()


def broadcast_payment(p: NcbaLoopPayment | MpesaPayment) -> None:
    table = NCBA_LOOP_TABLE if isinstance(p, NcbaLoopPayment) else MPESA_TABLE
    delivered = feed.publish_update(table, payment_row(p))
    logger.info("payment update table=%s id=%s status=%s subscribers=%s", table, p.id, p.status, delivered)


class CheckoutReaction(str, enum.Enum):
    WAIT = "wait"
    CLEAR_CART_AND_SHOW_ORDERS = "clear_cart_and_show_orders"
    SHOW_ERROR_AND_ENABLE_RETRY = "show_error_and_enable_retry"


def react_to_update(event: Dict[str, Any]) -> CheckoutReaction:
    """What the checkout page does when an UPDATE for its payment arrives."""
    status = (event.get("new") or {}).get("status")
    if status == "confirmed":
        return CheckoutReaction.CLEAR_CART_AND_SHOW_ORDERS
    if status == "failed":
        return CheckoutReaction.SHOW_ERROR_AND_ENABLE_RETRY
    return CheckoutReaction.WAIT
