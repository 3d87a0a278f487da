import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared import order_status
from shared.db import get_db
from shared.models import FlashSale, MpesaPayment, NcbaLoopPayment, Order, Product, Voucher
from shared.security import require_user, require_admin
from .pricing import VoucherError, money, shipping_fee, split_totals, unit_price, voucher_discount, ZERO
from .schemas import CheckoutIn, CheckoutOut, OrderOut, OrderStatusIn

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

app = FastAPI(title="order-service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in prod
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_products(db: Session, product_ids: List[str]) -> Dict[str, Product]:
    rows = db.execute(select(Product).where(Product.id.in_(product_ids))).scalars().all()
    products = {p.id: p for p in rows}
    for pid in product_ids:
        p = products.get(pid)
        if p is None or not p.in_stock:
            raise HTTPException(status_code=400, detail=f"Product {pid} not available")
    return products


@app.post("/checkout", response_model=CheckoutOut)
def checkout(
    payload: CheckoutIn,
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
):
    """
    Place the cart. One order row per cart line; the payment rows the chosen
    method needs are created alongside, all in one transaction.
    """
    user_id = str(claims["sub"])
    now = datetime.now(timezone.utc)

    if not payload.items:
        raise HTTPException(status_code=400, detail="Your cart is empty")
    if payload.payment_method == "mpesa" and not (payload.mpesa_message or "").strip():
        raise HTTPException(status_code=400, detail="Please provide M-Pesa transaction details")

    # Same product twice in the cart is one line
    merged: Dict[str, int] = {}
    for it in payload.items:
        merged[it.product_id] = merged.get(it.product_id, 0) + it.quantity

    try:
        with db.begin():
            products = _load_products(db, list(merged))
            sales = db.execute(
                select(FlashSale).where(FlashSale.product_id.in_(list(merged)), FlashSale.active.is_(True))
            ).scalars().all()

            line_subtotals = [unit_price(products[pid], sales, now) * qty for pid, qty in merged.items()]
            subtotal = money(sum(line_subtotals, ZERO))
            shipping = shipping_fee(payload.shipping_location)

            voucher: Optional[Voucher] = None
            discount = ZERO
            if payload.voucher_code and payload.voucher_code.strip():
                voucher = db.execute(
                    select(Voucher)
                    .where(Voucher.code == payload.voucher_code.strip().upper())
                    .with_for_update()
                ).scalar_one_or_none()
                if voucher is None:
                    raise HTTPException(status_code=400, detail="Invalid voucher code")
                try:
                    discount = voucher_discount(voucher, subtotal, now)
                except VoucherError as e:
                    raise HTTPException(status_code=400, detail=str(e))

            shares = split_totals(line_subtotals, shipping, discount)

            orders: List[Order] = []
            for (pid, qty), share in zip(merged.items(), shares):
                order = Order(
                    user_id=user_id,
                    product_id=pid,
                    quantity=qty,
                    total_amount=share.total,
                    customer_name=payload.customer.name,
                    customer_email=str(payload.customer.email),
                    customer_phone=payload.customer.phone,
                    shipping_address=payload.shipping_address,
                    payment_method=payload.payment_method,
                    status=order_status.PENDING,
                )
                db.add(order)
                db.flush()  # get order.id

                if payload.payment_method == "mpesa":
                    db.add(
                        MpesaPayment(
                            order_id=order.id,
                            amount=share.total,
                            phone_number=payload.customer.phone,
                            transaction_message=payload.mpesa_message,
                            status="pending",
                        )
                    )
                elif payload.payment_method == "ncba_loop":
                    db.add(
                        NcbaLoopPayment(
                            order_id=order.id,
                            amount=share.total,
                            phone_number=payload.customer.phone,
                            status="pending",
                        )
                    )
                orders.append(order)

            if voucher is not None:
                voucher.used_count = (voucher.used_count or 0) + 1

        for o in orders:
            db.refresh(o)
    except SQLAlchemyError:
        logger.exception("Checkout failed user=%s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create order")

    logger.info(
        "Checkout user=%s orders=%s method=%s total=%s",
        user_id, [o.id for o in orders], payload.payment_method, money(subtotal + shipping - discount),
    )
    return CheckoutOut(
        orders=[OrderOut.model_validate(o) for o in orders],
        subtotal=subtotal,
        shipping_fee=shipping,
        discount=discount,
        total=money(subtotal + shipping - discount),
    )


@app.get("/orders", response_model=List[OrderOut])
def list_my_orders(claims: dict = Depends(require_user), db: Session = Depends(get_db)):
    user_id = str(claims["sub"])
    return db.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    ).scalars().all()


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, claims: dict = Depends(require_user), db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order or order.user_id != str(claims["sub"]):
        raise HTTPException(status_code=404, detail="Not found")
    return order


# Admin endpoints
@app.get("/admin/orders", response_model=List[OrderOut])
def admin_list_orders(
    status: Optional[str] = None,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    q = select(Order).order_by(Order.created_at.desc())
    if status:
        q = q.where(Order.status == status)
    return db.execute(q).scalars().all()


@app.patch("/admin/orders/{order_id}/status", response_model=OrderOut)
def admin_update_order_status(
    order_id: str,
    payload: OrderStatusIn,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Not found")

    try:
        order_status.check_transition(order.status, payload.status)
    except order_status.InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))

    if order.status != payload.status:
        previous = order.status
        order.status = payload.status
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise HTTPException(status_code=500, detail="Failed to update order")
        db.refresh(order)
        logger.info("Order %s moved %s -> %s by %s", order.id, previous, order.status, claims["sub"])

    return order


@app.get("/health")
def health():
    return {"ok": True}
