from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from shared.models import FlashSale, Product, Voucher

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

NAIROBI_SHIPPING = Decimal("500")
COUNTRYWIDE_SHIPPING = Decimal("700")


class VoucherError(ValueError):
    pass


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def shipping_fee(location: str) -> Decimal:
    return NAIROBI_SHIPPING if (location or "").strip().lower() == "nairobi" else COUNTRYWIDE_SHIPPING


def flash_sale_is_live(sale: FlashSale, now: datetime) -> bool:
    return bool(sale.active) and _aware(sale.start_date) <= now <= _aware(sale.end_date)


def unit_price(product: Product, sales: Iterable[FlashSale], now: datetime) -> Decimal:
    """Lowest live flash-sale price for the product, else its list price."""
    live = [s.sale_price for s in sales if s.product_id == product.id and flash_sale_is_live(s, now)]
    if live:
        return money(min(live))
    return money(product.price)


def voucher_discount(voucher: Voucher, subtotal: Decimal, now: datetime) -> Decimal:
    if not voucher.active:
        raise VoucherError("Invalid voucher code")
    if voucher.min_order_amount and subtotal < voucher.min_order_amount:
        raise VoucherError(f"Minimum purchase amount of KES {money(voucher.min_order_amount)} required")
    if voucher.max_uses and (voucher.used_count or 0) >= voucher.max_uses:
        raise VoucherError("Voucher usage limit reached")
    start = _aware(voucher.start_date)
    end = _aware(voucher.end_date)
    if start and start > now:
        raise VoucherError("Voucher is not yet active")
    if end and end < now:
        raise VoucherError("Voucher has expired")

    if voucher.discount_percentage:
        return money(subtotal * Decimal(voucher.discount_percentage) / 100)
    if voucher.discount_amount:
        return money(min(Decimal(voucher.discount_amount), subtotal))
    return ZERO


@dataclass(frozen=True)
class LineTotal:
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


def split_totals(line_subtotals: List[Decimal], shipping: Decimal, discount: Decimal) -> List[LineTotal]:
    """
    One order row is written per cart line, so shipping and discount are
    shared out in proportion to each line's subtotal. The last line absorbs
    rounding so the shares add up exactly. A cart of free items puts all of
    the shipping on its last line.
    """
    subtotal = sum(line_subtotals, ZERO)

    out: List[LineTotal] = []
    shipping_left, discount_left = shipping, discount
    for i, line in enumerate(line_subtotals):
        if i == len(line_subtotals) - 1:
            line_shipping, line_discount = money(shipping_left), money(discount_left)
        else:
            line_shipping = money(line * shipping / subtotal) if subtotal else ZERO
            line_discount = money(line * discount / subtotal) if subtotal else ZERO
            shipping_left -= line_shipping
            discount_left -= line_discount
        out.append(
            LineTotal(
                subtotal=money(line),
                shipping=line_shipping,
                discount=line_discount,
                total=money(line + line_shipping - line_discount),
            )
        )
    return out
