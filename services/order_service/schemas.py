from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class CartLineIn(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class CustomerIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    phone: str = Field(min_length=9, max_length=20)


class CheckoutIn(BaseModel):
    items: List[CartLineIn]
    customer: CustomerIn
    shipping_address: str = Field(min_length=1)
    shipping_location: str = "nairobi"
    payment_method: Literal["mpesa", "ncba_loop", "cash_on_delivery"]
    voucher_code: Optional[str] = None
    mpesa_message: Optional[str] = None


class OrderOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: int
    total_amount: Decimal
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: str
    payment_method: str
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CheckoutOut(BaseModel):
    orders: List[OrderOut]
    subtotal: Decimal
    shipping_fee: Decimal
    discount: Decimal
    total: Decimal


class OrderStatusIn(BaseModel):
    status: Literal["pending", "processing", "confirmed", "shipped", "delivered", "cancelled", "failed"]
