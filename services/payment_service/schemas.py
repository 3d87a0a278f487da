from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StkPushIn(BaseModel):
    # Presence is checked by the handler so a missing field is a 400, not a 422
    order_id: Optional[str] = None
    phone_number: Optional[str] = None
    amount: Optional[Union[Decimal, float, int]] = None
    account_reference: Optional[str] = None
    transaction_desc: Optional[str] = None


class StkPushOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "STK push sent successfully"
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    merchant_request_id: str = Field(alias="MerchantRequestID")
    customer_message: str = Field(alias="CustomerMessage")


class ErrorOut(BaseModel):
    success: bool = False
    error: str


class NcbaLoopPaymentOut(BaseModel):
    id: str
    order_id: Optional[str] = None
    amount: Decimal
    phone_number: str
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    status: str
    message: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MpesaPaymentOut(BaseModel):
    id: str
    order_id: Optional[str] = None
    amount: Decimal
    phone_number: str
    transaction_message: Optional[str] = None
    result_desc: Optional[str] = None
    status: str
    confirmed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ManualDecisionIn(BaseModel):
    status: Literal["confirmed", "failed"]
