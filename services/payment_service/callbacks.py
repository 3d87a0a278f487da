from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    def item(self, name: str) -> Any:
        if not self.metadata:
            return None
        for it in self.metadata.items:
            if it.name == name:
                return it.value
        return None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.item("MpesaReceiptNumber")
        return str(value) if value not in (None, "") else None

    @property
    def transaction_date(self) -> str:
        value = self.item("TransactionDate")
        return "" if value is None else str(value)

    @property
    def phone_number(self) -> str:
        value = self.item("PhoneNumber")
        return "" if value is None else str(value)

    @property
    def amount(self) -> Any:
        value = self.item("Amount")
        return 0 if value is None else value

    def dedupe_key(self) -> str:
        """Gateway transaction id when there is one; failed pushes carry no receipt."""
        return self.receipt_number or f"{self.checkout_request_id}:{self.result_code}"


def extract_stk_callback(body: Any) -> Optional[StkCallback]:
    """
    Pull Body.stkCallback out of a Daraja webhook payload.

    Returns None when the payload carries no stkCallback at all; raises
    pydantic.ValidationError when one is present but malformed.
    """
    if not isinstance(body, dict):
        return None
    envelope = body.get("Body")
    if not isinstance(envelope, dict):
        return None
    raw = envelope.get("stkCallback")
    if not raw:
        return None
    return StkCallback.model_validate(raw)
