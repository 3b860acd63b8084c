from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import PaymentStatus, PaymentVariant


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class CreatePaymentIn(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1)
    amount: Optional[Decimal] = Field(default=None, description="Source-currency amount; defaults to the order total")
    use_qr: bool = Field(default=False, alias="useQR")
    order_info: Optional[str] = Field(default=None, alias="orderInfo")
    locale: Optional[str] = None
    bank_code: Optional[str] = Field(default=None, alias="bankCode")


class CreatePaymentOut(CamelModel):
    payment_url: Optional[str] = Field(default=None, alias="paymentUrl")
    txn_ref: Optional[str] = Field(default=None, alias="txnRef")
    qr_token: Optional[str] = Field(default=None, alias="qrToken")
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class CallbackOut(CamelModel):
    is_success: bool = Field(..., alias="isSuccess")
    message: str
    order_id: Optional[str] = Field(default=None, alias="orderId")
    response_code: Optional[str] = Field(default=None, alias="responseCode")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class IpnOut(CamelModel):
    rsp_code: str = Field(..., alias="RspCode")
    message: str = Field(..., alias="Message")


class PaymentRecordOut(CamelModel):
    txn_ref: str = Field(..., alias="txnRef")
    order_id: str = Field(..., alias="orderId")
    variant: PaymentVariant
    amount: float
    amount_minor: int = Field(..., alias="amountMinor")
    status: PaymentStatus
    response_code: Optional[str] = Field(default=None, alias="responseCode")
    transaction_no: Optional[str] = Field(default=None, alias="transactionNo")
    bank_code: Optional[str] = Field(default=None, alias="bankCode")
    pay_date: Optional[datetime] = Field(default=None, alias="payDate")
    created_at: datetime = Field(..., alias="createdAt")
    verified_at: Optional[datetime] = Field(default=None, alias="verifiedAt")


class PaymentStatusOut(CamelModel):
    order_id: str = Field(..., alias="orderId")
    payments: List[PaymentRecordOut]


class SweepOut(CamelModel):
    txn_ref: str = Field(..., alias="txnRef")
    order_id: str = Field(..., alias="orderId")
    status: str
    applied: bool
    assets_scheduled: bool = Field(default=False, alias="assetsScheduled")
