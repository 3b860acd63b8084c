from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

    @classmethod
    def from_payment(cls, status: PaymentStatus) -> "OrderPaymentStatus":
        return cls.PAID if status is PaymentStatus.SUCCESS else cls.FAILED


class PaymentVariant(str, Enum):
    STANDARD = "STANDARD"
    QR = "QR"


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(primary_key=True)
    amount: float
    anonymous_id: Optional[str] = Field(default=None, index=True)  # cookie id used for temp uploads
    payment_status: str = Field(default=OrderPaymentStatus.PENDING.value, index=True)  # pending, paid, failed
    updated_at: datetime = Field(default_factory=utcnow)


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(index=True, foreign_key="orders.id")
    custom_design_url: Optional[str] = None
    mockup_design_url: Optional[str] = None


class PaymentRecord(SQLModel, table=True):
    __tablename__ = "vnpay_payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    txn_ref: str = Field(unique=True, index=True)
    order_id: str = Field(index=True)
    variant: PaymentVariant = PaymentVariant.STANDARD
    amount: float
    amount_minor: int  # value sent as vnp_Amount
    create_date: Optional[str] = None  # vnp_CreateDate, needed again by querydr
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    response_code: Optional[str] = None
    transaction_no: Optional[str] = None
    bank_code: Optional[str] = None
    pay_date: Optional[datetime] = None
    raw_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    assets_moved_at: Optional[datetime] = None
