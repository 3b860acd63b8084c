import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..config import VNPayConfig
from ..errors import ConfigurationError, InvalidRequest, MissingReference
from ..models import PaymentStatus, PaymentVariant
from .signing import canonical_query, sign, verify

logger = logging.getLogger(__name__)

# VNPay timestamps are GMT+7 wall clock, yyyyMMddHHmmss
VNPAY_TZ = timezone(timedelta(hours=7))
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"

VNPAY_VERSION = "2.1.0"
VNPAY_COMMAND = "pay"
VNPAY_CURRENCY = "VND"
QR_BANK_CODE = "VNPAYQR"
RESPONSE_CODE_SUCCESS = "00"
TRANSACTION_STATUS_SUCCESS = "00"
SECURE_HASH_FIELD = "vnp_SecureHash"
SECURE_HASH_TYPE_FIELD = "vnp_SecureHashType"

MINOR_UNIT_MULTIPLIER = 100
QR_TOKEN_LENGTH = 32
TXN_REF_PREFIX_LENGTH = 8
TXN_REF_FALLBACK_PREFIX = "TX"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")

Amount = Union[Decimal, float, int, str]


@dataclass(frozen=True)
class PaymentOrder:
    order_id: str
    amount: Amount


class StandardPaymentParams(BaseModel):
    """Redirect parameters for the hosted checkout page. Aliases are the wire names."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    amount: int = Field(alias="vnp_Amount", gt=0)
    command: str = Field(default=VNPAY_COMMAND, alias="vnp_Command")
    create_date: str = Field(alias="vnp_CreateDate")
    currency: str = Field(default=VNPAY_CURRENCY, alias="vnp_CurrCode")
    ip_addr: str = Field(alias="vnp_IpAddr")
    locale: str = Field(alias="vnp_Locale")
    order_info: str = Field(alias="vnp_OrderInfo")
    order_type: str = Field(alias="vnp_OrderType")
    return_url: str = Field(alias="vnp_ReturnUrl")
    tmn_code: str = Field(alias="vnp_TmnCode")
    txn_ref: str = Field(alias="vnp_TxnRef", pattern=r"^[A-Za-z0-9]{1,100}$")
    version: str = Field(default=VNPAY_VERSION, alias="vnp_Version")
    bank_code: Optional[str] = Field(default=None, alias="vnp_BankCode")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class QRPaymentParams(StandardPaymentParams):
    """QR transactions pin the bank code and carry an expiry."""
    bank_code: str = Field(default=QR_BANK_CODE, alias="vnp_BankCode")
    expire_date: str = Field(alias="vnp_ExpireDate")


@dataclass(frozen=True)
class BuiltPayment:
    txn_ref: str
    variant: PaymentVariant
    payment_url: str
    amount: Decimal
    amount_minor: int
    create_date: str
    canonical: str
    signature: str
    qr_token: Optional[str] = None


def format_vnpay_date(moment: datetime) -> str:
    # naive values are UTC as read back from the tables
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(VNPAY_TZ).strftime(VNPAY_DATE_FORMAT)


def parse_vnpay_date(value: Optional[str]) -> Optional[datetime]:
    """Parse vnp_PayDate (GMT+7) into an aware UTC datetime."""
    if not value:
        return None
    try:
        local = datetime.strptime(value, VNPAY_DATE_FORMAT).replace(tzinfo=VNPAY_TZ)
    except ValueError:
        logger.warning(f"Unparseable VNPay date: {value!r}")
        return None
    return local.astimezone(timezone.utc)


def validate_amount(amount: Optional[Amount]) -> Decimal:
    """Parse a positive source-currency amount or raise InvalidRequest."""
    if amount is None or amount == "":
        raise InvalidRequest("amount is required")
    value = to_decimal(amount)
    if value <= 0:
        raise InvalidRequest("amount must be greater than 0", amount=str(value))
    return value


def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidRequest("amount must be a number")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidRequest("amount must be a number", amount=str(amount))
    if not value.is_finite():
        raise InvalidRequest("amount must be a number", amount=str(amount))
    return value


def convert_amount(amount: Decimal, exchange_rate: Decimal, min_amount: int) -> int:
    """
    Source amount -> vnp_Amount.

    The order matters: convert at the fixed rate and floor to whole VND,
    raise to the provider minimum, then apply the x100 minor-unit multiplier.
    """
    in_vnd = int((amount * exchange_rate).to_integral_value(rounding=ROUND_FLOOR))
    if in_vnd < min_amount:
        in_vnd = min_amount
    return in_vnd * MINOR_UNIT_MULTIPLIER


def make_txn_ref(order_id: str, now_us: Optional[int] = None) -> str:
    prefix = _NON_ALNUM.sub("", order_id)[:TXN_REF_PREFIX_LENGTH] or TXN_REF_FALLBACK_PREFIX
    if now_us is None:
        now_us = time.time_ns() // 1000
    return f"{prefix}{now_us}"


def qr_token_from_signature(signature: str) -> str:
    # the sandbox QR page takes a slice of the request signature as its token
    return signature[:QR_TOKEN_LENGTH]


def build_payment_request(
    config: VNPayConfig,
    order: PaymentOrder,
    variant: PaymentVariant = PaymentVariant.STANDARD,
    client_ip: Optional[str] = None,
    now: Optional[datetime] = None,
    order_info: Optional[str] = None,
    locale: Optional[str] = None,
    bank_code: Optional[str] = None,
) -> BuiltPayment:
    """
    Build a signed VNPay redirect for one checkout attempt.

    Pure apart from reading the clock: persisting the PENDING record is the
    caller's job. Raises InvalidRequest for a missing order id or a
    non-positive amount and ConfigurationError for a missing secret.
    """
    if not order.order_id or not str(order.order_id).strip():
        raise InvalidRequest("orderId is required")
    amount = validate_amount(order.amount)
    if not config.hash_secret:
        raise ConfigurationError("Missing signing secret")

    order_id = str(order.order_id)
    now = now or datetime.now(timezone.utc)
    txn_ref = make_txn_ref(order_id)
    amount_minor = convert_amount(amount, config.exchange_rate, config.min_amount)
    create_date = format_vnpay_date(now)

    common = dict(
        amount=amount_minor,
        create_date=create_date,
        ip_addr=client_ip or "127.0.0.1",
        locale=locale or config.locale,
        order_info=order_info or f"Thanh toan don hang {order_id}",
        order_type=config.order_type,
        return_url=config.return_url,
        tmn_code=config.tmn_code,
        txn_ref=txn_ref,
    )
    if variant is PaymentVariant.QR:
        params: StandardPaymentParams = QRPaymentParams(
            expire_date=format_vnpay_date(now + timedelta(minutes=config.qr_ttl_minutes)),
            **common,
        )
    else:
        params = StandardPaymentParams(bank_code=bank_code or None, **common)

    canonical = canonical_query(params.to_wire())
    signature = sign(config.hash_secret, canonical, config.hash_algorithm)

    if variant is PaymentVariant.QR:
        qr_token = qr_token_from_signature(signature)
        payment_url = f"{config.qr_url}?token={qr_token}"
    else:
        qr_token = None
        payment_url = f"{config.payment_url}?{canonical}&{SECURE_HASH_FIELD}={signature}"

    logger.info(f"Built {variant.value} VNPay request {txn_ref} for order {order_id} (vnp_Amount={amount_minor})")
    return BuiltPayment(
        txn_ref=txn_ref,
        variant=variant,
        payment_url=payment_url,
        amount=amount,
        amount_minor=amount_minor,
        create_date=create_date,
        canonical=canonical,
        signature=signature,
        qr_token=qr_token,
    )


@dataclass(frozen=True)
class VerifiedCallback:
    valid: bool
    txn_ref: str
    response_code: Optional[str] = None
    transaction_status: Optional[str] = None
    transaction_no: Optional[str] = None
    bank_code: Optional[str] = None
    pay_date: Optional[datetime] = None
    amount_minor: Optional[int] = None
    raw: Dict[str, str] = field(default_factory=dict)

    @property
    def outcome(self) -> PaymentStatus:
        """SUCCESS needs a valid signature AND a success code; anything else is FAILED."""
        if not self.valid:
            return PaymentStatus.FAILED
        if self.response_code != RESPONSE_CODE_SUCCESS:
            return PaymentStatus.FAILED
        if self.transaction_status not in (None, TRANSACTION_STATUS_SUCCESS):
            return PaymentStatus.FAILED
        return PaymentStatus.SUCCESS


def _as_plain_dict(params: Mapping[str, Any]) -> Dict[str, str]:
    # query strings can repeat a key; the last value wins
    plain: Dict[str, str] = {}
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            value = value[-1] if value else ""
        plain[str(key)] = "" if value is None else str(value)
    return plain


def verify_callback(config: VNPayConfig, params: Mapping[str, Any]) -> VerifiedCallback:
    """Authenticate a return/IPN payload. Never raises on a bad signature."""
    data = _as_plain_dict(params)
    raw = dict(data)
    given = data.pop(SECURE_HASH_FIELD, "")
    data.pop(SECURE_HASH_TYPE_FIELD, None)

    txn_ref = data.get("vnp_TxnRef")
    if not txn_ref:
        raise MissingReference("Missing transaction reference")

    valid = verify(config.hash_secret, canonical_query(data), given, config.hash_algorithm)
    if not valid:
        logger.warning(f"VNPay signature mismatch for {txn_ref} (response code {data.get('vnp_ResponseCode')})")

    amount_minor = None
    if data.get("vnp_Amount"):
        try:
            amount_minor = int(data["vnp_Amount"])
        except ValueError:
            logger.warning(f"Non-numeric vnp_Amount on {txn_ref}: {data['vnp_Amount']!r}")

    return VerifiedCallback(
        valid=valid,
        txn_ref=txn_ref,
        response_code=data.get("vnp_ResponseCode") or None,
        transaction_status=data.get("vnp_TransactionStatus") or None,
        transaction_no=data.get("vnp_TransactionNo") or None,
        bank_code=data.get("vnp_BankCode") or None,
        pay_date=parse_vnpay_date(data.get("vnp_PayDate")),
        amount_minor=amount_minor,
        raw=raw,
    )
