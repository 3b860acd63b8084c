import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..config import VNPayConfig
from ..errors import UpstreamUnavailable
from ..models import PaymentStatus
from .signing import sign, verify
from .vnpay import (
    RESPONSE_CODE_SUCCESS,
    SECURE_HASH_FIELD,
    TRANSACTION_STATUS_SUCCESS,
    VNPAY_VERSION,
    VerifiedCallback,
    format_vnpay_date,
    parse_vnpay_date,
)

logger = logging.getLogger(__name__)

QUERY_COMMAND = "querydr"

# field order of the pipe-joined data VNPay signs for querydr
QUERY_REQUEST_FIELDS = (
    "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
    "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
)
QUERY_RESPONSE_FIELDS = (
    "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode",
    "vnp_TxnRef", "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo",
    "vnp_TransactionType", "vnp_TransactionStatus", "vnp_OrderInfo", "vnp_PromotionCode",
    "vnp_PromotionAmount",
)

# still in flight at the provider: 01 not completed, 05 processing
PENDING_TRANSACTION_STATUSES = {"01", "05"}


def pipe_data(values: Dict[str, Any], fields) -> str:
    return "|".join("" if values.get(name) is None else str(values.get(name)) for name in fields)


@dataclass(frozen=True)
class ProviderTransaction:
    valid: bool
    txn_ref: str
    response_code: Optional[str]
    transaction_status: Optional[str]
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> Optional[PaymentStatus]:
        """Final status reported by the provider, or None while it is still undecided."""
        if not self.valid or self.response_code != RESPONSE_CODE_SUCCESS:
            return None
        if self.transaction_status == TRANSACTION_STATUS_SUCCESS:
            return PaymentStatus.SUCCESS
        if self.transaction_status in PENDING_TRANSACTION_STATUSES or not self.transaction_status:
            return None
        return PaymentStatus.FAILED

    def as_callback(self) -> VerifiedCallback:
        raw = {k: "" if v is None else str(v) for k, v in self.raw.items()}
        amount = raw.get("vnp_Amount")
        return VerifiedCallback(
            valid=self.valid,
            txn_ref=self.txn_ref,
            response_code=self.transaction_status,
            transaction_status=self.transaction_status,
            transaction_no=raw.get("vnp_TransactionNo") or None,
            bank_code=raw.get("vnp_BankCode") or None,
            pay_date=parse_vnpay_date(raw.get("vnp_PayDate")),
            amount_minor=int(amount) if amount and amount.isdigit() else None,
            raw=raw,
        )


def build_query_payload(
    config: VNPayConfig,
    txn_ref: str,
    transaction_date: str,
    client_ip: str = "127.0.0.1",
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
) -> Dict[str, str]:
    payload = {
        "vnp_RequestId": request_id or uuid.uuid4().hex,
        "vnp_Version": VNPAY_VERSION,
        "vnp_Command": QUERY_COMMAND,
        "vnp_TmnCode": config.tmn_code,
        "vnp_TxnRef": txn_ref,
        "vnp_TransactionDate": transaction_date,
        "vnp_CreateDate": format_vnpay_date(now or datetime.now(timezone.utc)),
        "vnp_IpAddr": client_ip,
        "vnp_OrderInfo": f"Truy van giao dich {txn_ref}",
    }
    payload[SECURE_HASH_FIELD] = sign(
        config.hash_secret, pipe_data(payload, QUERY_REQUEST_FIELDS), config.hash_algorithm
    )
    return payload


async def query_transaction(
    config: VNPayConfig,
    txn_ref: str,
    transaction_date: str,
    client_ip: str = "127.0.0.1",
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 20.0,
) -> ProviderTransaction:
    """Ask VNPay for the current state of a transaction (querydr)."""
    payload = build_query_payload(config, txn_ref, transaction_date, client_ip)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                resp = await own_client.post(config.api_url, json=payload)
        else:
            resp = await client.post(config.api_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.error(f"VNPay querydr for {txn_ref} failed: {exc}")
        raise UpstreamUnavailable("VNPay query failed", txn_ref=txn_ref) from exc

    valid = verify(
        config.hash_secret,
        pipe_data(data, QUERY_RESPONSE_FIELDS),
        str(data.get(SECURE_HASH_FIELD) or ""),
        config.hash_algorithm,
    )
    if not valid:
        logger.warning(f"VNPay querydr response for {txn_ref} failed signature check")

    return ProviderTransaction(
        valid=valid,
        txn_ref=str(data.get("vnp_TxnRef") or txn_ref),
        response_code=data.get("vnp_ResponseCode"),
        transaction_status=data.get("vnp_TransactionStatus"),
        message=data.get("vnp_Message"),
        raw=data,
    )
