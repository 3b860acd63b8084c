import asyncio
import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
from fastapi import BackgroundTasks
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..errors import InvalidRequest, NotFound, SignatureMismatch, UpstreamUnavailable
from ..models import PaymentRecord, PaymentStatus, PaymentVariant
from .assets import run_asset_move
from .reconcile import ReconcileResult, reconcile
from .store import PaymentStore
from .vnpay import BuiltPayment, PaymentOrder, build_payment_request, format_vnpay_date, validate_amount, verify_callback
from .vnpay_api import query_transaction

logger = logging.getLogger(__name__)


async def create_payment_request(
    settings: Settings,
    session_factory: sessionmaker,
    order_id: Optional[str],
    amount: Optional[Decimal] = None,
    variant: PaymentVariant = PaymentVariant.STANDARD,
    client_ip: Optional[str] = None,
    order_info: Optional[str] = None,
    locale: Optional[str] = None,
    bank_code: Optional[str] = None,
) -> BuiltPayment:
    """
    Build the signed redirect and persist its PENDING record in one go.

    `amount` defaults to the stored order amount. Validation failures raise
    InvalidRequest before anything is written.
    """
    config = settings.vnpay()
    if not order_id:
        raise InvalidRequest("orderId is required")
    if amount is not None:
        validate_amount(amount)

    async with session_factory() as session:
        store = PaymentStore(session)
        order = await store.get_order(order_id)
        if order is None:
            raise InvalidRequest("Order not found", orderId=order_id)

        built = build_payment_request(
            config,
            PaymentOrder(order_id=order_id, amount=amount if amount is not None else order.amount),
            variant=variant,
            client_ip=client_ip,
            order_info=order_info,
            locale=locale,
            bank_code=bank_code,
        )
        await store.create_payment_record(
            built.txn_ref,
            order_id,
            amount=float(built.amount),
            amount_minor=built.amount_minor,
            variant=variant,
            create_date=built.create_date,
        )
        await session.commit()
    return built


async def _find_record(session_factory: sessionmaker, txn_ref: str) -> Optional[PaymentRecord]:
    async with session_factory() as session:
        return await PaymentStore(session).find_payment_record_by_ref(txn_ref)


async def _find_order_id(session_factory: sessionmaker, txn_ref: str) -> Optional[str]:
    record = await _find_record(session_factory, txn_ref)
    return record.order_id if record else None


async def _bounded(settings: Settings, txn_ref: str, coro):
    try:
        return await asyncio.wait_for(coro, timeout=settings.store_timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"Payment store timed out while handling {txn_ref}; record stays PENDING")
        raise UpstreamUnavailable("Payment store timed out", txn_ref=txn_ref)
    except OperationalError as exc:
        logger.error(f"Payment store unavailable while handling {txn_ref}: {exc}")
        raise UpstreamUnavailable("Payment store unavailable", txn_ref=txn_ref) from exc


async def handle_provider_callback(
    settings: Settings,
    session_factory: sessionmaker,
    params: Mapping[str, Any],
) -> ReconcileResult:
    """
    Verify a return/IPN payload and reconcile it.

    Raises MissingReference, SignatureMismatch, NotFound, UpstreamUnavailable
    or OrderSyncError; a bad signature never changes any state.
    """
    config = settings.vnpay()
    verified = verify_callback(config, params)

    if not verified.valid:
        order_id = await _bounded(settings, verified.txn_ref, _find_order_id(session_factory, verified.txn_ref))
        raise SignatureMismatch(
            "Invalid signature",
            txn_ref=verified.txn_ref,
            order_id=order_id,
            response_code=verified.response_code,
        )

    return await _bounded(
        settings,
        verified.txn_ref,
        reconcile(session_factory, verified.txn_ref, verified.outcome, verified.raw, callback=verified),
    )


async def sweep_transaction(
    settings: Settings,
    session_factory: sessionmaker,
    txn_ref: str,
    client_ip: str = "127.0.0.1",
    client: Optional[httpx.AsyncClient] = None,
) -> ReconcileResult:
    """
    Operator-triggered reconciliation for one transaction.

    Asks the provider for the final state of a PENDING record and applies it.
    Terminal records come back unchanged.
    """
    config = settings.vnpay()
    record = await _bounded(settings, txn_ref, _find_record(session_factory, txn_ref))
    if record is None:
        raise NotFound("Transaction not found", txn_ref=txn_ref)

    if record.status.is_terminal:
        return ReconcileResult(
            txn_ref=record.txn_ref,
            order_id=record.order_id,
            status=record.status,
            response_code=record.response_code,
            transaction_no=record.transaction_no,
        )

    transaction_date = record.create_date or format_vnpay_date(record.created_at)
    provider = await query_transaction(config, txn_ref, transaction_date, client_ip=client_ip, client=client)
    if not provider.valid:
        raise SignatureMismatch("Invalid provider signature", txn_ref=txn_ref, order_id=record.order_id)

    outcome = provider.outcome
    if outcome is None:
        logger.info(f"Transaction {txn_ref} still open at VNPay ({provider.response_code}/{provider.transaction_status})")
        return ReconcileResult(txn_ref=txn_ref, order_id=record.order_id, status=PaymentStatus.PENDING)

    callback = provider.as_callback()
    return await _bounded(settings, txn_ref, reconcile(session_factory, txn_ref, outcome, callback.raw, callback=callback))


async def pending_asset_move(session_factory: sessionmaker, txn_ref: str) -> Optional[ReconcileResult]:
    """SUCCESS record whose assets were never moved, as a result ready for scheduling."""
    async with session_factory() as session:
        store = PaymentStore(session)
        record = await store.find_payment_record_by_ref(txn_ref)
        if record is None or record.status is not PaymentStatus.SUCCESS or record.assets_moved_at is not None:
            return None
        order = await store.get_order(record.order_id)
    if order is None or not order.anonymous_id:
        return None
    return ReconcileResult(
        txn_ref=record.txn_ref,
        order_id=record.order_id,
        status=record.status,
        response_code=record.response_code,
        transaction_no=record.transaction_no,
        anonymous_id=order.anonymous_id,
    )


def schedule_asset_move(
    background_tasks: BackgroundTasks,
    settings: Settings,
    session_factory: sessionmaker,
    result: ReconcileResult,
) -> bool:
    """Queue the temp -> order asset move after a paid transition. Returns True when queued."""
    if not result.is_success or not result.anonymous_id:
        return False
    background_tasks.add_task(
        run_asset_move,
        session_factory,
        settings.asset_root,
        result.txn_ref,
        result.order_id,
        result.anonymous_id,
    )
    return True


def describe(result: ReconcileResult) -> str:
    if result.status is PaymentStatus.PENDING:
        return "Payment pending"
    return "Payment successful" if result.is_success else "Payment failed"
