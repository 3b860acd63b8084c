import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import NotFound, OrderSyncError, UpstreamUnavailable
from ..models import OrderPaymentStatus, PaymentRecord, PaymentStatus
from .store import PaymentStore
from .vnpay import VerifiedCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    txn_ref: str
    order_id: str
    status: PaymentStatus
    response_code: Optional[str] = None
    transaction_no: Optional[str] = None
    applied: bool = False
    amount_mismatch: bool = False
    anonymous_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status is PaymentStatus.SUCCESS


def _stored_result(record: PaymentRecord) -> ReconcileResult:
    return ReconcileResult(
        txn_ref=record.txn_ref,
        order_id=record.order_id,
        status=record.status,
        response_code=record.response_code,
        transaction_no=record.transaction_no,
        applied=False,
    )


async def reconcile(
    session_factory: sessionmaker,
    txn_ref: str,
    outcome: PaymentStatus,
    raw_response: Dict[str, Any],
    callback: Optional[VerifiedCallback] = None,
) -> ReconcileResult:
    """
    Apply a verified payment outcome to the record and its order, once.

    The record moves PENDING -> SUCCESS/FAILED with a conditional update and
    the order's payment_status is written in the same transaction. Terminal
    records are returned as stored with applied=False, so provider retries
    and duplicate deliveries are no-ops.
    """
    if not outcome.is_terminal:
        raise ValueError(f"reconcile needs a terminal outcome, got {outcome}")

    async with session_factory() as session:
        store = PaymentStore(session)
        record = await store.find_payment_record_by_ref(txn_ref)
        if record is None:
            logger.warning(f"Callback for unknown transaction {txn_ref}")
            raise NotFound("Transaction not found", txn_ref=txn_ref)

        if record.status.is_terminal:
            logger.info(f"Transaction {txn_ref} already {record.status.value}; ignoring repeat callback")
            return _stored_result(record)

        order_id = record.order_id
        status = outcome
        amount_mismatch = False
        if callback is not None and callback.amount_minor is not None and callback.amount_minor != record.amount_minor:
            logger.warning(
                f"Amount mismatch on {txn_ref}: callback {callback.amount_minor}, expected {record.amount_minor}"
            )
            status = PaymentStatus.FAILED
            amount_mismatch = True

        response_code = callback.response_code if callback else raw_response.get("vnp_ResponseCode")
        transaction_no = callback.transaction_no if callback else raw_response.get("vnp_TransactionNo")

        try:
            claimed = await store.update_payment_record(
                txn_ref,
                status,
                raw_response,
                response_code=response_code,
                transaction_no=transaction_no,
                bank_code=callback.bank_code if callback else None,
                pay_date=callback.pay_date if callback else None,
            )
            if not claimed:
                # a concurrent callback committed first; report what it stored
                await session.rollback()
                await session.refresh(record)
                logger.info(f"Transaction {txn_ref} was reconciled concurrently as {record.status.value}")
                return _stored_result(record)

            synced = await store.update_order_payment_status(order_id, OrderPaymentStatus.from_payment(status))
            if not synced:
                raise OrderSyncError("Order missing while applying payment", txn_ref=txn_ref, order_id=order_id)

            order = await store.get_order(order_id)
            anonymous_id = order.anonymous_id if order else None
            await session.commit()
        except OrderSyncError:
            await session.rollback()
            logger.error(f"Order {order_id} not updated for {txn_ref}; payment record left PENDING")
            raise
        except OperationalError as exc:
            await session.rollback()
            logger.error(f"Payment store unavailable while reconciling {txn_ref}, record left PENDING: {exc}")
            raise UpstreamUnavailable("Payment store unavailable", txn_ref=txn_ref) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error(f"Reconciling {txn_ref} failed, payment record left PENDING: {exc}")
            raise OrderSyncError("Could not apply payment outcome", txn_ref=txn_ref, order_id=order_id) from exc

    logger.info(f"Transaction {txn_ref} -> {status.value}; order {order_id} marked {OrderPaymentStatus.from_payment(status).value}")
    return ReconcileResult(
        txn_ref=txn_ref,
        order_id=order_id,
        status=status,
        response_code=response_code,
        transaction_no=transaction_no,
        applied=True,
        amount_mismatch=amount_mismatch,
        anonymous_id=anonymous_id,
    )
