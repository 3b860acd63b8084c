from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import Order, OrderItem, OrderPaymentStatus, PaymentRecord, PaymentStatus, PaymentVariant, utcnow


class PaymentStore:
    """
    Order/payment persistence used by the payment core.

    Methods never commit; the caller owns the transaction so that a record
    transition and the matching order update land together.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def update_order_payment_status(self, order_id: str, status: OrderPaymentStatus) -> bool:
        result = await self.session.exec(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=status.value, updated_at=utcnow())
        )
        return result.rowcount == 1

    async def create_payment_record(
        self,
        txn_ref: str,
        order_id: str,
        amount: float,
        amount_minor: int,
        variant: PaymentVariant = PaymentVariant.STANDARD,
        create_date: Optional[str] = None,
    ) -> PaymentRecord:
        record = PaymentRecord(
            txn_ref=txn_ref,
            order_id=order_id,
            amount=amount,
            amount_minor=amount_minor,
            variant=variant,
            create_date=create_date,
            status=PaymentStatus.PENDING,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def find_payment_record_by_ref(self, txn_ref: str) -> Optional[PaymentRecord]:
        res = await self.session.exec(select(PaymentRecord).where(PaymentRecord.txn_ref == txn_ref))
        return res.one_or_none()

    async def list_payment_records_for_order(self, order_id: str) -> List[PaymentRecord]:
        res = await self.session.exec(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.created_at.desc())
        )
        return list(res.all())

    async def update_payment_record(
        self,
        txn_ref: str,
        status: PaymentStatus,
        raw_response: Dict[str, Any],
        response_code: Optional[str] = None,
        transaction_no: Optional[str] = None,
        bank_code: Optional[str] = None,
        pay_date: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set PENDING -> `status`.

        Returns False when the record was already terminal (or missing), which
        is how a concurrent duplicate callback loses the race.
        """
        result = await self.session.exec(
            update(PaymentRecord)
            .where(PaymentRecord.txn_ref == txn_ref)
            .where(PaymentRecord.status == PaymentStatus.PENDING)
            .values(
                status=status,
                raw_response=raw_response,
                response_code=response_code,
                transaction_no=transaction_no,
                bank_code=bank_code,
                pay_date=pay_date,
                verified_at=utcnow(),
            )
        )
        return result.rowcount == 1

    async def mark_assets_moved(self, txn_ref: str) -> None:
        await self.session.exec(
            update(PaymentRecord)
            .where(PaymentRecord.txn_ref == txn_ref)
            .values(assets_moved_at=utcnow())
        )

    async def replace_item_path(self, order_id: str, old_path: str, new_path: str) -> None:
        """Point order items that referenced `old_path` at `new_path`."""
        for column in ("custom_design_url", "mockup_design_url"):
            attr = getattr(OrderItem, column)
            await self.session.exec(
                update(OrderItem)
                .where(OrderItem.order_id == order_id)
                .where(attr == old_path)
                .values({column: new_path})
            )
