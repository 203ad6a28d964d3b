import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import BillStatus, ZERO
from ..core.events import BatchSummary, BillOverdue, EventPublisher
from ..core.tenant import TenantContext
from ..db.transaction import lock_bill, run_atomic
from ..models import Bill
from ..utils.money import money
from .base_service import LedgerBaseService

logger = logging.getLogger(__name__)


class OverdueService(LedgerBaseService):
    """
    Late-fee sweep. Safe to run any number of times for the same ``now``:
    each bill gets its fee once, guarded by a conditional update on
    ``status = pending AND late_fee = 0``.
    """

    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)

    def late_fee_rate(self) -> Decimal:
        return self.settings.get_decimal("late_fee_percentage") / Decimal(100)

    def _apply_late_fee(self, ctx: TenantContext, bill_id: int, rate: Decimal, now: datetime) -> Optional[BillOverdue]:
        bill = lock_bill(self.session, ctx, bill_id)
        if bill.status != BillStatus.PENDING.value or money(bill.late_fee) != ZERO or bill.due_date >= now:
            return None

        amount = money(bill.amount)
        late_fee = money(amount * rate)
        total = amount + late_fee
        statement = ctx.scope(
            update(Bill).where(
                Bill.id == bill.id,
                Bill.status == BillStatus.PENDING.value,
                Bill.late_fee == 0,
                Bill.due_date < now,
            ),
            Bill.isp_id,
        ).values(late_fee=late_fee, total_amount=total, status=BillStatus.OVERDUE.value)
        if self.session.execute(statement).rowcount == 0:
            return None

        self.session.refresh(bill)
        return BillOverdue(
            isp_id=bill.isp_id,
            customer_id=bill.customer_id,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            late_fee=bill.late_fee,
            total_amount=bill.total_amount,
        )

    def sweep_overdue(self, ctx: TenantContext, now: Any = None) -> BatchSummary:
        now = self._now(now)
        rate = self.late_fee_rate()
        summary = BatchSummary()

        statement = ctx.scope(
            select(Bill.id).where(
                Bill.status == BillStatus.PENDING.value,
                Bill.due_date < now,
                Bill.late_fee == 0,
            ),
            Bill.isp_id,
        ).order_by(Bill.id)
        bill_ids = self.session.exec(statement).all()
        logger.info(f"Overdue sweep: {len(bill_ids)} candidate bills, late fee rate {rate}")

        for bill_id in bill_ids:
            try:
                event = run_atomic(
                    self.session,
                    lambda: self._apply_late_fee(ctx, bill_id, rate, now),
                    label=f"late fee for bill {bill_id}",
                )
            except Exception as e:
                logger.error(f"Late fee failed for bill {bill_id}: {e}", exc_info=True)
                summary.record_failure("bill", bill_id, e)
                continue

            if event is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.events.append(event)
            summary.delivery_failures.extend(self.publisher.publish([event]))
            log_action(
                "APPLY_LATE_FEE",
                "bill",
                bill_id,
                ctx,
                details={"late_fee": event.late_fee, "total_amount": event.total_amount},
            )

        logger.info(f"Overdue sweep finished: {summary.as_dict()}")
        return summary
