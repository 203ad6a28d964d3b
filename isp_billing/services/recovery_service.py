"""
Recovery (field collection) assignments.

Money collected on a visit is recorded through the payment engine in the
same transaction as the visit update, with the visit date as payment date.
"""
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import BillStatus, OPEN_RECOVERY_STATUSES, PaymentMethod, RecoveryStatus
from ..core.errors import Conflict, InvalidInput
from ..core.events import EventPublisher, Outcome
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import lock_bill, run_atomic
from ..models import Customer, RecoveryAssignment
from ..utils.dates import parse_datetime
from ..utils.money import money
from .base_service import LedgerBaseService
from .payment_service import PaymentService

logger = logging.getLogger(__name__)


class RecoveryService(LedgerBaseService):
    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)
        self.payments = PaymentService(session, self.publisher)

    def assign(
        self,
        ctx: TenantContext,
        customer_id: int,
        bill_id: int,
        officer_name: str,
        remarks: Optional[str] = None,
    ) -> Outcome[RecoveryAssignment]:
        """Schedule a collection visit. Only one open assignment per bill."""
        if not officer_name or not officer_name.strip():
            raise InvalidInput("officer_name is required")

        def work():
            bill = lock_bill(self.session, ctx, bill_id)
            ctx.require_access(bill.isp_id)
            customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer")
            if bill.customer_id != customer.id:
                raise InvalidInput("Bill does not belong to this customer")
            if bill.status in (BillStatus.PAID.value, BillStatus.CANCELLED.value):
                raise Conflict(f"Bill {bill.bill_number} is {bill.status}, nothing to collect")

            open_assignment = self.session.exec(
                select(RecoveryAssignment.id).where(
                    RecoveryAssignment.bill_id == bill.id,
                    RecoveryAssignment.status.in_(OPEN_RECOVERY_STATUSES),
                )
            ).first()
            if open_assignment is not None:
                raise Conflict(f"Recovery already assigned for bill {bill.bill_number}")

            recovery = RecoveryAssignment(
                isp_id=bill.isp_id,
                customer_id=customer.id,
                bill_id=bill.id,
                officer_name=officer_name.strip(),
                status=RecoveryStatus.ASSIGNED.value,
                remarks=remarks,
            )
            self.session.add(recovery)
            self.session.flush()
            return recovery

        recovery = run_atomic(self.session, work, label=f"assign recovery for bill {bill_id}")
        logger.info(f"Recovery {recovery.id} assigned to {recovery.officer_name} for bill {bill_id}")
        return Outcome(result=recovery)

    def record_visit(
        self,
        ctx: TenantContext,
        recovery_id: int,
        status: Any,
        amount_collected: Any = None,
        visit_date: Any = None,
        remarks: Optional[str] = None,
        next_visit_date: Any = None,
        transaction_id: Optional[str] = None,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[RecoveryAssignment]:
        """
        Record the outcome of a visit. A collected amount becomes a cash
        payment on the bill, dated at the visit.
        """
        now = self._now(now)
        try:
            new_status = RecoveryStatus(str(status).strip().lower()).value
        except ValueError:
            raise InvalidInput(f"Invalid recovery status {status!r}")
        if new_status == RecoveryStatus.ASSIGNED.value:
            raise InvalidInput("A visit cannot move a recovery back to assigned")

        collected = None
        if amount_collected is not None:
            collected = money(amount_collected, "amount_collected")
            if collected < 0:
                raise InvalidInput("amount_collected cannot be negative")
            if collected == 0:
                collected = None
        visited_on = parse_datetime(visit_date, "visit_date") if visit_date is not None else now
        next_visit = parse_datetime(next_visit_date, "next_visit_date") if next_visit_date is not None else None
        txn = transaction_id.strip() if transaction_id and transaction_id.strip() else None

        def work():
            recovery = fetch_scoped(self.session, ctx, RecoveryAssignment, recovery_id, "Recovery", for_update=True)
            ctx.require_access(recovery.isp_id)
            if recovery.status not in OPEN_RECOVERY_STATUSES:
                raise Conflict(f"Recovery {recovery.id} is already closed ({recovery.status})")

            events, payment = [], None
            if collected is not None:
                payment, events, replayed = self.payments._apply_locked(
                    ctx,
                    recovery.bill_id,
                    collected,
                    PaymentMethod.CASH.value,
                    txn,
                    f"Collected by {recovery.officer_name} (recovery #{recovery.id})",
                    visited_on,
                    now,
                )
                if not replayed:
                    recovery.amount_collected = money(recovery.amount_collected) + collected
                recovery.last_payment_id = payment.id

            recovery.status = new_status
            recovery.visit_date = visited_on
            recovery.next_visit_date = next_visit
            if remarks is not None:
                recovery.remarks = remarks
            self.session.add(recovery)
            self.session.flush()
            return recovery, payment, events

        try:
            recovery, payment, events = run_atomic(
                self.session, work, timeout=timeout, label=f"record visit for recovery {recovery_id}"
            )
        except IntegrityError:
            raise Conflict("Transaction ID was recorded concurrently; retry the visit update")

        if payment is not None:
            log_action(
                "RECOVERY_COLLECTION",
                "recovery",
                recovery.id,
                ctx,
                details={"payment_id": payment.id, "amount": collected, "bill_id": recovery.bill_id},
            )
        logger.info(f"Recovery {recovery.id} visit recorded: {recovery.status}")
        return self._deliver(Outcome(result=recovery, events=events))
