"""
Customer suspension and reactivation, derived from ledger state only.

Suspension never writes to a bill. Both transitions are conditional updates
on the customer's current status, so overlapping runs cannot apply them
twice.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import (
    BillStatus,
    CustomerStatus,
    OPEN_BILL_STATUSES,
    SUSPENDABLE_CUSTOMER_STATUSES,
)
from ..core.errors import InvalidInput
from ..core.events import BatchSummary, CustomerReactivated, CustomerSuspended, EventPublisher, Outcome
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import run_atomic
from ..models import Bill, Customer
from ..utils.money import money
from .base_service import LedgerBaseService

logger = logging.getLogger(__name__)


class SuspensionService(LedgerBaseService):
    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)

    def _grace_days(self, grace_period_days: Optional[int]) -> int:
        if grace_period_days is None:
            return self.settings.get_int("grace_period_days")
        if grace_period_days < 0:
            raise InvalidInput("grace_period_days cannot be negative")
        return grace_period_days

    # --- Suspension ---

    def _oldest_offending_bill(self, customer: Customer, cutoff: datetime) -> Optional[Bill]:
        statement = (
            select(Bill)
            .where(
                Bill.isp_id == customer.isp_id,
                Bill.customer_id == customer.id,
                Bill.status.in_(OPEN_BILL_STATUSES),
                Bill.due_date < cutoff,
            )
            .order_by(Bill.due_date, Bill.id)
        )
        return self.session.exec(statement).first()

    def _suspend_locked(
        self, customer: Customer, grace_days: int, now: datetime
    ) -> Optional[CustomerSuspended]:
        if customer.status not in SUSPENDABLE_CUSTOMER_STATUSES:
            return None

        bill = self._oldest_offending_bill(customer, now - timedelta(days=grace_days))
        if bill is None:
            return None

        reason = f"Auto-suspended due to overdue bill {bill.bill_number}"
        statement = (
            update(Customer)
            .where(Customer.id == customer.id, Customer.status.in_(SUSPENDABLE_CUSTOMER_STATUSES))
            .values(status=CustomerStatus.SUSPENDED.value, suspended_at=now, suspension_reason=reason)
        )
        if self.session.execute(statement).rowcount == 0:
            return None

        self.session.refresh(customer)
        return CustomerSuspended(isp_id=customer.isp_id, customer_id=customer.id, bill_id=bill.id, reason=reason)

    def evaluate_suspension(
        self,
        ctx: TenantContext,
        customer_id: int,
        grace_period_days: Optional[int] = None,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Customer]:
        """
        Suspend the customer if any open bill is past due by more than the
        grace period. Already-suspended or administratively parked customers
        are left alone.
        """
        now = self._now(now)
        grace_days = self._grace_days(grace_period_days)

        def work():
            customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer", for_update=True)
            ctx.require_access(customer.isp_id)
            return customer, self._suspend_locked(customer, grace_days, now)

        customer, event = run_atomic(self.session, work, timeout=timeout, label=f"suspend customer {customer_id}")
        if event is None:
            return Outcome(result=customer)

        logger.info(f"Customer {customer.id} suspended: {event.reason}")
        log_action("SUSPEND_CUSTOMER", "customer", customer.id, ctx, details={"reason": event.reason})
        return self._deliver(Outcome(result=customer, events=[event]))

    def sweep_suspensions(
        self, ctx: TenantContext, now: Any = None, grace_period_days: Optional[int] = None
    ) -> BatchSummary:
        now = self._now(now)
        grace_days = self._grace_days(grace_period_days)
        cutoff = now - timedelta(days=grace_days)
        summary = BatchSummary()

        statement = ctx.scope(
            select(Bill.customer_id)
            .join(Customer, Customer.id == Bill.customer_id)
            .where(
                Customer.status.in_(SUSPENDABLE_CUSTOMER_STATUSES),
                Bill.status.in_(OPEN_BILL_STATUSES),
                Bill.due_date < cutoff,
            )
            .distinct(),
            Bill.isp_id,
        )
        customer_ids = sorted(self.session.exec(statement).all())
        logger.info(f"Evaluating suspension for {len(customer_ids)} customers (grace {grace_days} days)")

        for customer_id in customer_ids:

            def work():
                customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer", for_update=True)
                return self._suspend_locked(customer, grace_days, now)

            try:
                event = run_atomic(self.session, work, label=f"suspend customer {customer_id}")
            except Exception as e:
                logger.error(f"Suspension failed for customer {customer_id}: {e}", exc_info=True)
                summary.record_failure("customer", customer_id, e)
                continue

            if event is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.events.append(event)
            summary.delivery_failures.extend(self.publisher.publish([event]))
            log_action("SUSPEND_CUSTOMER", "customer", customer_id, ctx, details={"reason": event.reason})

        logger.info(f"Suspension sweep finished: {summary.as_dict()}")
        return summary

    # --- Reactivation ---

    def is_settled(self, customer: Customer) -> bool:
        """True when every non-cancelled bill has nothing left to pay."""
        statement = select(Bill.total_amount, Bill.paid_amount).where(
            Bill.isp_id == customer.isp_id,
            Bill.customer_id == customer.id,
            Bill.status != BillStatus.CANCELLED.value,
        )
        return all(money(total) - money(paid) <= 0 for total, paid in self.session.exec(statement).all())

    def reactivate_locked(
        self, ctx: TenantContext, customer_id: int, now: datetime, bill_id: Optional[int] = None
    ) -> Optional[CustomerReactivated]:
        """
        Reactivate inside the caller's transaction, reading the bills it has
        just written. Returns the event, or None when nothing changed.
        """
        customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer", for_update=True)
        if customer.status != CustomerStatus.SUSPENDED.value:
            return None
        if not self.is_settled(customer):
            return None

        statement = (
            update(Customer)
            .where(Customer.id == customer.id, Customer.status == CustomerStatus.SUSPENDED.value)
            .values(
                status=CustomerStatus.ACTIVE.value,
                suspended_at=None,
                suspension_reason=None,
                reactivated_at=now,
            )
        )
        if self.session.execute(statement).rowcount == 0:
            return None

        self.session.refresh(customer)
        logger.info(f"Customer {customer.id} reactivated, all bills settled")
        return CustomerReactivated(isp_id=customer.isp_id, customer_id=customer.id, bill_id=bill_id)

    def evaluate_reactivation(
        self, ctx: TenantContext, customer_id: int, now: Any = None, timeout: Optional[float] = None
    ) -> Outcome[Customer]:
        now = self._now(now)

        def work():
            customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer")
            ctx.require_access(customer.isp_id)
            event = self.reactivate_locked(ctx, customer_id, now)
            return customer, event

        customer, event = run_atomic(self.session, work, timeout=timeout, label=f"reactivate customer {customer_id}")
        if event is None:
            return Outcome(result=customer)

        log_action("REACTIVATE_CUSTOMER", "customer", customer.id, ctx)
        return self._deliver(Outcome(result=customer, events=[event]))
