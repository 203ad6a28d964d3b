"""
Billing ledger: bill creation, recomputation of derived state, cancellation
and the periodic bill generation/reminder runs.

``paid_amount``, ``status`` (apart from cancellation) and ``completed_at``
are written in exactly one place: ``LedgerService.recompute_locked``.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import (
    BillStatus,
    CustomerStatus,
    DocumentKind,
    OPEN_BILL_STATUSES,
    PaymentStatus,
    SubscriptionInvoiceKind,
    ZERO,
)
from ..core.errors import Conflict, InvalidInput, InvariantViolation, NotFound, TenantMismatch
from ..core.events import (
    BatchSummary,
    BillCreated,
    BillReminderDue,
    EventPublisher,
    Outcome,
    SubscriptionInvoiceIssued,
)
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import lock_bill, run_atomic
from ..models import Bill, Customer, Package, Payment, SaaSPackage, SubscriptionInvoice, Tenant
from ..utils.dates import add_months, parse_datetime
from ..utils.money import money, remaining
from .base_service import LedgerBaseService
from .numbering_service import DocumentNumberService

logger = logging.getLogger(__name__)


def derive_bill_state(
    prior_status: str,
    paid_amount: Decimal,
    total_amount: Decimal,
    late_fee: Decimal,
    completed_at: Optional[datetime],
    now: datetime,
    allow_regression: bool = False,
) -> tuple[str, Optional[datetime]]:
    """
    Pure status rule for a bill.

    Returns (status, completed_at). completed_at, once set, is returned
    unchanged. Leaving ``paid`` is only possible with allow_regression
    (refunds); otherwise InvariantViolation is raised.
    """
    if prior_status == BillStatus.CANCELLED.value:
        return prior_status, completed_at

    if paid_amount >= total_amount:
        return BillStatus.PAID.value, completed_at or now

    if prior_status == BillStatus.PAID.value and not allow_regression:
        raise InvariantViolation(
            f"Recompute would move a paid bill back to unpaid (paid {paid_amount} of {total_amount})"
        )

    if paid_amount > 0:
        return BillStatus.PARTIAL.value, completed_at

    if prior_status in (BillStatus.PAID.value, BillStatus.PARTIAL.value):
        # Nothing paid any more: back to the state the due date implies
        return (BillStatus.OVERDUE.value if late_fee > 0 else BillStatus.PENDING.value), completed_at

    return prior_status, completed_at


class LedgerService(LedgerBaseService):
    """
    Service for bill operations. Every public method takes the caller's
    TenantContext and returns an Outcome (or a BatchSummary for runs).
    """

    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)
        self.numbers = DocumentNumberService(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_bill(
        self,
        ctx: TenantContext,
        customer_id: int,
        package_id: Optional[int] = None,
        amount: Any = None,
        due_date: Any = None,
        period_start: Any = None,
        period_end: Any = None,
        notes: Optional[str] = None,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Bill]:
        """
        Create a pending bill for a customer.

        The charge is the explicit amount or the package price (package_id,
        else the customer's current package). Missing dates default to
        period_start = customer's next billing date, period_end = start +
        billing_cycle months, due_date = period_end + bill_due_days.
        """
        now = self._now(now)
        explicit_amount = self._positive_amount(amount) if amount is not None else None
        start = parse_datetime(period_start, "billing_period_start") if period_start is not None else None
        end = parse_datetime(period_end, "billing_period_end") if period_end is not None else None
        due = parse_datetime(due_date, "due_date") if due_date is not None else None
        due_days = self.settings.get_int("bill_due_days")

        def work():
            customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer")
            ctx.require_access(customer.isp_id)
            return self._build_bill(ctx, customer, package_id, explicit_amount, start, end, due, due_days, notes, now)

        bill, event = run_atomic(self.session, work, timeout=timeout, label="create bill")
        logger.info(f"Bill {bill.bill_number} created for customer {bill.customer_id} ({bill.amount})")
        log_action("CREATE_BILL", "bill", bill.id, ctx, details={"bill_number": bill.bill_number, "amount": bill.amount})
        return self._deliver(Outcome(result=bill, events=[event]))

    @staticmethod
    def _positive_amount(amount: Any) -> Decimal:
        value = money(amount)
        if value <= 0:
            raise InvalidInput("amount must be greater than zero")
        return value

    def _resolve_package(self, ctx: TenantContext, customer: Customer, package_id: Optional[int]) -> Optional[Package]:
        target_id = package_id if package_id is not None else customer.package_id
        if target_id is None:
            return None
        package = fetch_scoped(self.session, ctx, Package, target_id, "Package")
        if package.isp_id != customer.isp_id:
            logger.warning(f"Package {package.id} (ISP {package.isp_id}) refused for customer {customer.id}")
            raise TenantMismatch("Package does not belong to the customer's ISP")
        return package

    def _build_bill(
        self,
        ctx: TenantContext,
        customer: Customer,
        package_id: Optional[int],
        explicit_amount: Optional[Decimal],
        start: Optional[datetime],
        end: Optional[datetime],
        due: Optional[datetime],
        due_days: int,
        notes: Optional[str],
        now: datetime,
    ) -> tuple[Bill, BillCreated]:
        package = self._resolve_package(ctx, customer, package_id)
        if explicit_amount is not None:
            charge = explicit_amount
        elif package is not None:
            charge = self._positive_amount(package.price)
        else:
            raise NotFound("No package or amount found for this bill")

        cycle = customer.billing_cycle or 1
        if cycle < 1:
            raise InvalidInput(f"Customer {customer.id} has an invalid billing cycle: {cycle}")
        bill_start = start or customer.next_billing_date or now
        bill_end = end or add_months(bill_start, cycle)
        if bill_end <= bill_start:
            raise InvalidInput("billing_period_end must be after billing_period_start")
        bill_due = due or bill_end + timedelta(days=due_days)

        bill = self.numbers.issue(
            DocumentKind.BILL,
            customer.isp_id,
            lambda number: Bill(
                bill_number=number,
                isp_id=customer.isp_id,
                customer_id=customer.id,
                package_id=package.id if package else None,
                amount=charge,
                late_fee=ZERO,
                total_amount=charge,
                paid_amount=ZERO,
                status=BillStatus.PENDING.value,
                billing_period_start=bill_start,
                billing_period_end=bill_end,
                due_date=bill_due,
                notes=notes,
            ),
            Bill.bill_number,
            year=now.year,
        )

        customer.next_billing_date = bill_end + timedelta(days=1)
        if package is not None and customer.package_id != package.id:
            customer.package_id = package.id
        self.session.add(customer)
        self.session.flush()

        event = BillCreated(
            isp_id=bill.isp_id,
            customer_id=bill.customer_id,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            amount=bill.amount,
            due_date=bill.due_date,
        )
        return bill, event

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def completed_total(self, bill: Bill) -> Decimal:
        """Sum of completed payments for the bill (full resum)."""
        statement = select(Payment.amount).where(
            Payment.isp_id == bill.isp_id,
            Payment.bill_id == bill.id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        total = sum((money(value) for value in self.session.exec(statement).all()), ZERO)
        return money(total)

    def recompute_locked(self, bill: Bill, now: datetime, allow_regression: bool = False) -> Bill:
        """Re-derive paid_amount, status and completed_at. Caller holds the bill lock."""
        paid = self.completed_total(bill)
        try:
            status, completed_at = derive_bill_state(
                bill.status,
                paid,
                money(bill.total_amount),
                money(bill.late_fee),
                bill.completed_at,
                now,
                allow_regression,
            )
        except InvariantViolation as e:
            logger.error(f"Bill {bill.id} ({bill.bill_number}): {e.message}")
            raise

        if bill.status != status:
            logger.info(f"Bill {bill.bill_number}: {bill.status} -> {status} (paid {paid}/{bill.total_amount})")
        bill.paid_amount = paid
        bill.status = status
        bill.completed_at = completed_at
        self.session.add(bill)
        self.session.flush()
        return bill

    def recompute(
        self,
        ctx: TenantContext,
        bill_id: int,
        allow_regression: bool = False,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Bill]:
        now = self._now(now)

        def work():
            bill = lock_bill(self.session, ctx, bill_id)
            ctx.require_access(bill.isp_id)
            return self.recompute_locked(bill, now, allow_regression)

        bill = run_atomic(self.session, work, timeout=timeout, label=f"recompute bill {bill_id}")
        return Outcome(result=bill)

    # ------------------------------------------------------------------
    # Cancellation and reads
    # ------------------------------------------------------------------

    def cancel_bill(self, ctx: TenantContext, bill_id: int, timeout: Optional[float] = None) -> Outcome[Bill]:
        """Move a bill to the terminal cancelled state. Bills with payments cannot be cancelled."""

        def work():
            bill = lock_bill(self.session, ctx, bill_id)
            ctx.require_access(bill.isp_id)
            if bill.status == BillStatus.CANCELLED.value:
                return bill, False
            statement = select(Payment.id).where(
                Payment.bill_id == bill.id,
                Payment.status == PaymentStatus.COMPLETED.value,
            )
            if self.session.exec(statement).first() is not None:
                raise Conflict("Cannot cancel a bill with recorded payments")
            bill.status = BillStatus.CANCELLED.value
            self.session.add(bill)
            self.session.flush()
            return bill, True

        bill, changed = run_atomic(self.session, work, timeout=timeout, label=f"cancel bill {bill_id}")
        if changed:
            logger.info(f"Bill {bill.bill_number} cancelled")
            log_action("CANCEL_BILL", "bill", bill.id, ctx, details={"bill_number": bill.bill_number})
        return Outcome(result=bill, replayed=not changed)

    def get_bill(self, ctx: TenantContext, bill_id: int) -> dict[str, Any]:
        bill = fetch_scoped(self.session, ctx, Bill, bill_id, "Bill")
        data = bill.model_dump()
        data["remaining_amount"] = remaining(bill.total_amount, bill.paid_amount)
        return data

    # ------------------------------------------------------------------
    # Periodic runs
    # ------------------------------------------------------------------

    def generate_due_bills(self, ctx: TenantContext, now: Any = None) -> BatchSummary:
        """
        Bill every active customer whose next billing date has arrived.
        A customer already billed for that period start is skipped.
        """
        now = self._now(now)
        due_days = self.settings.get_int("bill_due_days")
        summary = BatchSummary()

        statement = ctx.scope(
            select(Customer.id).where(
                Customer.status == CustomerStatus.ACTIVE.value,
                Customer.package_id.is_not(None),
                Customer.next_billing_date.is_not(None),
                Customer.next_billing_date <= now,
            ),
            Customer.isp_id,
        ).order_by(Customer.id)
        customer_ids = self.session.exec(statement).all()
        logger.info(f"Generating bills for {len(customer_ids)} customers due on or before {now:%Y-%m-%d}")

        for customer_id in customer_ids:
            try:
                result = run_atomic(
                    self.session,
                    lambda: self._generate_for_customer(ctx, customer_id, due_days, now),
                    label=f"generate bill for customer {customer_id}",
                )
            except Exception as e:
                logger.error(f"Bill generation failed for customer {customer_id}: {e}", exc_info=True)
                summary.record_failure("customer", customer_id, e)
                continue

            if result is None:
                summary.skipped += 1
                continue
            bill, event = result
            summary.processed += 1
            summary.events.append(event)
            log_action("CREATE_BILL", "bill", bill.id, ctx, details={"bill_number": bill.bill_number, "automatic": True})

        summary.delivery_failures.extend(self.publisher.publish(summary.events))
        logger.info(f"Bill generation finished: {summary.as_dict()}")
        return summary

    def _generate_for_customer(self, ctx: TenantContext, customer_id: int, due_days: int, now: datetime):
        customer = fetch_scoped(self.session, ctx, Customer, customer_id, "Customer", for_update=True)
        if (
            customer.status != CustomerStatus.ACTIVE.value
            or customer.next_billing_date is None
            or customer.next_billing_date > now
        ):
            return None

        already_billed = self.session.exec(
            select(Bill.id).where(
                Bill.customer_id == customer.id,
                Bill.billing_period_start == customer.next_billing_date,
                Bill.status != BillStatus.CANCELLED.value,
            )
        ).first()
        if already_billed is not None:
            return None

        return self._build_bill(ctx, customer, None, None, None, None, None, due_days, None, now)

    def due_reminders(self, ctx: TenantContext, now: Any = None) -> BatchSummary:
        """Emit one BillReminderDue per open bill falling due N days from now."""
        now = self._now(now)
        days = self.settings.get_int("reminder_days_before_due")
        window_start = datetime.combine((now + timedelta(days=days)).date(), datetime.min.time())
        window_end = window_start + timedelta(days=1)
        summary = BatchSummary()

        statement = ctx.scope(
            select(Bill.id).where(
                Bill.status.in_(OPEN_BILL_STATUSES),
                Bill.reminder_sent_at.is_(None),
                Bill.due_date >= window_start,
                Bill.due_date < window_end,
            ),
            Bill.isp_id,
        ).order_by(Bill.id)
        bill_ids = self.session.exec(statement).all()

        for bill_id in bill_ids:
            try:
                event = run_atomic(
                    self.session,
                    lambda: self._mark_reminded(ctx, bill_id, now),
                    label=f"reminder for bill {bill_id}",
                )
            except Exception as e:
                logger.error(f"Reminder failed for bill {bill_id}: {e}", exc_info=True)
                summary.record_failure("bill", bill_id, e)
                continue
            if event is None:
                summary.skipped += 1
            else:
                summary.processed += 1
                summary.events.append(event)

        summary.delivery_failures.extend(self.publisher.publish(summary.events))
        logger.info(f"Bill reminders finished: {summary.as_dict()}")
        return summary

    def _mark_reminded(self, ctx: TenantContext, bill_id: int, now: datetime) -> Optional[BillReminderDue]:
        statement = ctx.scope(
            update(Bill).where(Bill.id == bill_id, Bill.reminder_sent_at.is_(None)),
            Bill.isp_id,
        ).values(reminder_sent_at=now)
        if self.session.execute(statement).rowcount == 0:
            return None
        bill = fetch_scoped(self.session, ctx, Bill, bill_id, "Bill")
        return BillReminderDue(
            isp_id=bill.isp_id,
            customer_id=bill.customer_id,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            total_amount=bill.total_amount,
            due_date=bill.due_date,
        )

    # ------------------------------------------------------------------
    # Subscription invoices (platform -> ISP)
    # ------------------------------------------------------------------

    def issue_subscription_invoice(
        self,
        ctx: TenantContext,
        tenant_id: int,
        kind: SubscriptionInvoiceKind,
        now: Any = None,
    ) -> Outcome[SubscriptionInvoice]:
        """
        Issue the initial or final invoice for the tenant's current
        subscription window. At most one invoice per (tenant, kind, window).
        """
        now = self._now(now)

        def find_existing(tenant: Tenant) -> Optional[SubscriptionInvoice]:
            return self.session.exec(
                select(SubscriptionInvoice).where(
                    SubscriptionInvoice.isp_id == tenant.id,
                    SubscriptionInvoice.kind == kind.value,
                    SubscriptionInvoice.period_start == tenant.subscription_start_date,
                    SubscriptionInvoice.period_end == tenant.subscription_end_date,
                )
            ).first()

        def work():
            tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id)
            ctx.require_access(tenant.id)
            if tenant.subscription_start_date is None or tenant.subscription_end_date is None:
                raise InvalidInput(f"ISP {tenant.id} has no subscription window to invoice")

            existing = find_existing(tenant)
            if existing is not None:
                return existing, False

            saas_package = self.session.get(SaaSPackage, tenant.saas_package_id) if tenant.saas_package_id else None
            amount = money(saas_package.price) if saas_package else ZERO
            invoice = self.numbers.issue(
                DocumentKind.INVOICE,
                tenant.id,
                lambda number: SubscriptionInvoice(
                    isp_id=tenant.id,
                    saas_package_id=tenant.saas_package_id,
                    invoice_number=number,
                    kind=kind.value,
                    amount=amount,
                    period_start=tenant.subscription_start_date,
                    period_end=tenant.subscription_end_date,
                    issued_at=now,
                ),
                SubscriptionInvoice.invoice_number,
                year=now.year,
                business_code=tenant.business_code,
            )
            return invoice, True

        try:
            invoice, created = run_atomic(self.session, work, label=f"{kind.value} invoice for ISP {tenant_id}")
        except IntegrityError:
            # A concurrent run issued the same invoice first
            tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id)
            invoice, created = find_existing(tenant), False
            if invoice is None:
                raise

        if not created:
            return Outcome(result=invoice, replayed=True)

        logger.info(f"Subscription invoice {invoice.invoice_number} ({kind.value}) issued to ISP {tenant_id}")
        log_action("ISSUE_INVOICE", "subscription_invoice", invoice.id, ctx, details={"kind": kind.value})
        event = SubscriptionInvoiceIssued(
            isp_id=invoice.isp_id,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            kind=invoice.kind,
            amount=invoice.amount,
        )
        return self._deliver(Outcome(result=invoice, events=[event]))
