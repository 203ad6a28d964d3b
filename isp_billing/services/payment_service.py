"""
Payment application engine.

A payment is recorded, the bill is recomputed and the customer's
reactivation is evaluated in a single transaction while the bill is locked.
Events go out only after the commit.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import BillStatus, DocumentKind, PaymentMethod, PaymentStatus
from ..core.errors import Conflict, InvalidInput
from ..core.events import DomainEvent, EventPublisher, Outcome, PaymentApplied, PaymentRefunded
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import lock_bill, run_atomic
from ..models import Bill, Payment
from ..utils.dates import parse_datetime
from ..utils.money import money, remaining
from .base_service import LedgerBaseService
from .ledger_service import LedgerService
from .numbering_service import DocumentNumberService
from .suspension_service import SuspensionService

logger = logging.getLogger(__name__)


class PaymentService(LedgerBaseService):
    """
    Service layer for applying and refunding payments.
    """

    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)
        self.numbers = DocumentNumberService(session)
        self.ledger = LedgerService(session, self.publisher)
        self.suspension = SuspensionService(session, self.publisher)

    @staticmethod
    def validate_method(method: Any) -> str:
        try:
            return PaymentMethod(str(method).strip().lower()).value
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise InvalidInput(f"Invalid payment method {method!r}. Allowed: {allowed}")

    @staticmethod
    def validate_amount(amount: Any) -> Decimal:
        value = money(amount)
        if value <= 0:
            raise InvalidInput("Payment amount must be greater than zero")
        return value

    def find_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        # Transaction ids are unique platform-wide, so this lookup is not tenant scoped.
        # Callers only hand the row back when it belongs to the same customer.
        statement = select(Payment).where(Payment.transaction_id == transaction_id)
        return self.session.exec(statement.execution_options(populate_existing=True)).first()

    def _check_transaction(self, bill: Bill, transaction_id: str) -> Optional[Payment]:
        """Existing completed payment to replay, None to proceed, Conflict otherwise."""
        existing = self.find_by_transaction(transaction_id)
        if existing is None:
            return None
        if existing.customer_id != bill.customer_id or existing.isp_id != bill.isp_id:
            logger.warning(f"Transaction ID {transaction_id} reused for a different customer (bill {bill.id})")
            raise Conflict("Transaction ID already used by another customer")
        if existing.status != PaymentStatus.COMPLETED.value:
            raise Conflict(f"Transaction ID {transaction_id} already recorded as {existing.status}")
        return existing

    def _apply_locked(
        self,
        ctx: TenantContext,
        bill_id: int,
        amount: Decimal,
        method: str,
        transaction_id: Optional[str],
        notes: Optional[str],
        payment_date: datetime,
        now: datetime,
    ) -> tuple[Payment, list[DomainEvent], bool]:
        """
        Record a completed payment inside the current transaction.
        Returns (payment, events, replayed).
        """
        bill = lock_bill(self.session, ctx, bill_id)
        ctx.require_access(bill.isp_id)

        if transaction_id:
            existing = self._check_transaction(bill, transaction_id)
            if existing is not None:
                logger.info(f"Transaction {transaction_id} already applied as payment {existing.id}, replaying")
                return existing, [], True

        if bill.status == BillStatus.CANCELLED.value:
            raise Conflict(f"Bill {bill.bill_number} is cancelled")

        payment = self.numbers.issue(
            DocumentKind.RECEIPT,
            bill.isp_id,
            lambda number: Payment(
                isp_id=bill.isp_id,
                bill_id=bill.id,
                customer_id=bill.customer_id,
                amount=amount,
                payment_method=method,
                status=PaymentStatus.COMPLETED.value,
                transaction_id=transaction_id,
                receipt_number=number,
                payment_date=payment_date,
                notes=notes,
            ),
            Payment.receipt_number,
            year=now.year,
        )

        self.ledger.recompute_locked(bill, now)

        events: list[DomainEvent] = [
            PaymentApplied(
                isp_id=bill.isp_id,
                customer_id=bill.customer_id,
                bill_id=bill.id,
                payment_id=payment.id,
                receipt_number=payment.receipt_number,
                amount=payment.amount,
                paid_amount=bill.paid_amount,
                remaining_amount=remaining(bill.total_amount, bill.paid_amount),
                bill_status=bill.status,
            )
        ]
        reactivated = self.suspension.reactivate_locked(ctx, bill.customer_id, now, bill_id=bill.id)
        if reactivated is not None:
            events.append(reactivated)
        return payment, events, False

    def apply_payment(
        self,
        ctx: TenantContext,
        bill_id: int,
        amount: Any,
        method: Any,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
        payment_date: Any = None,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Payment]:
        """
        Apply a payment to a bill.

        Args:
            amount: positive amount, any precision is rounded half-up to cents
            method: one of PaymentMethod
            transaction_id: idempotency key; a retry returns the first payment
            payment_date: defaults to now (backdated for collected recoveries)
            timeout: seconds before giving up on the bill lock
        """
        now = self._now(now)
        value = self.validate_amount(amount)
        method_value = self.validate_method(method)
        txn = transaction_id.strip() if transaction_id and transaction_id.strip() else None
        paid_on = parse_datetime(payment_date, "payment_date") if payment_date is not None else now

        try:
            payment, events, replayed = run_atomic(
                self.session,
                lambda: self._apply_locked(ctx, bill_id, value, method_value, txn, notes, paid_on, now),
                timeout=timeout,
                label=f"apply payment to bill {bill_id}",
            )
        except IntegrityError:
            if txn is None:
                raise
            # Lost a race on the transaction id: hand back the winner's payment
            bill = fetch_scoped(self.session, ctx, Bill, bill_id, "Bill")
            winner = self._check_transaction(bill, txn)
            if winner is None:
                raise
            return Outcome(result=winner, replayed=True)

        if replayed:
            return Outcome(result=payment, replayed=True)

        logger.info(f"Payment {payment.receipt_number} of {payment.amount} applied to bill {bill_id}")
        log_action(
            "APPLY_PAYMENT",
            "bill",
            bill_id,
            ctx,
            details={"payment_id": payment.id, "amount": payment.amount, "method": method_value},
        )
        return self._deliver(Outcome(result=payment, events=events))

    def refund_payment(
        self,
        ctx: TenantContext,
        payment_id: int,
        reason: Optional[str] = None,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Payment]:
        """Refund a completed payment. This is the only path that moves a bill out of paid."""
        now = self._now(now)

        def work():
            payment = fetch_scoped(self.session, ctx, Payment, payment_id, "Payment")
            ctx.require_access(payment.isp_id)
            bill = lock_bill(self.session, ctx, payment.bill_id)
            payment = fetch_scoped(self.session, ctx, Payment, payment_id, "Payment")
            if payment.status != PaymentStatus.COMPLETED.value:
                raise Conflict(f"Only completed payments can be refunded (status: {payment.status})")

            payment.status = PaymentStatus.REFUNDED.value
            payment.refunded_at = now
            payment.refund_reason = reason
            self.session.add(payment)
            self.session.flush()

            self.ledger.recompute_locked(bill, now, allow_regression=True)
            event = PaymentRefunded(
                isp_id=bill.isp_id,
                customer_id=bill.customer_id,
                bill_id=bill.id,
                payment_id=payment.id,
                amount=payment.amount,
                paid_amount=bill.paid_amount,
                bill_status=bill.status,
            )
            return payment, event

        payment, event = run_atomic(self.session, work, timeout=timeout, label=f"refund payment {payment_id}")
        logger.info(f"Payment {payment.id} refunded, bill {payment.bill_id} now {event.bill_status}")
        log_action("REFUND_PAYMENT", "payment", payment.id, ctx, details={"amount": payment.amount, "reason": reason})
        return self._deliver(Outcome(result=payment, events=[event]))

    def get_payment(self, ctx: TenantContext, payment_id: int) -> Payment:
        return fetch_scoped(self.session, ctx, Payment, payment_id, "Payment")
