"""
Domain events published by the ledger after a successful commit.

Events are flat records of ids and amounts. Delivery (email/SMS/push) belongs
to the NotificationDispatcher collaborator; a failed delivery is reported back
to the caller and never undoes the ledger mutation.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Generic, Literal, Optional, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    isp_id: Optional[int] = None
    customer_id: Optional[int] = None

    def recipient(self) -> str:
        if self.customer_id is not None:
            return f"customer:{self.customer_id}"
        return f"tenant:{self.isp_id}"


class BillCreated(DomainEvent):
    event_type: Literal["bill_created"] = "bill_created"
    bill_id: int
    bill_number: str
    amount: Decimal
    due_date: datetime


class PaymentApplied(DomainEvent):
    event_type: Literal["payment_applied"] = "payment_applied"
    bill_id: int
    payment_id: int
    receipt_number: Optional[str] = None
    amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    bill_status: str


class PaymentRefunded(DomainEvent):
    event_type: Literal["payment_refunded"] = "payment_refunded"
    bill_id: int
    payment_id: int
    amount: Decimal
    paid_amount: Decimal
    bill_status: str


class BillOverdue(DomainEvent):
    event_type: Literal["bill_overdue"] = "bill_overdue"
    bill_id: int
    bill_number: str
    late_fee: Decimal
    total_amount: Decimal


class BillReminderDue(DomainEvent):
    event_type: Literal["bill_reminder_due"] = "bill_reminder_due"
    bill_id: int
    bill_number: str
    total_amount: Decimal
    due_date: datetime


class CustomerSuspended(DomainEvent):
    event_type: Literal["customer_suspended"] = "customer_suspended"
    bill_id: Optional[int] = None
    reason: str


class CustomerReactivated(DomainEvent):
    event_type: Literal["customer_reactivated"] = "customer_reactivated"
    bill_id: Optional[int] = None


class SubscriptionExpiring(DomainEvent):
    event_type: Literal["subscription_expiring"] = "subscription_expiring"
    subscription_end_date: datetime
    warned_on: date


class SubscriptionSuspended(DomainEvent):
    event_type: Literal["subscription_suspended"] = "subscription_suspended"
    subscription_end_date: Optional[datetime] = None


class SubscriptionActivated(DomainEvent):
    event_type: Literal["subscription_activated"] = "subscription_activated"
    saas_package_id: int
    subscription_start_date: datetime
    subscription_end_date: datetime


class SubscriptionInvoiceIssued(DomainEvent):
    event_type: Literal["subscription_invoice_issued"] = "subscription_invoice_issued"
    invoice_id: int
    invoice_number: str
    kind: str
    amount: Decimal


class DeliveryFailure(BaseModel):
    event_type: str
    recipient: str
    error: str


@dataclass
class Outcome(Generic[T]):
    """Result object of a core operation plus what it emitted."""

    result: T
    events: list[DomainEvent] = field(default_factory=list)
    delivery_failures: list[DeliveryFailure] = field(default_factory=list)
    replayed: bool = False


@dataclass
class BatchSummary:
    """Counters for a sweep; partial failure is normal and must stay visible."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    events: list[DomainEvent] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    delivery_failures: list[DeliveryFailure] = field(default_factory=list)

    def record_failure(self, entity: str, entity_id: Any, error: Exception) -> None:
        self.failed += 1
        self.errors.append({"entity": entity, "id": entity_id, "error": str(error)})

    def as_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "skipped": self.skipped, "failed": self.failed}


class NotificationDispatcher(Protocol):
    def notify(self, recipient: str, template: str, payload: dict[str, Any]) -> None: ...


class DocumentRenderer(Protocol):
    def render_invoice(self, bill: Any) -> str: ...


class LoggingNotificationDispatcher:
    """Default dispatcher: records the notification request in the log."""

    def notify(self, recipient: str, template: str, payload: dict[str, Any]) -> None:
        logger.info(f"Notification '{template}' queued for {recipient}: {payload}")


class EventPublisher:
    """
    Hands committed events to the notification collaborator.

    Every event is attempted; failures are collected and returned so the
    caller can retry delivery.
    """

    def __init__(self, notifier: Optional[NotificationDispatcher] = None):
        self.notifier = notifier or LoggingNotificationDispatcher()

    def publish(self, events: list[DomainEvent]) -> list[DeliveryFailure]:
        failures: list[DeliveryFailure] = []
        for event in events:
            recipient = event.recipient()
            try:
                self.notifier.notify(recipient, event.event_type, event.model_dump(mode="json"))
            except Exception as e:
                logger.error(f"Delivery of {event.event_type} to {recipient} failed: {e}", exc_info=True)
                failures.append(
                    DeliveryFailure(event_type=event.event_type, recipient=recipient, error=str(e))
                )
        return failures
