# isp_billing/api/billing/models.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class DeliveryFailureResponse(BaseModel):
    event_type: str
    recipient: str
    error: str


class OutcomeResponse(BaseModel, Generic[T]):
    result: T
    events: list[dict[str, Any]] = []
    delivery_failures: list[DeliveryFailureResponse] = []
    replayed: bool = False


class BatchSummaryResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
    events: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    delivery_failures: list[DeliveryFailureResponse] = []


# --- Bills ---
class BillCreate(BaseModel):
    customer_id: int
    package_id: int | None = None
    amount: Decimal | None = None
    due_date: str | None = None
    billing_period_start: str | None = None
    billing_period_end: str | None = None
    notes: str | None = None


class Bill(BaseModel):
    id: int
    bill_number: str
    isp_id: int
    customer_id: int
    package_id: int | None = None
    amount: Decimal
    late_fee: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal | None = None
    status: str
    billing_period_start: datetime
    billing_period_end: datetime
    due_date: datetime
    notes: str | None = None
    completed_at: datetime | None = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# --- Payments ---
class PaymentCreate(BaseModel):
    bill_id: int
    amount: Decimal
    payment_method: str
    transaction_id: str | None = None
    notes: str | None = None
    payment_date: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class PaymentRefund(BaseModel):
    reason: str | None = None


class Payment(BaseModel):
    id: int
    isp_id: int
    bill_id: int
    customer_id: int
    amount: Decimal
    payment_method: str
    status: str
    transaction_id: str | None = None
    receipt_number: str | None = None
    payment_date: datetime
    notes: str | None = None
    refunded_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


# --- Recoveries ---
class RecoveryCreate(BaseModel):
    customer_id: int
    bill_id: int
    officer_name: str
    remarks: str | None = None


class RecoveryVisit(BaseModel):
    status: str
    amount_collected: Decimal | None = None
    visit_date: str | None = None
    next_visit_date: str | None = None
    remarks: str | None = None
    transaction_id: str | None = None


class Recovery(BaseModel):
    id: int
    isp_id: int
    customer_id: int
    bill_id: int
    officer_name: str
    status: str
    amount_collected: Decimal
    visit_date: datetime | None = None
    next_visit_date: datetime | None = None
    remarks: str | None = None
    last_payment_id: int | None = None
    model_config = ConfigDict(from_attributes=True)


# --- Automation ---
class SweepRequest(BaseModel):
    now: datetime | None = None
    grace_period_days: int | None = Field(default=None, ge=0)


class Customer(BaseModel):
    id: int
    isp_id: int
    name: str
    status: str
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    reactivated_at: datetime | None = None
    data_usage: Decimal = Decimal("0.00")
    data_limit: Decimal | None = None
    model_config = ConfigDict(from_attributes=True)
