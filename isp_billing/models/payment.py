"""
Payment model for bill payment tracking.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import PaymentStatus
from ..utils.dates import utcnow


class Payment(SQLModel, table=True):
    """
    Payment against one bill.

    Fields:
    - transaction_id: caller-supplied idempotency key, unique across the platform
    - receipt_number: RCP{isp}-YYYY-NNNNNN, unique
    - status: pending, completed, failed, refunded (only completed counts)
    """

    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    bill_id: int = Field(foreign_key="bills.id", nullable=False, index=True)
    customer_id: int = Field(foreign_key="customers.id", nullable=False, index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    payment_method: str = Field(nullable=False)
    status: str = Field(default=PaymentStatus.COMPLETED.value, nullable=False, index=True)
    transaction_id: Optional[str] = Field(default=None, unique=True, index=True)
    receipt_number: Optional[str] = Field(default=None, unique=True)
    payment_date: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = Field(default=None)
    refunded_at: Optional[datetime] = Field(default=None)
    refund_reason: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
