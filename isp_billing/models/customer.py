"""
Customer model for ISP subscribers.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import CustomerStatus
from ..utils.dates import utcnow


class Customer(SQLModel, table=True):
    """
    Customer of one ISP.

    Fields:
    - package_id: current internet package (may be empty)
    - billing_cycle: months covered by one bill
    - status: active, inactive, suspended, disconnected
    - next_billing_date: start of the next period to bill
    - suspended_at / suspension_reason / reactivated_at: suspension trail
    - data_usage / data_limit / data_reset_date: usage counters in GB, no limit means unlimited
    """

    __tablename__ = "customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    package_id: Optional[int] = Field(default=None, foreign_key="packages.id", index=True)
    name: str = Field(nullable=False)
    username: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    phone_number: Optional[str] = Field(default=None)
    address: Optional[str] = Field(default=None)
    status: str = Field(default=CustomerStatus.ACTIVE.value, nullable=False, index=True)
    # Length of one billing period, in months
    billing_cycle: int = Field(default=1)
    connection_date: Optional[datetime] = Field(default=None)
    next_billing_date: Optional[datetime] = Field(default=None, index=True)
    suspended_at: Optional[datetime] = Field(default=None)
    suspension_reason: Optional[str] = Field(default=None)
    reactivated_at: Optional[datetime] = Field(default=None)
    data_usage: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    data_limit: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    data_reset_date: Optional[datetime] = Field(default=None)
    notes: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
