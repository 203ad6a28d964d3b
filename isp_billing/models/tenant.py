"""
Tenant (ISP) model. Every ledger row belongs to exactly one tenant through
its ``isp_id`` column.
"""
from datetime import date, datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import SubscriptionStatus
from ..utils.dates import utcnow


class Tenant(SQLModel, table=True):
    """
    ISP account on the platform.

    Fields:
    - business_code: BIZ-YYYY-NNNN, assigned on creation
    - subscription_status: pending, active, suspended, cancelled, expired
    - subscription_start_date / subscription_end_date: current SaaS window
    - expiry_warned_on: last day an expiry warning was emitted
    """

    __tablename__ = "isps"

    id: Optional[int] = Field(default=None, primary_key=True)
    business_code: Optional[str] = Field(default=None, unique=True, index=True)
    name: str = Field(nullable=False)
    email: Optional[str] = Field(default=None)
    contact_number: Optional[str] = Field(default=None)
    address: Optional[str] = Field(default=None)
    subscription_status: str = Field(default=SubscriptionStatus.PENDING.value, index=True)
    saas_package_id: Optional[int] = Field(default=None, foreign_key="saas_packages.id")
    subscription_start_date: Optional[datetime] = Field(default=None)
    subscription_end_date: Optional[datetime] = Field(default=None, index=True)
    expiry_warned_on: Optional[date] = Field(default=None)
    suspended_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
