# isp_billing/api/subscriptions/models.py
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict


class TenantCreate(BaseModel):
    name: str
    email: str | None = None
    contact_number: str | None = None
    address: str | None = None


class Tenant(BaseModel):
    id: int
    business_code: str | None = None
    name: str
    email: str | None = None
    subscription_status: str
    saas_package_id: int | None = None
    subscription_start_date: datetime | None = None
    subscription_end_date: datetime | None = None
    expiry_warned_on: date | None = None
    model_config = ConfigDict(from_attributes=True)


class SubscriptionActivate(BaseModel):
    saas_package_id: int
    start_date: str
    end_date: str


class ExpiryCheck(BaseModel):
    now: datetime | None = None
