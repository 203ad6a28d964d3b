# isp_billing/api/subscriptions/main.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from ...core.events import EventPublisher
from ...core.tenant import TenantContext
from ...db.engine_sync import get_sync_session
from ...services.subscription_service import SubscriptionService
from ...services.tenant_service import TenantService
from ..billing.main import summary_payload
from ..billing.models import BatchSummaryResponse, OutcomeResponse
from ..dependencies import get_publisher, get_tenant_context, outcome_payload
from .models import ExpiryCheck, SubscriptionActivate, Tenant, TenantCreate

router = APIRouter()


def get_subscription_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> SubscriptionService:
    return SubscriptionService(session, publisher)


def get_tenant_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> TenantService:
    return TenantService(session, publisher)


@router.post("/subscriptions/check-expiry", response_model=BatchSummaryResponse)
def check_expiry(
    payload: Optional[ExpiryCheck] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return summary_payload(service.check_expiry(ctx, payload.now if payload else None))


@router.post("/subscriptions/{tenant_id}/activate", response_model=OutcomeResponse[Tenant])
def activate_subscription(
    tenant_id: int,
    activation: SubscriptionActivate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SubscriptionService = Depends(get_subscription_service),
):
    outcome = service.activate_subscription(
        ctx, tenant_id, activation.saas_package_id, activation.start_date, activation.end_date
    )
    return outcome_payload(outcome, outcome.result.model_dump())


@router.post("/tenants", response_model=OutcomeResponse[Tenant], status_code=status.HTTP_201_CREATED)
def create_tenant(
    tenant: TenantCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: TenantService = Depends(get_tenant_service),
):
    outcome = service.create_tenant(
        ctx, tenant.name, email=tenant.email, contact_number=tenant.contact_number, address=tenant.address
    )
    return outcome_payload(outcome, outcome.result.model_dump())


@router.delete("/tenants/{tenant_id}", response_model=OutcomeResponse[dict[str, int]])
def delete_tenant(
    tenant_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: TenantService = Depends(get_tenant_service),
):
    return outcome_payload(service.delete_tenant(ctx, tenant_id))
