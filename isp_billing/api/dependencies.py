# isp_billing/api/dependencies.py
"""
Request-scoped dependencies: session, caller identity and event publisher.

Authentication happens upstream (gateway/proxy); this layer only turns the
already-authenticated headers into a TenantContext.
"""
import logging
from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel import Session

from ..core.constants import SubscriptionStatus
from ..core.errors import InvalidInput, TenantMismatch
from ..core.events import EventPublisher, Outcome
from ..core.tenant import TenantContext
from ..db.engine_sync import get_sync_session
from ..models.tenant import Tenant

logger = logging.getLogger(__name__)

READ_ONLY_METHODS = {"GET", "HEAD", "OPTIONS"}
TRUE_VALUES = {"1", "true", "yes", "on"}


class HeaderTenantResolver:
    """
    Resolve X-Tenant-ID / X-Super-Operator headers into a TenantContext.
    Non-super callers must name an existing ISP, and may only write while
    its subscription is active.
    """

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, caller: dict[str, Any]) -> TenantContext:
        tenant_id = self._parse_tenant_id(caller.get("tenant_id"))
        if caller.get("super_operator"):
            return TenantContext.super_operator(acting_tenant_id=tenant_id)

        if tenant_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Tenant-ID header")

        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantMismatch("Unknown ISP")
        if caller.get("method") not in READ_ONLY_METHODS and tenant.subscription_status != SubscriptionStatus.ACTIVE.value:
            logger.warning(f"Write refused for ISP {tenant_id}: subscription {tenant.subscription_status}")
            raise TenantMismatch("ISP subscription is not active")
        return TenantContext.for_tenant(tenant_id)

    @staticmethod
    def _parse_tenant_id(raw: Optional[str]) -> Optional[int]:
        if raw is None or str(raw).strip() == "":
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise InvalidInput(f"Invalid X-Tenant-ID header: {raw!r}")


def get_tenant_context(
    request: Request,
    session: Session = Depends(get_sync_session),
    x_tenant_id: Optional[str] = Header(default=None),
    x_super_operator: Optional[str] = Header(default=None),
) -> TenantContext:
    caller = {
        "tenant_id": x_tenant_id,
        "super_operator": (x_super_operator or "").strip().lower() in TRUE_VALUES,
        "method": request.method,
    }
    return HeaderTenantResolver(session).resolve(caller)


def get_publisher() -> EventPublisher:
    return EventPublisher()


def outcome_payload(outcome: Outcome, result: Any = None) -> dict[str, Any]:
    """Shape an Outcome for JSON: result, events and delivery failures."""
    return {
        "result": outcome.result if result is None else result,
        "events": [event.model_dump(mode="json") for event in outcome.events],
        "delivery_failures": [failure.model_dump() for failure in outcome.delivery_failures],
        "replayed": outcome.replayed,
    }
