"""
Tenant (ISP) administration for platform super-operators.
"""
import logging
from typing import Any, Optional

from sqlalchemy import delete
from sqlmodel import Session

from ..core.audit import log_action
from ..core.constants import DocumentKind, SubscriptionStatus
from ..core.errors import InvalidInput
from ..core.events import EventPublisher, Outcome
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import run_atomic
from ..models import Bill, Customer, DocumentCounter, Package, Payment, RecoveryAssignment, SubscriptionInvoice, Tenant
from .base_service import LedgerBaseService
from .numbering_service import DocumentNumberService

logger = logging.getLogger(__name__)

# Dependency order for tenant deletion: children before parents
DELETE_ORDER = (
    ("payments", Payment, Payment.isp_id),
    ("recoveries", RecoveryAssignment, RecoveryAssignment.isp_id),
    ("bills", Bill, Bill.isp_id),
    ("subscription_invoices", SubscriptionInvoice, SubscriptionInvoice.isp_id),
    ("document_counters", DocumentCounter, DocumentCounter.scope_id),
    ("customers", Customer, Customer.isp_id),
    ("packages", Package, Package.isp_id),
)


class TenantService(LedgerBaseService):
    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)
        self.numbers = DocumentNumberService(session)

    def create_tenant(
        self,
        ctx: TenantContext,
        name: str,
        email: Optional[str] = None,
        contact_number: Optional[str] = None,
        address: Optional[str] = None,
        now: Any = None,
    ) -> Outcome[Tenant]:
        """Register a new ISP with a BIZ-YYYY-NNNN business code, subscription pending."""
        ctx.require_super_operator()
        if not name or not name.strip():
            raise InvalidInput("ISP name is required")
        now = self._now(now)

        def work():
            return self.numbers.issue(
                DocumentKind.BUSINESS,
                None,
                lambda code: Tenant(
                    business_code=code,
                    name=name.strip(),
                    email=email,
                    contact_number=contact_number,
                    address=address,
                    subscription_status=SubscriptionStatus.PENDING.value,
                ),
                Tenant.business_code,
                year=now.year,
            )

        tenant = run_atomic(self.session, work, label="create ISP")
        logger.info(f"ISP {tenant.id} created with business code {tenant.business_code}")
        log_action("CREATE_TENANT", "isp", tenant.id, ctx, details={"business_code": tenant.business_code})
        return Outcome(result=tenant)

    def delete_tenant(self, ctx: TenantContext, tenant_id: int) -> Outcome[dict[str, int]]:
        """
        Delete an ISP and everything it owns, children first, in one
        transaction. Returns the number of rows removed per table.
        """
        ctx.require_super_operator()

        def work():
            tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id)
            counts: dict[str, int] = {}
            for table, model, column in DELETE_ORDER:
                result = self.session.execute(delete(model).where(column == tenant.id))
                counts[table] = result.rowcount
            self.session.delete(tenant)
            self.session.flush()
            counts["isps"] = 1
            return counts

        counts = run_atomic(self.session, work, label=f"delete ISP {tenant_id}")
        logger.warning(f"ISP {tenant_id} deleted: {counts}")
        log_action("DELETE_TENANT", "isp", tenant_id, ctx, details=counts)
        return Outcome(result=counts)
