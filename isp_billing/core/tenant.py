"""
Tenant isolation for every ledger query.

A TenantContext is threaded explicitly through each core operation. Queries
are scoped with ``ctx.scope(statement, Model.isp_id)``; only a context built
with ``TenantContext.super_operator()`` and no acting tenant skips the
predicate.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from sqlmodel import Session, select

from .errors import InvalidInput, NotFound, TenantMismatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    tenant_id: Optional[int]
    is_super_operator: bool = False

    def __post_init__(self):
        if not self.is_super_operator and self.tenant_id is None:
            raise InvalidInput(
                "Your account is not associated with an ISP. Please contact your administrator."
            )

    @classmethod
    def for_tenant(cls, tenant_id: int) -> "TenantContext":
        return cls(tenant_id=tenant_id, is_super_operator=False)

    @classmethod
    def super_operator(cls, acting_tenant_id: Optional[int] = None) -> "TenantContext":
        """Platform-wide operator. acting_tenant_id pins new entities to one tenant."""
        return cls(tenant_id=acting_tenant_id, is_super_operator=True)

    @property
    def is_unscoped(self) -> bool:
        return self.is_super_operator and self.tenant_id is None

    def scope(self, statement, tenant_column):
        """Add the tenant predicate to a select/update/delete statement."""
        if self.is_unscoped:
            return statement
        return statement.where(tenant_column == self.tenant_id)

    def require_access(self, tenant_id: Optional[int]) -> None:
        """Refuse references to a tenant other than the caller's (or acting) tenant."""
        if self.tenant_id is None:
            return
        if tenant_id != self.tenant_id:
            logger.warning(
                "Cross-tenant reference refused: caller tenant=%s, entity tenant=%s",
                self.tenant_id,
                tenant_id,
            )
            raise TenantMismatch("Access denied - entity does not belong to your ISP")

    def require_super_operator(self) -> None:
        if not self.is_super_operator:
            raise TenantMismatch("This operation requires a platform super-operator")


def fetch_scoped(
    session: Session,
    ctx: TenantContext,
    model,
    entity_id: Any,
    label: str,
    tenant_column=None,
    for_update: bool = False,
):
    """
    Load one row by primary key under the tenant predicate.
    Rows outside the scope are reported exactly like missing rows.
    """
    column = tenant_column if tenant_column is not None else model.isp_id
    statement = ctx.scope(select(model).where(model.id == entity_id), column)
    if for_update:
        statement = statement.with_for_update()
    record = session.exec(statement.execution_options(populate_existing=True)).first()
    if record is None:
        raise NotFound(f"{label} not found")
    return record


class TenantResolver(Protocol):
    """Resolve(caller) -> {tenant_id, is_super_operator}."""

    def resolve(self, caller: Any) -> TenantContext: ...
