"""
ISP subscription lifecycle: expiry warnings, expiry suspension and
activation. Same pattern as customer suspension, one level up.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlmodel import Session, select

from ..core.audit import log_action
from ..core.constants import SubscriptionInvoiceKind, SubscriptionStatus
from ..core.errors import InvalidInput, NotFound
from ..core.events import (
    BatchSummary,
    DeliveryFailure,
    EventPublisher,
    Outcome,
    SubscriptionActivated,
    SubscriptionExpiring,
    SubscriptionSuspended,
)
from ..core.tenant import TenantContext, fetch_scoped
from ..db.transaction import run_atomic
from ..models import SaaSPackage, Tenant
from ..utils.dates import parse_datetime
from .base_service import LedgerBaseService
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)


class SubscriptionService(LedgerBaseService):
    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        super().__init__(session, publisher)
        self.ledger = LedgerService(session, self.publisher)

    def _request_invoice(self, ctx: TenantContext, tenant_id: int, kind: SubscriptionInvoiceKind, now: datetime) -> Outcome:
        """
        Ask the ledger for a subscription invoice. The lifecycle change has
        already committed, so a failure here is reported, not raised.
        """
        try:
            return self.ledger.issue_subscription_invoice(ctx, tenant_id, kind, now)
        except Exception as e:
            logger.error(f"{kind.value} invoice for ISP {tenant_id} failed: {e}", exc_info=True)
            failure = DeliveryFailure(
                event_type="subscription_invoice_issued", recipient=f"tenant:{tenant_id}", error=str(e)
            )
            return Outcome(result=None, delivery_failures=[failure])

    # --- Expiry ---

    def _warn(self, ctx: TenantContext, tenant_id: int, now: datetime, window_end: datetime, today: date):
        statement = ctx.scope(
            update(Tenant).where(
                Tenant.id == tenant_id,
                Tenant.subscription_status == SubscriptionStatus.ACTIVE.value,
                Tenant.subscription_end_date >= now,
                Tenant.subscription_end_date <= window_end,
                or_(Tenant.expiry_warned_on.is_(None), Tenant.expiry_warned_on != today),
            ),
            Tenant.id,
        ).values(expiry_warned_on=today)
        if self.session.execute(statement).rowcount == 0:
            return None
        tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id)
        return SubscriptionExpiring(
            isp_id=tenant.id,
            subscription_end_date=tenant.subscription_end_date,
            warned_on=today,
        )

    def _expire(self, ctx: TenantContext, tenant_id: int, now: datetime):
        statement = ctx.scope(
            update(Tenant).where(
                Tenant.id == tenant_id,
                Tenant.subscription_status == SubscriptionStatus.ACTIVE.value,
                Tenant.subscription_end_date < now,
            ),
            Tenant.id,
        ).values(subscription_status=SubscriptionStatus.SUSPENDED.value, suspended_at=now)
        if self.session.execute(statement).rowcount == 0:
            return None
        tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id)
        return SubscriptionSuspended(isp_id=tenant.id, subscription_end_date=tenant.subscription_end_date)

    def check_expiry(self, ctx: TenantContext, now: Any = None) -> BatchSummary:
        """
        Warn tenants whose subscription ends within the warning window (once
        per day) and suspend tenants whose subscription already ended,
        requesting their final invoice.
        """
        now = self._now(now)
        today = now.date()
        window_end = now + timedelta(days=self.settings.get_int("expiry_warning_days"))
        summary = BatchSummary()

        expiring = self.session.exec(
            ctx.scope(
                select(Tenant.id).where(
                    Tenant.subscription_status == SubscriptionStatus.ACTIVE.value,
                    Tenant.subscription_end_date >= now,
                    Tenant.subscription_end_date <= window_end,
                ),
                Tenant.id,
            ).order_by(Tenant.id)
        ).all()
        expired = self.session.exec(
            ctx.scope(
                select(Tenant.id).where(
                    Tenant.subscription_status == SubscriptionStatus.ACTIVE.value,
                    Tenant.subscription_end_date < now,
                ),
                Tenant.id,
            ).order_by(Tenant.id)
        ).all()
        logger.info(f"Subscription check: {len(expiring)} expiring soon, {len(expired)} expired")

        for tenant_id in expiring:
            try:
                event = run_atomic(
                    self.session,
                    lambda: self._warn(ctx, tenant_id, now, window_end, today),
                    label=f"expiry warning for ISP {tenant_id}",
                )
            except Exception as e:
                logger.error(f"Expiry warning failed for ISP {tenant_id}: {e}", exc_info=True)
                summary.record_failure("isp", tenant_id, e)
                continue
            if event is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.events.append(event)
            summary.delivery_failures.extend(self.publisher.publish([event]))

        for tenant_id in expired:
            try:
                event = run_atomic(
                    self.session,
                    lambda: self._expire(ctx, tenant_id, now),
                    label=f"expire subscription of ISP {tenant_id}",
                )
            except Exception as e:
                logger.error(f"Subscription expiry failed for ISP {tenant_id}: {e}", exc_info=True)
                summary.record_failure("isp", tenant_id, e)
                continue
            if event is None:
                summary.skipped += 1
                continue

            summary.processed += 1
            summary.events.append(event)
            summary.delivery_failures.extend(self.publisher.publish([event]))
            logger.info(f"ISP {tenant_id} suspended, subscription ended {event.subscription_end_date}")
            log_action("SUSPEND_SUBSCRIPTION", "isp", tenant_id, ctx)

            invoice = self._request_invoice(ctx, tenant_id, SubscriptionInvoiceKind.FINAL, now)
            summary.events.extend(invoice.events)
            summary.delivery_failures.extend(invoice.delivery_failures)

        logger.info(f"Subscription check finished: {summary.as_dict()}")
        return summary

    # --- Activation ---

    def activate_subscription(
        self,
        ctx: TenantContext,
        tenant_id: int,
        saas_package_id: int,
        start: Any,
        end: Any,
        now: Any = None,
        timeout: Optional[float] = None,
    ) -> Outcome[Tenant]:
        now = self._now(now)
        start_at = parse_datetime(start, "subscription_start_date")
        end_at = parse_datetime(end, "subscription_end_date")
        if end_at <= start_at:
            raise InvalidInput("subscription_end_date must be after subscription_start_date")

        def work():
            tenant = fetch_scoped(self.session, ctx, Tenant, tenant_id, "ISP", tenant_column=Tenant.id, for_update=True)
            ctx.require_access(tenant.id)
            package = self.session.get(SaaSPackage, saas_package_id)
            if package is None or not package.is_active:
                raise NotFound("SaaS package not found")

            tenant.saas_package_id = package.id
            tenant.subscription_start_date = start_at
            tenant.subscription_end_date = end_at
            tenant.subscription_status = SubscriptionStatus.ACTIVE.value
            tenant.expiry_warned_on = None
            tenant.suspended_at = None
            self.session.add(tenant)
            self.session.flush()
            return tenant

        tenant = run_atomic(self.session, work, timeout=timeout, label=f"activate subscription of ISP {tenant_id}")
        logger.info(f"ISP {tenant.id} subscription active {start_at:%Y-%m-%d} -> {end_at:%Y-%m-%d}")
        log_action(
            "ACTIVATE_SUBSCRIPTION",
            "isp",
            tenant.id,
            ctx,
            details={"saas_package_id": saas_package_id, "start": start_at, "end": end_at},
        )

        outcome = self._deliver(
            Outcome(
                result=tenant,
                events=[
                    SubscriptionActivated(
                        isp_id=tenant.id,
                        saas_package_id=saas_package_id,
                        subscription_start_date=start_at,
                        subscription_end_date=end_at,
                    )
                ],
            )
        )
        invoice = self._request_invoice(ctx, tenant.id, SubscriptionInvoiceKind.INITIAL, now)
        outcome.events.extend(invoice.events)
        outcome.delivery_failures.extend(invoice.delivery_failures)
        return outcome
