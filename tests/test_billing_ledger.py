from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from isp_billing.core.constants import BillStatus, CustomerStatus, PaymentStatus
from isp_billing.core.errors import Conflict, InvalidInput, InvariantViolation, NotFound, TenantMismatch
from isp_billing.core.tenant import TenantContext
from isp_billing.models import Bill
from isp_billing.services.ledger_service import LedgerService, derive_bill_state
from isp_billing.services.payment_service import PaymentService
from isp_billing.services.settings_service import SettingsService


@pytest.fixture
def ledger(session, publisher):
    return LedgerService(session, publisher)


# --- derive_bill_state ---

def test_derive_full_payment_sets_paid_and_completed_at(now):
    status, completed_at = derive_bill_state("pending", Decimal("1000"), Decimal("1000"), Decimal("0"), None, now)
    assert status == BillStatus.PAID.value
    assert completed_at == now


def test_derive_keeps_first_completed_at(now):
    first = now - timedelta(days=3)
    _, completed_at = derive_bill_state("paid", Decimal("1100"), Decimal("1000"), Decimal("0"), first, now)
    assert completed_at == first


def test_derive_partial_and_untouched_states(now):
    assert derive_bill_state("pending", Decimal("1"), Decimal("1000"), Decimal("0"), None, now)[0] == "partial"
    assert derive_bill_state("overdue", Decimal("0"), Decimal("1050"), Decimal("50"), None, now)[0] == "overdue"
    assert derive_bill_state("pending", Decimal("0"), Decimal("1000"), Decimal("0"), None, now)[0] == "pending"
    assert derive_bill_state("cancelled", Decimal("1000"), Decimal("1000"), Decimal("0"), None, now)[0] == "cancelled"


def test_derive_refuses_to_leave_paid_without_explicit_regression(now):
    with pytest.raises(InvariantViolation):
        derive_bill_state("paid", Decimal("500"), Decimal("1000"), Decimal("0"), now, now)


def test_derive_regression_falls_back_by_late_fee(now):
    assert derive_bill_state("paid", Decimal("0"), Decimal("1000"), Decimal("0"), now, now, True)[0] == "pending"
    assert derive_bill_state("paid", Decimal("0"), Decimal("1050"), Decimal("50"), now, now, True)[0] == "overdue"
    assert derive_bill_state("paid", Decimal("10"), Decimal("1050"), Decimal("50"), now, now, True)[0] == "partial"


# --- create_bill ---

def test_create_bill_defaults_period_and_due_date(ledger, ctx, customer, notifier, now):
    outcome = ledger.create_bill(ctx, customer.id, amount="1000", period_start="2026-03-01", now=now)
    bill = outcome.result

    assert bill.status == BillStatus.PENDING.value
    assert bill.amount == Decimal("1000.00")
    assert bill.total_amount == Decimal("1000.00")
    assert bill.paid_amount == Decimal("0.00")
    assert bill.late_fee == Decimal("0.00")
    assert bill.billing_period_start == datetime(2026, 3, 1)
    assert bill.billing_period_end == datetime(2026, 4, 1)
    assert bill.due_date == datetime(2026, 4, 8)
    assert customer.next_billing_date == datetime(2026, 4, 2)

    assert [event.event_type for event in outcome.events] == ["bill_created"]
    assert notifier.sent[0][0] == f"customer:{customer.id}"
    assert outcome.delivery_failures == []


def test_create_bill_uses_package_price_and_switches_package(factory, ledger, ctx, tenant, customer, now):
    package = factory.package(tenant, price="1500")

    bill = ledger.create_bill(ctx, customer.id, package_id=package.id, now=now).result

    assert bill.amount == Decimal("1500.00")
    assert bill.package_id == package.id
    assert customer.package_id == package.id


def test_create_bill_honours_billing_cycle(factory, ledger, ctx, tenant, now):
    quarterly = factory.customer(tenant, name="Quarterly", billing_cycle=3)

    bill = ledger.create_bill(ctx, quarterly.id, amount=3000, period_start=datetime(2026, 1, 31), now=now).result

    assert bill.billing_period_end == datetime(2026, 4, 30)


def test_create_bill_without_package_or_amount(ledger, ctx, customer, now):
    with pytest.raises(NotFound):
        ledger.create_bill(ctx, customer.id, now=now)


@pytest.mark.parametrize("amount", [0, "-5", "abc"])
def test_create_bill_rejects_bad_amounts(ledger, ctx, customer, amount, now):
    with pytest.raises(InvalidInput):
        ledger.create_bill(ctx, customer.id, amount=amount, now=now)


def test_create_bill_rejects_unparsable_dates(ledger, ctx, customer, now):
    with pytest.raises(InvalidInput):
        ledger.create_bill(ctx, customer.id, amount=100, due_date="next tuesday", now=now)


def test_create_bill_for_another_tenants_customer_is_not_found(factory, ledger, other_tenant, ctx, now):
    foreign = factory.customer(other_tenant, name="Foreign")

    with pytest.raises(NotFound):
        ledger.create_bill(ctx, foreign.id, amount=100, now=now)


def test_create_bill_with_foreign_package(factory, session, publisher, tenant, other_tenant, customer, now):
    foreign_package = factory.package(other_tenant)

    with pytest.raises(NotFound):
        LedgerService(session, publisher).create_bill(
            TenantContext.for_tenant(tenant.id), customer.id, package_id=foreign_package.id, now=now
        )
    with pytest.raises(TenantMismatch):
        LedgerService(session, publisher).create_bill(
            TenantContext.super_operator(), customer.id, package_id=foreign_package.id, now=now
        )


def test_acting_super_operator_cannot_reach_other_tenants(session, publisher, tenant, other_tenant, customer, now):
    acting = TenantContext.super_operator(acting_tenant_id=other_tenant.id)

    with pytest.raises(NotFound):
        LedgerService(session, publisher).create_bill(acting, customer.id, amount=100, now=now)


# --- recompute / cancel / read ---

def test_recompute_is_idempotent(factory, session, publisher, ledger, ctx, customer, now):
    bill = factory.bill(customer)
    PaymentService(session, publisher).apply_payment(ctx, bill.id, 600, "cash", now=now)

    first = ledger.recompute(ctx, bill.id, now=now).result
    snapshot = (first.paid_amount, first.status, first.completed_at)
    second = ledger.recompute(ctx, bill.id, now=now).result

    assert snapshot == (Decimal("600.00"), BillStatus.PARTIAL.value, None)
    assert (second.paid_amount, second.status, second.completed_at) == snapshot


def test_recompute_never_regresses_a_paid_bill(factory, session, publisher, ledger, ctx, customer, now):
    bill = factory.bill(customer)
    payment = PaymentService(session, publisher).apply_payment(ctx, bill.id, 1000, "cash", now=now).result
    # Out-of-band change to the payment set, without the refund operation
    payment.status = PaymentStatus.FAILED.value
    session.add(payment)
    session.commit()

    with pytest.raises(InvariantViolation):
        ledger.recompute(ctx, bill.id, now=now)

    session.expire_all()
    assert session.get(Bill, bill.id).status == BillStatus.PAID.value


def test_cancel_bill(factory, ledger, ctx, customer):
    bill = factory.bill(customer)

    outcome = ledger.cancel_bill(ctx, bill.id)
    again = ledger.cancel_bill(ctx, bill.id)

    assert outcome.result.status == BillStatus.CANCELLED.value
    assert again.replayed is True


def test_cancel_bill_with_payments_is_refused(factory, session, publisher, ledger, ctx, customer, now):
    bill = factory.bill(customer)
    PaymentService(session, publisher).apply_payment(ctx, bill.id, 100, "cash", now=now)

    with pytest.raises(Conflict):
        ledger.cancel_bill(ctx, bill.id)


def test_get_bill_reports_remaining_never_below_zero(factory, session, publisher, ledger, ctx, customer, now):
    bill = factory.bill(customer)
    PaymentService(session, publisher).apply_payment(ctx, bill.id, 1200, "cash", now=now)

    data = ledger.get_bill(ctx, bill.id)

    assert data["paid_amount"] == Decimal("1200.00")
    assert data["remaining_amount"] == Decimal("0.00")


def test_get_bill_hides_other_tenants(factory, ledger, ctx, other_tenant):
    foreign_bill = factory.bill(factory.customer(other_tenant, name="Foreign"))

    with pytest.raises(NotFound):
        ledger.get_bill(ctx, foreign_bill.id)


# --- periodic runs ---

def test_generate_due_bills(factory, ledger, tenant, now):
    package = factory.package(tenant, price="800")
    due = factory.customer(tenant, name="Due", package=package, next_billing_date=now - timedelta(days=1))
    factory.customer(tenant, name="Later", package=package, next_billing_date=now + timedelta(days=5))
    factory.customer(
        tenant,
        name="Parked",
        package=package,
        status=CustomerStatus.SUSPENDED.value,
        next_billing_date=now - timedelta(days=1),
    )

    summary = ledger.generate_due_bills(TenantContext.super_operator(), now)
    rerun = ledger.generate_due_bills(TenantContext.super_operator(), now)

    assert summary.as_dict() == {"processed": 1, "skipped": 0, "failed": 0}
    assert summary.events[0].customer_id == due.id
    assert summary.events[0].amount == Decimal("800.00")
    assert rerun.as_dict() == {"processed": 0, "skipped": 0, "failed": 0}


def test_generate_due_bills_skips_already_billed_period(factory, session, ledger, tenant, now):
    package = factory.package(tenant)
    start = now - timedelta(days=1)
    customer = factory.customer(tenant, package=package, next_billing_date=start)
    factory.bill(customer, period_start=start)
    # Billing date moved back by hand: the period is already billed
    customer.next_billing_date = start
    session.add(customer)
    session.commit()

    summary = ledger.generate_due_bills(TenantContext.for_tenant(tenant.id), now)

    assert summary.as_dict() == {"processed": 0, "skipped": 1, "failed": 0}


def test_due_reminders_once_per_bill(factory, ledger, ctx, customer, now):
    days = 7
    factory.bill(customer, due_date=now + timedelta(days=days))
    factory.bill(customer, due_date=now + timedelta(days=2))

    first = ledger.due_reminders(ctx, now)
    second = ledger.due_reminders(ctx, now)

    assert first.processed == 1
    assert first.events[0].event_type == "bill_reminder_due"
    assert second.processed == 0


def test_settings_fall_back_on_invalid_values(session):
    settings = SettingsService(session)
    settings.update_settings({"bill_due_days": "soon"})

    assert settings.get_int("bill_due_days") == 7
    assert settings.get_decimal("late_fee_percentage") == Decimal("5")


def test_customer_data_usage_counters(factory, session, tenant, now):
    customer = factory.customer(tenant, name="Streamer")

    assert customer.data_usage == Decimal("0.00")
    assert customer.data_limit is None
    assert customer.data_reset_date is None

    customer.data_usage = Decimal("42.50")
    customer.data_limit = Decimal("100.00")
    customer.data_reset_date = now
    session.add(customer)
    session.commit()
    session.refresh(customer)

    assert customer.data_usage == Decimal("42.50")
    assert customer.data_limit == Decimal("100.00")
    assert customer.data_reset_date == now
