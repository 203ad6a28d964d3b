from datetime import timedelta
from decimal import Decimal

import pytest

from isp_billing.core.constants import BillStatus, CustomerStatus
from isp_billing.core.errors import InvalidInput, NotFound
from isp_billing.core.tenant import TenantContext
from isp_billing.services.overdue_service import OverdueService
from isp_billing.services.payment_service import PaymentService
from isp_billing.services.suspension_service import SuspensionService


@pytest.fixture
def suspension(session, publisher):
    return SuspensionService(session, publisher)


def test_customer_past_grace_period_is_suspended(factory, suspension, ctx, customer, now):
    bill = factory.bill(customer, due_date=now - timedelta(days=10))

    outcome = suspension.evaluate_suspension(ctx, customer.id, now=now)

    assert customer.status == CustomerStatus.SUSPENDED.value
    assert customer.suspended_at == now
    assert bill.bill_number in customer.suspension_reason
    assert outcome.events[0].event_type == "customer_suspended"
    assert outcome.events[0].bill_id == bill.id
    # Suspension never touches the bill
    assert bill.status == BillStatus.PENDING.value
    assert bill.total_amount == Decimal("1000.00")


def test_customer_within_grace_period_stays_active(factory, suspension, ctx, customer, now):
    factory.bill(customer, due_date=now - timedelta(days=3))

    outcome = suspension.evaluate_suspension(ctx, customer.id, now=now)

    assert outcome.events == []
    assert customer.status == CustomerStatus.ACTIVE.value


def test_explicit_grace_period_overrides_setting(factory, suspension, ctx, customer, now):
    factory.bill(customer, due_date=now - timedelta(days=3))

    suspension.evaluate_suspension(ctx, customer.id, grace_period_days=2, now=now)

    assert customer.status == CustomerStatus.SUSPENDED.value


def test_negative_grace_period_is_rejected(suspension, ctx, customer, now):
    with pytest.raises(InvalidInput):
        suspension.evaluate_suspension(ctx, customer.id, grace_period_days=-1, now=now)


def test_already_suspended_or_disconnected_customers_are_left_alone(factory, suspension, ctx, tenant, now):
    suspended = factory.customer(tenant, name="Suspended", status=CustomerStatus.SUSPENDED.value)
    disconnected = factory.customer(tenant, name="Gone", status=CustomerStatus.DISCONNECTED.value)
    for customer in (suspended, disconnected):
        factory.bill(customer, due_date=now - timedelta(days=30))

    assert suspension.evaluate_suspension(ctx, suspended.id, now=now).events == []
    assert suspension.evaluate_suspension(ctx, disconnected.id, now=now).events == []
    assert disconnected.status == CustomerStatus.DISCONNECTED.value


def test_inactive_customer_is_never_suspended_or_reactivated(factory, session, suspension, ctx, tenant, now):
    parked = factory.customer(tenant, name="Parked", status=CustomerStatus.INACTIVE.value)
    bill = factory.bill(parked, due_date=now - timedelta(days=30))

    assert suspension.evaluate_suspension(ctx, parked.id, now=now).events == []
    assert suspension.sweep_suspensions(ctx, now).as_dict() == {"processed": 0, "skipped": 0, "failed": 0}
    assert parked.status == CustomerStatus.INACTIVE.value

    paid = PaymentService(session).apply_payment(ctx, bill.id, 1000, "cash", now=now)

    assert bill.status == BillStatus.PAID.value
    assert [event.event_type for event in paid.events] == ["payment_applied"]
    session.refresh(parked)
    assert parked.status == CustomerStatus.INACTIVE.value
    assert parked.reactivated_at is None


def test_other_tenants_customer_is_not_found(factory, suspension, ctx, other_tenant, now):
    foreign = factory.customer(other_tenant, name="Foreign")

    with pytest.raises(NotFound):
        suspension.evaluate_suspension(ctx, foreign.id, now=now)


def test_one_cent_short_keeps_the_customer_suspended(factory, session, publisher, suspension, ctx, tenant, now):
    customer = factory.customer(tenant, name="Late Payer")
    bill = factory.bill(customer, due_date=now - timedelta(days=10))
    OverdueService(session, publisher).sweep_overdue(ctx, now)
    suspension.evaluate_suspension(ctx, customer.id, now=now)
    payments = PaymentService(session, publisher)

    short = payments.apply_payment(ctx, bill.id, "1049.99", "cash", now=now)

    assert bill.status == BillStatus.PARTIAL.value
    assert customer.status == CustomerStatus.SUSPENDED.value
    assert [event.event_type for event in short.events] == ["payment_applied"]

    settled = payments.apply_payment(ctx, bill.id, "0.01", "cash", now=now)

    assert bill.status == BillStatus.PAID.value
    assert customer.status == CustomerStatus.ACTIVE.value
    assert [event.event_type for event in settled.events] == ["payment_applied", "customer_reactivated"]


def test_evaluate_reactivation_is_idempotent(factory, session, suspension, ctx, tenant, now):
    customer = factory.customer(tenant, name="Paid Up", status=CustomerStatus.SUSPENDED.value)
    bill = factory.bill(customer, amount="300")
    PaymentService(session).apply_payment(ctx, bill.id, 300, "cash", now=now)
    # Reactivation already happened with the payment; force the state back
    customer.status = CustomerStatus.SUSPENDED.value
    session.add(customer)
    session.commit()

    first = suspension.evaluate_reactivation(ctx, customer.id, now=now)
    second = suspension.evaluate_reactivation(ctx, customer.id, now=now)

    assert [event.event_type for event in first.events] == ["customer_reactivated"]
    assert second.events == []
    assert customer.status == CustomerStatus.ACTIVE.value


def test_unsettled_customer_is_not_reactivated(factory, suspension, ctx, tenant, now):
    customer = factory.customer(tenant, name="Owes", status=CustomerStatus.SUSPENDED.value)
    factory.bill(customer)

    outcome = suspension.evaluate_reactivation(ctx, customer.id, now=now)

    assert outcome.events == []
    assert customer.status == CustomerStatus.SUSPENDED.value


def test_sweep_suspensions_summary(factory, suspension, tenant, other_tenant, now):
    late = factory.customer(tenant, name="Late")
    factory.bill(late, due_date=now - timedelta(days=8))
    factory.bill(late, due_date=now - timedelta(days=20))
    on_time = factory.customer(tenant, name="On Time")
    factory.bill(on_time, due_date=now + timedelta(days=1))
    elsewhere = factory.customer(other_tenant, name="Elsewhere")
    factory.bill(elsewhere, due_date=now - timedelta(days=9))

    summary = suspension.sweep_suspensions(TenantContext.super_operator(), now)
    rerun = suspension.sweep_suspensions(TenantContext.super_operator(), now)

    assert summary.as_dict() == {"processed": 2, "skipped": 0, "failed": 0}
    assert {event.customer_id for event in summary.events} == {late.id, elsewhere.id}
    assert rerun.processed == 0
    assert on_time.status == CustomerStatus.ACTIVE.value
