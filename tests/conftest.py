"""
Shared fixtures for the billing core tests.

Every test gets its own in-memory SQLite database with the default settings
seeded. Tests that need several connections (threads, the HTTP client) use
``file_engine`` instead.
"""
import os
import tempfile

# Keep the audit trail out of the working tree
os.environ.setdefault("AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="isp-billing-audit-"))

from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session  # noqa: E402

from isp_billing.core.constants import CustomerStatus, SubscriptionStatus  # noqa: E402
from isp_billing.core.events import EventPublisher  # noqa: E402
from isp_billing.core.tenant import TenantContext  # noqa: E402
from isp_billing.db.engine_sync import build_engine, create_sync_db_and_tables  # noqa: E402
from isp_billing.models import Customer, Package, SaaSPackage, Tenant  # noqa: E402
from isp_billing.services.ledger_service import LedgerService  # noqa: E402

NOW = datetime(2026, 3, 10, 12, 0, 0)


class RecordingNotifier:
    """Notification dispatcher that keeps what it was asked to send."""

    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)

    def notify(self, recipient, template, payload):
        if template in self.fail_on:
            raise RuntimeError(f"{template} channel unavailable")
        self.sent.append((recipient, template, payload))

    def templates(self):
        return [template for _, template, _ in self.sent]


class Factory:
    """Builds tenants, packages, customers and bills for a test."""

    def __init__(self, session: Session, publisher: EventPublisher):
        self.session = session
        self.publisher = publisher

    def _save(self, record):
        self.session.add(record)
        self.session.commit()
        return record

    def tenant(self, name="FiberNet", status=SubscriptionStatus.ACTIVE.value, **kwargs) -> Tenant:
        return self._save(Tenant(name=name, subscription_status=status, **kwargs))

    def saas_package(self, name="Starter", price="2500", **kwargs) -> SaaSPackage:
        return self._save(SaaSPackage(name=name, price=Decimal(price), **kwargs))

    def package(self, tenant: Tenant, name="10 Mbps", price="1000", **kwargs) -> Package:
        return self._save(Package(isp_id=tenant.id, name=name, price=Decimal(price), **kwargs))

    def customer(
        self,
        tenant: Tenant,
        name="Ali Raza",
        package: Package = None,
        status=CustomerStatus.ACTIVE.value,
        **kwargs,
    ) -> Customer:
        return self._save(
            Customer(
                isp_id=tenant.id,
                name=name,
                package_id=package.id if package else None,
                status=status,
                **kwargs,
            )
        )

    def bill(self, customer: Customer, amount="1000", due_date=None, period_start=None, now=NOW):
        ledger = LedgerService(self.session, self.publisher)
        outcome = ledger.create_bill(
            TenantContext.for_tenant(customer.isp_id),
            customer.id,
            amount=amount,
            due_date=due_date if due_date is not None else now + timedelta(days=7),
            period_start=period_start if period_start is not None else now - timedelta(days=30),
            now=now,
        )
        return outcome.result


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    create_sync_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing.sqlite'}")
    create_sync_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def publisher(notifier):
    return EventPublisher(notifier)


@pytest.fixture
def factory(session, publisher):
    return Factory(session, publisher)


@pytest.fixture
def tenant(factory):
    return factory.tenant()


@pytest.fixture
def other_tenant(factory):
    return factory.tenant(name="CityLink")


@pytest.fixture
def ctx(tenant):
    return TenantContext.for_tenant(tenant.id)


@pytest.fixture
def customer(factory, tenant):
    return factory.customer(tenant)
