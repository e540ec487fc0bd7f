"""
Shared fixtures for billing tests.

Each test gets its own SQLite file so the service session and the renewal
processor's sessions see the same data through separate connections.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from randevu.platform.auth.authorization import (
    PLAN_MANAGE,
    SUBSCRIPTION_MANAGE_ALL,
    SUBSCRIPTION_MANAGE_OWN,
    SUBSCRIPTION_VIEW_ALL,
    SUBSCRIPTION_VIEW_OWN,
    InMemoryPermissionStore,
)
from randevu.platform.billing.cache import BillingCache
from randevu.platform.billing.metrics import BillingMetrics
from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.renewal import RenewalProcessor
from randevu.platform.billing.subscriptions.seed import DEFAULT_PLANS
from randevu.platform.billing.subscriptions.service import SubscriptionService
from randevu.platform.db import create_all_tables_async
from tests.billing.fakes import (
    ADMIN,
    BUSINESS,
    OWNER,
    FakePaymentCoordinator,
    FakeUsageReader,
    RecordingTracer,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.sqlite'}")
    await create_all_tables_async(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def billing_cache() -> BillingCache:
    return BillingCache(maxsize=64, ttl=60)


@pytest.fixture
def metrics() -> BillingMetrics:
    return BillingMetrics(tracer=RecordingTracer())


@pytest.fixture
def payments() -> FakePaymentCoordinator:
    return FakePaymentCoordinator()


@pytest.fixture
def usage() -> FakeUsageReader:
    return FakeUsageReader()


@pytest.fixture
def permissions() -> InMemoryPermissionStore:
    store = InMemoryPermissionStore()
    store.grant(OWNER, SUBSCRIPTION_MANAGE_OWN, {"business_id": BUSINESS})
    store.grant(OWNER, SUBSCRIPTION_VIEW_OWN, {"business_id": BUSINESS})
    store.grant(ADMIN, SUBSCRIPTION_MANAGE_ALL)
    store.grant(ADMIN, SUBSCRIPTION_VIEW_ALL)
    store.grant(ADMIN, PLAN_MANAGE)
    return store


@pytest.fixture
def catalog(db_session, billing_cache, clock) -> PlanCatalog:
    return PlanCatalog(db_session, cache=billing_cache, clock=clock)


@pytest.fixture
async def seeded_plans(db_session, catalog):
    plans = await catalog.seed_plans(DEFAULT_PLANS)
    await db_session.commit()
    return {plan.plan_id: plan for plan in plans}


@pytest.fixture
def service(
    db_session, session_factory, payments, permissions, usage, clock, billing_cache, metrics
) -> SubscriptionService:
    return SubscriptionService(
        db_session,
        payments=payments,
        authorization=permissions,
        usage_reader=usage,
        clock=clock,
        cache=billing_cache,
        metrics=metrics,
        session_factory=session_factory,
    )


@pytest.fixture
def processor(session_factory, payments, clock, billing_cache, metrics) -> RenewalProcessor:
    return RenewalProcessor(
        session_factory, payments, clock=clock, cache=billing_cache, metrics=metrics
    )
