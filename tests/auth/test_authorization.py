"""Tests for permission grants and the subscription access guard."""

import pytest

from randevu.platform.auth.authorization import (
    PLAN_MANAGE,
    SUBSCRIPTION_MANAGE_ALL,
    SUBSCRIPTION_MANAGE_OWN,
    SUBSCRIPTION_VIEW_OWN,
    InMemoryPermissionStore,
    SubscriptionAccessGuard,
)
from randevu.platform.auth.exceptions import PermissionDeniedError

pytestmark = pytest.mark.unit


@pytest.fixture
def store() -> InMemoryPermissionStore:
    store = InMemoryPermissionStore()
    store.grant("owner", SUBSCRIPTION_MANAGE_OWN, {"business_id": "biz_1"})
    store.grant("owner", SUBSCRIPTION_VIEW_OWN, {"business_id": "biz_1"})
    store.grant("admin", SUBSCRIPTION_MANAGE_ALL)
    store.grant("root", "*")
    return store


class TestInMemoryPermissionStore:
    async def test_scoped_grant_matches_scope(self, store):
        assert await store.has("owner", SUBSCRIPTION_MANAGE_OWN, {"business_id": "biz_1"})
        assert not await store.has("owner", SUBSCRIPTION_MANAGE_OWN, {"business_id": "biz_2"})

    async def test_scoped_grant_needs_scope(self, store):
        assert not await store.has("owner", SUBSCRIPTION_MANAGE_OWN)

    async def test_global_grant_matches_any_scope(self, store):
        assert await store.has("admin", SUBSCRIPTION_MANAGE_ALL, {"business_id": "biz_9"})

    async def test_wildcard(self, store):
        assert await store.has("root", PLAN_MANAGE)

    async def test_revoke(self, store):
        store.revoke("admin", SUBSCRIPTION_MANAGE_ALL)

        assert not await store.has("admin", SUBSCRIPTION_MANAGE_ALL)

    async def test_require_raises(self, store):
        with pytest.raises(PermissionDeniedError) as exc_info:
            await store.require("nobody", PLAN_MANAGE)

        assert exc_info.value.context == {"user_id": "nobody", "permission": PLAN_MANAGE}


class TestSubscriptionAccessGuard:
    async def test_owner_manages_own_business(self, store):
        await SubscriptionAccessGuard(store).require_manage("owner", "biz_1")

    async def test_owner_cannot_manage_other_business(self, store):
        with pytest.raises(PermissionDeniedError):
            await SubscriptionAccessGuard(store).require_manage("owner", "biz_2")

    async def test_admin_manages_any_business(self, store):
        await SubscriptionAccessGuard(store).require_manage("admin", "biz_2")

    async def test_view_requires_view_permission(self, store):
        guard = SubscriptionAccessGuard(store)

        await guard.require_view("owner", "biz_1")
        with pytest.raises(PermissionDeniedError):
            await guard.require_view("admin", "biz_1")

    async def test_plan_admin(self, store):
        guard = SubscriptionAccessGuard(store)

        await guard.require_plan_admin("root")
        with pytest.raises(PermissionDeniedError):
            await guard.require_plan_admin("admin")
