"""Authorization primitives consumed by the billing services."""

from randevu.platform.auth.authorization import (
    PLAN_MANAGE,
    SUBSCRIPTION_MANAGE_ALL,
    SUBSCRIPTION_MANAGE_OWN,
    SUBSCRIPTION_VIEW_ALL,
    SUBSCRIPTION_VIEW_OWN,
    AuthorizationPort,
    InMemoryPermissionStore,
    SubscriptionAccessGuard,
)
from randevu.platform.auth.exceptions import PermissionDeniedError

__all__ = [
    "AuthorizationPort",
    "InMemoryPermissionStore",
    "SubscriptionAccessGuard",
    "PermissionDeniedError",
    "PLAN_MANAGE",
    "SUBSCRIPTION_MANAGE_ALL",
    "SUBSCRIPTION_MANAGE_OWN",
    "SUBSCRIPTION_VIEW_ALL",
    "SUBSCRIPTION_VIEW_OWN",
]
