"""
Authorization port and the subscription access guard.

The engine consumes a single ``AuthorizationPort``: ``has`` answers a
question, ``require`` raises ``PermissionDeniedError``. Permissions are
``resource:action`` strings, optionally narrowed by a scope such as
``{"business_id": "..."}``.
"""

from collections import defaultdict
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

import structlog

from randevu.platform.auth.exceptions import PermissionDeniedError

logger = structlog.get_logger(__name__)

Scope = Mapping[str, str]

# Subscription permissions
SUBSCRIPTION_MANAGE_ALL = "subscription:manage_all"
SUBSCRIPTION_MANAGE_OWN = "subscription:manage_own"
SUBSCRIPTION_VIEW_ALL = "subscription:view_all"
SUBSCRIPTION_VIEW_OWN = "subscription:view_own"

# Plan catalog administration
PLAN_MANAGE = "subscription_plan:manage"


@runtime_checkable
class AuthorizationPort(Protocol):
    async def has(self, user_id: str, permission: str, scope: Scope | None = None) -> bool: ...

    async def require(self, user_id: str, permission: str, scope: Scope | None = None) -> None: ...


def _scope_key(scope: Scope | None) -> frozenset[tuple[str, str]]:
    return frozenset((scope or {}).items())


class InMemoryPermissionStore:
    """Grant table held in memory.

    A grant without scope applies everywhere. A scoped grant applies when
    every key of the grant's scope matches the requested scope. ``*``
    grants everything.
    """

    def __init__(self) -> None:
        self._grants: dict[str, set[tuple[str, frozenset[tuple[str, str]]]]] = defaultdict(set)

    def grant(self, user_id: str, permission: str, scope: Scope | None = None) -> None:
        self._grants[user_id].add((permission, _scope_key(scope)))

    def revoke(self, user_id: str, permission: str, scope: Scope | None = None) -> None:
        self._grants[user_id].discard((permission, _scope_key(scope)))

    async def has(self, user_id: str, permission: str, scope: Scope | None = None) -> bool:
        requested = _scope_key(scope)
        for granted, granted_scope in self._grants.get(user_id, ()):
            if granted not in (permission, "*"):
                continue
            if granted_scope <= requested:
                return True
        return False

    async def require(self, user_id: str, permission: str, scope: Scope | None = None) -> None:
        if not await self.has(user_id, permission, scope):
            logger.warning(
                "authorization.denied",
                user_id=user_id,
                permission=permission,
                scope=dict(scope or {}),
            )
            raise PermissionDeniedError(
                f"Permission denied: {permission}",
                user_id=user_id,
                permission=permission,
                scope=dict(scope) if scope else None,
            )


class SubscriptionAccessGuard:
    """Checks manage/view rights on a business's subscription.

    Global permission first; otherwise the scoped ``*_own`` permission is
    required for the given business.
    """

    def __init__(self, authorization: AuthorizationPort):
        self.authorization = authorization

    async def require_manage(self, user_id: str, business_id: str) -> None:
        await self._require(user_id, business_id, SUBSCRIPTION_MANAGE_ALL, SUBSCRIPTION_MANAGE_OWN)

    async def require_view(self, user_id: str, business_id: str) -> None:
        await self._require(user_id, business_id, SUBSCRIPTION_VIEW_ALL, SUBSCRIPTION_VIEW_OWN)

    async def require_admin(self, user_id: str) -> None:
        await self.authorization.require(user_id, SUBSCRIPTION_MANAGE_ALL)

    async def require_plan_admin(self, user_id: str) -> None:
        await self.authorization.require(user_id, PLAN_MANAGE)

    async def _require(
        self, user_id: str, business_id: str, global_permission: str, own_permission: str
    ) -> None:
        if await self.authorization.has(user_id, global_permission):
            return
        await self.authorization.require(user_id, own_permission, {"business_id": business_id})


__all__ = [
    "AuthorizationPort",
    "InMemoryPermissionStore",
    "SubscriptionAccessGuard",
    "SUBSCRIPTION_MANAGE_ALL",
    "SUBSCRIPTION_MANAGE_OWN",
    "SUBSCRIPTION_VIEW_ALL",
    "SUBSCRIPTION_VIEW_OWN",
    "PLAN_MANAGE",
]
