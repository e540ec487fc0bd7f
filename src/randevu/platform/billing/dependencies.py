"""
Billing module wiring.

Builds a ``SubscriptionService`` from the configured database, payment
service and authorization port. HTTP layers and workers call these factories
instead of assembling the service themselves.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from randevu.platform.auth.authorization import AuthorizationPort, InMemoryPermissionStore
from randevu.platform.billing.payments.client import PaymentServiceClient
from randevu.platform.billing.payments.coordinator import PaymentCoordinator
from randevu.platform.billing.subscriptions.renewal import RenewalProcessor
from randevu.platform.billing.subscriptions.service import SubscriptionService
from randevu.platform.clock import Clock, system_clock
from randevu.platform.db import get_session_maker

_payment_client: PaymentServiceClient | None = None


def get_payment_coordinator() -> PaymentCoordinator:
    """Shared payment service client configured from settings."""
    global _payment_client
    if _payment_client is None:
        _payment_client = PaymentServiceClient()
    return _payment_client


def get_subscription_service(
    session: AsyncSession,
    authorization: AuthorizationPort | None = None,
    payments: PaymentCoordinator | None = None,
    clock: Clock = system_clock,
) -> SubscriptionService:
    """
    Service bound to ``session``.

    Without an authorization port every user-facing operation is denied;
    scheduled sweeps take no user and still work.
    """
    return SubscriptionService(
        session,
        payments=payments or get_payment_coordinator(),
        authorization=authorization or InMemoryPermissionStore(),
        clock=clock,
        session_factory=get_session_maker(),
    )


def get_renewal_processor(
    payments: PaymentCoordinator | None = None, clock: Clock = system_clock
) -> RenewalProcessor:
    return RenewalProcessor(
        get_session_maker(), payments or get_payment_coordinator(), clock=clock
    )


__all__ = ["get_payment_coordinator", "get_renewal_processor", "get_subscription_service"]
