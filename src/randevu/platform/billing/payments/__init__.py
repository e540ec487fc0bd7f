"""Payment service port and its HTTP implementation."""

from randevu.platform.billing.payments.client import PaymentServiceClient
from randevu.platform.billing.payments.coordinator import (
    PaymentCoordinator,
    PaymentMethodStoreResult,
    PaymentResult,
    StoredPaymentMethod,
    StoredPaymentMethodsResult,
)

__all__ = [
    "PaymentCoordinator",
    "PaymentServiceClient",
    "PaymentResult",
    "PaymentMethodStoreResult",
    "StoredPaymentMethod",
    "StoredPaymentMethodsResult",
]
