"""
Payment coordinator contract.

The subscription engine only needs to charge proration and renewal amounts
against a stored payment method and to look up or store payment methods.
Gateway details live behind this port.
"""

from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class PaymentResult(BaseModel):
    """Outcome of a single charge attempt."""

    success: bool
    payment_id: str | None = None
    error: str | None = None


class StoredPaymentMethod(BaseModel):
    payment_method_id: str = Field(alias="id")
    brand: str | None = None
    last_four: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    is_default: bool = False

    model_config = {"populate_by_name": True}


class StoredPaymentMethodsResult(BaseModel):
    success: bool
    payment_methods: list[StoredPaymentMethod] = Field(default_factory=list)
    error: str | None = None


class PaymentMethodStoreResult(BaseModel):
    success: bool
    payment_method_id: str | None = None
    error: str | None = None


@runtime_checkable
class PaymentCoordinator(Protocol):
    async def create_proration_payment(
        self,
        business_id: str,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult: ...

    async def create_renewal_payment(
        self,
        business_id: str,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult: ...

    async def get_stored_payment_methods(self, business_id: str) -> StoredPaymentMethodsResult: ...

    async def store_payment_method(
        self, business_id: str, card_data: dict[str, Any], make_default: bool = False
    ) -> PaymentMethodStoreResult: ...


__all__ = [
    "PaymentCoordinator",
    "PaymentResult",
    "StoredPaymentMethod",
    "StoredPaymentMethodsResult",
    "PaymentMethodStoreResult",
]
