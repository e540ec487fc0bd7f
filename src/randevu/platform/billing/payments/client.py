"""
HTTP client for the payment service.

Transport errors, timeouts and non-2xx responses are reported as failed
results rather than raised. Charges are never retried here; a failed
renewal is retried by the next scheduler pass.
"""

from decimal import Decimal
from typing import Any

import httpx
import structlog

from randevu.platform.billing.payments.coordinator import (
    PaymentMethodStoreResult,
    PaymentResult,
    StoredPaymentMethodsResult,
)
from randevu.platform.settings import settings

logger = structlog.get_logger(__name__)


class PaymentServiceClient:
    """``PaymentCoordinator`` backed by the payment service's REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.payments.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payments.api_key
        self.timeout = timeout or settings.payments.timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self, method: str, path: str, json_data: dict[str, Any] | None = None
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Return (body, error). Exactly one of them is set."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json_data)
        except httpx.TimeoutException:
            logger.warning("payment_service.timeout", method=method, path=path)
            return None, "Payment service timed out"
        except httpx.HTTPError as exc:
            logger.warning("payment_service.transport_error", method=method, path=path, error=str(exc))
            return None, f"Payment service unavailable: {exc}"

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                "payment_service.error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                error=error,
            )
            return None, error or f"Payment service returned HTTP {response.status_code}"

        return body if isinstance(body, dict) else {}, None

    async def _charge(
        self,
        path: str,
        business_id: str,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any] | None,
    ) -> PaymentResult:
        body, error = await self._request(
            "POST",
            path,
            {
                "business_id": business_id,
                "subscription_id": subscription_id,
                "amount": str(amount),
                "currency": currency,
                "payment_method_id": payment_method_id,
                "metadata": metadata or {},
            },
        )
        if error is not None:
            return PaymentResult(success=False, error=error)

        result = PaymentResult.model_validate(body)
        logger.info(
            "payment_service.charge",
            path=path,
            subscription_id=subscription_id,
            success=result.success,
            payment_id=result.payment_id,
        )
        return result

    async def create_proration_payment(
        self,
        business_id: str,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        return await self._charge(
            "/v1/payments/proration",
            business_id,
            subscription_id,
            amount,
            currency,
            payment_method_id,
            metadata,
        )

    async def create_renewal_payment(
        self,
        business_id: str,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        return await self._charge(
            "/v1/payments/renewal",
            business_id,
            subscription_id,
            amount,
            currency,
            payment_method_id,
            metadata,
        )

    async def get_stored_payment_methods(self, business_id: str) -> StoredPaymentMethodsResult:
        body, error = await self._request("GET", f"/v1/businesses/{business_id}/payment-methods")
        if error is not None:
            return StoredPaymentMethodsResult(success=False, error=error)
        return StoredPaymentMethodsResult.model_validate({"success": True, **(body or {})})

    async def store_payment_method(
        self, business_id: str, card_data: dict[str, Any], make_default: bool = False
    ) -> PaymentMethodStoreResult:
        body, error = await self._request(
            "POST",
            f"/v1/businesses/{business_id}/payment-methods",
            {"card": card_data, "make_default": make_default},
        )
        if error is not None:
            return PaymentMethodStoreResult(success=False, error=error)
        return PaymentMethodStoreResult.model_validate(body)


__all__ = ["PaymentServiceClient"]
