"""
Billing system exceptions.

Every error raised by the subscription engine carries a machine-readable
code, an HTTP status, structured context and a recovery hint. ``category``
groups errors for user-facing messaging.
"""

from decimal import Decimal
from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    category = "invalid"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "category": self.category,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingValidationError(BillingError):
    """Malformed or inconsistent input."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    category = "not_found"

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        business_id: str | None = None,
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if business_id:
            context["business_id"] = business_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class InvalidTransitionError(SubscriptionError):
    """Operation not permitted from the subscription's current state."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        details: dict[str, Any] = dict(context or {})
        if current_state:
            details["current_state"] = current_state
        if operation:
            details["operation"] = operation

        hint = "Check the subscription status before retrying"
        if current_state and operation:
            hint = f"Cannot {operation} a subscription in state {current_state}"

        super().__init__(message, context=details, recovery_hint=hint)
        self.error_code = "INVALID_SUBSCRIPTION_TRANSITION"
        self.status_code = 409


class PlanNotFoundError(SubscriptionError):
    """Subscription plan not found error."""

    category = "not_found"

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class InvalidPlanError(BillingValidationError):
    """Plan exists but cannot be used for the requested operation."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        super().__init__(
            message,
            context={"plan_id": plan_id} if plan_id else None,
            recovery_hint="Choose an active subscription plan",
        )
        self.error_code = "INVALID_PLAN"


class PlanInUseError(SubscriptionError):
    """Financial terms of a referenced plan cannot change."""

    category = "conflict"

    def __init__(self, message: str, plan_id: str, fields: list[str]) -> None:
        super().__init__(
            message,
            context={"plan_id": plan_id, "fields": fields},
            recovery_hint="Create a new plan with the new price or quotas instead",
        )
        self.error_code = "PLAN_IN_USE"
        self.status_code = 409


class LimitExceededError(SubscriptionError):
    """Current usage does not fit the target plan's quotas."""

    def __init__(self, message: str, violations: list[str], plan_id: str | None = None) -> None:
        context: dict[str, Any] = {"violations": list(violations)}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Reduce businesses or staff members before changing to this plan",
        )
        self.violations = list(violations)
        self.error_code = "PLAN_LIMIT_EXCEEDED"
        self.status_code = 422


class ConcurrentModificationError(SubscriptionError):
    """Another writer changed the subscription first."""

    category = "conflict"

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        super().__init__(
            message,
            context={"subscription_id": subscription_id} if subscription_id else None,
            recovery_hint="Reload the subscription and retry the operation",
        )
        self.error_code = "CONCURRENT_MODIFICATION"
        self.status_code = 409


class PaymentError(BillingError):
    """Payment processing errors."""

    category = "insufficient_payment"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class PaymentRequiredError(PaymentError):
    """A charge is due but no payment method is available."""

    def __init__(self, message: str, amount: Decimal | None = None, currency: str | None = None):
        context: dict[str, Any] = {}
        if amount is not None:
            context["amount"] = str(amount)
        if currency:
            context["currency"] = currency

        super().__init__(
            message,
            context=context,
            recovery_hint="Add a payment method and retry",
        )
        self.error_code = "PAYMENT_REQUIRED"


class PaymentFailedError(PaymentError):
    """The payment service declined or could not complete the charge."""

    def __init__(
        self,
        message: str,
        payment_method_id: str | None = None,
        provider_error: str | None = None,
    ) -> None:
        context = {}
        if payment_method_id:
            context["payment_method_id"] = payment_method_id
        if provider_error:
            context["provider_error"] = provider_error

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the payment method is valid and has sufficient funds",
        )
        self.error_code = "PAYMENT_FAILED"
