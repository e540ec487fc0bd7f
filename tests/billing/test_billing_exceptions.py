"""Tests for billing error payloads."""

from decimal import Decimal

import pytest

from randevu.platform.auth.exceptions import PermissionDeniedError
from randevu.platform.billing.exceptions import (
    BillingError,
    BillingValidationError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LimitExceededError,
    PaymentFailedError,
    PaymentRequiredError,
    PlanInUseError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)

pytestmark = pytest.mark.unit


class TestBillingErrors:
    def test_base_error_to_dict(self):
        error = BillingError("Something broke", context={"key": "value"})

        assert error.to_dict() == {
            "error_code": "BILLING_ERROR",
            "message": "Something broke",
            "status_code": 400,
            "category": "invalid",
            "context": {"key": "value"},
            "recovery_hint": None,
        }
        assert str(error) == "Something broke"

    @pytest.mark.parametrize(
        "error,code,status,category",
        [
            (BillingValidationError("bad"), "VALIDATION_ERROR", 422, "invalid"),
            (SubscriptionNotFoundError("missing"), "SUBSCRIPTION_NOT_FOUND", 404, "not_found"),
            (PlanNotFoundError("missing"), "PLAN_NOT_FOUND", 404, "not_found"),
            (InvalidTransitionError("no"), "INVALID_SUBSCRIPTION_TRANSITION", 409, "invalid"),
            (PlanInUseError("used", "plan_a", ["price"]), "PLAN_IN_USE", 409, "conflict"),
            (ConcurrentModificationError("raced"), "CONCURRENT_MODIFICATION", 409, "conflict"),
            (PaymentRequiredError("pay"), "PAYMENT_REQUIRED", 402, "insufficient_payment"),
            (PaymentFailedError("declined"), "PAYMENT_FAILED", 402, "insufficient_payment"),
            (PermissionDeniedError("denied"), "PERMISSION_DENIED", 403, "denied"),
        ],
    )
    def test_codes_and_categories(self, error, code, status, category):
        assert error.error_code == code
        assert error.status_code == status
        assert error.category == category

    def test_limit_exceeded_carries_violations(self):
        error = LimitExceededError(
            "Current usage exceeds the limits of the new plan",
            ["Too many staff members (12/10)"],
            plan_id="plan_starter_monthly",
        )

        assert error.violations == ["Too many staff members (12/10)"]
        assert error.context["plan_id"] == "plan_starter_monthly"
        assert error.status_code == 422

    def test_transition_hint_names_state(self):
        error = InvalidTransitionError("no", current_state="canceled", operation="cancel")

        assert error.recovery_hint == "Cannot cancel a subscription in state canceled"

    def test_payment_required_records_amount(self):
        error = PaymentRequiredError("pay", amount=Decimal("875.00"), currency="TRY")

        assert error.context == {"amount": "875.00", "currency": "TRY"}

    def test_subscription_not_found_context(self):
        error = SubscriptionNotFoundError("missing", subscription_id="sub_1", business_id="biz_1")

        assert error.context == {"subscription_id": "sub_1", "business_id": "biz_1"}
