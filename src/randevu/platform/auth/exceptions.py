"""Authorization errors."""

from randevu.platform.billing.exceptions import BillingError


class PermissionDeniedError(BillingError):
    """Caller lacks the permission required for the operation."""

    category = "denied"

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        permission: str | None = None,
        scope: dict[str, str] | None = None,
    ) -> None:
        context: dict = {}
        if user_id:
            context["user_id"] = user_id
        if permission:
            context["permission"] = permission
        if scope:
            context["scope"] = dict(scope)

        super().__init__(
            message,
            "PERMISSION_DENIED",
            status_code=403,
            context=context,
            recovery_hint="Ask an administrator to grant the required permission",
        )
