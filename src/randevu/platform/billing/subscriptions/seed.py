"""Default plan catalog loaded by ``randevu seed-plans``."""

from decimal import Decimal

from randevu.platform.billing.subscriptions.models import BillingInterval, PlanCreateRequest

DEFAULT_PLANS: list[PlanCreateRequest] = [
    PlanCreateRequest(
        plan_id="plan_starter_monthly",
        name="starter",
        display_name="Starter Plan",
        description="Perfect for small businesses just getting started",
        price=Decimal("750.00"),
        currency="TRY",
        billing_interval=BillingInterval.MONTHLY,
        max_businesses=1,
        max_staff_per_business=3,
        max_appointments_per_day=50,
        features={
            "appointment_booking": True,
            "staff_management": True,
            "basic_reports": True,
            "email_notifications": True,
            "sms_notifications": True,
            "custom_branding": False,
            "advanced_reports": False,
            "api_access": False,
            "multi_location": False,
            "priority_support": False,
            "integrations": ["whatsapp"],
            "max_services": 15,
            "max_customers": 1000,
            "storage_gb": 2,
            "sms_quota": 1000,
        },
        is_trial_eligible=False,
        is_popular=False,
        sort_order=1,
    ),
    PlanCreateRequest(
        plan_id="plan_professional_monthly",
        name="professional",
        display_name="Professional Plan",
        description="Ideal for growing businesses with advanced needs",
        price=Decimal("1250.00"),
        currency="TRY",
        billing_interval=BillingInterval.MONTHLY,
        max_businesses=1,
        max_staff_per_business=10,
        max_appointments_per_day=150,
        features={
            "appointment_booking": True,
            "staff_management": True,
            "basic_reports": True,
            "email_notifications": True,
            "sms_notifications": True,
            "custom_branding": True,
            "advanced_reports": True,
            "api_access": False,
            "multi_location": False,
            "priority_support": True,
            "integrations": ["calendar", "whatsapp", "google"],
            "max_services": 50,
            "max_customers": 5000,
            "storage_gb": 10,
            "sms_quota": 2500,
        },
        is_trial_eligible=True,
        is_popular=True,
        sort_order=2,
    ),
    PlanCreateRequest(
        plan_id="plan_enterprise_monthly",
        name="enterprise",
        display_name="Enterprise Plan",
        description="Complete solution for large businesses and chains",
        price=Decimal("2000.00"),
        currency="TRY",
        billing_interval=BillingInterval.MONTHLY,
        max_businesses=5,
        max_staff_per_business=50,
        max_appointments_per_day=500,
        features={
            "appointment_booking": True,
            "staff_management": True,
            "basic_reports": True,
            "email_notifications": True,
            "sms_notifications": True,
            "custom_branding": True,
            "advanced_reports": True,
            "api_access": True,
            "multi_location": True,
            "priority_support": True,
            "integrations": ["calendar", "whatsapp", "pos", "crm", "google", "outlook"],
            "max_services": 200,
            "max_customers": 25000,
            "storage_gb": 50,
            "sms_quota": 5000,
        },
        is_trial_eligible=False,
        is_popular=False,
        sort_order=3,
    ),
]
