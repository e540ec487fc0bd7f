"""
Billing module metrics and tracing.

Instruments come from the OpenTelemetry API; without an SDK configured they
are no-ops.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.metrics import Meter
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from randevu.platform.settings import settings

METER_NAME = "randevu.billing.subscriptions"


class BillingMetrics:
    """Subscription metrics collector"""

    def __init__(self, meter: Meter | None = None, tracer: Tracer | None = None) -> None:
        self.enabled = settings.observability.enable_metrics
        self.meter = meter or metrics.get_meter(METER_NAME)
        self.tracer = tracer or trace.get_tracer(METER_NAME)

        self.subscription_created_counter = self.meter.create_counter(
            name="billing.subscription.created",
            description="Subscriptions started",
        )
        self.plan_change_counter = self.meter.create_counter(
            name="billing.subscription.plan_changed",
            description="Plan changes by direction and effective date",
        )
        self.cancellation_counter = self.meter.create_counter(
            name="billing.subscription.canceled",
            description="Cancellations by mode",
        )
        self.proration_amount_histogram = self.meter.create_histogram(
            name="billing.subscription.proration_amount",
            description="Proration charges collected",
        )
        self.renewal_counter = self.meter.create_counter(
            name="billing.subscription.renewal",
            description="Renewal outcomes",
        )
        self.renewal_batch_duration = self.meter.create_histogram(
            name="billing.subscription.renewal_batch_duration",
            description="Duration of a renewal sweep",
            unit="s",
        )

    def record_subscription_created(self, plan_id: str, status: str) -> None:
        if self.enabled:
            self.subscription_created_counter.add(1, {"plan_id": plan_id, "status": status})

    def record_plan_change(self, change_type: str, effective_date: str) -> None:
        if self.enabled:
            self.plan_change_counter.add(
                1, {"change_type": change_type, "effective_date": effective_date}
            )

    def record_cancellation(self, at_period_end: bool) -> None:
        if self.enabled:
            self.cancellation_counter.add(1, {"at_period_end": str(at_period_end).lower()})

    def record_proration_charge(self, amount: Decimal, currency: str) -> None:
        if self.enabled:
            self.proration_amount_histogram.record(float(amount), {"currency": currency})

    def record_renewal(self, outcome: str) -> None:
        if self.enabled:
            self.renewal_counter.add(1, {"outcome": outcome})

    def record_renewal_batch(self, duration_seconds: float, processed: int) -> None:
        if self.enabled:
            self.renewal_batch_duration.record(duration_seconds, {"processed": processed})

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        """Trace a block; exceptions are recorded on the span and propagate."""
        with self.tracer.start_as_current_span(name) as span:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, str(value))
            yield span

    @staticmethod
    def mark_failed(span: Span, reason: str) -> None:
        span.set_status(Status(StatusCode.ERROR, reason))


_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


__all__ = ["BillingMetrics", "get_billing_metrics"]
