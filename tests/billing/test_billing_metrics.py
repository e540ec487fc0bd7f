"""Tests for billing metrics and tracing helpers."""

from decimal import Decimal

import pytest
from opentelemetry.trace import StatusCode

from randevu.platform.billing.metrics import BillingMetrics, get_billing_metrics
from tests.billing.fakes import RecordingTracer

pytestmark = pytest.mark.unit


class TestSpans:
    def test_span_records_attributes_as_strings(self):
        tracer = RecordingTracer()
        metrics = BillingMetrics(tracer=tracer)

        with metrics.span("billing.test", amount=Decimal("12.50"), skipped=None) as span:
            pass

        assert tracer.spans == [span]
        assert span.attributes == {"amount": "12.50"}
        assert span.status is None

    def test_mark_failed_sets_error_status(self):
        tracer = RecordingTracer()
        metrics = BillingMetrics(tracer=tracer)

        with metrics.span("billing.test") as span:
            metrics.mark_failed(span, "declined")

        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "declined"

    def test_exceptions_propagate_out_of_span(self):
        metrics = BillingMetrics(tracer=RecordingTracer())

        with pytest.raises(ValueError):
            with metrics.span("billing.test"):
                raise ValueError("boom")

    def test_default_tracer_is_usable_without_sdk(self):
        metrics = BillingMetrics()

        with metrics.span("billing.test", subscription_id="sub_1") as span:
            metrics.mark_failed(span, "declined")
        metrics.record_renewal("renewed")
        metrics.record_proration_charge(Decimal("5.00"), "TRY")


def test_shared_instance():
    assert get_billing_metrics() is get_billing_metrics()
