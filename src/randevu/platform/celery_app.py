"""
Celery application configuration.

Schedules the subscription renewal, expiry and dunning sweeps.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from randevu.platform.settings import settings

logger = structlog.get_logger(__name__)

celery_app = Celery(
    "randevu_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["randevu.platform.billing.subscriptions.tasks"],
)

celery_app.conf.update(
    task_routes={
        "billing.subscriptions.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer=settings.celery.task_serializer,
    accept_content=settings.celery.accept_content,
    result_serializer=settings.celery.result_serializer,
    timezone=settings.celery.timezone,
    enable_utc=settings.celery.enable_utc,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=settings.celery.worker_prefetch_multiplier,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the subscription sweeps."""
    from randevu.platform.billing.subscriptions.tasks import (
        cancel_delinquent_task,
        process_expired_task,
        process_renewals_task,
    )

    sender.add_periodic_task(
        settings.celery.renewal_interval_seconds,
        process_renewals_task.s(),
        name="subscriptions-process-renewals",
    )
    sender.add_periodic_task(
        settings.celery.expiry_interval_seconds,
        process_expired_task.s(),
        name="subscriptions-process-expired",
    )
    sender.add_periodic_task(
        settings.celery.dunning_interval_seconds,
        cancel_delinquent_task.s(),
        name="subscriptions-cancel-delinquent",
    )
    logger.info("celery.periodic_tasks_registered", count=3)


__all__ = ["celery_app"]
