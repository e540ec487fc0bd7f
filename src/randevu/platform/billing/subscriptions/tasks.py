"""
Celery tasks for the subscription sweeps.

Each task bridges into the async processor with ``asyncio.run`` and returns
the sweep summary as a plain dict.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel

from randevu.platform.billing.dependencies import get_renewal_processor
from randevu.platform.billing.subscriptions.renewal import RenewalProcessor
from randevu.platform.celery_app import celery_app
from randevu.platform.db import get_async_engine

logger = structlog.get_logger(__name__)


def _run_sweep(sweep: Callable[[RenewalProcessor], Awaitable[BaseModel]]) -> dict[str, Any]:
    async def run() -> BaseModel:
        try:
            return await sweep(get_renewal_processor())
        finally:
            # Pooled connections belong to this event loop
            await get_async_engine().dispose()

    return asyncio.run(run()).model_dump()


@celery_app.task(name="billing.subscriptions.process_renewals")
def process_renewals_task() -> dict[str, Any]:
    """Renew, cancel or mark past due every subscription whose period ended."""
    return _run_sweep(lambda processor: processor.process_subscription_renewals())


@celery_app.task(name="billing.subscriptions.process_expired")
def process_expired_task() -> dict[str, Any]:
    """Expiry-only sweep; never charges."""
    return _run_sweep(lambda processor: processor.process_expired_subscriptions())


@celery_app.task(name="billing.subscriptions.cancel_delinquent")
def cancel_delinquent_task() -> dict[str, Any]:
    result = _run_sweep(lambda processor: processor.cancel_delinquent_subscriptions())
    if result["canceled"]:
        logger.info("dunning.task_canceled_subscriptions", canceled=result["canceled"])
    return result


__all__ = ["cancel_delinquent_task", "process_expired_task", "process_renewals_task"]
