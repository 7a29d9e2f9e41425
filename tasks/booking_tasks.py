"""
tasks/booking_tasks.py
Periodic booking maintenance run by Celery beat.

auto_assign_stale_bookings: assigns PENDING bookings nobody picked up within
the stale window, or parks them in WAITING when no provider matches.
Safe to run concurrently with the API's on-read scan: a Redis lock keeps one
scan at a time, and every write is compare-and-set on the booking row.
"""

import asyncio
import logging

import redis.asyncio as aioredis

from config.database import create_worker_session_factory
from config.settings import settings
from services.booking.assignment import run_assignment_scan_safely
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_scan() -> dict:
    worker_engine, factory = create_worker_session_factory()
    redis = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        summary = await run_assignment_scan_safely(factory, redis)
    finally:
        await redis.aclose()
        await worker_engine.dispose()
    return summary.as_dict() if summary else {"skipped_run": True}


@celery_app.task(name="tasks.booking_tasks.auto_assign_stale_bookings", ignore_result=False)
def auto_assign_stale_bookings() -> dict:
    """Beat entry point. One scan per tick; returns the outcome counts."""
    result = asyncio.run(_run_scan())
    logger.info("auto_assign_stale_bookings finished: %s", result)
    return result
