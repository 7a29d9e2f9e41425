"""
services/booking/assignment.py
Auto-assignment scan: promotes stale PENDING and WAITING bookings.

A booking is stale once it was created more than
AUTO_ASSIGN_STALE_AFTER_SECONDS ago and still has no provider. For each
stale booking the matcher is run:
  hit  → ASSIGNED (source AUTO), with the usual assignment side effects
  miss → WAITING (a WAITING booking is left as it is)
Rows that another writer moved in the meantime are skipped. The scan is
idempotent and safe to run from several places at once.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.redis_client import RedisCache
from config.settings import settings
from services.booking import state_machine
from services.booking.matching import find_best_provider
from shared.exceptions import ConflictError
from shared.models.models import AssignmentSource, Booking, BookingStatus, Service

logger = logging.getLogger(__name__)

SCAN_LOCK_NAME = "auto-assign-scan"

AUTO_ASSIGN_OUTCOMES = Counter(
    "booking_auto_assign_total",
    "Outcomes of the stale-booking auto-assignment scan",
    ["outcome"],
)


@dataclass
class ScanResult:
    scanned: int = 0
    assigned: int = 0
    waiting: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        AUTO_ASSIGN_OUTCOMES.labels(outcome=outcome).inc()

    def as_dict(self) -> dict:
        return asdict(self)


def stale_cutoff(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=settings.AUTO_ASSIGN_STALE_AFTER_SECONDS)


async def _stale_bookings(db: AsyncSession, now: Optional[datetime] = None) -> list:
    result = await db.execute(
        select(Booking, Service.name)
        .join(Service, Service.id == Booking.service_id)
        .where(
            Booking.status.in_(state_machine.AUTO_ASSIGNABLE_STATUSES),
            Booking.provider_id.is_(None),
            Booking.created_at < stale_cutoff(now),
        )
        .order_by(Booking.created_at.asc())
        .limit(settings.AUTO_ASSIGN_BATCH_SIZE)
    )
    return list(result.all())


async def run_assignment_scan(db: AsyncSession, now: Optional[datetime] = None) -> ScanResult:
    """
    One pass over stale unassigned bookings. Commits per booking, so a failure
    on one row never undoes the rows before it.
    """
    summary = ScanResult()
    stale = await _stale_bookings(db, now)
    candidates = [(booking.id, service_name) for booking, service_name in stale]

    for booking_id, service_name in candidates:
        summary.scanned += 1
        try:
            booking = await db.get(Booking, booking_id, populate_existing=True)
            if booking is None or booking.status not in state_machine.AUTO_ASSIGNABLE_STATUSES:
                summary.record("skipped")
                continue
            provider = await find_best_provider(db, booking, service_name=service_name)
            if provider:
                provider_id = provider.id
                await state_machine.assign_provider(db, booking, provider, AssignmentSource.AUTO)
                summary.record("assigned")
                logger.info("Auto-assigned booking %s to provider %s", booking_id, provider_id)
            else:
                if booking.status == BookingStatus.PENDING:
                    await state_machine.mark_waiting(db, booking)
                summary.record("waiting")
        except ConflictError:
            # Another writer moved it first
            await db.rollback()
            summary.record("skipped")
        except Exception:
            logger.exception("Auto-assignment failed for booking %s", booking_id)
            await db.rollback()
            summary.record("failed")

    if summary.scanned:
        logger.info("Auto-assignment scan: %s", summary.as_dict())
    return summary


async def run_assignment_scan_safely(
    session_factory: async_sessionmaker,
    redis=None,
    now: Optional[datetime] = None,
) -> Optional[ScanResult]:
    """
    Background entry point. Takes the scan lock when Redis is available,
    runs the scan in its own session, and never raises.
    Returns None when the scan did not run.
    """
    cache = RedisCache(redis) if redis is not None else None
    owner = str(uuid.uuid4())

    try:
        if cache and not await cache.acquire_lock(
            SCAN_LOCK_NAME, owner, settings.AUTO_ASSIGN_SCAN_LOCK_TTL
        ):
            logger.debug("Auto-assignment scan already running elsewhere")
            return None
    except Exception as e:
        # Redis down: scan anyway, the compare-and-set writes keep it safe
        logger.warning("Scan lock unavailable: %s", e)
        cache = None

    try:
        async with session_factory() as db:
            return await run_assignment_scan(db, now=now)
    except Exception:
        logger.exception("Auto-assignment scan failed")
        return None
    finally:
        if cache:
            try:
                await cache.release_lock(SCAN_LOCK_NAME, owner)
            except Exception as e:
                logger.warning("Could not release scan lock: %s", e)
