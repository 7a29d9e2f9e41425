"""
services/booking/matching.py
Provider eligibility and best-match selection.

A provider is eligible for a booking when:
  skill == service name, area contains the booking area (case-insensitive),
  is_active, approval ACTIVE (NULL reads as ACTIVE), not soft-deleted (NULL reads as false).
Best match: highest rating, ties broken by lowest provider id.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ApprovalStatus, Booking, Provider, Service

logger = logging.getLogger(__name__)


# ── Predicates ────────────────────────────────────────────────

def not_deleted_filter():
    return or_(Provider.is_deleted.is_(None), Provider.is_deleted == False)  # noqa: E712


def approved_filter():
    return or_(
        Provider.approval_status.is_(None),
        Provider.approval_status == ApprovalStatus.ACTIVE,
    )


def eligibility_filters(service_name: str, area: Optional[str]):
    """SQL form of the eligibility predicate."""
    clauses = [
        Provider.skill == service_name,
        Provider.is_active == True,  # noqa: E712
        approved_filter(),
        not_deleted_filter(),
    ]
    if area:
        clauses.append(
            func.lower(Provider.area).contains(area.strip().lower(), autoescape=True)
        )
    return and_(*clauses)


def is_eligible(provider: Provider, service_name: str, area: Optional[str]) -> bool:
    """Python form of the eligibility predicate, for a provider already in hand."""
    if provider.skill != service_name:
        return False
    if not provider.is_active:
        return False
    if provider.effective_approval_status != ApprovalStatus.ACTIVE:
        return False
    if provider.effectively_deleted:
        return False
    if area and area.strip().lower() not in (provider.area or "").lower():
        return False
    return True


def is_assignable(provider: Provider, service_name: str) -> bool:
    """
    Admin override check: skill match and is_active only.
    Approval status is not consulted; soft-deleted rows stay out.
    """
    return (
        provider.skill == service_name
        and bool(provider.is_active)
        and not provider.effectively_deleted
    )


# ── Queries ───────────────────────────────────────────────────

def _best_first(query):
    return query.order_by(Provider.rating.desc(), Provider.id.asc())


async def find_eligible_providers(
    db: AsyncSession,
    service_name: str,
    area: Optional[str],
    limit: Optional[int] = None,
) -> List[Provider]:
    query = _best_first(select(Provider).where(eligibility_filters(service_name, area)))
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def find_best_provider(
    db: AsyncSession,
    booking: Booking,
    service_name: Optional[str] = None,
) -> Optional[Provider]:
    """Single best eligible provider for the booking, or None when nobody qualifies."""
    if service_name is None:
        service_name = await db.scalar(select(Service.name).where(Service.id == booking.service_id))
        if service_name is None:
            logger.warning("Booking %s references a missing service", booking.id)
            return None

    providers = await find_eligible_providers(db, service_name, booking.area, limit=1)
    return providers[0] if providers else None


async def list_assignable_providers(db: AsyncSession, service_name: str) -> List[Provider]:
    """Candidates offered to an admin for manual assignment."""
    result = await db.execute(
        _best_first(
            select(Provider).where(
                Provider.skill == service_name,
                Provider.is_active == True,  # noqa: E712
                not_deleted_filter(),
            )
        )
    )
    return list(result.scalars().all())


async def get_provider(db: AsyncSession, provider_id: UUID) -> Optional[Provider]:
    result = await db.execute(select(Provider).where(Provider.id == provider_id))
    return result.scalar_one_or_none()
