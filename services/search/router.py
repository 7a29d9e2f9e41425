"""
services/search/router.py
Customer-facing provider search. Uses the same eligibility predicate as
auto-assignment, so a provider that cannot be matched never shows up here.
Providers of a retired service are not listed.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.matching import eligibility_filters
from services.provider.router import provider_to_response
from shared.models.models import Provider, Service, User
from shared.schemas.schemas import ProviderSearchResponse

router = APIRouter(prefix="/search", tags=["Search"])


@router.get("/providers", response_model=ProviderSearchResponse)
async def search_providers(
    service: str = Query(..., min_length=2, description="Service name, e.g. Electrician"),
    area: Optional[str] = Query(None, description="Area text; matched case-insensitively as a substring"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Eligible providers for a service, best rated first."""
    service = service.strip()
    retired = exists().where(
        func.lower(Service.name) == service.lower(),
        Service.is_deleted == True,  # noqa: E712
    )
    query = (
        select(Provider, User)
        .join(User, User.id == Provider.user_id)
        .where(eligibility_filters(service, area), User.is_active == True, ~retired)  # noqa: E712
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0

    result = await db.execute(
        query.order_by(Provider.rating.desc(), Provider.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [provider_to_response(p, u) for p, u in result.all()]
    return ProviderSearchResponse(items=items, total=total, page=page, page_size=page_size)
