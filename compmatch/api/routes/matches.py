"""Confirmed match routes."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from compmatch.api.deps import get_current_store, get_database, get_services
from compmatch.db.models import Store
from compmatch.discovery.price_refresh import RefreshSummary
from compmatch.errors import NotFoundError
from compmatch.matching.lifecycle import MatchLifecycle
from compmatch.services import Services

router = APIRouter(prefix="/api/matches", tags=["matches"])


class ConfirmedMatchResponse(BaseModel):
    id: int
    owned_item_id: int
    competitor_id: int
    listing_url: str
    listing_name: str | None
    score: float | None
    source: str
    last_price: float | None
    currency: str
    confirmed_at: datetime
    last_synced_at: datetime | None
    last_changed_at: datetime | None
    no_change_streak: int
    error_streak: int
    needs_attention: bool
    last_error: str | None

    class Config:
        from_attributes = True


class RefreshResponse(BaseModel):
    attempted: int
    changed: int
    unchanged: int
    failed: int
    blocked: int
    deferred: int


@router.delete("/{match_id}", status_code=204)
async def delete_match(
    match_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Remove a confirmed match."""
    try:
        await MatchLifecycle(db).delete_confirmed(store.id, match_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    await db.commit()
    return Response(status_code=204)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_prices(
    store: Store = Depends(get_current_store),
    services: Services = Depends(get_services),
):
    """Refresh prices of all confirmed matches (bounded by the scrape budget)."""
    summary: RefreshSummary = await services.refresher.refresh_store(store.id)
    return RefreshResponse(**summary.__dict__)
