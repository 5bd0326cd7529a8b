"""Competitor, discovery and candidate review routes."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compmatch import metrics
from compmatch.api.deps import get_current_store, get_database, get_services
from compmatch.api.routes.matches import ConfirmedMatchResponse
from compmatch.db.models import Competitor, DiscoveryRun, OwnedItem, Store
from compmatch.enums import MatchSource, RunStatus
from compmatch.errors import DiscoveryInProgressError, NotFoundError
from compmatch.matching.candidates import group_by_owned_item
from compmatch.matching.lifecycle import MatchLifecycle
from compmatch.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/competitors", tags=["competitors"])


class CompetitorCreate(BaseModel):
    name: str
    url: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")


class CompetitorResponse(BaseModel):
    id: int
    name: str
    url: str
    status: str
    last_sync_at: datetime | None
    last_error: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class DiscoveryStarted(BaseModel):
    competitor_id: int
    run_id: str
    status: str


class DiscoveryStatusResponse(BaseModel):
    competitor_id: int
    status: str
    run_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    listings_found: int = 0
    listings_processed: int = 0
    candidates_built: int = 0
    auto_confirmed: int = 0
    quota_remaining: int | None = None
    warning: str | None = None
    error: str | None = None


class CandidateResponse(BaseModel):
    id: int
    listing_url: str
    listing_name: str
    price: float | None
    currency: str
    score: float
    state: str

    class Config:
        from_attributes = True


class CandidateGroup(BaseModel):
    owned_item_id: int
    owned_item_name: str
    candidates: List[CandidateResponse]


class ConfirmRequest(BaseModel):
    candidate_ids: List[int]


class AutoConfirmRequest(BaseModel):
    threshold: float | None = None


class ConfirmResponse(BaseModel):
    confirmed: List[int]
    already_confirmed: List[int]
    skipped: List[int]


async def _get_competitor(db: AsyncSession, store: Store, competitor_id: int) -> Competitor:
    competitor = await db.get(Competitor, competitor_id)
    if competitor is None or competitor.store_id != store.id:
        raise HTTPException(status_code=404, detail="Competitor not found")
    return competitor


@router.get("", response_model=List[CompetitorResponse])
async def list_competitors(
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """List the tenant's competitors."""
    result = await db.execute(
        select(Competitor).where(Competitor.store_id == store.id).order_by(Competitor.id)
    )
    return result.scalars().all()


@router.post("", response_model=CompetitorResponse, status_code=201)
async def create_competitor(
    competitor_data: CompetitorCreate,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Track a new competitor site."""
    competitor = Competitor(
        store_id=store.id,
        name=competitor_data.name.strip(),
        url=competitor_data.url,
        status=RunStatus.PENDING.value,
    )
    db.add(competitor)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Competitor URL already tracked")
    await db.refresh(competitor)
    return competitor


@router.delete("/{competitor_id}", status_code=204)
async def delete_competitor(
    competitor_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Stop tracking a competitor, dropping its runs, candidates and matches."""
    competitor = await _get_competitor(db, store, competitor_id)
    await db.delete(competitor)
    await db.commit()
    return Response(status_code=204)


@router.post("/{competitor_id}/discover", response_model=DiscoveryStarted, status_code=202)
async def start_discovery(
    competitor_id: int,
    background_tasks: BackgroundTasks,
    store: Store = Depends(get_current_store),
    services: Services = Depends(get_services),
):
    """
    Start a discovery run in the background.

    Poll ``GET /api/competitors/{id}/status`` for the outcome.
    """
    try:
        run = await services.discovery.start(store.id, competitor_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DiscoveryInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(services.discovery.execute, run.run_id)
    return DiscoveryStarted(competitor_id=competitor_id, run_id=run.run_id, status=run.status)


@router.get("/{competitor_id}/status", response_model=DiscoveryStatusResponse)
async def discovery_status(
    competitor_id: int,
    run_id: Optional[str] = Query(None, description="Specific run; latest when omitted"),
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Polling contract for discovery runs."""
    competitor = await _get_competitor(db, store, competitor_id)

    query = select(DiscoveryRun).where(DiscoveryRun.competitor_id == competitor_id)
    if run_id:
        query = query.where(DiscoveryRun.run_id == run_id)
    result = await db.execute(query.order_by(DiscoveryRun.started_at.desc(), DiscoveryRun.id.desc()).limit(1))
    run = result.scalar_one_or_none()

    if run is None:
        if run_id:
            raise HTTPException(status_code=404, detail="Run not found")
        return DiscoveryStatusResponse(
            competitor_id=competitor_id,
            status=RunStatus.parse(competitor.status).value,
            error=competitor.last_error,
        )

    return DiscoveryStatusResponse(
        competitor_id=competitor_id,
        status=run.run_status.value,
        run_id=run.run_id,
        started_at=run.started_at,
        completed_at=run.completed_at,
        listings_found=run.listings_found,
        listings_processed=run.listings_processed,
        candidates_built=run.candidates_built,
        auto_confirmed=run.auto_confirmed,
        quota_remaining=run.quota_remaining,
        warning=run.warning,
        error=run.error_message,
    )


@router.get("/{competitor_id}/candidates", response_model=List[CandidateGroup])
async def list_candidates(
    competitor_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Open candidates grouped by owned item, one per listing URL."""
    await _get_competitor(db, store, competitor_id)
    candidates = await MatchLifecycle(db).list_candidates(store.id, competitor_id)
    groups = group_by_owned_item(candidates)
    if not groups:
        return []

    result = await db.execute(select(OwnedItem).where(OwnedItem.id.in_(list(groups))))
    names = {item.id: item.name for item in result.scalars().all()}
    return [
        CandidateGroup(
            owned_item_id=owned_item_id,
            owned_item_name=names.get(owned_item_id, ""),
            candidates=[CandidateResponse.model_validate(c) for c in group],
        )
        for owned_item_id, group in groups.items()
    ]


@router.post("/{competitor_id}/matches/confirm", response_model=ConfirmResponse)
async def confirm_matches(
    competitor_id: int,
    request: ConfirmRequest,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Confirm selected candidates. Stale or foreign ids are skipped and reported."""
    await _get_competitor(db, store, competitor_id)
    result = await MatchLifecycle(db).confirm(
        store.id, competitor_id, request.candidate_ids, source=MatchSource.DISCOVERY
    )
    await db.commit()
    metrics.record_matches_confirmed(MatchSource.DISCOVERY.value, len(result.confirmed))
    return ConfirmResponse(**result.__dict__)


@router.post("/{competitor_id}/matches/auto-confirm", response_model=ConfirmResponse)
async def auto_confirm_matches(
    competitor_id: int,
    request: Optional[AutoConfirmRequest] = None,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
    services: Services = Depends(get_services),
):
    """Confirm the best candidate of every owned item scoring at or above the threshold."""
    await _get_competitor(db, store, competitor_id)
    threshold = services.auto_confirm_threshold
    if request is not None and request.threshold is not None:
        threshold = request.threshold
    result = await MatchLifecycle(db).auto_confirm(store.id, competitor_id, threshold=threshold)
    await db.commit()
    metrics.record_matches_confirmed(MatchSource.AUTO.value, len(result.confirmed))
    return ConfirmResponse(**result.__dict__)


@router.get("/{competitor_id}/matches", response_model=List[ConfirmedMatchResponse])
async def list_matches(
    competitor_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Confirmed matches for a competitor."""
    await _get_competitor(db, store, competitor_id)
    return await MatchLifecycle(db).list_confirmed(store.id, competitor_id)
