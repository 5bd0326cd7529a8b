"""Owned product routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compmatch import metrics
from compmatch.api.deps import get_current_store, get_database, get_services, scrape_error_to_http
from compmatch.api.routes.matches import ConfirmedMatchResponse
from compmatch.db.models import Competitor, OwnedItem, Store
from compmatch.enums import MatchSource
from compmatch.errors import InvalidInputError, MatchingError, NotFoundError, QuotaExceededError
from compmatch.matching.lifecycle import MatchLifecycle
from compmatch.matching.normalizer import normalize, require_normalized
from compmatch.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


class ProductCreate(BaseModel):
    name: str
    sku: str | None = None
    price: Decimal | None = None
    currency: str = "USD"

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter ISO code")
        return v


class ProductResponse(BaseModel):
    id: int
    name: str
    normalized_name: str
    sku: str | None
    price: float | None
    currency: str
    created_at: datetime

    class Config:
        from_attributes = True


class AddByUrlRequest(BaseModel):
    competitor_id: int
    url: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


async def _get_owned_item(db: AsyncSession, store: Store, product_id: int) -> OwnedItem:
    item = await db.get(OwnedItem, product_id)
    if item is None or item.store_id != store.id:
        raise HTTPException(status_code=404, detail="Product not found")
    return item


@router.get("", response_model=List[ProductResponse])
async def list_products(
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """List the tenant's products."""
    result = await db.execute(
        select(OwnedItem).where(OwnedItem.store_id == store.id).order_by(OwnedItem.id)
    )
    return result.scalars().all()


@router.post("", response_model=ProductResponse, status_code=201)
async def create_product(
    product_data: ProductCreate,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
    services: Services = Depends(get_services),
):
    """Create a product; its name must keep at least one meaningful token after normalization."""
    stopwords = services.discovery.stopwords
    try:
        require_normalized(product_data.name, stopwords)
    except InvalidInputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    item = OwnedItem(
        store_id=store.id,
        name=product_data.name.strip(),
        normalized_name=normalize(product_data.name, stopwords),
        sku=product_data.sku,
        price=product_data.price,
        currency=product_data.currency,
    )
    db.add(item)
    await db.commit()
    await db.refresh(item)
    return item


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Get a product."""
    return await _get_owned_item(db, store, product_id)


@router.delete("/{product_id}", status_code=204)
async def delete_product(
    product_id: int,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
):
    """Delete a product and its confirmed matches."""
    item = await _get_owned_item(db, store, product_id)
    await db.delete(item)
    await db.commit()
    return Response(status_code=204)


@router.post("/{product_id}/competitors/add-by-url", response_model=ConfirmedMatchResponse, status_code=201)
async def add_competitor_by_url(
    product_id: int,
    request: AddByUrlRequest,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_database),
    services: Services = Depends(get_services),
):
    """
    Link a product to an explicit competitor product URL.

    Scrapes the page once (consuming one unit of scrape budget) and records
    the match with 100% confidence.
    """
    await _get_owned_item(db, store, product_id)
    competitor = await db.get(Competitor, request.competitor_id)
    if competitor is None or competitor.store_id != store.id:
        raise HTTPException(status_code=404, detail="Competitor not found")

    try:
        await services.scrape_gate.require(store.id, 1)
    except QuotaExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))

    try:
        page = await services.scraper.scrape_single_product(request.url)
    except MatchingError as e:
        logger.info(f"Add-by-URL scrape failed for {request.url}: {e}")
        raise scrape_error_to_http(e)

    try:
        match = await MatchLifecycle(db).confirm_url(
            store.id, product_id, request.competitor_id, request.url, page
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    await db.commit()
    await db.refresh(match)
    metrics.record_matches_confirmed(MatchSource.URL.value)
    return match
