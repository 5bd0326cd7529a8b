"""FastAPI dependencies."""

from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from compmatch.db.models import Store
from compmatch.errors import (
    MatchingError,
    ScrapeBlockedError,
    ScrapeNotFoundError,
    ScrapeParseError,
    ScrapeTransientError,
)
from compmatch.services import Services


def get_services(request: Request) -> Services:
    """Dependency for the service container built at startup."""
    return request.app.state.services


async def get_database(services: Services = Depends(get_services)) -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async with services.session_factory() as session:
        yield session


async def get_current_store(
    x_store_id: int = Header(..., alias="X-Store-Id"),
    db: AsyncSession = Depends(get_database),
) -> Store:
    """
    Resolve the tenant from the X-Store-Id header.

    Raises:
        HTTPException: 404 if the store does not exist
    """
    store = await db.get(Store, x_store_id)
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


def scrape_error_to_http(error: MatchingError) -> HTTPException:
    """Translate a scrape failure into an HTTP error for the caller."""
    if isinstance(error, ScrapeNotFoundError):
        return HTTPException(status_code=422, detail=f"URL not found: {error}")
    if isinstance(error, ScrapeParseError):
        return HTTPException(status_code=422, detail=f"Could not read a price from the page: {error}")
    if isinstance(error, ScrapeBlockedError):
        return HTTPException(status_code=502, detail=f"Competitor site blocked the request: {error}")
    if isinstance(error, ScrapeTransientError):
        return HTTPException(status_code=502, detail=f"Competitor site unreachable: {error}")
    return HTTPException(status_code=502, detail=str(error))
