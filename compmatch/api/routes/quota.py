"""Quota status routes."""

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from compmatch.api.deps import get_current_store, get_services
from compmatch.db.models import Store
from compmatch.services import Services

router = APIRouter(prefix="/api/quota", tags=["quota"])


class WindowResponse(BaseModel):
    name: str
    period: str
    used: int
    limit: int
    remaining: int | None


class GateResponse(BaseModel):
    gate: str
    windows: List[WindowResponse]


@router.get("", response_model=List[GateResponse])
async def get_quota(
    store: Store = Depends(get_current_store),
    services: Services = Depends(get_services),
):
    """Usage of the discovery and scrape budgets for the current periods."""
    discovery = await services.discovery_gate.status(
        store.id, monthly_limit=services.discovery_monthly_limit(store.plan)
    )
    scrape = await services.scrape_gate.status(store.id)
    return [
        GateResponse(gate="discovery", windows=[WindowResponse(**w.__dict__) for w in discovery]),
        GateResponse(gate="scrape", windows=[WindowResponse(**w.__dict__) for w in scrape]),
    ]
