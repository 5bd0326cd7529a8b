"""Client-side polling of the discovery status endpoint."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from compmatch.config import settings
from compmatch.enums import RunStatus
from compmatch.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    status: RunStatus
    completed: bool
    timed_out: bool
    run_id: Optional[str] = None
    payload: Optional[dict] = None


async def poll_discovery(
    client: httpx.AsyncClient,
    competitor_id: int,
    store_id: int,
    run_id: Optional[str] = None,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """
    Poll ``GET /api/competitors/{id}/status`` until a terminal status or the wall-clock cap.

    Transport errors, non-404 error statuses and unreadable bodies are
    logged and polling continues. On the cap the outcome is "not yet
    complete" (``completed=False, timed_out=True``); the run itself keeps
    going server-side.

    Args:
        client: httpx client pointed at the API base URL
        competitor_id: Competitor being discovered
        store_id: Tenant id (sent as X-Store-Id)
        run_id: Specific run to follow; latest run when None
        timeout: Wall-clock cap in seconds (settings.poll_timeout_seconds when None)
        interval: Delay between polls in seconds (settings.poll_interval_seconds when None)

    Raises:
        NotFoundError: The competitor or run does not exist
    """
    timeout = settings.poll_timeout_seconds if timeout is None else timeout
    interval = settings.poll_interval_seconds if interval is None else interval
    deadline = clock() + timeout
    params = {"run_id": run_id} if run_id else None
    status = RunStatus.PROCESSING
    payload: Optional[dict] = None

    while True:
        try:
            resp = await client.get(
                f"/api/competitors/{competitor_id}/status",
                headers={"X-Store-Id": str(store_id)},
                params=params,
            )
            if resp.status_code == 404:
                raise NotFoundError(f"Competitor {competitor_id} or run {run_id} not found")
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError(f"unexpected status payload: {data!r}")
            payload = data
            status = RunStatus.parse(payload.get("status"))
            if status.is_terminal:
                return PollOutcome(
                    status=status,
                    completed=True,
                    timed_out=False,
                    run_id=payload.get("run_id"),
                    payload=payload,
                )
        except (httpx.TransportError, httpx.HTTPStatusError, ValueError) as e:
            logger.warning(f"Status poll for competitor {competitor_id} failed: {e}")

        if clock() >= deadline:
            logger.info(f"Discovery for competitor {competitor_id} not yet complete after {timeout:.0f}s")
            return PollOutcome(
                status=status,
                completed=False,
                timed_out=True,
                run_id=(payload or {}).get("run_id", run_id),
                payload=payload,
            )
        await sleep(interval)
