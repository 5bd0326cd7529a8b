"""HTTP fetching with a per-call policy and status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

import httpx

from compmatch.errors import ScrapeBlockedError, ScrapeNotFoundError, ScrapeTransientError
from compmatch.scraping.parsing import detect_bot_block

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.WriteTimeout,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


@dataclass(frozen=True)
class FetchPolicy:
    """Request policy for scrape calls."""

    name: str = "default"
    max_attempts: int = 2
    timeout_seconds: float = 15.0
    backoff_base_seconds: float = 1.0
    treat_403_as_blocked: bool = True
    treat_401_as_blocked: bool = True
    check_bot_markers: bool = True

    def backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter for the given 1-based attempt."""
        return self.backoff_base_seconds * (2 ** (attempt - 1)) + random.random() * self.backoff_base_seconds


class _Retryable(Exception):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, */*; q=0.8",
        "Accept-Language": "en-US, en; q=0.9",
        "Cache-Control": "no-cache",
    }


def _check_response(resp: httpx.Response, url: str, policy: FetchPolicy) -> httpx.Response:
    """Classify a response: return it, raise a terminal error, or raise _Retryable."""
    if "/blocked" in str(resp.url).lower():
        raise ScrapeBlockedError(f"{policy.name}: blocked redirect: {resp.url}")

    sc = resp.status_code

    if sc == 404:
        raise ScrapeNotFoundError(f"{policy.name}: 404 for {url}")

    if (sc == 401 and policy.treat_401_as_blocked) or (sc == 403 and policy.treat_403_as_blocked):
        raise ScrapeBlockedError(f"{policy.name}: {sc} for {url}")

    if sc == 429:
        retry_after = None
        header = resp.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                pass
        raise _Retryable(f"{policy.name}: rate limited (429) for {url}", retry_after=retry_after)

    if 200 <= sc < 300:
        if policy.check_bot_markers and "html" in resp.headers.get("content-type", "") and detect_bot_block(resp.text):
            raise ScrapeBlockedError(f"{policy.name}: bot challenge page for {url}")
        return resp

    # 5xx and anything unexpected
    raise _Retryable(f"{policy.name}: status {sc} for {url}")


async def fetch_with_policy(
    client: httpx.AsyncClient,
    url: str,
    policy: FetchPolicy,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, str]] = None,
) -> httpx.Response:
    """
    Fetch URL with retry policy and status-aware error handling.

    Args:
        client: httpx AsyncClient instance
        url: URL to fetch
        policy: FetchPolicy configuration
        headers: Optional additional headers (merged with defaults)
        params: Optional query parameters

    Returns:
        httpx.Response on success

    Raises:
        ScrapeBlockedError: 401/403, /blocked redirect or bot challenge page (never retried)
        ScrapeNotFoundError: 404
        ScrapeTransientError: Transport errors, 429 or 5xx after all attempts;
            other httpx errors (redirect loops, decoding) immediately
    """
    hdrs = default_headers()
    if headers:
        hdrs.update(headers)

    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            resp = await client.get(
                url,
                headers=hdrs,
                params=params,
                timeout=policy.timeout_seconds,
                follow_redirects=True,
            )
            return _check_response(resp, url, policy)

        except _Retryable as e:
            last_exc = e
            if attempt < policy.max_attempts:
                sleep_s = e.retry_after if e.retry_after is not None else policy.backoff(attempt)
                logger.warning(
                    f"{e}, retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue

        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt < policy.max_attempts:
                sleep_s = policy.backoff(attempt)
                logger.warning(
                    f"{policy.name}: Transport error ({type(e).__name__}), "
                    f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue

        except httpx.HTTPError as e:
            # Redirect loops, decoding and protocol errors do not improve on retry
            logger.warning(f"{policy.name}: {type(e).__name__} for {url}: {e}")
            raise ScrapeTransientError(f"{policy.name}: {type(e).__name__} for {url}: {e}") from e

    raise ScrapeTransientError(
        f"{policy.name}: failed after {policy.max_attempts} attempts: {url} ({last_exc})"
    ) from last_exc
