"""Price refresh for confirmed matches."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compmatch import metrics
from compmatch.db.models import ConfirmedMatch
from compmatch.errors import MatchingError, ScrapeBlockedError, ScrapeParseError, ScrapeTransientError
from compmatch.logging_config import LoggerAdapter, get_logger
from compmatch.matching.lifecycle import compute_price_hash
from compmatch.quota.gate import QuotaGate, QuotaPolicy
from compmatch.scraping.catalog import CatalogScraper
from compmatch.scraping.types import ProductPage


@dataclass
class RefreshSummary:
    attempted: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    blocked: int = 0
    deferred: int = 0


class PriceRefresher:
    """
    Re-scrapes confirmed matches in bounded concurrent batches.

    Each batch consumes ``scrape`` quota with the reject policy; when the
    budget cannot cover a batch, that batch and everything after it are
    deferred to the next refresh.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scraper: CatalogScraper,
        quota_gate: QuotaGate,
        batch_size: int = 5,
        attention_after_errors: int = 3,
    ):
        self.session_factory = session_factory
        self.scraper = scraper
        self.quota_gate = quota_gate
        self.batch_size = max(1, batch_size)
        self.attention_after_errors = attention_after_errors

    async def _scrape(self, url: str) -> tuple[Optional[ProductPage], Optional[MatchingError]]:
        try:
            page = await self.scraper.scrape_single_product(url)
        except MatchingError as e:
            return None, e
        if page.price is None:
            return None, ScrapeParseError(f"No price found on {url}")
        return page, None

    def _apply(
        self,
        match: ConfirmedMatch,
        page: Optional[ProductPage],
        error: Optional[MatchingError],
        summary: RefreshSummary,
        now: datetime,
        log: LoggerAdapter,
    ) -> None:
        log = log.bind(competitor_id=match.competitor_id)
        if error is not None:
            match.error_streak = (match.error_streak or 0) + 1
            match.last_error = str(error)[:500]
            if isinstance(error, ScrapeBlockedError):
                match.needs_attention = True
                summary.blocked += 1
                metrics.record_price_refresh("blocked")
            else:
                summary.failed += 1
                metrics.record_price_refresh("error")
            if match.error_streak >= self.attention_after_errors:
                match.needs_attention = True
            log.info(f"Refresh failed for match {match.id} ({match.listing_url}): {error}")
            return

        new_hash = compute_price_hash(page.price, page.currency)
        if match.price_hash == new_hash:
            match.no_change_streak = (match.no_change_streak or 0) + 1
            summary.unchanged += 1
            metrics.record_price_refresh("unchanged")
        else:
            log.info(
                f"Price change for match {match.id}: {match.last_price} -> {page.price} {page.currency}"
            )
            match.last_price = page.price
            match.currency = page.currency
            match.price_hash = new_hash
            match.last_changed_at = now
            match.no_change_streak = 0
            summary.changed += 1
            metrics.record_price_refresh("changed")

        match.last_synced_at = now
        match.error_streak = 0
        match.last_error = None
        match.needs_attention = False

    async def refresh_store(self, store_id: int) -> RefreshSummary:
        """
        Refresh the last price of every confirmed match of a tenant.

        Per-item failures are recorded on the match and never abort the run.

        Args:
            store_id: Tenant id

        Returns:
            RefreshSummary with per-outcome counts
        """
        summary = RefreshSummary()
        log = get_logger(__name__, store_id=store_id)

        async with self.session_factory() as db:
            result = await db.execute(
                select(ConfirmedMatch)
                .where(ConfirmedMatch.store_id == store_id)
                .order_by(ConfirmedMatch.id)
            )
            matches = list(result.scalars().all())

            for start in range(0, len(matches), self.batch_size):
                batch = matches[start:start + self.batch_size]
                decision = await self.quota_gate.consume(store_id, len(batch), policy=QuotaPolicy.REJECT)
                if not decision.allowed:
                    summary.deferred = len(matches) - start
                    metrics.record_price_refresh("deferred", summary.deferred)
                    log.warning(
                        f"Scrape budget exhausted for store {store_id}: deferring {summary.deferred} "
                        f"matches (remaining {decision.remaining} of {decision.limit})"
                    )
                    break

                outcomes = await asyncio.gather(
                    *(self._scrape(m.listing_url) for m in batch), return_exceptions=True
                )
                now = datetime.utcnow()
                for match, outcome in zip(batch, outcomes):
                    if isinstance(outcome, Exception):
                        log.error(
                            f"Unexpected refresh error for match {match.id}: {outcome}", exc_info=outcome
                        )
                        outcome = (None, ScrapeTransientError(f"{type(outcome).__name__}: {outcome}"))
                    page, error = outcome
                    self._apply(match, page, error, summary, now, log)
                summary.attempted += len(batch)
                await db.commit()

        log.info(
            f"Price refresh for store {store_id}: {summary.attempted} attempted, {summary.changed} changed, "
            f"{summary.unchanged} unchanged, {summary.failed} failed, {summary.blocked} blocked, "
            f"{summary.deferred} deferred"
        )
        return summary
