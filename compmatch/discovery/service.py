"""Discovery runs: scrape a competitor catalog and build fresh match candidates."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compmatch import metrics
from compmatch.db.models import Competitor, DiscoveryRun, OwnedItem, Store
from compmatch.enums import PlanTier, RunStatus
from compmatch.errors import (
    DiscoveryInProgressError,
    InvalidInputError,
    MatchingError,
    NotFoundError,
    PersistenceError,
    QuotaExceededError,
    ScrapeBlockedError,
)
from compmatch.logging_config import get_logger
from compmatch.matching.candidates import build_candidates, prepare_scorer
from compmatch.matching.lifecycle import MatchLifecycle
from compmatch.matching.normalizer import looks_like_price, require_normalized
from compmatch.matching.similarity import SimilarityScorer
from compmatch.quota.gate import QuotaGate, QuotaPolicy
from compmatch.scraping.catalog import CatalogScraper
from compmatch.scraping.types import ScrapedProduct

logger = logging.getLogger(__name__)


class DiscoveryService:
    """
    Starts and executes discovery runs.

    ``start`` records a run in ``processing``; ``execute`` does the work and
    always leaves the run in a terminal status (``ready``, ``empty``,
    ``blocked`` or ``failed``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scraper: CatalogScraper,
        scorer: SimilarityScorer,
        quota_gate: QuotaGate,
        min_score: float = 30.0,
        top_k_per_scraped: int = 3,
        auto_confirm_threshold: float = 90.0,
        auto_confirm_on_discovery: bool = False,
        timeout_seconds: float = 120.0,
        stopwords: Optional[Iterable[str]] = None,
        plan_monthly_limits: Optional[dict[str, int]] = None,
    ):
        self.session_factory = session_factory
        self.scraper = scraper
        self.scorer = scorer
        self.quota_gate = quota_gate
        self.min_score = min_score
        self.top_k_per_scraped = top_k_per_scraped
        self.auto_confirm_threshold = auto_confirm_threshold
        self.auto_confirm_on_discovery = auto_confirm_on_discovery
        self.timeout_seconds = timeout_seconds
        self.stopwords = list(stopwords) if stopwords is not None else None
        self.plan_monthly_limits = plan_monthly_limits or {}

    async def start(self, store_id: int, competitor_id: int) -> DiscoveryRun:
        """
        Create a run in ``processing`` for a competitor.

        Raises:
            NotFoundError: Competitor does not exist for this tenant
            DiscoveryInProgressError: A run is already processing
        """
        async with self.session_factory() as db:
            competitor = await db.get(Competitor, competitor_id)
            if competitor is None or competitor.store_id != store_id:
                raise NotFoundError(f"Competitor {competitor_id} not found")

            result = await db.execute(
                select(DiscoveryRun).where(
                    DiscoveryRun.competitor_id == competitor_id,
                    DiscoveryRun.status == RunStatus.PROCESSING.value,
                )
            )
            running = result.scalars().first()
            if running is not None:
                raise DiscoveryInProgressError(competitor_id, running.run_id)

            run = DiscoveryRun(
                run_id=uuid4().hex,
                store_id=store_id,
                competitor_id=competitor_id,
                status=RunStatus.PROCESSING.value,
                started_at=datetime.utcnow(),
            )
            db.add(run)
            competitor.status = RunStatus.PROCESSING.value
            competitor.last_error = None
            await db.commit()
            await db.refresh(run)

        logger.info(f"Discovery run {run.run_id[:12]} started for competitor {competitor_id}")
        return run

    async def execute(self, run_id: str) -> RunStatus:
        """
        Execute a started run under the overall timeout.

        Never raises for run-level failures; the outcome is recorded on the run.

        Returns:
            Terminal status of the run
        """
        started = time.monotonic()
        try:
            status = await asyncio.wait_for(self._run(run_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            status = await self._finish(
                run_id, RunStatus.FAILED, error=f"Discovery timed out after {self.timeout_seconds:.0f}s"
            )
        except ScrapeBlockedError as e:
            status = await self._finish(run_id, RunStatus.BLOCKED, error=str(e))
        except QuotaExceededError as e:
            status = await self._finish(
                run_id, RunStatus.FAILED, error=str(e), quota_remaining=e.remaining
            )
        except SQLAlchemyError as e:
            wrapped = PersistenceError(f"Storage failure during discovery: {e}", {"run_id": run_id})
            logger.error(f"{wrapped} context={wrapped.context}", exc_info=True)
            status = await self._finish(run_id, RunStatus.FAILED, error=str(wrapped))
        except MatchingError as e:
            status = await self._finish(run_id, RunStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Discovery run {run_id[:12]} crashed")
            status = await self._finish(run_id, RunStatus.FAILED, error=f"Unexpected error: {e}")

        metrics.record_discovery_run(status.value, time.monotonic() - started)
        return status

    async def run(self, store_id: int, competitor_id: int) -> DiscoveryRun:
        """Start and execute a run in one call, returning the finished run."""
        run = await self.start(store_id, competitor_id)
        await self.execute(run.run_id)
        async with self.session_factory() as db:
            result = await db.execute(select(DiscoveryRun).where(DiscoveryRun.run_id == run.run_id))
            return result.scalar_one()

    def _monthly_limit(self, store: Optional[Store]) -> Optional[int]:
        if store is None:
            return None
        tier = PlanTier.parse(store.plan)
        return self.plan_monthly_limits.get(tier.value)

    def _valid_listings(self, listings: list[ScrapedProduct], log) -> tuple[list[ScrapedProduct], int]:
        valid = []
        skipped = 0
        for listing in listings:
            try:
                if looks_like_price(listing.name):
                    raise InvalidInputError(f"Listing name is a price: {listing.name!r}")
                require_normalized(listing.name, self.stopwords)
            except InvalidInputError as e:
                log.info(f"Skipping listing {listing.url}: {e}")
                skipped += 1
                continue
            valid.append(listing)
        return valid, skipped

    async def _run(self, run_id: str) -> RunStatus:
        async with self.session_factory() as db:
            result = await db.execute(select(DiscoveryRun).where(DiscoveryRun.run_id == run_id))
            run = result.scalar_one_or_none()
            if run is None:
                raise NotFoundError(f"Discovery run {run_id} not found")
            competitor = await db.get(Competitor, run.competitor_id)
            log = get_logger(__name__, store_id=run.store_id, competitor_id=run.competitor_id, run_id=run_id)
            log = get_logger(__name__, run_id=run_id, competitor_id=run.competitor_id)

            # 1. Scrape (blocked propagates; nothing persisted, no quota consumed)
            listings = await self.scraper.scrape_catalog(competitor.url)
            run.listings_found = len(listings)

            # 2. Drop unusable listings
            valid, skipped = self._valid_listings(listings, log)
            run.listings_skipped = skipped
            metrics.record_listings("skipped_invalid", skipped)

            owned_rows = await db.execute(
                select(OwnedItem).where(OwnedItem.store_id == run.store_id).order_by(OwnedItem.id)
            )
            owned = list(owned_rows.scalars().all())

            # 3. Nothing to match
            if not valid or not owned:
                warning = "No products found on competitor site" if not valid else "Store has no products to match"
                log.info(f"Discovery empty: {warning}")
                return await self._complete(db, run, competitor, RunStatus.EMPTY, warning=warning)

            # 4. Quota (truncate)
            decision = await self.quota_gate.consume(
                run.store_id,
                len(valid),
                policy=QuotaPolicy.TRUNCATE,
                monthly_limit=self._monthly_limit(store),
            )
            run.quota_remaining = decision.remaining
            if not decision.allowed:
                raise QuotaExceededError(
                    f"Discovery quota exhausted: 0 of {len(valid)} listings allowed "
                    f"(remaining {decision.remaining} of {decision.limit})",
                    remaining=decision.remaining or 0,
                    limit=decision.limit or 0,
                    requested=len(valid),
                )
            if decision.granted < len(valid):
                run.warning = (
                    f"Quota limit reached: processed {decision.granted} of {len(valid)} listings"
                )
                metrics.record_listings("truncated", len(valid) - decision.granted)
                log.warning(run.warning)
                valid = valid[: decision.granted]
            run.listings_processed = len(valid)
            metrics.record_listings("processed", len(valid))

            # 5. Score
            await prepare_scorer(self.scorer, owned, valid, self.stopwords)
            candidates = build_candidates(
                owned,
                valid,
                self.scorer,
                min_score=self.min_score,
                top_k_per_scraped=self.top_k_per_scraped,
                stopwords=self.stopwords,
            )

            # 6. Stage + replace candidates (one transaction with the status write below)
            lifecycle = MatchLifecycle(db)
            await lifecycle.stage_listings(run.store_id, run.competitor_id, valid)
            await lifecycle.replace_candidates(run.store_id, run.competitor_id, run_id, candidates)
            run.candidates_built = len(candidates)
            metrics.record_candidates_built(len(candidates))

            # 7. Optional auto-confirm
            if self.auto_confirm_on_discovery and candidates:
                confirmation = await lifecycle.auto_confirm(
                    run.store_id, run.competitor_id, threshold=self.auto_confirm_threshold
                )
                run.auto_confirmed = len(confirmation.confirmed)
                metrics.record_matches_confirmed("auto", len(confirmation.confirmed))

            status = RunStatus.READY if candidates else RunStatus.EMPTY
            log.info(
                f"Discovery {status.value}: {len(listings)} found, {len(valid)} processed, "
                f"{len(candidates)} candidates, {run.auto_confirmed} auto-confirmed"
            )
            return await self._complete(db, run, competitor, status)

    async def _complete(
        self,
        db: AsyncSession,
        run: DiscoveryRun,
        competitor: Competitor,
        status: RunStatus,
        warning: Optional[str] = None,
    ) -> RunStatus:
        now = datetime.utcnow()
        run.status = status.value
        run.completed_at = now
        if warning:
            run.warning = warning
        competitor.status = status.value
        competitor.last_sync_at = now
        competitor.last_error = None
        await db.commit()
        return status

    async def _finish(
        self,
        run_id: str,
        status: RunStatus,
        error: str,
        quota_remaining: Optional[int] = None,
    ) -> RunStatus:
        """Record a failed/blocked outcome in a fresh session."""
        logger.warning(f"Discovery run {run_id[:12]} -> {status.value}: {error}")
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(DiscoveryRun).where(DiscoveryRun.run_id == run_id))
                run = result.scalar_one_or_none()
                if run is None:
                    return status
                run.status = status.value
                run.completed_at = datetime.utcnow()
                run.error_message = error[:1000]
                if quota_remaining is not None:
                    run.quota_remaining = quota_remaining
                competitor = await db.get(Competitor, run.competitor_id)
                if competitor is not None:
                    competitor.status = status.value
                    competitor.last_error = error[:1000]
                await db.commit()
        except SQLAlchemyError:
            logger.error(f"Could not record outcome of discovery run {run_id[:12]}", exc_info=True)
        return status
