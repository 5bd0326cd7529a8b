"""Service container built once at application startup."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compmatch.config import Settings
from compmatch.discovery.price_refresh import PriceRefresher
from compmatch.discovery.service import DiscoveryService
from compmatch.enums import PlanTier
from compmatch.matching.similarity import SimilarityScorer, select_scorer
from compmatch.quota.gate import QuotaBackend, QuotaGate, QuotaPolicy, create_quota_backend
from compmatch.scraping.catalog import CatalogScraper
from compmatch.scraping.http_client import FetchPolicy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    scraper: CatalogScraper
    scorer: SimilarityScorer
    discovery_gate: QuotaGate
    scrape_gate: QuotaGate
    discovery: DiscoveryService
    refresher: PriceRefresher
    auto_confirm_threshold: float = 90.0
    plan_monthly_limits: Optional[dict[str, int]] = None
    http_client: Optional[httpx.AsyncClient] = None
    quota_backend: Optional[QuotaBackend] = None

    def discovery_monthly_limit(self, plan: Optional[str]) -> Optional[int]:
        return (self.plan_monthly_limits or {}).get(PlanTier.parse(plan).value)

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.quota_backend is not None:
            await self.quota_backend.close()


def build_gates(settings: Settings, backend: QuotaBackend) -> tuple[QuotaGate, QuotaGate]:
    """Discovery gate (listings, truncate) and scrape gate (requests, reject)."""
    discovery_gate = QuotaGate(
        "discovery",
        backend,
        policy=QuotaPolicy.TRUNCATE,
        daily_limit=settings.discovery_daily_limit,
        monthly_limit=settings.discovery_monthly_limit,
    )
    scrape_gate = QuotaGate(
        "scrape",
        backend,
        policy=QuotaPolicy.REJECT,
        daily_limit=settings.scrape_daily_limit,
        monthly_limit=settings.scrape_monthly_limit,
    )
    return discovery_gate, scrape_gate


async def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    quota_backend: Optional[QuotaBackend] = None,
    scorer: Optional[SimilarityScorer] = None,
) -> Services:
    """
    Wire every component from settings.

    Args:
        settings: Application settings
        session_factory: Database session factory
        http_client: Shared client for scraping (created when None)
        quota_backend: Counter backend (from settings when None)
        scorer: Similarity scorer (probed from the database when None)
    """
    http_client = http_client or httpx.AsyncClient()
    quota_backend = quota_backend or create_quota_backend(settings.quota_backend, settings.redis_url)
    if scorer is None:
        scorer = await select_scorer(
            session_factory,
            use_trigram=settings.use_trigram_similarity,
            token_mismatch_weight=settings.token_mismatch_weight,
        )

    scraper = CatalogScraper(
        http_client,
        policy=FetchPolicy(
            name="scrape",
            max_attempts=settings.scrape_max_attempts,
            timeout_seconds=settings.scrape_timeout_seconds,
            backoff_base_seconds=settings.scrape_backoff_base_seconds,
        ),
        max_pages=settings.scrape_max_pages,
        min_products_per_page=settings.scrape_min_products_per_page,
        scraping_api_base_url=settings.scraping_api_base_url,
        scraping_api_key=settings.scraping_api_key,
        fallback_tiers=settings.scrape_fallback_tiers,
    )
    discovery_gate, scrape_gate = build_gates(settings, quota_backend)

    discovery = DiscoveryService(
        session_factory,
        scraper,
        scorer,
        discovery_gate,
        min_score=settings.match_min_score,
        top_k_per_scraped=settings.match_top_k_per_scraped,
        auto_confirm_threshold=settings.auto_confirm_threshold,
        auto_confirm_on_discovery=settings.auto_confirm_on_discovery,
        timeout_seconds=settings.discovery_timeout_seconds,
        stopwords=settings.normalizer_stopwords,
        plan_monthly_limits=settings.plan_discovery_monthly_limits,
    )
    refresher = PriceRefresher(
        session_factory,
        scraper,
        scrape_gate,
        batch_size=settings.price_refresh_batch_size,
    )

    logger.info(f"Services ready (scorer={scorer.name}, quota_backend={settings.quota_backend})")
    return Services(
        session_factory=session_factory,
        scraper=scraper,
        scorer=scorer,
        discovery_gate=discovery_gate,
        scrape_gate=scrape_gate,
        discovery=discovery,
        refresher=refresher,
        auto_confirm_threshold=settings.auto_confirm_threshold,
        plan_monthly_limits=settings.plan_discovery_monthly_limits,
        http_client=http_client,
        quota_backend=quota_backend,
    )
