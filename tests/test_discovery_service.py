"""Tests for discovery runs end to end (scraper faked, SQLite storage)."""

import asyncio

import pytest
from sqlalchemy import select

from compmatch.db.models import Competitor, ConfirmedMatch, MatchCandidate, ScrapedListing
from compmatch.discovery.service import DiscoveryService
from compmatch.enums import RunStatus
from compmatch.errors import DiscoveryInProgressError, NotFoundError, ScrapeBlockedError
from compmatch.matching.similarity import TokenSetScorer
from compmatch.quota.gate import MemoryQuotaBackend, QuotaGate
from factories import FakeScraper, listing, seed_store


def _service(session_factory, scraper, gate=None, **kwargs):
    return DiscoveryService(
        session_factory=session_factory,
        scraper=scraper,
        scorer=TokenSetScorer(),
        quota_gate=gate or QuotaGate("discovery", MemoryQuotaBackend(), monthly_limit=6000),
        **kwargs,
    )


async def _rows(session_factory, model, competitor_id):
    async with session_factory() as db:
        result = await db.execute(select(model).where(model.competitor_id == competitor_id))
        return list(result.scalars().all())


async def _competitor(session_factory, competitor_id):
    async with session_factory() as db:
        return await db.get(Competitor, competitor_id)


class TestDiscoveryRun:
    async def test_ready_with_candidates(self, session_factory):
        store_id, competitor_id, item_ids = await seed_store(
            session_factory, ["Wireless Headphones", "Gaming Mouse"]
        )
        scraper = FakeScraper(
            [
                listing("Wireless Headphones Pro", "https://rival.example.com/p/1"),
                listing("Wireless Gaming Mouse", "https://rival.example.com/p/2"),
                listing("$19.99", "https://rival.example.com/p/3"),
            ]
        )

        run = await _service(session_factory, scraper).run(store_id, competitor_id)

        assert run.run_status == RunStatus.READY
        assert run.listings_found == 3
        assert run.listings_skipped == 1
        assert run.listings_processed == 2
        assert run.candidates_built == 2
        assert run.completed_at is not None

        candidates = await _rows(session_factory, MatchCandidate, competitor_id)
        pairs = {(c.owned_item_id, c.listing_url, c.score) for c in candidates}
        assert pairs == {
            (item_ids[0], "https://rival.example.com/p/1", 50.0),
            (item_ids[1], "https://rival.example.com/p/2", 50.0),
        }
        assert {c.run_id for c in candidates} == {run.run_id}
        assert len(await _rows(session_factory, ScrapedListing, competitor_id)) == 2
        assert (await _competitor(session_factory, competitor_id)).status == "ready"

    async def test_empty_catalog(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        gate = QuotaGate("discovery", MemoryQuotaBackend(), monthly_limit=100)

        run = await _service(session_factory, FakeScraper([]), gate).run(store_id, competitor_id)

        assert run.run_status == RunStatus.EMPTY
        assert run.warning == "No products found on competitor site"
        assert (await gate.status(store_id))[1].used == 0

    async def test_store_without_products_is_empty(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, [])
        scraper = FakeScraper([listing("Gaming Mouse", "https://rival.example.com/p/1")])

        run = await _service(session_factory, scraper).run(store_id, competitor_id)

        assert run.run_status == RunStatus.EMPTY
        assert run.warning == "Store has no products to match"

    async def test_no_candidates_above_floor_is_empty(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        scraper = FakeScraper([listing("Desk Lamp", "https://rival.example.com/p/1")])

        run = await _service(session_factory, scraper).run(store_id, competitor_id)

        assert run.run_status == RunStatus.EMPTY
        assert run.candidates_built == 0

    async def test_blocked_consumes_no_quota(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        gate = QuotaGate("discovery", MemoryQuotaBackend(), monthly_limit=100)
        scraper = FakeScraper(error=ScrapeBlockedError("403 from rival.example.com"))

        run = await _service(session_factory, scraper, gate).run(store_id, competitor_id)

        assert run.run_status == RunStatus.BLOCKED
        assert "403" in run.error_message
        assert (await gate.status(store_id))[1].used == 0
        assert await _rows(session_factory, MatchCandidate, competitor_id) == []
        competitor = await _competitor(session_factory, competitor_id)
        assert competitor.status == "blocked"
        assert "403" in competitor.last_error

    async def test_quota_truncates_listings(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        gate = QuotaGate("discovery", MemoryQuotaBackend(), monthly_limit=5000)
        await gate.consume(store_id, 4990)
        scraper = FakeScraper(
            [listing(f"Gaming Mouse {i}", f"https://rival.example.com/p/{i}") for i in range(25)]
        )

        run = await _service(session_factory, scraper, gate).run(store_id, competitor_id)

        assert run.run_status == RunStatus.READY
        assert run.listings_processed == 10
        assert run.quota_remaining == 0
        assert "processed 10 of 25" in run.warning
        assert len(await _rows(session_factory, MatchCandidate, competitor_id)) == 10

    async def test_plan_tier_limits_monthly_quota(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"], plan="starter")
        scraper = FakeScraper(
            [listing(f"Gaming Mouse {i}", f"https://rival.example.com/p/{i}") for i in range(5)]
        )
        service = _service(session_factory, scraper, plan_monthly_limits={"starter": 3, "pro": 100})

        run = await service.run(store_id, competitor_id)

        assert run.listings_processed == 3
        assert "processed 3 of 5" in run.warning

    async def test_exhausted_quota_fails(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        gate = QuotaGate("discovery", MemoryQuotaBackend(), monthly_limit=10)
        await gate.consume(store_id, 10)
        scraper = FakeScraper([listing("Gaming Mouse", "https://rival.example.com/p/1")])

        run = await _service(session_factory, scraper, gate).run(store_id, competitor_id)

        assert run.run_status == RunStatus.FAILED
        assert run.quota_remaining == 0
        assert "quota" in run.error_message.lower()

    async def test_timeout_fails_the_run(self, session_factory):
        class SlowScraper(FakeScraper):
            async def scrape_catalog(self, url):
                await asyncio.sleep(5)
                return []

        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])

        run = await _service(session_factory, SlowScraper(), timeout_seconds=0.05).run(store_id, competitor_id)

        assert run.run_status == RunStatus.FAILED
        assert "timed out" in run.error_message
        assert (await _competitor(session_factory, competitor_id)).status == "failed"

    async def test_unexpected_error_fails_the_run(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        scraper = FakeScraper(error=RuntimeError("boom"))

        run = await _service(session_factory, scraper).run(store_id, competitor_id)

        assert run.run_status == RunStatus.FAILED
        assert "boom" in run.error_message

    async def test_auto_confirm_on_discovery(self, session_factory):
        store_id, competitor_id, item_ids = await seed_store(session_factory, ["Gaming Mouse"])
        scraper = FakeScraper(
            [
                listing("Gaming Mouse", "https://rival.example.com/p/1"),
                listing("Gaming Mouse Pad", "https://rival.example.com/p/2"),
            ]
        )
        service = _service(session_factory, scraper, auto_confirm_on_discovery=True, auto_confirm_threshold=90)

        run = await service.run(store_id, competitor_id)

        assert run.auto_confirmed == 1
        confirmed = await _rows(session_factory, ConfirmedMatch, competitor_id)
        assert [(m.owned_item_id, m.listing_url, m.source) for m in confirmed] == [
            (item_ids[0], "https://rival.example.com/p/1", "auto")
        ]

    async def test_rerun_replaces_candidates(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        scraper = FakeScraper([listing("Gaming Mouse", "https://rival.example.com/p/1")])
        service = _service(session_factory, scraper)
        await service.run(store_id, competitor_id)

        scraper.listings = [listing("Gaming Mouse", "https://rival.example.com/p/2")]
        second = await service.run(store_id, competitor_id)

        candidates = await _rows(session_factory, MatchCandidate, competitor_id)
        assert [(c.listing_url, c.run_id) for c in candidates] == [
            ("https://rival.example.com/p/2", second.run_id)
        ]
        staged = await _rows(session_factory, ScrapedListing, competitor_id)
        assert [s.url for s in staged] == ["https://rival.example.com/p/2"]


class TestStart:
    async def test_second_start_while_processing_is_rejected(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        service = _service(session_factory, FakeScraper())

        first = await service.start(store_id, competitor_id)

        with pytest.raises(DiscoveryInProgressError) as exc_info:
            await service.start(store_id, competitor_id)
        assert exc_info.value.run_id == first.run_id
        assert first.run_status == RunStatus.PROCESSING

    async def test_unknown_competitor(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        service = _service(session_factory, FakeScraper())

        with pytest.raises(NotFoundError):
            await service.start(store_id + 1, competitor_id)

    async def test_execute_after_finish_allows_new_run(self, session_factory):
        store_id, competitor_id, _ = await seed_store(session_factory, ["Gaming Mouse"])
        service = _service(session_factory, FakeScraper())

        first = await service.start(store_id, competitor_id)
        status = await service.execute(first.run_id)
        second = await service.start(store_id, competitor_id)

        assert status == RunStatus.EMPTY
        assert second.run_id != first.run_id
