"""Tests for confirmed match price refresh."""

from decimal import Decimal

import httpx
from sqlalchemy import select

from compmatch.db.models import ConfirmedMatch
from compmatch.discovery.price_refresh import PriceRefresher
from compmatch.errors import ScrapeBlockedError, ScrapeTransientError
from compmatch.matching.lifecycle import MatchLifecycle
from compmatch.quota.gate import MemoryQuotaBackend, QuotaGate, QuotaPolicy
from compmatch.scraping.catalog import CatalogScraper
from compmatch.scraping.http_client import FetchPolicy
from compmatch.scraping.types import ProductPage
from factories import FakeScraper, seed_store

URLS = [f"https://rival.example.com/p/{i}" for i in range(4)]


async def _seed_matches(session_factory, count):
    store_id, competitor_id, item_ids = await seed_store(
        session_factory, [f"Gaming Mouse {i}" for i in range(count)]
    )
    async with session_factory() as db:
        lifecycle = MatchLifecycle(db)
        for item_id, url in zip(item_ids, URLS):
            await lifecycle.confirm_url(
                store_id, item_id, competitor_id, url, ProductPage(name="Gaming Mouse", price=Decimal("20.00"))
            )
        await db.commit()
    return store_id


async def _matches(session_factory, store_id):
    async with session_factory() as db:
        result = await db.execute(
            select(ConfirmedMatch).where(ConfirmedMatch.store_id == store_id).order_by(ConfirmedMatch.id)
        )
        return list(result.scalars().all())


def _gate(daily=0):
    return QuotaGate("scrape", MemoryQuotaBackend(), policy=QuotaPolicy.REJECT, daily_limit=daily)


async def test_changed_and_unchanged(session_factory):
    store_id = await _seed_matches(session_factory, 2)
    scraper = FakeScraper(
        pages={
            URLS[0]: ProductPage(name="Gaming Mouse", price=Decimal("18.50")),
            URLS[1]: ProductPage(name="Gaming Mouse", price=Decimal("20.00")),
        }
    )

    summary = await PriceRefresher(session_factory, scraper, _gate()).refresh_store(store_id)

    assert (summary.attempted, summary.changed, summary.unchanged) == (2, 1, 1)
    changed, unchanged = await _matches(session_factory, store_id)
    assert Decimal(str(changed.last_price)) == Decimal("18.50")
    assert changed.last_changed_at is not None
    assert changed.no_change_streak == 0
    assert unchanged.no_change_streak == 1
    assert unchanged.last_changed_at is None
    assert unchanged.last_synced_at is not None


async def test_errors_accumulate_until_attention(session_factory):
    store_id = await _seed_matches(session_factory, 1)
    scraper = FakeScraper(pages={URLS[0]: ScrapeTransientError("timeout")})
    refresher = PriceRefresher(session_factory, scraper, _gate(), attention_after_errors=2)

    first = await refresher.refresh_store(store_id)
    (match,) = await _matches(session_factory, store_id)
    assert first.failed == 1
    assert match.error_streak == 1
    assert not match.needs_attention

    await refresher.refresh_store(store_id)
    (match,) = await _matches(session_factory, store_id)
    assert match.error_streak == 2
    assert match.needs_attention
    assert match.last_error == "timeout"

    scraper.pages[URLS[0]] = ProductPage(name="Gaming Mouse", price=Decimal("20.00"))
    await refresher.refresh_store(store_id)
    (match,) = await _matches(session_factory, store_id)
    assert match.error_streak == 0
    assert not match.needs_attention


async def test_blocked_needs_attention_immediately(session_factory):
    store_id = await _seed_matches(session_factory, 2)
    scraper = FakeScraper(
        pages={
            URLS[0]: ScrapeBlockedError("403"),
            URLS[1]: ProductPage(name="Gaming Mouse", price=Decimal("21.00")),
        }
    )

    summary = await PriceRefresher(session_factory, scraper, _gate()).refresh_store(store_id)

    assert (summary.blocked, summary.changed) == (1, 1)
    blocked, ok = await _matches(session_factory, store_id)
    assert blocked.needs_attention
    assert not ok.needs_attention


async def test_budget_defers_remaining_batches(session_factory):
    store_id = await _seed_matches(session_factory, 4)
    scraper = FakeScraper(pages={url: ProductPage(name="Mouse", price=Decimal("20.00")) for url in URLS})

    summary = await PriceRefresher(session_factory, scraper, _gate(daily=3), batch_size=2).refresh_store(store_id)

    assert summary.attempted == 2
    assert summary.deferred == 2
    assert scraper.product_calls == URLS[:2]


async def test_other_stores_untouched(session_factory):
    store_id = await _seed_matches(session_factory, 1)
    scraper = FakeScraper()

    summary = await PriceRefresher(session_factory, scraper, _gate()).refresh_store(store_id + 100)

    assert summary.attempted == 0
    assert scraper.product_calls == []


PRODUCT_HTML = (
    '<html><head><script type="application/ld+json">'
    '{"@type": "Product", "name": "Gaming Mouse", "offers": {"price": "18.00", "priceCurrency": "USD"}}'
    "</script></head><body></body></html>"
)


async def test_redirect_loop_fails_only_that_match(session_factory):
    store_id = await _seed_matches(session_factory, 3)

    def handler(request):
        if request.url.path == "/p/0":
            return httpx.Response(302, headers={"Location": str(request.url)})
        return httpx.Response(200, html=PRODUCT_HTML)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        scraper = CatalogScraper(client, FetchPolicy(name="test", max_attempts=2, backoff_base_seconds=0))
        summary = await PriceRefresher(session_factory, scraper, _gate()).refresh_store(store_id)

    assert (summary.attempted, summary.failed, summary.changed) == (3, 1, 2)
    looping, *refreshed = await _matches(session_factory, store_id)
    assert looping.error_streak == 1
    assert "TooManyRedirects" in looping.last_error
    assert [Decimal(str(m.last_price)) for m in refreshed] == [Decimal("18.00"), Decimal("18.00")]


async def test_unexpected_error_is_recorded_on_the_match(session_factory):
    store_id = await _seed_matches(session_factory, 2)
    scraper = FakeScraper(
        pages={
            URLS[0]: RuntimeError("parser exploded"),
            URLS[1]: ProductPage(name="Gaming Mouse", price=Decimal("19.00")),
        }
    )

    summary = await PriceRefresher(session_factory, scraper, _gate()).refresh_store(store_id)

    assert (summary.attempted, summary.failed, summary.changed) == (2, 1, 1)
    broken, ok = await _matches(session_factory, store_id)
    assert broken.last_error == "RuntimeError: parser exploded"
    assert ok.error_streak == 0
