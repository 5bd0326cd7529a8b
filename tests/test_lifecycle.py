"""Tests for staging, candidates and confirmed matches."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from compmatch.db.models import ConfirmedMatch, MatchCandidate, ScrapedListing
from compmatch.enums import MatchSource, MatchState
from compmatch.errors import NotFoundError
from compmatch.matching.candidates import MatchCandidateResult
from compmatch.matching.lifecycle import MatchLifecycle, compute_price_hash
from compmatch.scraping.types import ProductPage
from factories import listing, seed_store


def _candidate(item_id, url, score, price="19.99", name="Listing"):
    return MatchCandidateResult(
        owned_item_id=item_id,
        owned_name="Owned",
        listing_url=url,
        listing_name=name,
        price=Decimal(price) if price else None,
        currency="USD",
        score=score,
    )


@pytest.fixture
async def seeded(session_factory):
    return await seed_store(session_factory, ["Gaming Mouse", "Mouse Pad"])


async def _candidate_ids(db, competitor_id):
    rows = await db.execute(
        select(MatchCandidate).where(MatchCandidate.competitor_id == competitor_id).order_by(MatchCandidate.id)
    )
    return [row.id for row in rows.scalars().all()]


class TestStaging:
    async def test_upsert_and_prune(self, session_factory, seeded):
        store_id, competitor_id, _ = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.stage_listings(
                store_id,
                competitor_id,
                [
                    listing("Gaming Mouse", "https://rival.example.com/p/1", "10.00"),
                    listing("Mouse Pad", "https://rival.example.com/p/2", "5.00"),
                ],
            )
            await db.commit()

        async with session_factory() as db:
            staged = await MatchLifecycle(db).stage_listings(
                store_id,
                competitor_id,
                [listing("Gaming Mouse X", "https://rival.example.com/p/1", "12.50")],
            )
            await db.commit()
            assert staged == 1

        async with session_factory() as db:
            rows = (await db.execute(select(ScrapedListing))).scalars().all()
            assert len(rows) == 1
            assert rows[0].url == "https://rival.example.com/p/1"
            assert rows[0].name == "Gaming Mouse X"
            assert Decimal(str(rows[0].price)) == Decimal("12.50")

    async def test_duplicate_urls_in_one_pass_collapse(self, session_factory, seeded):
        store_id, competitor_id, _ = seeded
        async with session_factory() as db:
            staged = await MatchLifecycle(db).stage_listings(
                store_id,
                competitor_id,
                [
                    listing("Gaming Mouse", "https://rival.example.com/p/1"),
                    listing("Gaming Mouse", "https://rival.example.com/p/1"),
                ],
            )
            await db.commit()
        assert staged == 1

    async def test_empty_pass_clears_staging(self, session_factory, seeded):
        store_id, competitor_id, _ = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.stage_listings(
                store_id, competitor_id, [listing("Gaming Mouse", "https://rival.example.com/p/1")]
            )
            await lifecycle.stage_listings(store_id, competitor_id, [])
            await db.commit()
            rows = (await db.execute(select(ScrapedListing))).scalars().all()
        assert rows == []


class TestCandidates:
    async def test_replace_drops_previous_run(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run1", [_candidate(item_ids[0], "https://rival.example.com/p/1", 80)]
            )
            await lifecycle.replace_candidates(
                store_id,
                competitor_id,
                "run2",
                [
                    _candidate(item_ids[0], "https://rival.example.com/p/2", 60),
                    _candidate(item_ids[1], "https://rival.example.com/p/3", 95),
                ],
            )
            await db.commit()

            rows = await lifecycle.list_candidates(store_id, competitor_id)
        assert [row.run_id for row in rows] == ["run2", "run2"]
        assert [row.score for row in rows] == [95, 60]


class TestConfirm:
    async def test_confirm_discards_siblings(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id,
                competitor_id,
                "run",
                [
                    _candidate(item_ids[0], "https://rival.example.com/p/1", 80),
                    _candidate(item_ids[0], "https://rival.example.com/p/2", 70),
                ],
            )
            first, second = await _candidate_ids(db, competitor_id)

            result = await lifecycle.confirm(store_id, competitor_id, [first])
            await db.commit()

            assert result.confirmed == [first]
            sibling = await db.get(MatchCandidate, second)
            assert sibling.state == MatchState.DISCARDED.value
            matches = await lifecycle.list_confirmed(store_id, competitor_id)
        assert len(matches) == 1
        assert matches[0].listing_url == "https://rival.example.com/p/1"
        assert matches[0].source == MatchSource.DISCOVERY.value
        assert matches[0].price_hash == compute_price_hash(Decimal("19.99"), "USD")

    async def test_confirm_is_idempotent(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run", [_candidate(item_ids[0], "https://rival.example.com/p/1", 80)]
            )
            (candidate_id,) = await _candidate_ids(db, competitor_id)

            await lifecycle.confirm(store_id, competitor_id, [candidate_id])
            again = await lifecycle.confirm(store_id, competitor_id, [candidate_id, candidate_id])
            await db.commit()

            assert again.confirmed == []
            assert again.already_confirmed == [candidate_id]
            rows = (await db.execute(select(ConfirmedMatch))).scalars().all()
        assert len(rows) == 1

    async def test_skips_unknown_foreign_and_discarded(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        other_store, other_competitor, other_items = await seed_store(session_factory, ["Gaming Mouse"])
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id,
                competitor_id,
                "run",
                [
                    _candidate(item_ids[0], "https://rival.example.com/p/1", 80),
                    _candidate(item_ids[0], "https://rival.example.com/p/2", 70),
                ],
            )
            await lifecycle.replace_candidates(
                other_store,
                other_competitor,
                "run",
                [_candidate(other_items[0], "https://rival.example.com/p/9", 99)],
            )
            first, discarded = await _candidate_ids(db, competitor_id)
            (foreign,) = await _candidate_ids(db, other_competitor)
            await lifecycle.confirm(store_id, competitor_id, [first])

            result = await lifecycle.confirm(store_id, competitor_id, [discarded, foreign, 12345])
            await db.commit()

        assert result.confirmed == []
        assert result.skipped == [discarded, foreign, 12345]

    async def test_reconfirming_other_listing_replaces_match(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run1", [_candidate(item_ids[0], "https://rival.example.com/p/1", 80)]
            )
            (first,) = await _candidate_ids(db, competitor_id)
            await lifecycle.confirm(store_id, competitor_id, [first])
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run2", [_candidate(item_ids[0], "https://rival.example.com/p/2", 75)]
            )
            (second,) = await _candidate_ids(db, competitor_id)
            await lifecycle.confirm(store_id, competitor_id, [second])
            await db.commit()

            matches = await lifecycle.list_confirmed(store_id)
        assert len(matches) == 1
        assert matches[0].listing_url == "https://rival.example.com/p/2"

    async def test_auto_confirm_picks_best_above_threshold(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id,
                competitor_id,
                "run",
                [
                    _candidate(item_ids[0], "https://rival.example.com/p/1", 92, price="30.00"),
                    _candidate(item_ids[0], "https://rival.example.com/p/2", 95, price="40.00"),
                    _candidate(item_ids[1], "https://rival.example.com/p/3", 60),
                ],
            )
            result = await lifecycle.auto_confirm(store_id, competitor_id, threshold=90)
            await db.commit()

            assert len(result.confirmed) == 1
            matches = await lifecycle.list_confirmed(store_id, competitor_id)
        assert [(m.owned_item_id, m.listing_url) for m in matches] == [
            (item_ids[0], "https://rival.example.com/p/2")
        ]
        assert matches[0].source == MatchSource.AUTO.value

    async def test_auto_confirm_leaves_confirmed_items_alone(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.confirm_url(
                store_id,
                item_ids[0],
                competitor_id,
                "https://rival.example.com/p/manual",
                ProductPage(name="Gaming Mouse", price=Decimal("25.00")),
            )
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run", [_candidate(item_ids[0], "https://rival.example.com/p/1", 99)]
            )
            result = await lifecycle.auto_confirm(store_id, competitor_id, threshold=90)
            await db.commit()

            matches = await lifecycle.list_confirmed(store_id)
        assert result.confirmed == []
        assert matches[0].listing_url == "https://rival.example.com/p/manual"


class TestConfirmUrl:
    async def test_confirm_url_records_full_confidence(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            await lifecycle.replace_candidates(
                store_id, competitor_id, "run", [_candidate(item_ids[1], "https://rival.example.com/p/1", 70)]
            )
            match = await lifecycle.confirm_url(
                store_id,
                item_ids[1],
                competitor_id,
                "https://rival.example.com/p/pad",
                ProductPage(name="Desk Mouse Pad", price=Decimal("7.50"), currency="EUR"),
            )
            await db.commit()

            assert match.score == 100.0
            assert match.source == MatchSource.URL.value
            assert match.currency == "EUR"
            assert match.last_synced_at is not None
            open_candidates = await lifecycle.list_candidates(store_id, competitor_id)
        assert open_candidates == []

    async def test_confirm_url_rejects_foreign_item(self, session_factory, seeded):
        store_id, competitor_id, _ = seeded
        _, _, other_items = await seed_store(session_factory, ["Keyboard"])
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await MatchLifecycle(db).confirm_url(
                    store_id,
                    other_items[0],
                    competitor_id,
                    "https://rival.example.com/p/1",
                    ProductPage(name="Keyboard", price=None),
                )


class TestDeleteConfirmed:
    async def test_delete(self, session_factory, seeded):
        store_id, competitor_id, item_ids = seeded
        async with session_factory() as db:
            lifecycle = MatchLifecycle(db)
            match = await lifecycle.confirm_url(
                store_id,
                item_ids[0],
                competitor_id,
                "https://rival.example.com/p/1",
                ProductPage(name="Gaming Mouse", price=Decimal("20.00")),
            )
            await db.commit()
            await lifecycle.delete_confirmed(store_id, match.id)
            await db.commit()
            assert await lifecycle.list_confirmed(store_id) == []

    async def test_delete_unknown_raises(self, session_factory, seeded):
        store_id, _, _ = seeded
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await MatchLifecycle(db).delete_confirmed(store_id, 999)


def test_price_hash_is_stable():
    assert compute_price_hash(Decimal("10"), "usd") == compute_price_hash(Decimal("10.00"), "USD")
    assert compute_price_hash(Decimal("10.00"), "USD") != compute_price_hash(Decimal("10.01"), "USD")
