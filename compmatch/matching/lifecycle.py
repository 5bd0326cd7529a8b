"""Match lifecycle: staged listings -> candidates -> confirmed matches.

``MatchLifecycle`` works inside the caller's session and never commits;
callers decide the transaction boundary (discovery stages listings and
replaces candidates in one commit).
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from compmatch.db.models import (
    Competitor,
    ConfirmedMatch,
    MatchCandidate,
    OwnedItem,
    ScrapedListing,
)
from compmatch.enums import MatchSource, MatchState
from compmatch.errors import NotFoundError
from compmatch.matching.candidates import MatchCandidateResult, candidate_sort_key
from compmatch.scraping.types import ProductPage, ScrapedProduct

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    """Outcome of a confirm call, per candidate id."""

    confirmed: list[int] = field(default_factory=list)
    already_confirmed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def compute_price_hash(price: Optional[Decimal], currency: Optional[str]) -> str:
    """Stable hash of a price observation for change detection."""
    amount = "" if price is None else f"{Decimal(price):.2f}"
    payload = f"{amount}|{(currency or '').upper()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _insert_for(session: AsyncSession, table):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)


class MatchLifecycle:
    """State transitions for scraped listings, candidates and confirmed matches."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    async def stage_listings(
        self,
        store_id: int,
        competitor_id: int,
        listings: Sequence[ScrapedProduct],
    ) -> int:
        """
        Upsert this pass's listings and prune the ones no longer observed.

        Args:
            store_id: Tenant id
            competitor_id: Competitor the listings were scraped from
            listings: Listings observed in this scrape pass

        Returns:
            Number of staged rows
        """
        now = datetime.utcnow()
        rows = {}
        for listing in listings:
            rows[listing.url] = {
                "store_id": store_id,
                "competitor_id": competitor_id,
                "url": listing.url,
                "name": listing.name,
                "price": listing.price,
                "currency": listing.currency,
                "observed_at": now,
            }

        if rows:
            stmt = _insert_for(self.session, ScrapedListing).values(list(rows.values()))
            stmt = stmt.on_conflict_do_update(
                index_elements=["competitor_id", "url"],
                set_={
                    "store_id": stmt.excluded.store_id,
                    "name": stmt.excluded.name,
                    "price": stmt.excluded.price,
                    "currency": stmt.excluded.currency,
                    "observed_at": stmt.excluded.observed_at,
                },
            )
            await self.session.execute(stmt)

        prune = delete(ScrapedListing).where(ScrapedListing.competitor_id == competitor_id)
        if rows:
            prune = prune.where(ScrapedListing.url.not_in(list(rows)))
        await self.session.execute(prune)

        logger.debug(f"Staged {len(rows)} listings for competitor {competitor_id}")
        return len(rows)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def replace_candidates(
        self,
        store_id: int,
        competitor_id: int,
        run_id: Optional[str],
        candidates: Sequence[MatchCandidateResult],
    ) -> list[MatchCandidate]:
        """Delete every candidate row of the (tenant, competitor) pair and insert fresh ones."""
        await self.session.execute(
            delete(MatchCandidate).where(
                MatchCandidate.store_id == store_id,
                MatchCandidate.competitor_id == competitor_id,
            )
        )

        rows = [
            MatchCandidate(
                store_id=store_id,
                competitor_id=competitor_id,
                run_id=run_id,
                owned_item_id=candidate.owned_item_id,
                listing_url=candidate.listing_url,
                listing_name=candidate.listing_name,
                price=candidate.price,
                currency=candidate.currency,
                score=candidate.score,
                state=MatchState.CANDIDATE.value,
            )
            for candidate in candidates
        ]
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    async def list_candidates(
        self,
        store_id: int,
        competitor_id: int,
        state: MatchState = MatchState.CANDIDATE,
    ) -> list[MatchCandidate]:
        result = await self.session.execute(
            select(MatchCandidate).where(
                MatchCandidate.store_id == store_id,
                MatchCandidate.competitor_id == competitor_id,
                MatchCandidate.state == state.value,
            )
        )
        return sorted(result.scalars().all(), key=candidate_sort_key)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def _get_confirmed(self, owned_item_id: int, competitor_id: int) -> Optional[ConfirmedMatch]:
        result = await self.session.execute(
            select(ConfirmedMatch).where(
                ConfirmedMatch.owned_item_id == owned_item_id,
                ConfirmedMatch.competitor_id == competitor_id,
            )
        )
        return result.scalar_one_or_none()

    async def _upsert_confirmed(
        self,
        store_id: int,
        owned_item_id: int,
        competitor_id: int,
        listing_url: str,
        listing_name: Optional[str],
        score: Optional[float],
        price: Optional[Decimal],
        currency: str,
        source: MatchSource,
    ) -> ConfirmedMatch:
        """Create or replace the single confirmed match of an (owned item, competitor) pair."""
        match = await self._get_confirmed(owned_item_id, competitor_id)
        if match is None:
            match = ConfirmedMatch(
                store_id=store_id,
                owned_item_id=owned_item_id,
                competitor_id=competitor_id,
            )
            self.session.add(match)

        match.listing_url = listing_url
        match.listing_name = listing_name
        match.score = score
        match.source = source.value
        match.last_price = price
        match.currency = currency or "USD"
        match.confirmed_at = datetime.utcnow()
        match.price_hash = compute_price_hash(price, currency) if price is not None else None
        match.last_synced_at = None
        match.last_changed_at = None
        match.no_change_streak = 0
        match.error_streak = 0
        match.needs_attention = False
        match.last_error = None
        return match

    async def _discard_siblings(self, owned_item_id: int, competitor_id: int, keep_id: Optional[int]) -> int:
        result = await self.session.execute(
            select(MatchCandidate).where(
                MatchCandidate.owned_item_id == owned_item_id,
                MatchCandidate.competitor_id == competitor_id,
                MatchCandidate.state == MatchState.CANDIDATE.value,
            )
        )
        discarded = 0
        for sibling in result.scalars().all():
            if sibling.id != keep_id:
                sibling.state = MatchState.DISCARDED.value
                discarded += 1
        return discarded

    async def confirm(
        self,
        store_id: int,
        competitor_id: int,
        candidate_ids: Sequence[int],
        source: MatchSource = MatchSource.DISCOVERY,
    ) -> ConfirmationResult:
        """
        Promote candidates to confirmed matches.

        Ids that do not exist, belong to another tenant or competitor, or were
        already discarded are skipped. Re-confirming a candidate whose
        confirmed match already points at the same URL is a no-op. Confirming
        one candidate discards the other open candidates of its owned item.

        Args:
            store_id: Tenant id
            competitor_id: Competitor the candidates belong to
            candidate_ids: Candidate row ids, processed in order
            source: Recorded on the confirmed match

        Returns:
            ConfirmationResult listing confirmed, already confirmed and skipped ids
        """
        result = ConfirmationResult()
        ordered_ids = list(dict.fromkeys(candidate_ids))
        if not ordered_ids:
            return result

        rows = await self.session.execute(
            select(MatchCandidate).where(MatchCandidate.id.in_(ordered_ids))
        )
        by_id = {row.id: row for row in rows.scalars().all()}

        for candidate_id in ordered_ids:
            candidate = by_id.get(candidate_id)
            if (
                candidate is None
                or candidate.store_id != store_id
                or candidate.competitor_id != competitor_id
            ):
                logger.info(f"Skipping unknown or foreign candidate {candidate_id}")
                result.skipped.append(candidate_id)
                continue

            if candidate.state == MatchState.CONFIRMED.value:
                existing = await self._get_confirmed(candidate.owned_item_id, competitor_id)
                if existing is not None and existing.listing_url == candidate.listing_url:
                    result.already_confirmed.append(candidate_id)
                    continue
            elif candidate.state != MatchState.CANDIDATE.value:
                logger.info(f"Skipping candidate {candidate_id} in state {candidate.state}")
                result.skipped.append(candidate_id)
                continue

            await self._upsert_confirmed(
                store_id=store_id,
                owned_item_id=candidate.owned_item_id,
                competitor_id=competitor_id,
                listing_url=candidate.listing_url,
                listing_name=candidate.listing_name,
                score=candidate.score,
                price=candidate.price,
                currency=candidate.currency,
                source=source,
            )
            candidate.state = MatchState.CONFIRMED.value
            await self._discard_siblings(candidate.owned_item_id, competitor_id, keep_id=candidate.id)
            result.confirmed.append(candidate_id)

        await self.session.flush()
        logger.info(
            f"Confirm for competitor {competitor_id}: {len(result.confirmed)} confirmed, "
            f"{len(result.already_confirmed)} already confirmed, {len(result.skipped)} skipped"
        )
        return result

    async def auto_confirm(
        self,
        store_id: int,
        competitor_id: int,
        threshold: float = 90.0,
    ) -> ConfirmationResult:
        """Confirm, per owned item, the best open candidate scoring at or above ``threshold``.

        Owned items that already have a confirmed match for this competitor are left alone.
        """
        rows = await self.session.execute(
            select(MatchCandidate).where(
                MatchCandidate.store_id == store_id,
                MatchCandidate.competitor_id == competitor_id,
                MatchCandidate.state == MatchState.CANDIDATE.value,
                MatchCandidate.score >= threshold,
            )
        )
        confirmed_items = await self.session.execute(
            select(ConfirmedMatch.owned_item_id).where(
                ConfirmedMatch.store_id == store_id,
                ConfirmedMatch.competitor_id == competitor_id,
            )
        )
        taken = set(confirmed_items.scalars().all())

        best: dict[int, int] = {}
        for candidate in sorted(rows.scalars().all(), key=candidate_sort_key):
            if candidate.owned_item_id in taken or candidate.owned_item_id in best:
                continue
            best[candidate.owned_item_id] = candidate.id

        if not best:
            return ConfirmationResult()
        return await self.confirm(store_id, competitor_id, list(best.values()), source=MatchSource.AUTO)

    async def confirm_url(
        self,
        store_id: int,
        owned_item_id: int,
        competitor_id: int,
        url: str,
        page: ProductPage,
    ) -> ConfirmedMatch:
        """
        Confirm a user-supplied product URL for an owned item (100% confidence).

        Raises:
            NotFoundError: If the owned item or competitor is not the tenant's
        """
        item = await self.session.get(OwnedItem, owned_item_id)
        if item is None or item.store_id != store_id:
            raise NotFoundError(f"Product {owned_item_id} not found")
        competitor = await self.session.get(Competitor, competitor_id)
        if competitor is None or competitor.store_id != store_id:
            raise NotFoundError(f"Competitor {competitor_id} not found")

        match = await self._upsert_confirmed(
            store_id=store_id,
            owned_item_id=owned_item_id,
            competitor_id=competitor_id,
            listing_url=url,
            listing_name=page.name,
            score=100.0,
            price=page.price,
            currency=page.currency,
            source=MatchSource.URL,
        )
        match.last_synced_at = datetime.utcnow()
        await self._discard_siblings(owned_item_id, competitor_id, keep_id=None)
        await self.session.flush()
        logger.info(f"Confirmed URL match for product {owned_item_id} / competitor {competitor_id}: {url}")
        return match

    async def list_confirmed(
        self,
        store_id: int,
        competitor_id: Optional[int] = None,
    ) -> list[ConfirmedMatch]:
        query = select(ConfirmedMatch).where(ConfirmedMatch.store_id == store_id)
        if competitor_id is not None:
            query = query.where(ConfirmedMatch.competitor_id == competitor_id)
        result = await self.session.execute(query.order_by(ConfirmedMatch.id))
        return list(result.scalars().all())

    async def delete_confirmed(self, store_id: int, match_id: int) -> None:
        """
        Remove a confirmed match at the user's request.

        Raises:
            NotFoundError: If the match does not exist for this tenant
        """
        match = await self.session.get(ConfirmedMatch, match_id)
        if match is None or match.store_id != store_id:
            raise NotFoundError(f"Match {match_id} not found")
        await self.session.delete(match)
        await self.session.flush()
