"""Candidate builder: scores owned items against scraped listings."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional, Protocol, Sequence

from compmatch.errors import InvalidInputError
from compmatch.matching.normalizer import require_normalized
from compmatch.matching.similarity import SimilarityScorer
from compmatch.scraping.types import ScrapedProduct

logger = logging.getLogger(__name__)


class OwnedLike(Protocol):
    id: int
    name: str


@dataclass(frozen=True)
class MatchCandidateResult:
    """A scored pairing of one owned item and one scraped listing."""

    owned_item_id: int
    owned_name: str
    listing_url: str
    listing_name: str
    price: Optional[Decimal]
    currency: str
    score: float


def candidate_sort_key(candidate: Any) -> tuple:
    """Score desc, then lower price (missing last), then URL."""
    price = candidate.price
    return (
        -float(candidate.score),
        price is None,
        price if price is not None else Decimal(0),
        candidate.listing_url,
    )


def _normalize_all(items: Iterable[Any], kind: str, stopwords) -> list[tuple[Any, str]]:
    normalized = []
    for item in items:
        try:
            normalized.append((item, require_normalized(item.name, stopwords)))
        except InvalidInputError as e:
            logger.info(f"Skipping {kind} with empty normalized name: {e}")
    return normalized


async def prepare_scorer(
    scorer: SimilarityScorer,
    owned: Sequence[OwnedLike],
    scraped: Sequence[ScrapedProduct],
    stopwords: Optional[Iterable[str]] = None,
) -> None:
    """Run the scorer's batch preparation over the names build_candidates will score."""
    left = [name for _, name in _normalize_all(owned, "owned item", stopwords)]
    right = [name for _, name in _normalize_all(scraped, "listing", stopwords)]
    await scorer.prepare(left, right)


def build_candidates(
    owned: Sequence[OwnedLike],
    scraped: Sequence[ScrapedProduct],
    scorer: SimilarityScorer,
    min_score: float,
    top_k_per_scraped: int,
    stopwords: Optional[Iterable[str]] = None,
) -> list[MatchCandidateResult]:
    """
    Score every owned/scraped pair and keep the best matches.

    Items whose normalized name is empty are skipped and logged. For each
    scraped listing only the ``top_k_per_scraped`` owned items scoring at or
    above ``min_score`` are kept (ties broken by owned item id).

    Args:
        owned: Tenant catalog items (anything with ``id`` and ``name``)
        scraped: Listings from the competitor scrape
        scorer: Prepared similarity scorer
        min_score: Score floor, 0-100
        top_k_per_scraped: Owned items kept per scraped listing
        stopwords: Normalizer stopwords (defaults apply when None)

    Returns:
        Candidates sorted by score desc, price asc (missing last), URL asc
    """
    if not owned or not scraped or top_k_per_scraped <= 0:
        return []

    owned_norm = _normalize_all(owned, "owned item", stopwords)
    scraped_norm = _normalize_all(scraped, "listing", stopwords)
    if not owned_norm or not scraped_norm:
        return []

    candidates: list[MatchCandidateResult] = []
    for listing, listing_name in scraped_norm:
        scored = []
        for item, item_name in owned_norm:
            score = scorer.score(item_name, listing_name)
            if score >= min_score:
                scored.append((score, item))

        scored.sort(key=lambda pair: (-pair[0], pair[1].id))
        for score, item in scored[:top_k_per_scraped]:
            candidates.append(
                MatchCandidateResult(
                    owned_item_id=item.id,
                    owned_name=item.name,
                    listing_url=listing.url,
                    listing_name=listing.name,
                    price=listing.price,
                    currency=listing.currency,
                    score=score,
                )
            )

    candidates.sort(key=candidate_sort_key)
    logger.debug(
        f"Built {len(candidates)} candidates from {len(owned_norm)} owned x "
        f"{len(scraped_norm)} scraped (min_score={min_score}, top_k={top_k_per_scraped})"
    )
    return candidates


def group_by_owned_item(candidates: Iterable[Any]) -> dict[int, list[Any]]:
    """
    Group ranked candidates by owned item, keeping the first one per listing URL.

    Works on anything with ``owned_item_id``, ``listing_url``, ``score``,
    ``price`` (build results or stored candidate rows). Each group is sorted
    with the candidate ordering.
    """
    groups: dict[int, list[Any]] = {}
    seen: set[tuple[int, str]] = set()
    for candidate in sorted(candidates, key=candidate_sort_key):
        key = (candidate.owned_item_id, candidate.listing_url)
        if key in seen:
            continue
        seen.add(key)
        groups.setdefault(candidate.owned_item_id, []).append(candidate)
    return groups
