"""Similarity scorers for normalized product names.

Scores are on a 0-100 scale. Two strategies exist:

- ``TrigramScorer`` uses PostgreSQL's ``pg_trgm`` ``similarity()``. All pairs
  are fetched in one query during ``prepare``; ``score`` only reads that table.
- ``TokenSetScorer`` is a pure-Python token overlap score (a symmetric
  Tversky index), used when the database has no trigram support.

``select_scorer`` probes the database once at startup and picks one.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.types import Text

logger = logging.getLogger(__name__)

PROBE_SQL = "SELECT similarity('probe', 'probe')"

PAIRS_SQL = text(
    "SELECT l.name AS left_name, r.name AS right_name, similarity(l.name, r.name) AS sim "
    "FROM unnest(:left_names) AS l(name) CROSS JOIN unnest(:right_names) AS r(name)"
).bindparams(
    bindparam("left_names", type_=ARRAY(Text)),
    bindparam("right_names", type_=ARRAY(Text)),
)


class SimilarityScorer(ABC):
    """Strategy interface for name similarity."""

    name: str = "base"

    async def prepare(self, left: Iterable[str], right: Iterable[str]) -> None:
        """Precompute whatever ``score`` needs for the given name sets."""
        return None

    @abstractmethod
    def score(self, a: str, b: str) -> float:
        """Return similarity of two normalized names in [0, 100]."""
        ...


class TokenSetScorer(SimilarityScorer):
    """
    Symmetric Tversky index over whitespace token sets, scaled to 0-100.

    ``shared / (shared + w * only_in_a + w * only_in_b)``. With ``w = 1``
    this is the Jaccard index; the default ``w = 2`` makes a token one name
    has and the other lacks (a shared "wireless" next to "mouse" vs
    "headphones") outweigh the overlap.
    """

    name = "token_set"

    def __init__(self, mismatch_weight: float = 2.0):
        if mismatch_weight <= 0:
            raise ValueError("mismatch_weight must be positive")
        self.mismatch_weight = mismatch_weight

    def score(self, a: str, b: str) -> float:
        tokens_a = set((a or "").split())
        tokens_b = set((b or "").split())
        if not tokens_a or not tokens_b:
            return 0.0
        shared = len(tokens_a & tokens_b)
        if not shared:
            return 0.0
        differing = len(tokens_a - tokens_b) + len(tokens_b - tokens_a)
        return round(100.0 * shared / (shared + self.mismatch_weight * differing), 2)


class TrigramScorer(SimilarityScorer):
    """pg_trgm similarity, batch-fetched per discovery run."""

    name = "trigram"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._table: dict[tuple[str, str], float] = {}

    async def prepare(self, left: Iterable[str], right: Iterable[str]) -> None:
        """
        Fetch similarity for every (left, right) pair in a single query.

        Args:
            left: Normalized owned item names
            right: Normalized scraped listing names
        """
        left_names = sorted({name for name in left if name})
        right_names = sorted({name for name in right if name})
        table: dict[tuple[str, str], float] = {}

        if left_names and right_names:
            async with self.session_factory() as session:
                result = await session.execute(
                    PAIRS_SQL,
                    {"left_names": left_names, "right_names": right_names},
                )
                for left_name, right_name, sim in result.all():
                    value = round(100.0 * float(sim or 0.0), 2)
                    table[(left_name, right_name)] = value
                    table[(right_name, left_name)] = value

        self._table = table
        logger.debug(f"Prepared trigram table: {len(left_names)}x{len(right_names)} pairs")

    def score(self, a: str, b: str) -> float:
        if not a or not b:
            return 0.0
        if a == b:
            return 100.0
        try:
            return self._table[(a, b)]
        except KeyError:
            raise LookupError(f"Pair not prepared: {a!r} / {b!r}") from None


async def select_scorer(
    session_factory: Optional[async_sessionmaker[AsyncSession]],
    use_trigram: bool = True,
    token_mismatch_weight: float = 2.0,
) -> SimilarityScorer:
    """
    Pick the scorer once at startup.

    Args:
        session_factory: Session factory for the probe query (None forces the fallback)
        use_trigram: Set False to skip the probe and always use token-set scoring
        token_mismatch_weight: Mismatch weight for the token-set fallback

    Returns:
        TrigramScorer when ``similarity()`` is callable, otherwise TokenSetScorer
    """
    if not use_trigram or session_factory is None:
        logger.info("Similarity scorer: token_set (trigram disabled)")
        return TokenSetScorer(token_mismatch_weight)

    try:
        async with session_factory() as session:
            await session.execute(text(PROBE_SQL))
    except SQLAlchemyError as e:
        logger.warning(f"pg_trgm unavailable, using token_set scorer: {e}")
        return TokenSetScorer(token_mismatch_weight)

    logger.info("Similarity scorer: trigram (pg_trgm)")
    return TrigramScorer(session_factory)
