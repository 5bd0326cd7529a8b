"""Tests for similarity scorers."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from compmatch.matching.normalizer import normalize
from compmatch.matching.similarity import TokenSetScorer, TrigramScorer, select_scorer


class TestTokenSetScorer:
    def setup_method(self):
        self.scorer = TokenSetScorer()

    def test_identical(self):
        assert self.scorer.score("headphones pro", "headphones pro") == 100.0

    def test_partial_overlap(self):
        # 2 shared, 1 differing at weight 2
        assert self.scorer.score("headphones wireless", "headphones pro wireless") == 50.0
        # 2 shared, 2 differing
        assert self.scorer.score("a b c", "a b d") == 33.33

    def test_shared_attribute_alone_stays_low(self):
        assert self.scorer.score("headphones wireless", "mouse wireless") == 20.0

    def test_attribute_difference_keeps_variants_apart(self):
        assert self.scorer.score(normalize("Bluetooth Mouse"), normalize("Mouse")) == 33.33

    def test_weight_one_is_jaccard(self):
        jaccard = TokenSetScorer(mismatch_weight=1)
        assert jaccard.score("headphones", "headphones pro") == 50.0
        assert jaccard.score("a b c", "a") == 33.33

    def test_rejects_non_positive_weight(self):
        with pytest.raises(ValueError):
            TokenSetScorer(mismatch_weight=0)

    def test_disjoint(self):
        assert self.scorer.score("headphones", "mouse") == 0.0

    def test_empty_is_zero(self):
        assert self.scorer.score("", "mouse") == 0.0
        assert self.scorer.score("mouse", "") == 0.0

    @pytest.mark.parametrize(
        "a,b",
        [("gaming mouse", "mouse"), ("usb cable", "cable usb c"), ("x", "y z")],
    )
    def test_symmetric_and_bounded(self, a, b):
        forward = self.scorer.score(a, b)
        assert forward == self.scorer.score(b, a)
        assert 0.0 <= forward <= 100.0


def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


class TestTrigramScorer:
    async def test_prepare_runs_one_query_and_score_reads_table(self):
        result = MagicMock()
        result.all.return_value = [
            ("headphones", "headphones pro", 0.6),
            ("headphones", "mouse", 0.0),
        ]
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        scorer = TrigramScorer(_session_factory(session))

        await scorer.prepare(["headphones"], ["headphones pro", "mouse"])

        assert session.execute.await_count == 1
        assert scorer.score("headphones", "headphones pro") == 60.0
        assert scorer.score("headphones pro", "headphones") == 60.0
        assert scorer.score("headphones", "mouse") == 0.0
        assert session.execute.await_count == 1

    async def test_unprepared_pair_raises(self):
        scorer = TrigramScorer(MagicMock())
        with pytest.raises(LookupError):
            scorer.score("a", "b")

    def test_identical_and_empty_need_no_table(self):
        scorer = TrigramScorer(MagicMock())
        assert scorer.score("mouse", "mouse") == 100.0
        assert scorer.score("", "mouse") == 0.0


class TestSelectScorer:
    async def test_probe_success_picks_trigram(self):
        session = MagicMock()
        session.execute = AsyncMock()
        scorer = await select_scorer(_session_factory(session))
        assert isinstance(scorer, TrigramScorer)

    async def test_probe_failure_picks_token_set(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("no function")))
        scorer = await select_scorer(_session_factory(session))
        assert isinstance(scorer, TokenSetScorer)

    async def test_sqlite_has_no_trigram(self, session_factory):
        scorer = await select_scorer(session_factory)
        assert isinstance(scorer, TokenSetScorer)

    async def test_disabled(self):
        scorer = await select_scorer(MagicMock(), use_trigram=False)
        assert isinstance(scorer, TokenSetScorer)
