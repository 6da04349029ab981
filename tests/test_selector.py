"""
Tests for selector.py

Covers the post-parse selection policy and the selector's no-news path.
"""
import asyncio
from datetime import datetime, timedelta, timezone

from clippingai.schemas.report import ArticleCategory
from clippingai.services.selector import (
    CandidateSelector,
    apply_selection_policy,
    build_selection_prompt,
)
from clippingai.services.tracing import RunContext

from tests.fixtures.pipeline_fixtures import (
    FakeCompletionClient,
    make_input,
    make_result,
    selection_response,
)


RESULTS = [make_result(i, days_ago=i + 1) for i in range(6)]


class TestApplySelectionPolicy:
    """Tests for apply_selection_policy."""

    def test_keeps_valid_entries_in_order(self):
        parsed = {
            "selected": [
                {"index": 2, "category": "competitor", "reason": "rival launch"},
                {"index": 0, "category": "company_news", "reason": "own news"},
            ]
        }
        candidates = apply_selection_policy(parsed, RESULTS, make_input(), 5)
        assert [c.url for c in candidates] == [RESULTS[2].url, RESULTS[0].url]
        assert candidates[0].category == ArticleCategory.COMPETITOR
        assert candidates[0].reason == "rival launch"

    def test_duplicate_category_keeps_first(self, caplog):
        parsed = {
            "selected": [
                {"index": 0, "category": "funding"},
                {"index": 1, "category": "funding"},
                {"index": 2, "category": "technology"},
            ]
        }
        with caplog.at_level("WARNING"):
            candidates = apply_selection_policy(parsed, RESULTS, make_input(), 5)
        assert [c.url for c in candidates] == [RESULTS[0].url, RESULTS[2].url]
        assert len({c.category for c in candidates}) == len(candidates)
        assert "more than one 'funding'" in caplog.text

    def test_bad_indexes_and_categories_are_dropped(self):
        parsed = {
            "selected": [
                {"index": 99, "category": "funding"},
                {"index": "x", "category": "funding"},
                {"index": 1, "category": "gossip"},
                {"index": 3, "category": "Regulation"},
                {"index": 3, "category": "opinion"},
                "not a dict",
            ]
        }
        candidates = apply_selection_policy(parsed, RESULTS, make_input(), 5)
        assert [(c.url, c.category) for c in candidates] == [
            (RESULTS[3].url, ArticleCategory.REGULATION)
        ]

    def test_drops_items_before_previous_report(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=2, hours=12)
        parsed = {
            "selected": [
                {"index": 0, "category": "company_news"},  # 1 day old
                {"index": 4, "category": "competitor"},  # 5 days old
            ]
        }
        candidates = apply_selection_policy(
            parsed, RESULTS, make_input(last_report_at=cutoff), 5
        )
        assert [c.url for c in candidates] == [RESULTS[0].url]

    def test_truncates_to_target_count(self):
        parsed = {
            "selected": [
                {"index": i, "category": cat.value}
                for i, cat in enumerate(list(ArticleCategory)[:6])
            ]
        }
        assert len(apply_selection_policy(parsed, RESULTS, make_input(), 3)) == 3

    def test_missing_selected_list(self):
        assert apply_selection_policy({"analysis": "meh"}, RESULTS, make_input(), 5) == []


class TestBuildSelectionPrompt:
    """Tests for build_selection_prompt."""

    def test_numbers_results_and_allows_zero(self):
        prompt = build_selection_prompt(RESULTS[:2], make_input(), 5)
        assert "[0] Story 0" in prompt
        assert "[1] Story 1" in prompt
        assert "ZERO articles is a valid answer" in prompt

    def test_mentions_cutoff_when_set(self):
        cutoff = datetime(2025, 11, 1, 8, 0, tzinfo=timezone.utc)
        prompt = build_selection_prompt(RESULTS, make_input(last_report_at=cutoff), 5)
        assert "2025-11-01 08:00 UTC" in prompt


class TestCandidateSelector:
    """Tests for CandidateSelector.select."""

    def test_zero_selection_is_valid(self):
        llm = FakeCompletionClient(
            {"candidate_selection": selection_response([], analysis="nothing new")}
        )
        ctx = RunContext(make_input())
        assert asyncio.run(CandidateSelector(llm).select(RESULTS, make_input(), 5, ctx)) == []
        assert ctx.trace.steps[-1].data["analysis"] == "nothing new"

    def test_parse_failure_returns_empty(self):
        llm = FakeCompletionClient({"candidate_selection": "I think all of them are great"})
        assert asyncio.run(CandidateSelector(llm).select(RESULTS, make_input(), 5)) == []

    def test_no_results_skips_the_model(self):
        llm = FakeCompletionClient()
        assert asyncio.run(CandidateSelector(llm).select([], make_input(), 5)) == []
        assert llm.calls == []

    def test_below_minimum_only_warns(self, caplog):
        llm = FakeCompletionClient(
            {"candidate_selection": selection_response([{"index": 0, "category": "funding"}])}
        )
        with caplog.at_level("WARNING"):
            candidates = asyncio.run(
                CandidateSelector(llm).select(RESULTS, make_input(min_articles=3), 5)
            )
        assert len(candidates) == 1
        assert "below the requested minimum" in caplog.text
