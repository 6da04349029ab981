"""
Tests for research.py

Covers the stop conditions of the deep-research loop and source
deduplication across rounds.
"""
import asyncio

from clippingai.schemas.report import ResearchDecision
from clippingai.services.research import (
    MAX_RESEARCH_ITERATIONS,
    DeepResearchAgent,
    parse_decision,
)
from clippingai.services.tracing import RunContext

from tests.fixtures.pipeline_fixtures import (
    FakeCompletionClient,
    FakeSearchConnector,
    decision_response,
    make_candidate,
    make_input,
    make_result,
)


def _run(agent, candidate, ctx=None):
    return asyncio.run(agent.research(candidate, make_input(), ctx))


class TestParseDecision:
    """Tests for parse_decision."""

    def test_valid_decision(self):
        decision = parse_decision(decision_response("search", 40, ["q1", "q2", "q3"]))
        assert isinstance(decision, ResearchDecision)
        assert decision.action == "search"
        assert decision.queries == ["q1", "q2"]

    def test_action_is_case_insensitive_and_confidence_clamped(self):
        decision = parse_decision('{"action": "DONE", "confidence": 250}')
        assert decision.action == "done"
        assert decision.confidence == 100

    def test_invalid_action_is_unparseable(self):
        assert parse_decision('{"action": "maybe", "confidence": 50}') is None

    def test_no_json_is_unparseable(self):
        assert parse_decision("Let me think about this...") is None


class TestDeepResearchAgent:
    """Tests for DeepResearchAgent.research."""

    def test_done_on_first_evaluation(self):
        llm = FakeCompletionClient({"deep_research_decision": decision_response("done")})
        connector = FakeSearchConnector()
        session = _run(DeepResearchAgent(llm, connector), make_candidate(1))
        assert session.stop_reason == "done"
        assert session.iterations == 0
        assert session.sources == []
        assert connector.calls == []

    def test_iteration_cap_with_low_confidence(self):
        # Always asks for more and never gets confident: capped at three rounds.
        llm = FakeCompletionClient(
            {"deep_research_decision": decision_response("search", 40, ["q1", "q2"])}
        )
        connector = FakeSearchConnector(default=[])
        session = _run(DeepResearchAgent(llm, connector), make_candidate(1))
        assert session.stop_reason == "iteration_cap"
        assert session.iterations == MAX_RESEARCH_ITERATIONS
        assert len(llm.calls_of("deep_research_decision")) == MAX_RESEARCH_ITERATIONS
        assert len(connector.calls) == 2 * MAX_RESEARCH_ITERATIONS

    def test_confident_after_search_stops(self):
        llm = FakeCompletionClient(
            {"deep_research_decision": decision_response("search", 92, ["q1"])}
        )
        connector = FakeSearchConnector(default=[make_result(10)])
        session = _run(DeepResearchAgent(llm, connector), make_candidate(1))
        assert session.stop_reason == "confident"
        assert session.iterations == 1
        assert [s.url for s in session.sources] == [make_result(10).url]

    def test_unparseable_decision_stops_softly(self):
        llm = FakeCompletionClient({"deep_research_decision": "garbled output"})
        session = _run(DeepResearchAgent(llm, FakeSearchConnector()), make_candidate(1))
        assert session.stop_reason == "unparseable"
        assert session.sources == []

    def test_search_without_queries_stops(self):
        llm = FakeCompletionClient({"deep_research_decision": decision_response("search", 50, [])})
        session = _run(DeepResearchAgent(llm, FakeSearchConnector()), make_candidate(1))
        assert session.stop_reason == "no_queries"

    def test_model_error_stops_softly(self):
        llm = FakeCompletionClient({"deep_research_decision": RuntimeError("rate limited")})
        session = _run(DeepResearchAgent(llm, FakeSearchConnector()), make_candidate(1))
        assert session.stop_reason == "error"

    def test_sources_deduplicated_against_primary_and_earlier_rounds(self):
        candidate = make_candidate(1)
        llm = FakeCompletionClient(
            {
                "deep_research_decision": [
                    decision_response("search", 30, ["first", "second"]),
                    decision_response("search", 60, ["third"]),
                    decision_response("done", 95),
                ]
            }
        )
        connector = FakeSearchConnector(
            by_query={
                "first": [make_result(1), make_result(2)],  # story-1 is the primary
                "second": [make_result(2), make_result(3)],
                "third": [make_result(3), make_result(4)],
            }
        )
        session = _run(DeepResearchAgent(llm, connector), candidate)
        urls = [s.url for s in session.sources]
        assert urls == [make_result(n).url for n in (2, 3, 4)]
        assert candidate.url not in urls
        assert len(urls) == len(set(urls))
        assert session.stop_reason == "done"
        assert session.iterations == 2

    def test_failed_follow_up_contributes_nothing(self):
        llm = FakeCompletionClient(
            {"deep_research_decision": [decision_response("search", 95, ["bad", "good"])]}
        )
        connector = FakeSearchConnector(
            by_query={"bad": RuntimeError("timeout"), "good": [make_result(7)]}
        )
        session = _run(DeepResearchAgent(llm, connector), make_candidate(1))
        assert [s.url for s in session.sources] == [make_result(7).url]

    def test_follow_ups_use_three_results_and_no_day_filter(self):
        llm = FakeCompletionClient(
            {"deep_research_decision": decision_response("search", 95, ["q"])}
        )
        connector = FakeSearchConnector(default=[])
        _run(DeepResearchAgent(llm, connector), make_candidate(1))
        assert connector.calls[0]["max_results"] == 3
        assert connector.calls[0]["days"] is None

    def test_trace_records_each_round(self):
        llm = FakeCompletionClient(
            {
                "deep_research_decision": [
                    decision_response("search", 50, ["q"]),
                    decision_response("done", 95),
                ]
            }
        )
        candidate = make_candidate(1)
        ctx = RunContext(make_input())
        _run(DeepResearchAgent(llm, FakeSearchConnector(default=[make_result(5)])), candidate, ctx)
        stages = [s.stage for s in ctx.trace.steps]
        assert stages == [
            "deep_research_decision",
            "deep_research_search",
            "deep_research_decision",
            "deep_research_complete",
        ]
        assert ctx.trace.steps[-1].data["stop_reason"] == "done"
