"""
Tests for schemas/report.py and schemas/knowledge.py validation rules.
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from clippingai.schemas.knowledge import KnowledgeUpdate
from clippingai.schemas.report import ReportInput, ReportType, ResearchDecision


class TestReportInput:
    """Tests for ReportInput normalisation."""

    def test_defaults(self):
        report_input = ReportInput(company_name="Acme", company_domain="acme.com")
        assert report_input.date_range_days == 7
        assert report_input.report_type == ReportType.MEDIA_MONITORING
        assert report_input.competitors == ()
        assert report_input.use_deep_research is None

    def test_domain_is_normalised(self):
        report_input = ReportInput(company_name="Acme", company_domain=" HTTPS://Acme.com/ ")
        assert report_input.company_domain == "acme.com"

    def test_competitors_deduplicated_case_insensitively(self):
        report_input = ReportInput(
            company_name="Acme",
            company_domain="acme.com",
            competitors=["Globex", " globex ", "", "Initech"],
        )
        assert report_input.competitors == ("Globex", "Initech")

    def test_blank_optionals_become_none(self):
        report_input = ReportInput(
            company_name="Acme", company_domain="acme.com", industry="  ", owner_id=""
        )
        assert report_input.industry is None
        assert report_input.owner_id is None

    def test_naive_cutoff_is_utc(self):
        report_input = ReportInput(
            company_name="Acme",
            company_domain="acme.com",
            last_report_at=datetime(2025, 11, 1, 8, 0),
        )
        assert report_input.last_report_at.tzinfo == timezone.utc

    @pytest.mark.parametrize(
        "overrides",
        [
            {"company_name": "   "},
            {"company_domain": "https://"},
            {"date_range_days": 0},
            {"date_range_days": 366},
            {"competitors": [f"C{i}" for i in range(21)]},
        ],
    )
    def test_rejects_invalid_input(self, overrides):
        data = {"company_name": "Acme", "company_domain": "acme.com"}
        data.update(overrides)
        with pytest.raises(ValidationError):
            ReportInput(**data)

    def test_is_immutable(self):
        report_input = ReportInput(company_name="Acme", company_domain="acme.com")
        with pytest.raises(ValidationError):
            report_input.company_name = "Other"


class TestResearchDecision:
    """Tests for ResearchDecision coercion."""

    def test_negative_confidence_clamped(self):
        assert ResearchDecision(action="search", confidence=-5).confidence == 0

    def test_string_query_becomes_list(self):
        assert ResearchDecision(action="search", queries="acme layoffs").queries == ["acme layoffs"]


class TestKnowledgeUpdate:
    """Tests for KnowledgeUpdate coercion."""

    def test_blank_scalars_are_null(self):
        assert KnowledgeUpdate(market_position="  ").market_position is None

    def test_non_dict_insights_are_null(self):
        assert KnowledgeUpdate(competitive_insights=["Globex"]).competitive_insights is None

    def test_developments_without_summary_are_dropped(self):
        update = KnowledgeUpdate(recent_developments=[{"date": "2025-11-01"}, "Opened plant"])
        assert [d.summary for d in update.recent_developments] == ["Opened plant"]
