"""Unit tests for lifecycle classification and evidence summaries"""
import pytest

from discovery_engine.services.lifecycle import (
    DiscoveryThresholds,
    build_evidence_summary,
    classify_status,
    determine_discovery_type,
    determine_relationship,
    format_delay,
)


class TestClassifyStatus:
    """Tests for classify_status() ladder"""

    @pytest.mark.parametrize("confidence,occurrences,p_value,exposures,expected", [
        (0.75, 5, 0.01, 6, "strong"),
        (0.75, 4, 0.01, 6, "confirmed"),
        (0.75, 5, 0.06, 6, "confirmed"),
        (0.59, 3, 0.035, 4, "confirmed"),
        (0.55, 3, 0.10, 4, "investigating"),
        (0.49, 3, 0.035, 4, "investigating"),
        (0.30, 2, 0.5, 2, "investigating"),
        (0.02, 0, 0.18, 6, "disproven"),
        (0.14, 1, 0.5, 5, "disproven"),
        (0.14, 1, 0.5, 4, "declining"),
        (0.19, 0, 0.5, 3, "declining"),
        (0.19, 0, 0.5, 2, "emerging"),
        (0.25, 1, 0.5, 10, "emerging"),
    ])
    def test_ladder(self, confidence, occurrences, p_value, exposures, expected):
        assert classify_status(confidence, occurrences, p_value, exposures) == expected

    def test_supporting_statuses_win_first(self):
        """A strong factor is never classified by its exposure count"""
        assert classify_status(0.9, 10, 0.001, 100) == "strong"

    def test_custom_thresholds(self):
        relaxed = DiscoveryThresholds(confirmed_confidence=0.4)
        assert classify_status(0.45, 3, 0.05, 4, relaxed) == "confirmed"
        assert classify_status(0.45, 3, 0.05, 4) == "investigating"


class TestRelationshipAndType:
    """Tests for determine_relationship() and determine_discovery_type()"""

    def test_relationship(self):
        assert determine_relationship("medication", 0.5) == "decreases_risk"
        assert determine_relationship("medication", 2.0) == "increases_risk"
        assert determine_relationship("food", 0.5) == "correlates_with"
        assert determine_relationship("food", 1.2) == "correlates_with"
        assert determine_relationship("weather", 1.3) == "increases_risk"

    @pytest.mark.parametrize("category,lift,expected", [
        ("food", 3.0, "trigger"),
        ("lifestyle", 0.5, "trigger"),
        ("pattern", 2.0, "pattern"),
        ("time", 2.0, "pattern"),
        ("medication", 0.5, "protective_factor"),
        ("medication", 1.0, "correlation"),
        ("weather", 2.0, "correlation"),
        ("physiological", 2.0, "correlation"),
    ])
    def test_discovery_type(self, category, lift, expected):
        assert determine_discovery_type(category, lift) == expected


class TestEvidenceSummary:
    """Tests for build_evidence_summary()"""

    def test_all_clauses(self):
        summary = build_evidence_summary(3, 4, 2.0, 3.0, 0.035)
        assert summary == (
            "3 out of 4 times (75%) this occurred, a flare followed. "
            "Average delay: 2.0 hours. "
            "This is 3.0x more likely than random chance. "
            "Statistically significant (p<0.05)."
        )

    def test_base_sentence_only(self):
        summary = build_evidence_summary(1, 3, None, 1.2, 0.4)
        assert summary == "1 out of 3 times (33%) this occurred, a flare followed."

    def test_short_delay_in_minutes(self):
        summary = build_evidence_summary(2, 2, 0.75, 1.0, 1.0)
        assert "Average delay: 45 minutes." in summary

    def test_significance_clause_follows_alpha(self):
        relaxed = DiscoveryThresholds(significance_alpha=0.10)
        assert "Statistically significant (p<0.1)." in build_evidence_summary(3, 4, None, 1.0, 0.08, relaxed)
        assert "Statistically significant" not in build_evidence_summary(3, 4, None, 1.0, 0.08)

    def test_delay_at_threshold_omitted(self):
        summary = build_evidence_summary(2, 2, 0.5, 1.0, 1.0)
        assert "Average delay" not in summary

    def test_percentage_rounds_half_up(self):
        assert "(50%)" in build_evidence_summary(1, 2, None, 1.0, 1.0)
        assert "(67%)" in build_evidence_summary(2, 3, None, 1.0, 1.0)
        assert "(13%)" in build_evidence_summary(1, 8, None, 1.0, 1.0)

    def test_zero_appearances(self):
        assert build_evidence_summary(0, 0, None, 1.0, 1.0).startswith("0 out of 0 times (0%)")

    def test_deterministic(self):
        assert build_evidence_summary(3, 7, 5.25, 2.0, 0.01) == build_evidence_summary(3, 7, 5.25, 2.0, 0.01)


class TestFormatDelay:
    def test_minutes(self):
        assert format_delay(0.51) == "31 minutes"

    def test_hours(self):
        assert format_delay(1.0) == "1.0 hours"
        assert format_delay(26.44) == "26.4 hours"
