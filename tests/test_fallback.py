"""
Tests for the fallback synthesizer and phrase table.
"""

import math

import pytest

from clauseguard.models.analysis import RiskLevel
from clauseguard.services.fallback import FallbackSynthesizer, estimate_tokens, fallback_summary
from clauseguard.services.heuristics import PhraseTable


@pytest.fixture
def synthesizer():
    return FallbackSynthesizer()


class TestScenarios:
    def test_non_compete_and_confidential_is_review(self, synthesizer):
        text = (
            "The employee agrees to a non-compete covenant for two years and must keep "
            "all business information confidential."
        )
        result = synthesizer.synthesize(text, "employment.txt")

        assert [c.risk_level for c in result.clauses] == [RiskLevel.REVIEW, RiskLevel.REVIEW]
        assert [c.id for c in result.clauses] == ["fallback_1", "fallback_2"]
        assert result.risk_score == 4
        assert result.overall_risk == RiskLevel.REVIEW

    def test_no_phrase_gives_single_standard_clause(self, synthesizer):
        text = "The parties agree to cooperate in good faith on the project schedule."
        result = synthesizer.synthesize(text, "plain.txt")

        assert len(result.clauses) == 1
        clause = result.clauses[0]
        assert clause.risk_level == RiskLevel.SAFE
        assert clause.confidence == 0.90
        assert clause.position.start == 0
        assert clause.position.end == len(text)
        assert result.overall_risk == RiskLevel.SAFE
        assert result.confidence == 0.9

    def test_risky_phrases_push_score_over_cutoff(self, synthesizer):
        text = "Vendor accepts unlimited liability under this perpetual license."
        result = synthesizer.synthesize(text, "license.txt")

        assert result.risk_score == 6
        assert result.overall_risk == RiskLevel.RISKY
        assert all(c.confidence == 0.85 for c in result.clauses)

    def test_liquidated_damages_is_review_tier(self, synthesizer):
        text = "The Supplier shall pay liquidated damages of one percent per week of delay."
        result = synthesizer.synthesize(text, "supply.txt")

        assert [c.risk_level for c in result.clauses] == [RiskLevel.REVIEW]
        assert result.risk_score == 2
        assert result.clauses[0].rewrite_suggestion == "Verify damages are reasonable and enforceable"
        assert PhraseTable().tag_clause(text) == (RiskLevel.REVIEW, ["Penalty or liquidated damages"])

    def test_matching_is_case_insensitive_with_first_position(self, synthesizer):
        text = "Early TERMINATION is allowed. Termination fees apply."
        result = synthesizer.synthesize(text, "x.txt")

        clause = result.clauses[0]
        assert clause.position.start == text.index("TERMINATION")
        assert clause.position.end == clause.position.start + len("termination")


class TestDeterminism:
    def test_identical_input_identical_output(self, synthesizer):
        text = "This confidential agreement includes a termination right with notice."
        first = synthesizer.synthesize(text, "a.txt")
        second = synthesizer.synthesize(text, "a.txt")

        assert first.to_dict() == second.to_dict()

    def test_summary_mentions_file_name_and_length(self, synthesizer):
        text = "Simple terms only."
        result = synthesizer.synthesize(text, "deal.txt")

        assert "deal.txt" in result.summary
        assert str(len(text)) in result.summary


class TestTokenEstimate:
    @pytest.mark.parametrize("text", ["", "a", "abcd", "abcde", "x" * 1001])
    def test_ceil_of_quarter_length(self, text):
        assert estimate_tokens(text) == math.ceil(len(text) / 4)

    def test_result_carries_estimate(self, synthesizer):
        text = "y" * 37
        assert synthesizer.synthesize(text, "t.txt").tokens_used == 10


class TestConfiguration:
    def test_weights_and_cutoffs_are_parameters(self):
        table = PhraseTable(
            weights={RiskLevel.RISKY: 10, RiskLevel.REVIEW: 1, RiskLevel.SAFE: 0},
            risky_score=10,
            review_score=1,
        )
        result = FallbackSynthesizer(table).synthesize("A perpetual grant.", "x.txt")

        assert result.risk_score == 10
        assert result.overall_risk == RiskLevel.RISKY

    def test_from_settings_uses_configured_weights(self, settings):
        settings.fallback_review_weight = 5
        result = FallbackSynthesizer.from_settings(settings).synthesize("A non-compete.", "x.txt")

        assert result.risk_score == 5
        assert result.overall_risk == RiskLevel.REVIEW


def test_templated_summary_rounds_to_thousands():
    assert fallback_summary("z" * 3400) == (
        "Contract analysis completed for 3k characters. Professional legal review recommended."
    )


def test_templated_summary_rounds_half_up():
    assert fallback_summary("z" * 2500).startswith("Contract analysis completed for 3k characters.")
    assert fallback_summary("z" * 1499).startswith("Contract analysis completed for 1k characters.")
