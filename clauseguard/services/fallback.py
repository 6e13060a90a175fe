"""
Fallback Synthesizer

Rule-based stand-in for the model when it is unreachable, too slow, or not
configured. Pure and idempotent: the same text and file name always produce
the same result, with no I/O.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from clauseguard.core.config import Settings
from clauseguard.models.analysis import Clause, ClausePosition, RiskLevel
from clauseguard.services.heuristics import PhraseMatch, PhraseTable, detect_contract_type

MATCHED_CLAUSE_CONFIDENCE = 0.85
DEFAULT_CLAUSE_CONFIDENCE = 0.90

# Context kept on each side of a matched phrase
EXCERPT_RADIUS = 120


def estimate_tokens(text: str) -> int:
    """Length-proportional token estimate, ceil(len / 4); 0 for empty text."""
    return (len(text) + 3) // 4


def fallback_summary(text: str) -> str:
    """Templated summary used when the model summary is unavailable."""
    return (
        f"Contract analysis completed for {int(len(text) / 1000 + 0.5)}k characters. "
        "Professional legal review recommended."
    )


@dataclass
class FallbackResult:
    """Analysis-shaped output of the synthesizer"""
    summary: str
    clauses: List[Clause]
    overall_risk: RiskLevel
    risk_score: int
    confidence: float
    tokens_used: int
    contract_type: str
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "clauses": [c.to_dict() for c in self.clauses],
            "overall_risk": self.overall_risk.value,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "tokens_used": self.tokens_used,
            "contract_type": self.contract_type,
            "recommendations": list(self.recommendations),
        }


class FallbackSynthesizer:
    """Phrase-table analysis that always terminates in bounded local time."""

    def __init__(self, table: Optional[PhraseTable] = None):
        self.table = table or PhraseTable()

    @classmethod
    def from_settings(cls, settings: Settings) -> "FallbackSynthesizer":
        return cls(PhraseTable(
            weights={
                RiskLevel.RISKY: settings.fallback_risky_weight,
                RiskLevel.REVIEW: settings.fallback_review_weight,
                RiskLevel.SAFE: settings.fallback_safe_weight,
            },
            risky_score=settings.fallback_risky_score,
            review_score=settings.fallback_review_score,
        ))

    def synthesize(self, contract_text: str, file_name: str) -> FallbackResult:
        matches = self.table.scan(contract_text)
        score = sum(m.weight for m in matches)

        if matches:
            clauses = [self._matched_clause(contract_text, i, m) for i, m in enumerate(matches, start=1)]
            overall = self.table.verdict(score)
        else:
            clauses = [self._default_clause(contract_text)]
            overall = RiskLevel.SAFE

        recommendations = []
        for m in matches:
            if m.phrase.recommendation not in recommendations:
                recommendations.append(m.phrase.recommendation)

        confidence = round(sum(c.confidence for c in clauses) / len(clauses), 2)
        contract_type = detect_contract_type(contract_text)

        return FallbackResult(
            summary=self._summary(contract_text, file_name, contract_type, overall, matches),
            clauses=clauses,
            overall_risk=overall,
            risk_score=score,
            confidence=confidence,
            tokens_used=estimate_tokens(contract_text),
            contract_type=contract_type,
            recommendations=recommendations,
        )

    def _matched_clause(self, text: str, index: int, match: PhraseMatch) -> Clause:
        start = max(0, match.start - EXCERPT_RADIUS)
        end = min(len(text), match.end + EXCERPT_RADIUS)
        phrase = match.phrase
        return Clause(
            id=f"fallback_{index}",
            text=text[start:end].strip(),
            summary=f"Detected '{phrase.phrase}' - {phrase.reason.lower()}",
            risk_level=phrase.tier,
            risk_reasons=[phrase.reason],
            rewrite_suggestion=phrase.recommendation if phrase.tier != RiskLevel.SAFE else None,
            confidence=MATCHED_CLAUSE_CONFIDENCE,
            position=ClausePosition(match.start, match.end),
        )

    @staticmethod
    def _default_clause(text: str) -> Clause:
        return Clause(
            id="fallback_1",
            text=text[:400].strip(),
            summary="Standard terms - no high-risk language detected",
            risk_level=RiskLevel.SAFE,
            risk_reasons=[],
            confidence=DEFAULT_CLAUSE_CONFIDENCE,
            position=ClausePosition(0, len(text)),
        )

    @staticmethod
    def _summary(
        text: str,
        file_name: str,
        contract_type: str,
        overall: RiskLevel,
        matches: List[PhraseMatch],
    ) -> str:
        concerns: Tuple[str, ...] = tuple(
            m.phrase.reason.lower() for m in matches if m.phrase.tier != RiskLevel.SAFE
        )[:3]
        findings = (
            f" Key concerns include {', '.join(concerns)}."
            if concerns else " No major red flags were identified."
        )
        return (
            f"[FALLBACK ANALYSIS] {file_name}: {contract_type} agreement of {len(text)} characters "
            f"with overall risk {overall.value}.{findings}"
        )
