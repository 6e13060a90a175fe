"""
Risk Heuristics

Lexical rules used wherever the engine has to label text without the model:
- KeywordRiskHeuristic tags extracted clauses during the pipeline
- PhraseTable scores whole contracts for the fallback synthesizer
- detect_contract_type labels the agreement

Both heuristics implement RiskHeuristic so the pipeline can be handed a
different strategy without changes to the executor.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from clauseguard.models.analysis import RiskLevel


class RiskHeuristic(ABC):
    """Strategy that assigns a risk label and reasons to a clause."""

    @abstractmethod
    def tag_clause(self, text: str) -> Tuple[RiskLevel, List[str]]:
        ...


# =============================================================================
# Keyword rules (pipeline risk tagging)
# =============================================================================

@dataclass(frozen=True)
class KeywordRule:
    keywords: Tuple[str, ...]
    risk_level: RiskLevel
    reason: str


DEFAULT_KEYWORD_RULES: Tuple[KeywordRule, ...] = (
    KeywordRule(("liability", "damages"), RiskLevel.RISKY, "Contains liability provisions"),
    KeywordRule(("termination", "breach"), RiskLevel.REVIEW, "Contains termination clauses"),
)


class KeywordRiskHeuristic(RiskHeuristic):
    """First matching rule wins; no match means safe with no reasons."""

    def __init__(self, rules: Sequence[KeywordRule] = DEFAULT_KEYWORD_RULES):
        self.rules = tuple(rules)

    def tag_clause(self, text: str) -> Tuple[RiskLevel, List[str]]:
        lowered = text.lower()
        for rule in self.rules:
            if any(keyword in lowered for keyword in rule.keywords):
                return rule.risk_level, [rule.reason]
        return RiskLevel.SAFE, []


# =============================================================================
# Phrase table (fallback synthesis)
# =============================================================================

@dataclass(frozen=True)
class RiskPhrase:
    phrase: str
    tier: RiskLevel
    reason: str
    recommendation: str


DEFAULT_PHRASES: Tuple[RiskPhrase, ...] = (
    # risky tier
    RiskPhrase("unlimited liability", RiskLevel.RISKY,
               "Unlimited liability exposure",
               "Negotiate liability caps or mutual liability limitations"),
    RiskPhrase("perpetual", RiskLevel.RISKY,
               "Indefinite or perpetual terms",
               "Add specific termination clauses and renewal terms"),
    RiskPhrase("irrevocable", RiskLevel.RISKY,
               "Irrevocable commitments",
               "Ask for an exit path or a revocation window"),
    # review tier
    RiskPhrase("liquidated damages", RiskLevel.REVIEW,
               "Penalty or liquidated damages",
               "Verify damages are reasonable and enforceable"),
    RiskPhrase("non-compete", RiskLevel.REVIEW,
               "Non-compete restrictions",
               "Ensure non-compete terms are reasonable in scope, time, and geography"),
    RiskPhrase("confidential", RiskLevel.REVIEW,
               "Confidentiality obligations",
               "Review confidentiality scope and ensure mutual protection"),
    RiskPhrase("termination", RiskLevel.REVIEW,
               "Termination provisions",
               "Negotiate reasonable notice periods and termination procedures"),
    RiskPhrase("indemnif", RiskLevel.REVIEW,
               "Indemnification clauses",
               "Ensure indemnification is mutual and scope is clearly defined"),
    RiskPhrase("automatically renew", RiskLevel.REVIEW,
               "Automatic renewal",
               "Add an opt-out window before each renewal"),
    # safe tier
    RiskPhrase("notice", RiskLevel.SAFE,
               "Notice requirements",
               "Confirm notice addresses and delivery methods"),
    RiskPhrase("governing law", RiskLevel.SAFE,
               "Jurisdiction and governing law clauses",
               "Standard legal provision - ensure jurisdiction is acceptable"),
    RiskPhrase("force majeure", RiskLevel.SAFE,
               "Force majeure provisions",
               "Standard protection clause - ensure it covers relevant scenarios"),
)


@dataclass(frozen=True)
class PhraseMatch:
    phrase: RiskPhrase
    start: int
    end: int
    weight: int


class PhraseTable(RiskHeuristic):
    """
    Case-insensitive phrase scan with per-tier weights.

    Weights and verdict cutoffs are constructor parameters; the defaults
    (3/2/1 and 6/3) are tuning constants, not semantic guarantees.
    """

    def __init__(
        self,
        phrases: Sequence[RiskPhrase] = DEFAULT_PHRASES,
        weights: Optional[Dict[RiskLevel, int]] = None,
        risky_score: int = 6,
        review_score: int = 3,
    ):
        self.phrases = tuple(phrases)
        self.weights = weights or {RiskLevel.RISKY: 3, RiskLevel.REVIEW: 2, RiskLevel.SAFE: 1}
        self.risky_score = risky_score
        self.review_score = review_score
        self._patterns = [
            (phrase, re.compile(re.escape(phrase.phrase), re.IGNORECASE))
            for phrase in self.phrases
        ]

    def scan(self, text: str) -> List[PhraseMatch]:
        """One match per table phrase found, in table order, at its first occurrence."""
        matches = []
        for phrase, pattern in self._patterns:
            found = pattern.search(text)
            if found:
                matches.append(PhraseMatch(phrase, found.start(), found.end(), self.weights[phrase.tier]))
        return matches

    def verdict(self, score: int) -> RiskLevel:
        if score >= self.risky_score:
            return RiskLevel.RISKY
        if score >= self.review_score:
            return RiskLevel.REVIEW
        return RiskLevel.SAFE

    def tag_clause(self, text: str) -> Tuple[RiskLevel, List[str]]:
        matches = self.scan(text)
        if not matches:
            return RiskLevel.SAFE, []
        order = [RiskLevel.SAFE, RiskLevel.REVIEW, RiskLevel.RISKY]
        worst = max((m.phrase.tier for m in matches), key=order.index)
        return worst, [m.phrase.reason for m in matches]


# =============================================================================
# Contract type
# =============================================================================

CONTRACT_TYPE_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("employment", ("employment", "employee")),
    ("service", ("service", "consulting")),
    ("license", ("license", "software")),
    ("nda", ("non-disclosure", "confidential")),
    ("lease", ("lease", "rental")),
    ("sale", ("purchase", "sale of goods")),
    ("partnership", ("partnership", "joint venture")),
)

_NDA_WORD = re.compile(r"\bnda\b", re.IGNORECASE)


def detect_contract_type(text: str) -> str:
    """Heuristic contract label; 'general' when nothing matches."""
    lowered = text.lower()
    for label, keywords in CONTRACT_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return label
        if label == "nda" and _NDA_WORD.search(text):
            return label
    return "general"
