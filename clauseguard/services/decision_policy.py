"""
Decision Policy

Chooses the step order for a run from lexical cues in the contract, the
caller's priority and what we know about the user. First matching rule wins.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from clauseguard.models.analysis import Priority, StepType, UserHistory

DEFAULT_ORDER: Tuple[StepType, ...] = (
    StepType.EXTRACTION,
    StepType.RISK_TAGGING,
    StepType.CLAUSE_SUGGESTION,
    StepType.SUMMARY,
)

SUGGESTION_FIRST_ORDER: Tuple[StepType, ...] = (
    StepType.CLAUSE_SUGGESTION,
    StepType.EXTRACTION,
    StepType.RISK_TAGGING,
    StepType.SUMMARY,
)

DEFAULT_REASONING = "Standard contract analysis workflow"

# Seconds
ESTIMATED_TIME_BY_PRIORITY: Dict[Optional[Priority], int] = {
    Priority.SPEED: 20,
    Priority.THOROUGHNESS: 45,
    Priority.COMPLIANCE: 60,
    None: 45,
}

POLICY_CONFIDENCE = 0.8


@dataclass(frozen=True)
class PolicyRule:
    name: str
    pattern: re.Pattern
    steps: Tuple[StepType, ...]
    reasoning: str


DEFAULT_RULES: Tuple[PolicyRule, ...] = (
    PolicyRule(
        name="high_risk",
        pattern=re.compile(r"termination|arbitration", re.IGNORECASE),
        steps=DEFAULT_ORDER,
        reasoning="Detected high-risk clauses (termination/arbitration), prioritizing risk assessment",
    ),
    PolicyRule(
        name="confidentiality",
        pattern=re.compile(r"confidential|\bnda\b", re.IGNORECASE),
        steps=SUGGESTION_FIRST_ORDER,
        reasoning="Detected confidentiality clauses, prioritizing rewrite suggestions",
    ),
)


@dataclass(frozen=True)
class PolicyDecision:
    steps: Tuple[StepType, ...]
    reasoning: str
    estimated_time: int
    rule: str = "default"
    confidence: float = POLICY_CONFIDENCE
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.value for s in self.steps],
            "reasoning": self.reasoning,
            "estimated_time": self.estimated_time,
            "rule": self.rule,
            "confidence": self.confidence,
            **self.metadata,
        }


class DecisionPolicy:
    """Rule table over lexical presence. Never fails, never calls out."""

    def __init__(self, rules: Tuple[PolicyRule, ...] = DEFAULT_RULES):
        self.rules = rules

    def decide(
        self,
        contract_text: str,
        history: Optional[UserHistory] = None,
        priority: Optional[Priority] = None,
    ) -> PolicyDecision:
        history = history or UserHistory()
        estimated = ESTIMATED_TIME_BY_PRIORITY.get(priority, ESTIMATED_TIME_BY_PRIORITY[None])
        metadata = {
            "previous_contracts": history.contract_count,
            "priority": priority.value if priority else None,
        }

        for rule in self.rules:
            if rule.pattern.search(contract_text):
                return PolicyDecision(
                    steps=rule.steps,
                    reasoning=rule.reasoning,
                    estimated_time=estimated,
                    rule=rule.name,
                    metadata=metadata,
                )

        return PolicyDecision(
            steps=DEFAULT_ORDER,
            reasoning=DEFAULT_REASONING,
            estimated_time=estimated,
            metadata=metadata,
        )
