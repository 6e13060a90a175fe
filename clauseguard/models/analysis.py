"""
Analysis Domain Models

Requests, clauses, audit steps and the final Analysis produced by the
contract analysis engine, plus per-user usage and history.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from clauseguard.core.errors import ValidationError
from clauseguard.core.utc import to_iso, utc_now


# =============================================================================
# ENUMS
# =============================================================================

class Priority(str, Enum):
    """What the requester cares about most"""
    SPEED = "speed"
    THOROUGHNESS = "thoroughness"
    COMPLIANCE = "compliance"


class RiskLevel(str, Enum):
    """Risk label for a clause or a whole contract"""
    SAFE = "safe"
    REVIEW = "review"
    RISKY = "risky"


class StepType(str, Enum):
    """Kinds of audited engine steps"""
    PRIORITIZATION = "prioritization"
    EXTRACTION = "extraction"
    RISK_TAGGING = "risk_tagging"
    CLAUSE_SUGGESTION = "clause_suggestion"
    SUMMARY = "summary"


# Step kinds the pipeline executor runs (prioritization is recorded by the engine)
PIPELINE_STEP_TYPES: Tuple[StepType, ...] = (
    StepType.EXTRACTION,
    StepType.RISK_TAGGING,
    StepType.CLAUSE_SUGGESTION,
    StepType.SUMMARY,
)


class PlanTier(str, Enum):
    """Billing plan"""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# =============================================================================
# REQUEST
# =============================================================================

@dataclass(frozen=True)
class AnalysisRequest:
    """One inbound Analyze call. Immutable once created."""
    contract_text: str
    user_id: str
    session_id: str
    priority: Optional[Priority] = None
    goal: Optional[str] = None
    context: Optional[str] = None
    file_name: str = "contract.txt"

    def validate(self, max_chars: int) -> None:
        """Raise ValidationError for empty or oversized contract text."""
        if not self.contract_text or not self.contract_text.strip():
            raise ValidationError("Contract text is empty")
        if len(self.contract_text) > max_chars:
            raise ValidationError(
                f"Contract text exceeds {max_chars} characters",
                length=len(self.contract_text),
                limit=max_chars,
            )
        if not self.user_id:
            raise ValidationError("User id is required")
        if not self.session_id:
            raise ValidationError("Session id is required")


# =============================================================================
# CLAUSES
# =============================================================================

@dataclass(frozen=True)
class ClausePosition:
    """Character offsets into the source text"""
    start: int
    end: int

    def __post_init__(self):
        if self.start < 0 or self.start > self.end:
            raise ValueError(f"Invalid clause position {self.start}..{self.end}")

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass
class Clause:
    """A contract excerpt with its risk assessment"""
    id: str
    text: str
    summary: str
    risk_level: RiskLevel
    position: ClausePosition
    risk_reasons: List[str] = field(default_factory=list)
    rewrite_suggestion: Optional[str] = None
    confidence: float = 0.7
    importance: str = "medium"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "summary": self.summary,
            "risk_level": self.risk_level.value,
            "risk_reasons": list(self.risk_reasons),
            "rewrite_suggestion": self.rewrite_suggestion,
            "confidence": self.confidence,
            "importance": self.importance,
            "position": self.position.to_dict(),
        }


# =============================================================================
# AUDIT
# =============================================================================

@dataclass(frozen=True)
class AgentStep:
    """One append-only entry of a run's audit trail"""
    step_id: str
    step_type: StepType
    step_name: str
    decision: str
    reasoning: str
    started_at: datetime
    ended_at: datetime
    tokens_used: int
    confidence: float
    input: Any = None
    output: Any = None
    fallback_used: bool = False

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type.value,
            "step_name": self.step_name,
            "decision": self.decision,
            "reasoning": self.reasoning,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "confidence": self.confidence,
            "input": self.input,
            "output": self.output,
            "fallback_used": self.fallback_used,
        }


# =============================================================================
# RESULT
# =============================================================================

@dataclass(frozen=True)
class Analysis:
    """Final result of one analysis run"""
    analysis_id: str
    user_id: str
    session_id: str
    summary: str
    clauses: Tuple[Clause, ...]
    overall_risk: RiskLevel
    confidence: float
    tokens_used: int
    processing_time_ms: int
    contract_type: str
    recommendations: Tuple[str, ...]
    audit_trail: Tuple[AgentStep, ...]
    file_name: str = "contract.txt"
    created_at: datetime = field(default_factory=utc_now)

    @property
    def fallback_used(self) -> bool:
        return any(step.fallback_used for step in self.audit_trail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "file_name": self.file_name,
            "summary": self.summary,
            "clauses": [c.to_dict() for c in self.clauses],
            "overall_risk": self.overall_risk.value,
            "confidence": self.confidence,
            "tokens_used": self.tokens_used,
            "processing_time_ms": self.processing_time_ms,
            "contract_type": self.contract_type,
            "recommendations": list(self.recommendations),
            "audit_trail": [s.to_dict() for s in self.audit_trail],
            "fallback_used": self.fallback_used,
            "created_at": to_iso(self.created_at),
        }


# =============================================================================
# USAGE & HISTORY
# =============================================================================

@dataclass
class UsageState:
    """Per-user token consumption against the plan quota"""
    user_id: str
    tokens_used: int
    tokens_limit: int
    plan: PlanTier = PlanTier.FREE
    total_uploads: int = 0
    api_calls: int = 0
    last_active: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        return self.tokens_used >= self.tokens_limit

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.tokens_limit - self.tokens_used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tokens_used": self.tokens_used,
            "tokens_limit": self.tokens_limit,
            "tokens_remaining": self.tokens_remaining,
            "plan": self.plan.value,
            "total_uploads": self.total_uploads,
            "api_calls": self.api_calls,
            "last_active": to_iso(self.last_active) if self.last_active else None,
        }


@dataclass(frozen=True)
class UserHistory:
    """What the engine remembers about a user's previous runs"""
    contract_count: int = 0
    feedback_count: int = 0
    learned_patterns: Tuple[str, ...] = ()
    recent_contract_types: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_count": self.contract_count,
            "feedback_count": self.feedback_count,
            "learned_patterns": list(self.learned_patterns),
            "recent_contract_types": list(self.recent_contract_types),
        }
