"""
Audit Trail Recorder

Append-only, per-run log of AgentStep records. One instance per analysis
run; it is never shared across runs.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Tuple
from uuid import uuid4

from clauseguard.core.utc import utc_now
from clauseguard.models.analysis import AgentStep, StepType

logger = logging.getLogger(__name__)


class AuditTrail:
    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or uuid4().hex[:12]
        self._steps: List[AgentStep] = []

    def record(
        self,
        step_type: StepType,
        step_name: str,
        decision: str,
        reasoning: str,
        started_at: datetime,
        tokens_used: int,
        confidence: float,
        input: Any = None,
        output: Any = None,
        fallback_used: bool = False,
        ended_at: Optional[datetime] = None,
    ) -> AgentStep:
        """Freeze a step and append it. Confidence is clamped into [0, 1]."""
        step = AgentStep(
            step_id=f"step_{uuid4().hex[:12]}",
            step_type=step_type,
            step_name=step_name,
            decision=decision,
            reasoning=reasoning,
            started_at=started_at,
            ended_at=ended_at or utc_now(),
            tokens_used=max(0, int(tokens_used)),
            confidence=min(1.0, max(0.0, confidence)),
            input=input,
            output=output,
            fallback_used=fallback_used,
        )
        self._steps.append(step)
        logger.debug(
            f"[AUDIT] {self.run_id} {step.step_type.value}: {decision} "
            f"({step.tokens_used} tokens, confidence {step.confidence})"
        )
        return step

    @property
    def steps(self) -> Tuple[AgentStep, ...]:
        return tuple(self._steps)

    @property
    def total_tokens(self) -> int:
        return sum(s.tokens_used for s in self._steps)

    def __len__(self) -> int:
        return len(self._steps)
