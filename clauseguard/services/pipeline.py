"""
Step Pipeline Executor

Runs the ordered analysis steps for one run. Each StepType maps to exactly
one step implementation; a step that raises loses its contribution but does
not stop the steps after it. Credential failures are the exception: they
abort the run.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from clauseguard.core.config import Settings, get_settings
from clauseguard.core.errors import AuthenticationError, ExternalServiceError, StepExecutionError
from clauseguard.core.utc import utc_now
from clauseguard.models.analysis import (
    PIPELINE_STEP_TYPES,
    Clause,
    ClausePosition,
    RiskLevel,
    StepType,
)
from clauseguard.services.audit_trail import AuditTrail
from clauseguard.services.fallback import FallbackSynthesizer, estimate_tokens, fallback_summary
from clauseguard.services.granite_client import GraniteClient
from clauseguard.services.heuristics import KeywordRiskHeuristic, RiskHeuristic

logger = logging.getLogger(__name__)

STEP_FAILURE_CONFIDENCE = 0.6

_BLANK_LINE = re.compile(r"\r?\n[ \t\r]*\n")


# =============================================================================
# STATE
# =============================================================================

@dataclass
class PipelineState:
    """Mutable working state of one run, owned by the executor."""
    clauses: List[Clause] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    summary: Optional[str] = None


@dataclass
class StepContext:
    contract_text: str
    file_name: str
    goal: Optional[str] = None
    context: Optional[str] = None


@dataclass
class StepOutcome:
    """What a step reports back for its audit record"""
    decision: str
    reasoning: str
    tokens_used: int
    confidence: float
    input: Any = None
    output: Any = None
    fallback_used: bool = False


# =============================================================================
# STEPS
# =============================================================================

class PipelineStep(ABC):
    step_type: StepType
    step_name: str

    @abstractmethod
    async def run(self, state: PipelineState, ctx: StepContext) -> StepOutcome:
        ...


class ExtractionStep(PipelineStep):
    """Blank-line segmentation into provisional clauses longer than min_chars."""

    step_type = StepType.EXTRACTION
    step_name = "Clause Extraction"

    def __init__(self, min_chars: int = 100, max_clauses: int = 10):
        self.min_chars = min_chars
        self.max_clauses = max_clauses

    def segments(self, text: str) -> List[ClausePosition]:
        bounds = []
        start = 0
        for sep in _BLANK_LINE.finditer(text):
            bounds.append((start, sep.start()))
            start = sep.end()
        bounds.append((start, len(text)))

        positions = []
        for seg_start, seg_end in bounds:
            raw = text[seg_start:seg_end]
            stripped = raw.strip()
            if len(stripped) <= self.min_chars:
                continue
            lead = len(raw) - len(raw.lstrip())
            begin = seg_start + lead
            positions.append(ClausePosition(begin, begin + len(stripped)))
            if len(positions) >= self.max_clauses:
                break
        return positions

    async def run(self, state: PipelineState, ctx: StepContext) -> StepOutcome:
        text = ctx.contract_text
        clauses = []
        for n, pos in enumerate(self.segments(text), start=1):
            span = text[pos.start:pos.end]
            clauses.append(Clause(
                id=f"clause_{n}",
                text=span,
                summary=f"Clause {n}: {span[:80]}{'...' if len(span) > 80 else ''}",
                risk_level=RiskLevel.REVIEW,
                position=pos,
                confidence=0.7,
                importance="medium",
            ))
        state.clauses = clauses
        return StepOutcome(
            decision=f"Extracted {len(clauses)} clauses",
            reasoning=(
                f"Split on blank lines, kept segments longer than {self.min_chars} "
                f"characters (max {self.max_clauses})"
            ),
            tokens_used=100,
            confidence=0.75,
            input={"contract_length": len(text)},
            output={"clause_count": len(clauses), "clause_ids": [c.id for c in clauses]},
        )


class RiskTaggingStep(PipelineStep):
    step_type = StepType.RISK_TAGGING
    step_name = "Risk Tagging"

    def __init__(self, heuristic: RiskHeuristic):
        self.heuristic = heuristic

    async def run(self, state: PipelineState, ctx: StepContext) -> StepOutcome:
        counts = {level.value: 0 for level in RiskLevel}
        for clause in state.clauses:
            level, reasons = self.heuristic.tag_clause(clause.text)
            clause.risk_level = level
            clause.risk_reasons = reasons
            clause.confidence = 0.8
            counts[level.value] += 1
        return StepOutcome(
            decision=f"Tagged {len(state.clauses)} clauses",
            reasoning=f"Applied {type(self.heuristic).__name__} to each extracted clause",
            tokens_used=150,
            confidence=0.8,
            input={"clause_count": len(state.clauses)},
            output=counts,
        )


class ClauseSuggestionStep(PipelineStep):
    step_type = StepType.CLAUSE_SUGGESTION
    step_name = "Clause Suggestions"

    def __init__(self, max_clauses: int = 3):
        self.max_clauses = max_clauses

    async def run(self, state: PipelineState, ctx: StepContext) -> StepOutcome:
        risky = [c for c in state.clauses if c.risk_level == RiskLevel.RISKY][:self.max_clauses]
        suggestions = []
        for clause in risky:
            suggestion = f"Consider revising clause: {clause.text[:50]}..."
            clause.rewrite_suggestion = suggestion
            suggestions.append(suggestion)
        state.suggestions.extend(suggestions)
        return StepOutcome(
            decision=f"Generated {len(suggestions)} rewrite suggestions",
            reasoning=f"Suggested revisions for up to {self.max_clauses} risky clauses",
            tokens_used=200,
            confidence=0.75,
            input={"risky_clause_count": len(risky)},
            output={"suggestions": suggestions},
        )


class SummaryStep(PipelineStep):
    """Model summary, or the templated fallback when the model cannot answer."""

    step_type = StepType.SUMMARY
    step_name = "Executive Summary"

    def __init__(
        self,
        model_client: Optional[GraniteClient],
        synthesizer: FallbackSynthesizer,
        settings: Settings,
    ):
        self.model_client = model_client
        self.synthesizer = synthesizer
        self.settings = settings

    def build_prompt(self, text: str, goal: Optional[str] = None, context: Optional[str] = None) -> str:
        limit = self.settings.summary_prompt_chars
        excerpt = text if len(text) <= limit else text[:limit] + "\n\n[... contract truncated ...]"
        sections = [
            "You are a contract analyst. Summarize the following contract in plain "
            "English for a non-lawyer. Name the parties' main obligations and flag "
            "any terms that deserve legal review."
        ]
        if goal:
            sections.append(f"USER GOAL:\n{goal.strip()}")
        if context:
            sections.append(f"ADDITIONAL CONTEXT:\n{context.strip()}")
        sections.append(f"Contract:\n---\n{excerpt}\n---\n\nSummary:")
        return "\n\n".join(sections)

    async def run(self, state: PipelineState, ctx: StepContext) -> StepOutcome:
        text = ctx.contract_text
        prompt_input = {
            "contract_length": len(text),
            "max_new_tokens": self.settings.summary_max_new_tokens,
            "goal": ctx.goal,
            "context": ctx.context,
        }

        if self.model_client is None or not self.model_client.is_configured:
            return self._fallback(state, ctx, "model client is not configured", prompt_input)

        try:
            result = await self.model_client.generate(
                self.build_prompt(text, ctx.goal, ctx.context),
                max_new_tokens=self.settings.summary_max_new_tokens,
                temperature=self.settings.summary_temperature,
                top_p=self.settings.summary_top_p,
            )
        except ExternalServiceError as e:
            logger.warning(f"[PIPELINE] Summary model call failed ({e.error_code}): {e.message}")
            return self._fallback(state, ctx, e.message, prompt_input)

        summary = result.text.strip()
        if not summary:
            return self._fallback(state, ctx, "model returned an empty summary", prompt_input)

        state.summary = summary
        return StepOutcome(
            decision="Generated executive summary",
            reasoning=f"Summarized with {self.settings.granite_model_id}",
            tokens_used=result.total_tokens,
            confidence=0.9,
            input=prompt_input,
            output={
                "source": "granite",
                "summary_chars": len(summary),
                "input_token_count": result.input_token_count,
                "generated_token_count": result.generated_token_count,
            },
        )

    def _fallback(
        self,
        state: PipelineState,
        ctx: StepContext,
        reason: str,
        prompt_input: Dict[str, Any],
    ) -> StepOutcome:
        synthesized = self.synthesizer.synthesize(ctx.contract_text, ctx.file_name)
        state.summary = fallback_summary(ctx.contract_text)
        return StepOutcome(
            decision="Used templated summary",
            reasoning=f"Fallback path: {reason}",
            tokens_used=estimate_tokens(ctx.contract_text),
            confidence=0.6,
            input=prompt_input,
            output={"source": "fallback_synthesizer", "reason": reason, "snapshot": synthesized.to_dict()},
            fallback_used=True,
        )


# =============================================================================
# EXECUTOR
# =============================================================================

class PipelineExecutor:
    """
    Dispatches StepType values to step implementations, strictly in order.

    Construction fails if any pipeline step type has no implementation.
    """

    def __init__(
        self,
        model_client: Optional[GraniteClient] = None,
        heuristic: Optional[RiskHeuristic] = None,
        synthesizer: Optional[FallbackSynthesizer] = None,
        settings: Optional[Settings] = None,
        steps: Optional[Mapping[StepType, PipelineStep]] = None,
    ):
        self.settings = settings or get_settings()
        if steps is None:
            steps = {
                StepType.EXTRACTION: ExtractionStep(
                    self.settings.extraction_min_chars, self.settings.extraction_max_clauses
                ),
                StepType.RISK_TAGGING: RiskTaggingStep(heuristic or KeywordRiskHeuristic()),
                StepType.CLAUSE_SUGGESTION: ClauseSuggestionStep(self.settings.suggestion_max_clauses),
                StepType.SUMMARY: SummaryStep(
                    model_client,
                    synthesizer or FallbackSynthesizer.from_settings(self.settings),
                    self.settings,
                ),
            }
        missing = [t.value for t in PIPELINE_STEP_TYPES if t not in steps]
        if missing:
            raise ValueError(f"No step implementation for: {', '.join(missing)}")
        self._steps: Dict[StepType, PipelineStep] = dict(steps)

    async def run(
        self,
        steps: Sequence[StepType],
        contract_text: str,
        trail: AuditTrail,
        file_name: str = "contract.txt",
        goal: Optional[str] = None,
        context: Optional[str] = None,
    ) -> PipelineState:
        state = PipelineState()
        ctx = StepContext(contract_text=contract_text, file_name=file_name, goal=goal, context=context)

        for step_type in steps:
            step = self._steps.get(step_type)
            if step is None:
                raise ValueError(f"{step_type.value} is not a pipeline step")

            started = utc_now()
            checkpoint = copy.deepcopy(state)
            try:
                outcome = await step.run(state, ctx)
            except AuthenticationError:
                raise
            except Exception as e:
                error = StepExecutionError(step_type.value, e)
                logger.error(f"[PIPELINE] {error.message}", exc_info=True)
                state = checkpoint
                trail.record(
                    step_type=step_type,
                    step_name=step.step_name,
                    decision=f"{step.step_name} failed",
                    reasoning=f"Step raised {type(e).__name__}; contribution dropped, continuing on fallback path",
                    started_at=started,
                    tokens_used=0,
                    confidence=STEP_FAILURE_CONFIDENCE,
                    output={"source": "step_error", "error": str(e)},
                    fallback_used=True,
                )
                continue

            trail.record(
                step_type=step_type,
                step_name=step.step_name,
                decision=outcome.decision,
                reasoning=outcome.reasoning,
                started_at=started,
                tokens_used=outcome.tokens_used,
                confidence=outcome.confidence,
                input=outcome.input,
                output=outcome.output,
                fallback_used=outcome.fallback_used,
            )

        logger.info(
            f"[PIPELINE] {trail.run_id} ran {len(steps)} steps, "
            f"{len(state.clauses)} clauses, {trail.total_tokens} tokens"
        )
        return state
