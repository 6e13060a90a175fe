"""
Contract Analysis Engine

Single entry point for analyzing a contract:

    request -> validate -> admit (quota) -> decide step order -> run pipeline
            -> aggregate -> {persist, bill} -> remember session -> Analysis

Every run owns its AuditTrail and PipelineState; the only state shared across
runs is the model client's bearer token and this engine's session store.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from clauseguard.core.config import Settings, get_settings
from clauseguard.core.utc import utc_now
from clauseguard.models.analysis import (
    AgentStep,
    Analysis,
    AnalysisRequest,
    StepType,
    UserHistory,
)
from clauseguard.services.audit_trail import AuditTrail
from clauseguard.services.decision_policy import DecisionPolicy
from clauseguard.services.fallback import FallbackSynthesizer, fallback_summary
from clauseguard.services.granite_client import GraniteClient
from clauseguard.services.heuristics import RiskHeuristic, detect_contract_type
from clauseguard.services.pipeline import PipelineExecutor
from clauseguard.services.repository import AnalysisRepository
from clauseguard.services.risk_aggregator import overall_confidence, overall_risk
from clauseguard.services.session_store import InMemorySessionStore, SessionMemory, SessionStore
from clauseguard.services.usage import UsageAccountant

logger = logging.getLogger(__name__)

PRIORITIZATION_TOKENS = 50


class ContractAnalysisEngine:
    """
    Orchestrates one analysis per call to analyze().

    Rejections (ValidationError, QuotaExceededError) and credential failures
    (AuthenticationError) escape; everything else degrades into a complete
    Analysis with the fallback recorded on its audit trail.
    """

    def __init__(
        self,
        repository: AnalysisRepository,
        model_client: Optional[GraniteClient] = None,
        settings: Optional[Settings] = None,
        policy: Optional[DecisionPolicy] = None,
        heuristic: Optional[RiskHeuristic] = None,
        session_store: Optional[SessionStore] = None,
        executor: Optional[PipelineExecutor] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.usage = UsageAccountant(repository)
        self.policy = policy or DecisionPolicy()
        self.sessions: SessionStore = session_store or InMemorySessionStore()
        self.executor = executor or PipelineExecutor(
            model_client=model_client,
            heuristic=heuristic,
            synthesizer=FallbackSynthesizer.from_settings(self.settings),
            settings=self.settings,
        )

    async def analyze(self, request: AnalysisRequest) -> Analysis:
        request.validate(self.settings.max_contract_chars)
        await self.usage.admit(request.user_id)

        started = time.perf_counter()
        text = request.contract_text
        analysis_id = f"analysis_{uuid4().hex[:12]}"
        logger.info(f"[ENGINE] {analysis_id} started for {request.user_id} ({len(text)} chars)")

        history = await self._load_history(request.user_id)
        trail = AuditTrail(run_id=analysis_id)

        decided_at = utc_now()
        decision = self.policy.decide(text, history, request.priority)
        trail.record(
            step_type=StepType.PRIORITIZATION,
            step_name="Execution Strategy",
            decision=" -> ".join(s.value for s in decision.steps),
            reasoning=decision.reasoning,
            started_at=decided_at,
            tokens_used=PRIORITIZATION_TOKENS,
            confidence=decision.confidence,
            input={
                "contract_length": len(text),
                "priority": request.priority.value if request.priority else None,
                "goal": request.goal,
                "previous_contracts": history.contract_count,
                "feedback_count": history.feedback_count,
            },
            output=decision.to_dict(),
        )

        state = await self.executor.run(
            decision.steps, text, trail, request.file_name, request.goal, request.context
        )

        steps = trail.steps
        analysis = Analysis(
            analysis_id=analysis_id,
            user_id=request.user_id,
            session_id=request.session_id,
            summary=state.summary or fallback_summary(text),
            clauses=tuple(state.clauses),
            overall_risk=overall_risk(state.clauses, str(self.settings.risky_clause_ratio)),
            confidence=overall_confidence(steps),
            tokens_used=trail.total_tokens,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            contract_type=detect_contract_type(text),
            recommendations=tuple(state.suggestions),
            audit_trail=steps,
            file_name=request.file_name,
        )

        await self._persist_and_bill(analysis)
        self._remember(request, analysis, decision.to_dict())

        logger.info(
            f"[ENGINE] {analysis_id} complete: {analysis.overall_risk.value}, "
            f"{len(analysis.clauses)} clauses, {analysis.tokens_used} tokens, "
            f"{analysis.processing_time_ms}ms{' (fallback)' if analysis.fallback_used else ''}"
        )
        return analysis

    async def _load_history(self, user_id: str) -> UserHistory:
        try:
            return await self.repository.load_history(user_id)
        except Exception as e:
            logger.warning(f"[ENGINE] History unavailable for {user_id}, deciding without it: {e}")
            return UserHistory()

    async def _persist(self, analysis: Analysis) -> None:
        await self.repository.save(analysis)
        await self.repository.record_contract(analysis.user_id, analysis)

    async def _persist_and_bill(self, analysis: Analysis) -> None:
        """Fan out persistence and billing; neither failure cancels the other."""
        persisted, billed = await asyncio.gather(
            self._persist(analysis),
            self.usage.charge(analysis.user_id, analysis.tokens_used),
            return_exceptions=True,
        )
        if isinstance(persisted, BaseException):
            logger.error(f"[ENGINE] Failed to persist {analysis.analysis_id}: {persisted}")
        if isinstance(billed, BaseException):
            logger.error(
                f"[ENGINE] Failed to bill {analysis.user_id} for {analysis.analysis_id}: {billed}"
            )

    def _remember(self, request: AnalysisRequest, analysis: Analysis, decision: Dict[str, Any]) -> None:
        memory = self.sessions.get(request.session_id) or SessionMemory(
            session_id=request.session_id,
            user_id=request.user_id,
        )
        memory.analysis_ids.append(analysis.analysis_id)
        memory.last_decision = decision
        memory.last_audit_trail = analysis.audit_trail
        self.sessions.put(memory)

    # =========================================================================
    # Sessions
    # =========================================================================

    def clear_session(self, session_id: str) -> bool:
        cleared = self.sessions.clear(session_id)
        if cleared:
            logger.info(f"[ENGINE] Cleared session {session_id}")
        return cleared

    def get_session_audit(self, session_id: str) -> Optional[List[AgentStep]]:
        """Steps of the session's most recent run, or None for an unknown session."""
        memory = self.sessions.get(session_id)
        if memory is None:
            return None
        return list(memory.last_audit_trail)

    def get_session(self, session_id: str) -> Optional[SessionMemory]:
        return self.sessions.get(session_id)
