"""
Analysis Repository

Persistence boundary of the engine: completed analyses, per-user usage and
contract history. The engine depends only on the AnalysisRepository protocol;
SqlAnalysisRepository is the async SQLAlchemy implementation.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError

from clauseguard.core.config import Settings, get_settings
from clauseguard.core.database import get_db_session
from clauseguard.core.utc import utc_now
from clauseguard.models.analysis import Analysis, PlanTier, RiskLevel, UsageState, UserHistory
from clauseguard.models.records import AnalysisRecord, ContractHistoryRecord, UsageRecord

logger = logging.getLogger(__name__)

RECENT_CONTRACT_TYPES = 5
RECENT_ANALYSES = 5


class AnalysisRepository(Protocol):
    async def save(self, analysis: Analysis) -> None:
        ...

    async def get_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def list_analyses(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        ...

    async def delete_analysis(self, analysis_id: str) -> bool:
        ...

    async def stats(self, user_id: str) -> Dict[str, Any]:
        ...

    async def load_usage(self, user_id: str) -> UsageState:
        ...

    async def save_usage(self, state: UsageState) -> None:
        ...

    async def increment_usage(self, user_id: str, tokens: int) -> UsageState:
        ...

    async def load_history(self, user_id: str) -> UserHistory:
        ...

    async def record_contract(self, user_id: str, analysis: Analysis) -> None:
        ...


def _usage_from_record(row: UsageRecord) -> UsageState:
    return UsageState(
        user_id=row.user_id,
        tokens_used=row.tokens_used,
        tokens_limit=row.tokens_limit,
        plan=PlanTier(row.plan),
        total_uploads=row.total_uploads,
        api_calls=row.api_calls,
        last_active=row.last_active,
    )


class SqlAnalysisRepository:
    """AnalysisRepository over the configured async database."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # =========================================================================
    # Analyses
    # =========================================================================

    async def save(self, analysis: Analysis) -> None:
        async with get_db_session() as db:
            db.add(AnalysisRecord(
                id=analysis.analysis_id,
                user_id=analysis.user_id,
                session_id=analysis.session_id,
                contract_type=analysis.contract_type,
                overall_risk=analysis.overall_risk.value,
                confidence=analysis.confidence,
                tokens_used=analysis.tokens_used,
                processing_time_ms=analysis.processing_time_ms,
                summary=analysis.summary,
                payload=analysis.to_dict(),
                created_at=analysis.created_at,
            ))
        logger.debug(f"Saved analysis {analysis.analysis_id}")

    async def get_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        async with get_db_session() as db:
            row = await db.get(AnalysisRecord, analysis_id)
            return dict(row.payload) if row else None

    async def list_analyses(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest first; headline fields only."""
        async with get_db_session() as db:
            result = await db.execute(
                select(AnalysisRecord)
                .where(AnalysisRecord.user_id == user_id)
                .order_by(desc(AnalysisRecord.created_at))
                .limit(limit)
            )
            return [
                {
                    "analysis_id": row.id,
                    "session_id": row.session_id,
                    "contract_type": row.contract_type,
                    "overall_risk": row.overall_risk,
                    "confidence": row.confidence,
                    "tokens_used": row.tokens_used,
                    "created_at": row.payload.get("created_at"),
                }
                for row in result.scalars()
            ]

    async def delete_analysis(self, analysis_id: str) -> bool:
        """Delete a stored analysis. Contract history rows are kept."""
        async with get_db_session() as db:
            result = await db.execute(delete(AnalysisRecord).where(AnalysisRecord.id == analysis_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted analysis {analysis_id}")
        return deleted

    async def stats(self, user_id: str) -> Dict[str, Any]:
        """Dashboard figures: clause risk counts over stored analyses, quota, recent runs."""
        usage = await self.load_usage(user_id)
        counts = {level.value: 0 for level in RiskLevel}
        async with get_db_session() as db:
            payloads = await db.execute(
                select(AnalysisRecord.payload).where(AnalysisRecord.user_id == user_id)
            )
            for payload in payloads.scalars():
                for clause in payload.get("clauses", []):
                    level = clause.get("risk_level")
                    if level in counts:
                        counts[level] += 1

        return {
            "user_id": user_id,
            "total_uploads": usage.total_uploads,
            "safe_clauses": counts[RiskLevel.SAFE.value],
            "review_clauses": counts[RiskLevel.REVIEW.value],
            "risky_clauses": counts[RiskLevel.RISKY.value],
            "tokens_used": usage.tokens_used,
            "tokens_limit": usage.tokens_limit,
            "plan": usage.plan.value,
            "recent_analyses": await self.list_analyses(user_id, RECENT_ANALYSES),
        }

    # =========================================================================
    # Usage
    # =========================================================================

    async def load_usage(self, user_id: str) -> UsageState:
        """Load usage, creating a default-plan row on first use."""
        async with get_db_session() as db:
            row = await db.get(UsageRecord, user_id)
            if row is not None:
                return _usage_from_record(row)

        plan = self.settings.default_plan
        try:
            async with get_db_session() as db:
                row = UsageRecord(
                    user_id=user_id,
                    plan=plan,
                    tokens_used=0,
                    tokens_limit=self.settings.plan_token_limits[plan],
                    total_uploads=0,
                    api_calls=0,
                    created_at=utc_now(),
                )
                db.add(row)
            logger.info(f"Created {plan} usage record for {user_id}")
            return _usage_from_record(row)
        except IntegrityError:
            # Concurrent first use; the other insert won
            async with get_db_session() as db:
                row = await db.get(UsageRecord, user_id)
                return _usage_from_record(row)

    async def save_usage(self, state: UsageState) -> None:
        async with get_db_session() as db:
            row = await db.get(UsageRecord, state.user_id)
            if row is None:
                row = UsageRecord(user_id=state.user_id, created_at=utc_now())
                db.add(row)
            row.plan = state.plan.value
            row.tokens_used = state.tokens_used
            row.tokens_limit = state.tokens_limit
            row.total_uploads = state.total_uploads
            row.api_calls = state.api_calls
            row.last_active = state.last_active

    async def increment_usage(self, user_id: str, tokens: int) -> UsageState:
        """Single UPDATE ... SET col = col + n, so concurrent charges never lose writes."""
        await self.load_usage(user_id)
        async with get_db_session() as db:
            await db.execute(
                update(UsageRecord)
                .where(UsageRecord.user_id == user_id)
                .values(
                    tokens_used=UsageRecord.tokens_used + tokens,
                    total_uploads=UsageRecord.total_uploads + 1,
                    api_calls=UsageRecord.api_calls + 1,
                    last_active=utc_now(),
                )
            )
        async with get_db_session() as db:
            row = await db.get(UsageRecord, user_id)
            return _usage_from_record(row)

    # =========================================================================
    # History
    # =========================================================================

    async def load_history(self, user_id: str) -> UserHistory:
        async with get_db_session() as db:
            contract_count = await db.scalar(
                select(func.count(ContractHistoryRecord.id))
                .where(ContractHistoryRecord.user_id == user_id)
            )
            feedback_count = await db.scalar(
                select(func.count(ContractHistoryRecord.id))
                .where(ContractHistoryRecord.user_id == user_id)
                .where(ContractHistoryRecord.feedback.is_not(None))
            )
            patterns = await db.execute(
                select(ContractHistoryRecord.learned_pattern)
                .where(ContractHistoryRecord.user_id == user_id)
                .where(ContractHistoryRecord.learned_pattern.is_not(None))
                .distinct()
            )
            recent = await db.execute(
                select(ContractHistoryRecord.contract_type)
                .where(ContractHistoryRecord.user_id == user_id)
                .order_by(desc(ContractHistoryRecord.created_at), desc(ContractHistoryRecord.id))
                .limit(RECENT_CONTRACT_TYPES)
            )
            return UserHistory(
                contract_count=contract_count or 0,
                feedback_count=feedback_count or 0,
                learned_patterns=tuple(sorted(patterns.scalars())),
                recent_contract_types=tuple(recent.scalars()),
            )

    async def record_contract(self, user_id: str, analysis: Analysis) -> None:
        async with get_db_session() as db:
            db.add(ContractHistoryRecord(
                user_id=user_id,
                analysis_id=analysis.analysis_id,
                contract_type=analysis.contract_type,
                overall_risk=analysis.overall_risk.value,
                created_at=analysis.created_at,
            ))
