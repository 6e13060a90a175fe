"""
ClauseGuard Database Models
SQLAlchemy ORM tables backing the analysis repository.

All datetime columns use DateTime(timezone=True) for proper UTC handling.
Use utc_now() from clauseguard.core.utc for all timestamp defaults.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clauseguard.core.database import Base
from clauseguard.core.utc import utc_now

# Type alias for timezone-aware DateTime columns
DateTimeTZ = DateTime(timezone=True)


# =============================================================================
# Analysis
# =============================================================================

class AnalysisRecord(Base):
    """
    One completed analysis run.

    Headline fields are columns for listing; the full result, audit trail
    included, is kept as the JSON payload.
    """
    __tablename__ = "analyses"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    session_id: Mapped[str] = mapped_column(String(100), index=True)

    contract_type: Mapped[str] = mapped_column(String(30), default="general")
    overall_risk: Mapped[str] = mapped_column(String(10))
    confidence: Mapped[float] = mapped_column(Float)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    summary: Mapped[str] = mapped_column(Text, default="")

    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)


# =============================================================================
# Usage
# =============================================================================

class UsageRecord(Base):
    """Per-user token quota and counters."""
    __tablename__ = "usage"

    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    plan: Mapped[str] = mapped_column(String(20), default="free")
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    tokens_limit: Mapped[int] = mapped_column(Integer, default=10_000)
    total_uploads: Mapped[int] = mapped_column(Integer, default=0)
    api_calls: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    last_active: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)


# =============================================================================
# Contract history (feeds the decision policy)
# =============================================================================

class ContractHistoryRecord(Base):
    """One row per analyzed contract; also carries user feedback and learned patterns."""
    __tablename__ = "contract_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    analysis_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    contract_type: Mapped[str] = mapped_column(String(30), default="general")
    overall_risk: Mapped[str] = mapped_column(String(10), default="review")

    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    learned_pattern: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, index=True)
