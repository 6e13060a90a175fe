"""
Contract Analysis Router
Analyze contracts, inspect audit trails, manage sessions, download or delete
stored analyses and check usage.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clauseguard.core.utc import to_iso, utc_now
from clauseguard.models.analysis import AnalysisRequest, Priority
from clauseguard.services.contract_engine import ContractAnalysisEngine
from clauseguard.services.granite_client import get_granite_client
from clauseguard.services.repository import SqlAnalysisRepository


router = APIRouter()
usage_router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Contract text to analyze."""
    contract_text: str = Field(..., description="Plain contract text")
    user_id: str = Field(..., min_length=1, max_length=100)
    session_id: str = Field(..., min_length=1, max_length=100)
    priority: Optional[Priority] = Field(None, description="speed, thoroughness or compliance")
    goal: Optional[str] = Field(None, max_length=500)
    context: Optional[str] = Field(None, max_length=4000)
    file_name: str = Field("contract.txt", max_length=255)


class SessionClearedResponse(BaseModel):
    session_id: str
    cleared: bool


class SessionAuditResponse(BaseModel):
    session_id: str
    steps: list[dict[str, Any]] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    user_id: str
    analyses: list[dict[str, Any]] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """Per-user dashboard figures."""
    user_id: str
    total_uploads: int
    safe_clauses: int
    review_clauses: int
    risky_clauses: int
    tokens_used: int
    tokens_limit: int
    plan: str
    recent_analyses: list[dict[str, Any]] = Field(default_factory=list)


class AnalysisDeletedResponse(BaseModel):
    analysis_id: str
    deleted: bool


# =============================================================================
# Dependencies
# =============================================================================

_engine: Optional[ContractAnalysisEngine] = None


def get_contract_engine() -> ContractAnalysisEngine:
    """Process-wide engine over the SQL repository and the Granite client."""
    global _engine
    if _engine is None:
        _engine = ContractAnalysisEngine(
            repository=SqlAnalysisRepository(),
            model_client=get_granite_client(),
        )
    return _engine


# =============================================================================
# Analysis
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def analyze_contract(
    body: AnalyzeRequest,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
) -> dict[str, Any]:
    """
    Run a full analysis.

    422 for empty or oversized text, 429 when the user's quota is used up,
    503 when model credentials are rejected.
    """
    analysis = await engine.analyze(AnalysisRequest(**body.model_dump()))
    return analysis.to_dict()


@router.get("/history", response_model=HistoryResponse)
async def list_history(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    analyses = await engine.repository.list_analyses(user_id, limit)
    return HistoryResponse(user_id=user_id, analyses=analyses)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    user_id: str = Query(..., min_length=1),
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    """Clause risk counts across the user's stored analyses, quota and recent runs."""
    return StatsResponse(**await engine.repository.stats(user_id))


@router.get("/sessions/{session_id}/audit", response_model=SessionAuditResponse)
async def get_session_audit(
    session_id: str,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    steps = engine.get_session_audit(session_id)
    if steps is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return SessionAuditResponse(session_id=session_id, steps=[s.to_dict() for s in steps])


@router.delete("/sessions/{session_id}", response_model=SessionClearedResponse)
async def clear_session(
    session_id: str,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    return SessionClearedResponse(session_id=session_id, cleared=engine.clear_session(session_id))


@router.get("/{analysis_id}")
async def get_analysis(
    analysis_id: str,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
) -> dict[str, Any]:
    analysis = await engine.repository.get_analysis(analysis_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail=f"Analysis {analysis_id} not found")
    return analysis


@router.get("/{analysis_id}/download")
async def download_analysis(
    analysis_id: str,
    format: str = Query("json", description="Only json is supported"),
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    """Stored analysis as a JSON attachment."""
    if format != "json":
        raise HTTPException(status_code=400, detail=f"Unsupported download format: {format}")

    analysis = await engine.repository.get_analysis(analysis_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail=f"Analysis {analysis_id} not found")

    file_name = analysis.get("file_name") or analysis_id
    stem = file_name.rsplit(".", 1)[0] or analysis_id
    return JSONResponse(
        content={
            "file_name": file_name,
            "analysis": analysis,
            "generated_at": to_iso(utc_now()),
        },
        headers={"Content-Disposition": f'attachment; filename="{stem}_analysis.json"'},
    )


@router.delete("/{analysis_id}", response_model=AnalysisDeletedResponse)
async def delete_analysis(
    analysis_id: str,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
):
    if not await engine.repository.delete_analysis(analysis_id):
        raise HTTPException(status_code=404, detail=f"Analysis {analysis_id} not found")
    return AnalysisDeletedResponse(analysis_id=analysis_id, deleted=True)


# =============================================================================
# Usage
# =============================================================================

@usage_router.get("/{user_id}")
async def get_usage(
    user_id: str,
    engine: ContractAnalysisEngine = Depends(get_contract_engine),
) -> dict[str, Any]:
    state = await engine.usage.get_usage(user_id)
    return state.to_dict()
