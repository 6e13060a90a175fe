"""
ClauseGuard - Shared Test Fixtures
Provides reusable fixtures for settings, database, fake collaborators and
the HTTP client.
"""

import os
import pytest
from typing import AsyncGenerator, Dict, List, Optional
from httpx import AsyncClient, ASGITransport

# Configure test environment BEFORE importing app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_clauseguard.db"
os.environ["GRANITE_API_KEY"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

from clauseguard.main import app
from clauseguard.core.config import Settings
from clauseguard.core.errors import ExternalServiceError
from clauseguard.models.analysis import Analysis, PlanTier, RiskLevel, UsageState, UserHistory
from clauseguard.routers.analysis import get_contract_engine
from clauseguard.services.contract_engine import ContractAnalysisEngine
from clauseguard.services.granite_client import GenerationResult
from clauseguard.services.repository import SqlAnalysisRepository


# =============================================================================
# Sample contracts
# =============================================================================

LIABILITY_CLAUSE = (
    "The Supplier shall bear full liability for any damages arising from defects in the "
    "delivered goods, including indirect and consequential losses suffered by the Buyer."
)
TERMINATION_CLAUSE = (
    "Either party may seek termination of this agreement upon material breach by the other "
    "party, provided thirty days of written warning is given before the end date."
)
PAYMENT_CLAUSE = (
    "The Buyer shall pay each invoice within thirty days of receipt by bank transfer to the "
    "account designated by the Supplier in writing from time to time during the term."
)

SUPPLY_AGREEMENT = "\n\n".join([LIABILITY_CLAUSE, TERMINATION_CLAUSE, PAYMENT_CLAUSE])


# =============================================================================
# Fakes
# =============================================================================

class FakeRepository:
    """In-memory AnalysisRepository with switchable failures."""

    def __init__(self, tokens_limit: int = 10_000):
        self.tokens_limit = tokens_limit
        self.analyses: Dict[str, Analysis] = {}
        self.usage: Dict[str, UsageState] = {}
        self.contracts: List[str] = []
        self.history = UserHistory()
        self.fail_save = False
        self.fail_charge = False
        self.fail_history = False

    async def save(self, analysis: Analysis) -> None:
        if self.fail_save:
            raise RuntimeError("database is down")
        self.analyses[analysis.analysis_id] = analysis

    async def get_analysis(self, analysis_id: str) -> Optional[dict]:
        analysis = self.analyses.get(analysis_id)
        return analysis.to_dict() if analysis else None

    async def list_analyses(self, user_id: str, limit: int = 20) -> List[dict]:
        return [a.to_dict() for a in self.analyses.values() if a.user_id == user_id][:limit]

    async def delete_analysis(self, analysis_id: str) -> bool:
        return self.analyses.pop(analysis_id, None) is not None

    async def stats(self, user_id: str) -> dict:
        usage = await self.load_usage(user_id)
        clauses = [c for a in self.analyses.values() if a.user_id == user_id for c in a.clauses]
        return {
            "user_id": user_id,
            "total_uploads": usage.total_uploads,
            "safe_clauses": sum(c.risk_level == RiskLevel.SAFE for c in clauses),
            "review_clauses": sum(c.risk_level == RiskLevel.REVIEW for c in clauses),
            "risky_clauses": sum(c.risk_level == RiskLevel.RISKY for c in clauses),
            "tokens_used": usage.tokens_used,
            "tokens_limit": usage.tokens_limit,
            "plan": usage.plan.value,
            "recent_analyses": await self.list_analyses(user_id, 5),
        }

    async def load_usage(self, user_id: str) -> UsageState:
        if user_id not in self.usage:
            self.usage[user_id] = UsageState(user_id, 0, self.tokens_limit, PlanTier.FREE)
        return self.usage[user_id]

    async def save_usage(self, state: UsageState) -> None:
        self.usage[state.user_id] = state

    async def increment_usage(self, user_id: str, tokens: int) -> UsageState:
        if self.fail_charge:
            raise RuntimeError("billing is down")
        state = await self.load_usage(user_id)
        state.tokens_used += tokens
        state.total_uploads += 1
        state.api_calls += 1
        return state

    async def load_history(self, user_id: str) -> UserHistory:
        if self.fail_history:
            raise RuntimeError("history is down")
        return self.history

    async def record_contract(self, user_id: str, analysis: Analysis) -> None:
        if self.fail_save:
            raise RuntimeError("database is down")
        self.contracts.append(analysis.analysis_id)


class StubModelClient:
    """Stands in for GraniteClient: returns a fixed result or raises."""

    def __init__(
        self,
        text: str = "A supply agreement with a broad liability clause.",
        error: Optional[Exception] = None,
        configured: bool = True,
    ):
        self.text = text
        self.error = error
        self.configured = configured
        self.calls: List[dict] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, prompt: str, **kwargs) -> GenerationResult:
        self.calls.append({"prompt": prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.text, input_token_count=120, generated_token_count=30)


class FailingModelClient(StubModelClient):
    def __init__(self):
        super().__init__(error=ExternalServiceError("model unavailable"))


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    """Isolated settings; ignores any local .env file."""
    return Settings(_env_file=None, granite_api_key="test-key", model_timeout_seconds=1.0)


@pytest.fixture
def fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def model_client() -> StubModelClient:
    return StubModelClient()


@pytest.fixture
def engine(fake_repository, model_client, settings) -> ContractAnalysisEngine:
    return ContractAnalysisEngine(
        repository=fake_repository,
        model_client=model_client,
        settings=settings,
    )


@pytest.fixture
async def db():
    """Create database tables before the test and drop them after."""
    from clauseguard.core.database import Base, get_engine, init_db

    await init_db()
    yield
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def client(db, settings) -> AsyncGenerator[AsyncClient, None]:
    """Async test client wired to the SQL repository and a stub model."""
    api_engine = ContractAnalysisEngine(
        repository=SqlAnalysisRepository(settings),
        model_client=StubModelClient(),
        settings=settings,
    )
    app.dependency_overrides[get_contract_engine] = lambda: api_engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
