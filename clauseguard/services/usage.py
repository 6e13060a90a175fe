"""
Usage Accountant

Gates new analyses on the per-user token quota and bills completed runs.
"""

import logging

from clauseguard.core.errors import QuotaExceededError
from clauseguard.models.analysis import UsageState
from clauseguard.services.repository import AnalysisRepository

logger = logging.getLogger(__name__)


class UsageAccountant:
    def __init__(self, repository: AnalysisRepository):
        self.repository = repository

    async def admit(self, user_id: str) -> UsageState:
        """Raise QuotaExceededError when the user has no tokens left."""
        state = await self.repository.load_usage(user_id)
        if state.exhausted:
            logger.warning(
                f"[USAGE] Rejected {user_id}: {state.tokens_used}/{state.tokens_limit} tokens used"
            )
            raise QuotaExceededError(user_id, state.tokens_used, state.tokens_limit)
        return state

    async def charge(self, user_id: str, tokens: int) -> UsageState:
        """Bill a completed run. Overshooting the limit on the final run is allowed."""
        state = await self.repository.increment_usage(user_id, max(0, tokens))
        logger.info(f"[USAGE] Charged {user_id} {tokens} tokens ({state.tokens_used}/{state.tokens_limit})")
        return state

    async def get_usage(self, user_id: str) -> UsageState:
        return await self.repository.load_usage(user_id)
