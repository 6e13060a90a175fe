"""
ClauseGuard - IBM Granite Client
Text generation against the watsonx.ai endpoint.

Bearer tokens come from an IAM API-key exchange and are cached per process.
Every generation call runs against a hard deadline; the caller decides what
to do with the typed failure (normally: hand off to the fallback synthesizer).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from clauseguard.core.config import Settings, get_settings
from clauseguard.core.errors import (
    AuthenticationError,
    ExternalTimeoutError,
    ModelResponseError,
    ModelServiceError,
)
from clauseguard.core.utc import utc_now

logger = logging.getLogger(__name__)

# Used when the IAM response omits expires_in
DEFAULT_TOKEN_TTL_SECONDS = 3600

# First try plus one retry
GENERATION_ATTEMPTS = 2


@dataclass
class GenerationResult:
    """Parsed generation response."""
    text: str
    input_token_count: int = 0
    generated_token_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_token_count + self.generated_token_count


class GraniteClient:
    """
    Async client for Granite text generation.

    The bearer token is the only state shared between concurrent runs. It is
    refreshed single-flight under an asyncio.Lock; waiters re-check the cache
    once they hold the lock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def is_configured(self) -> bool:
        """Check if Granite credentials are set."""
        return bool(self.settings.granite_api_key)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._http

    def _token_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # =========================================================================
    # Bearer token
    # =========================================================================

    def _cached_token(self) -> Optional[str]:
        if self._token is None or self._token_expires_at is None:
            return None
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        if utc_now() >= self._token_expires_at - margin:
            return None
        return self._token

    async def _get_token(self) -> str:
        token = self._cached_token()
        if token:
            return token
        async with self._token_lock():
            # Another waiter may have refreshed while we queued
            token = self._cached_token()
            if token:
                return token
            return await self._exchange_api_key()

    async def _invalidate(self, failed_token: str) -> None:
        async with self._token_lock():
            if self._token == failed_token:
                self._token = None
                self._token_expires_at = None

    async def _exchange_api_key(self) -> str:
        """Trade the API key for a bearer token. Caller holds the lock."""
        logger.info("[GRANITE] Exchanging API key for bearer token")
        try:
            response = await self._client().post(
                self.settings.granite_iam_url,
                data={
                    "grant_type": self.settings.granite_grant_type,
                    "apikey": self.settings.granite_api_key,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ModelServiceError(f"Credential exchange unreachable: {e}") from e

        if not response.is_success:
            raise AuthenticationError(
                f"Credential exchange rejected with status {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(f"Credential exchange returned an unusable body: {e}") from e

        self._token = token
        self._token_expires_at = utc_now() + timedelta(seconds=expires_in)
        return token

    # =========================================================================
    # Generation
    # =========================================================================

    async def generate(
        self,
        prompt: str,
        *,
        max_new_tokens: int,
        temperature: float,
        top_p: float,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        Generate text for a prompt.

        Raises:
            ExternalTimeoutError: the deadline fired; the request was cancelled
            ModelServiceError: transport or non-2xx failure after one retry
            ModelResponseError: the body did not match the wire contract
            AuthenticationError: credentials rejected, including a repeated 401
        """
        if not self.is_configured:
            raise ModelServiceError("Granite API key is not configured")

        deadline = self.settings.model_timeout_seconds if timeout is None else timeout
        payload: Dict[str, Any] = {
            "model_id": self.settings.granite_model_id,
            "input": prompt,
            "parameters": {
                "max_new_tokens": max_new_tokens,
                "temperature": temperature,
                "top_p": top_p,
            },
        }
        if self.settings.granite_project_id:
            payload["project_id"] = self.settings.granite_project_id

        try:
            return await asyncio.wait_for(self._generate(payload), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(f"[GRANITE] Generation exceeded {deadline:g}s, request cancelled")
            raise ExternalTimeoutError(deadline)

    async def _generate(self, payload: Dict[str, Any]) -> GenerationResult:
        token = await self._get_token()
        response = await self._post_with_retry(payload, token)

        if response.status_code == 401:
            logger.warning("[GRANITE] Bearer token rejected, refreshing once")
            await self._invalidate(token)
            token = await self._get_token()
            response = await self._post_with_retry(payload, token)
            if response.status_code == 401:
                raise AuthenticationError("Model endpoint rejected a freshly issued token")

        return self._parse(response)

    async def _post_with_retry(self, payload: Dict[str, Any], token: str) -> httpx.Response:
        """POST once, retry once on transport or non-2xx failure. 401 is returned as-is."""
        attempt = 1
        while True:
            try:
                response = await self._client().post(
                    self.settings.granite_generation_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                logger.warning(f"[GRANITE] Attempt {attempt} failed: {e}")
                if attempt >= GENERATION_ATTEMPTS:
                    raise ModelServiceError(f"Model endpoint unreachable: {e}") from e
            else:
                if response.is_success or response.status_code == 401:
                    return response
                logger.warning(f"[GRANITE] Attempt {attempt} returned {response.status_code}")
                if attempt >= GENERATION_ATTEMPTS:
                    raise ModelServiceError(
                        f"Model endpoint returned {response.status_code}",
                        status_code=response.status_code,
                    )
            attempt += 1

    @staticmethod
    def _parse(response: httpx.Response) -> GenerationResult:
        try:
            data = response.json()
        except ValueError as e:
            raise ModelResponseError("Model response is not JSON") from e

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            raise ModelResponseError("Model response has no results")

        first = results[0]
        text = first.get("generated_text")
        if not isinstance(text, str):
            raise ModelResponseError("Model response generated_text is not a string")

        def count(key: str) -> int:
            value = data.get(key, first.get(key, 0))
            return value if isinstance(value, int) and value >= 0 else 0

        return GenerationResult(
            text=text,
            input_token_count=count("input_token_count"),
            generated_token_count=count("generated_token_count"),
        )


# Singleton instance
_granite_client: Optional[GraniteClient] = None


def get_granite_client() -> GraniteClient:
    """Get or create the process-wide Granite client."""
    global _granite_client
    if _granite_client is None:
        _granite_client = GraniteClient()
    return _granite_client
