"""
ClauseGuard Errors
Exception taxonomy for the analysis engine and the FastAPI handlers that
render the ones allowed to escape it.

Escaping (surfaced to the caller):
- ValidationError      empty or oversized input, no run is created
- QuotaExceededError   user is over quota, rejected before any work starts
- AuthenticationError  model credentials rejected, the run is aborted

Absorbed (recovered inside the engine):
- ExternalServiceError and subclasses  recovered via the fallback synthesizer
- StepExecutionError                   recorded on the audit trail, run continues
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ClauseGuardError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    error_code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


# =============================================================================
# Rejections (escape the engine)
# =============================================================================

class ValidationError(ClauseGuardError):
    """Contract text is empty after trimming or exceeds the size limit."""

    status_code = 422
    error_code = "invalid_contract"


class QuotaExceededError(ClauseGuardError):
    """
    The user has consumed their whole token quota.

    Retryable once the quota is reset or the plan is upgraded.
    """

    status_code = 429
    error_code = "quota_exceeded"
    retryable = True

    def __init__(self, user_id: str, tokens_used: int, tokens_limit: int):
        super().__init__(
            "Token limit exceeded. Please upgrade your plan.",
            user_id=user_id,
            tokens_used=tokens_used,
            tokens_limit=tokens_limit,
        )
        self.user_id = user_id
        self.tokens_used = tokens_used
        self.tokens_limit = tokens_limit


class AuthenticationError(ClauseGuardError):
    """Credential exchange failed or the model endpoint kept answering 401."""

    status_code = 503
    error_code = "model_authentication_failed"


# =============================================================================
# Recoverable failures (absorbed by the engine)
# =============================================================================

class ExternalServiceError(ClauseGuardError):
    """The model endpoint could not produce a usable answer."""

    status_code = 502
    error_code = "model_unavailable"
    retryable = True


class ExternalTimeoutError(ExternalServiceError):
    """A generation call lost the race against the configured deadline."""

    error_code = "model_timeout"

    def __init__(self, timeout: float):
        super().__init__(f"Model call exceeded {timeout:g}s deadline", timeout=timeout)
        self.timeout = timeout


class ModelServiceError(ExternalServiceError):
    """Transport failure or non-2xx response that survived one retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, upstream_status=status_code)
        self.upstream_status = status_code


class ModelResponseError(ExternalServiceError):
    """Response body did not match the generation wire contract."""

    error_code = "model_malformed_response"


class StepExecutionError(ClauseGuardError):
    """A pipeline step raised; its contribution is dropped."""

    error_code = "step_failed"

    def __init__(self, step_type: str, cause: BaseException):
        super().__init__(f"Step {step_type} failed: {cause}", step_type=step_type)
        self.step_type = step_type
        self.__cause__ = cause


# =============================================================================
# FastAPI wiring
# =============================================================================

async def clauseguard_error_handler(request: Request, exc: ClauseGuardError) -> JSONResponse:
    """Render an engine error as {"error": {...}} with its status code."""
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        "%s %s -> %s (%s)",
        request.method,
        request.url.path,
        exc.status_code,
        exc.error_code,
    )
    headers = {"Retry-After": "3600"} if isinstance(exc, QuotaExceededError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register handlers for every ClauseGuardError subclass."""
    app.add_exception_handler(ClauseGuardError, clauseguard_error_handler)
