import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from neoai_gateway.core.ids import generate_id

logger = logging.getLogger("neoai.errors")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    error_id: str
    request_id: str
    timestamp: str
    retryable: bool
    details: Any = None

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "errorId": self.error_id,
            "requestId": self.request_id,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        retryable: bool | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details
        self.error_id = generate_id("err")


class UnauthenticatedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class InvalidRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, details=details)


class SensitiveContentError(InvalidRequestError):
    code = "PII_DETECTED"

    def __init__(self, detections: list[dict[str, str]]):
        super().__init__(
            "Your message contains sensitive personal information that cannot be sent "
            "to AI models.",
            details={"detections": detections},
        )


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class RateLimitedError(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            f"Rate limit exceeded. Please try again in {retry_after_seconds} seconds.",
            details={"retryAfter": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class InvalidModelError(AppError):
    status_code = 400
    code = "INVALID_MODEL"
    retryable = True

    def __init__(self, model: str, available_models: list[str]):
        super().__init__(
            f'Model "{model}" is not available',
            details={"availableModels": available_models},
        )
        self.available_models = available_models


class BackendUnavailableError(AppError):
    status_code = 503
    code = "AI_PROVIDER_UNAVAILABLE"
    retryable = True

    def __init__(self, backend: str):
        super().__init__(f'AI provider "{backend}" is not configured or unavailable.')


class BackendError(AppError):
    status_code = 502
    code = "AI_PROVIDER_ERROR"
    retryable = True

    def __init__(self, backend: str):
        super().__init__(
            f'AI provider "{backend}" encountered an error. Please try a different model.'
        )


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = True

    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(message)


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    header_id = request.headers.get("x-request-id")
    return state_id or header_id or generate_id("req")


def user_id_from_request(request: Request) -> str | None:
    user = getattr(request.state, "user", None)
    return getattr(user, "id", None)


def app_error_response(
    exc: AppError, request_id: str, user_id: str | None = None
) -> JSONResponse:
    """Render an ``AppError`` as the JSON error envelope and log it by severity."""
    extra = {
        "request_id": request_id,
        "user_id": user_id,
        "status_code": exc.status_code,
        "error_id": exc.error_id,
        "code": exc.code,
    }
    if exc.status_code >= 500:
        cause = exc.__cause__
        logger.error(
            f"[{exc.code}] {exc.message}",
            extra=extra,
            exc_info=(type(cause), cause, cause.__traceback__) if cause else None,
        )
    else:
        logger.warning(f"[{exc.code}] {exc.message}", extra=extra)

    envelope = ErrorEnvelope(
        code=exc.code,
        message=exc.message,
        error_id=exc.error_id,
        request_id=request_id,
        timestamp=datetime.now(UTC).isoformat(),
        retryable=exc.retryable,
        details=exc.details,
    )
    response = JSONResponse(status_code=exc.status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    if isinstance(exc, RateLimitedError):
        response.headers["retry-after"] = str(exc.retry_after_seconds)
    return response
