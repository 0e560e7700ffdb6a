import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from neoai_gateway.auth.verifier import CallerIdentity, TokenVerificationError, TokenVerifier
from neoai_gateway.config.settings import get_settings
from neoai_gateway.core.errors import (
    UnauthenticatedError,
    app_error_response,
    request_id_from_request,
)

logger = logging.getLogger("neoai.auth")

BYPASS_PATHS = {"/api/health", "/api/models", "/openapi.json", "/docs", "/docs/oauth2-redirect"}
DEV_IDENTITY = CallerIdentity(id="dev-user", email="dev@localhost", display_name="Dev User")


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in BYPASS_PATHS:
            return await call_next(request)

        settings = get_settings()
        if settings.auth_bypass_enabled:
            request.state.user = DEV_IDENTITY
            return await call_next(request)

        request_id = request_id_from_request(request)
        token = request.headers.get(settings.access_token_header, "").strip()
        if not token:
            return app_error_response(UnauthenticatedError("Missing access token"), request_id)

        verifier: TokenVerifier | None = getattr(request.app.state, "token_verifier", None)
        if verifier is None:
            logger.error("token_verifier_not_configured", extra={"request_id": request_id})
            return app_error_response(UnauthenticatedError("Authentication failed"), request_id)

        try:
            request.state.user = await verifier.verify(token)
        except TokenVerificationError as exc:
            logger.warning(
                "token_verification_failed",
                extra={"request_id": request_id, "error": str(exc)},
            )
            return app_error_response(UnauthenticatedError("Authentication failed"), request_id)

        return await call_next(request)
