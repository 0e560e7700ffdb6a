import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from neoai_gateway.api.routes import APP_VERSION, router
from neoai_gateway.auth.verifier import TokenVerifier
from neoai_gateway.config.settings import Settings, get_settings, validate_environment
from neoai_gateway.core.errors import (
    AppError,
    InternalError,
    InvalidRequestError,
    app_error_response,
    request_id_from_request,
    user_id_from_request,
)
from neoai_gateway.core.logging import configure_logging
from neoai_gateway.middleware.auth import AuthMiddleware
from neoai_gateway.middleware.request_id import RequestIDMiddleware
from neoai_gateway.providers.registry import BackendRegistry
from neoai_gateway.quota.tracker import QuotaTracker
from neoai_gateway.services.background import BackgroundTaskRunner
from neoai_gateway.services.chat_service import ChatService
from neoai_gateway.storage.conversations import ConversationStore
from neoai_gateway.storage.database import Database
from neoai_gateway.storage.kv import create_kv_store

logger = logging.getLogger("neoai.http")

_HTTP_ERROR_CODES = {401: "UNAUTHORIZED", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


def _build_token_verifier(
    settings: Settings, transport: httpx.AsyncBaseTransport | None
) -> TokenVerifier | None:
    certs_url = settings.access_certs_endpoint
    if certs_url is None:
        return None
    return TokenVerifier(
        certs_url=certs_url,
        audience=settings.access_audience,
        ttl_seconds=settings.access_jwks_ttl_seconds,
        timeout_s=settings.access_timeout_s,
        transport=transport,
    )


def _validation_details(exc: RequestValidationError) -> list[dict[str, str]]:
    details: list[dict[str, str]] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(location), "message": str(error.get("msg", ""))})
    return details


def create_app(transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    env_check = validate_environment(settings)
    for warning in env_check.warnings:
        logger.warning(warning)
    for error in env_check.errors:
        logger.error(error)

    runner = BackgroundTaskRunner()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await runner.drain(settings.shutdown_drain_timeout_s)

    app = FastAPI(title="neoAI Gateway", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(AuthMiddleware)
    app.add_middleware(RequestIDMiddleware)

    database = Database(path=settings.database_path)
    conversations = ConversationStore(database)
    registry = BackendRegistry.from_settings(settings, transport=transport)
    quota_tracker = QuotaTracker(
        database=database,
        kv_store=create_kv_store(settings),
        runner=runner,
        per_hour=settings.rate_limit_per_hour,
        per_day=settings.rate_limit_per_day,
        cleanup_timeout_s=settings.quota_cleanup_timeout_s,
    )

    app.state.database = database
    app.state.conversations = conversations
    app.state.background_runner = runner
    app.state.token_verifier = _build_token_verifier(settings, transport)
    app.state.chat_service = ChatService(
        settings=settings,
        registry=registry,
        conversations=conversations,
        quota_tracker=quota_tracker,
        runner=runner,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return app_error_response(
            exc, request_id_from_request(request), user_id_from_request(request)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidRequestError("Invalid request body", details=_validation_details(exc))
        return app_error_response(
            error, request_id_from_request(request), user_id_from_request(request)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error = AppError(
            str(exc.detail),
            status_code=exc.status_code,
            code=_HTTP_ERROR_CODES.get(
                exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "BAD_REQUEST"
            ),
        )
        return app_error_response(
            error, request_id_from_request(request), user_id_from_request(request)
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        error = InternalError()
        error.__cause__ = exc
        return app_error_response(
            error, request_id_from_request(request), user_id_from_request(request)
        )

    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("neoai_gateway.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
