from datetime import UTC, datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from neoai_gateway.config.settings import get_settings, validate_environment
from neoai_gateway.core.errors import (
    InvalidRequestError,
    NotFoundError,
    UnauthenticatedError,
    request_id_from_request,
)
from neoai_gateway.models.chat import ChatRequest, CreateSessionRequest, UpdateSessionRequest
from neoai_gateway.services.chat_service import ChatService
from neoai_gateway.storage.conversations import DEFAULT_SESSION_TITLE, ConversationStore
from neoai_gateway.storage.database import Database

APP_VERSION = "1.0.0"
DEFAULT_SESSION_MODEL = "gemini-2.5-flash"

router = APIRouter(prefix="/api")


def _caller_id(request: Request) -> str:
    user = getattr(request.state, "user", None)
    if user is None:
        raise UnauthenticatedError()
    return str(user.id)


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    database: Database = request.app.state.database
    service: ChatService = request.app.state.chat_service
    env_check = validate_environment(get_settings())
    database_ok = await database.ping()

    body: dict[str, object] = {
        "status": "healthy" if env_check.valid and database_ok else "degraded",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": APP_VERSION,
        "checks": {
            "database": "ok" if database_ok else "error",
            "providers": len(service.registry.list_models()),
            "env": "ok" if env_check.valid else "missing_required",
        },
    }
    if env_check.warnings:
        body["warnings"] = env_check.warnings
    return body


@router.get("/models")
def list_models(request: Request) -> dict[str, object]:
    service: ChatService = request.app.state.chat_service
    models = service.registry.list_models()
    return {
        "models": [model.as_dict() for model in models],
        "count": len(models),
        "providers": list(dict.fromkeys(model.backend for model in models)),
    }


@router.get("/me")
def me(request: Request) -> dict[str, object]:
    user = getattr(request.state, "user", None)
    if user is None:
        raise UnauthenticatedError()
    return {"user": user.as_dict()}


@router.post("/chat")
async def chat(request: Request, payload: ChatRequest) -> StreamingResponse:
    service: ChatService = request.app.state.chat_service
    result = await service.handle_chat(request, payload)
    return StreamingResponse(
        result.body,
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Session-Id": result.session_id,
            "X-Request-Id": request_id_from_request(request),
        },
    )


@router.get("/sessions")
async def list_sessions(request: Request) -> dict[str, object]:
    store: ConversationStore = request.app.state.conversations
    return {"sessions": await store.list_sessions(_caller_id(request))}


@router.post("/sessions", status_code=201)
async def create_session(request: Request, payload: CreateSessionRequest) -> dict[str, object]:
    store: ConversationStore = request.app.state.conversations
    session = await store.create_session(
        _caller_id(request),
        payload.model or DEFAULT_SESSION_MODEL,
        payload.title or DEFAULT_SESSION_TITLE,
    )
    return {"session": session}


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str) -> dict[str, object]:
    store: ConversationStore = request.app.state.conversations
    session = await store.get_session(session_id, _caller_id(request))
    if session is None:
        raise NotFoundError("Session")
    return {"session": session, "messages": await store.get_messages(session_id)}


@router.patch("/sessions/{session_id}")
async def update_session(
    request: Request, session_id: str, payload: UpdateSessionRequest
) -> dict[str, object]:
    store: ConversationStore = request.app.state.conversations
    if not payload.title or not payload.title.strip():
        raise InvalidRequestError("Title is required")
    session = await store.get_session(session_id, _caller_id(request))
    if session is None:
        raise NotFoundError("Session")
    await store.update_session_title(session_id, payload.title)
    return {"updated": True}


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str) -> dict[str, object]:
    store: ConversationStore = request.app.state.conversations
    if not await store.delete_session(session_id, _caller_id(request)):
        raise NotFoundError("Session")
    return {"deleted": True}


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def not_found(request: Request, path: str) -> JSONResponse:
    raise NotFoundError(f"Route {request.method} /api/{path}")
