import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from time import perf_counter

from fastapi import Request

from neoai_gateway.auth.verifier import CallerIdentity
from neoai_gateway.config.settings import Settings
from neoai_gateway.core.errors import (
    AppError,
    BackendError,
    BackendUnavailableError,
    InternalError,
    InvalidModelError,
    InvalidRequestError,
    NotFoundError,
    RateLimitedError,
    SensitiveContentError,
    UnauthenticatedError,
    request_id_from_request,
)
from neoai_gateway.core.ids import hash_user_id
from neoai_gateway.models.chat import ChatRequest
from neoai_gateway.providers.base import (
    ModelNotFoundError,
    ProviderError,
    ProviderUnavailableError,
)
from neoai_gateway.providers.registry import BackendRegistry, RoutedStream
from neoai_gateway.quota.tracker import QuotaBackendError, QuotaExceededError, QuotaTracker
from neoai_gateway.redaction.scanner import SensitiveContentScanner
from neoai_gateway.services.background import BackgroundTaskRunner
from neoai_gateway.services.stream_tee import StreamTee
from neoai_gateway.storage.conversations import ConversationStore, generate_title
from neoai_gateway.storage.database import DatabaseError

logger = logging.getLogger("neoai.chat")

CLIENT_READER = 0
PERSIST_READER = 1


class PipelineStage(str, Enum):
    AUTHENTICATING = "authenticating"
    QUOTA_CHECKING = "quota_checking"
    CONTENT_SCREENING = "content_screening"
    BACKEND_RESOLVING = "backend_resolving"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChatStream:
    body: AsyncIterator[bytes]
    session_id: str
    model: str
    backend: str


class ChatService:
    def __init__(
        self,
        settings: Settings,
        registry: BackendRegistry,
        conversations: ConversationStore,
        quota_tracker: QuotaTracker,
        runner: BackgroundTaskRunner,
        scanner: SensitiveContentScanner | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._conversations = conversations
        self._quota_tracker = quota_tracker
        self._runner = runner
        self._scanner = scanner or SensitiveContentScanner()

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    async def handle_chat(self, request: Request, payload: ChatRequest) -> ChatStream:
        """Run one chat request through the pipeline and return the client stream.

        Stages run strictly in order and the first failure short-circuits the
        rest; no upstream call is made for a request that is rejected by
        quota or screening.  Persistence of the generated text happens in a
        background task that reads its own copy of the stream.
        """
        started = perf_counter()
        request_id = request_id_from_request(request)
        stage = PipelineStage.AUTHENTICATING
        user_id: str | None = None

        try:
            identity = self._authenticate(request)
            user_id = identity.id
            self._validate_message(payload)

            stage = PipelineStage.QUOTA_CHECKING
            await self._check_quota(identity, request_id)

            stage = PipelineStage.CONTENT_SCREENING
            self._screen_content(payload.message, request_id, user_id)

            stage = PipelineStage.BACKEND_RESOLVING
            self._resolve_backend(payload.model)
            session_id, history = await self._resolve_conversation(identity, payload)
            messages = [
                {"role": "system", "content": self._settings.system_prompt},
                *({"role": row["role"], "content": row["content"]} for row in history),
                {"role": "user", "content": payload.message},
            ]
            logger.info(
                "chat_request_accepted",
                extra={
                    "request_id": request_id,
                    "user_id": user_id,
                    "session_id": session_id,
                    "model": payload.model,
                    "message_chars": len(payload.message),
                    "history_length": len(history),
                },
            )

            stage = PipelineStage.STREAMING
            routed = await self._open_stream(payload.model, messages)
        except AppError as exc:
            logger.warning(
                "chat_pipeline_failed",
                extra={
                    "request_id": request_id,
                    "user_id": user_id,
                    "stage": stage.value,
                    "code": exc.code,
                    "error_id": exc.error_id,
                },
            )
            raise

        tee = StreamTee(routed.stream, consumers=2)
        self._runner.submit(tee.pump(), name=f"stream_pump:{request_id}")
        self._runner.submit(
            self._finalize(
                tee,
                identity=identity,
                session_id=session_id,
                routed=routed,
                request_id=request_id,
                started=started,
            ),
            name=f"persist_response:{request_id}",
        )
        return ChatStream(
            body=tee.reader(CLIENT_READER),
            session_id=session_id,
            model=routed.model,
            backend=routed.backend,
        )

    # ---- Stages ----

    @staticmethod
    def _authenticate(request: Request) -> CallerIdentity:
        identity = getattr(request.state, "user", None)
        if not isinstance(identity, CallerIdentity):
            raise UnauthenticatedError()
        return identity

    def _validate_message(self, payload: ChatRequest) -> None:
        if not payload.message.strip():
            raise InvalidRequestError("Message is required")
        if not payload.model.strip():
            raise InvalidRequestError("Model selection is required")
        limit = self._settings.max_message_chars
        if len(payload.message) > limit:
            raise InvalidRequestError(f"Message too long (max {limit:,} characters)")

    async def _check_quota(self, identity: CallerIdentity, request_id: str) -> None:
        try:
            await self._quota_tracker.check_and_increment(identity.id)
        except QuotaExceededError as exc:
            raise RateLimitedError(exc.retry_after_seconds) from exc
        except QuotaBackendError as exc:
            # Fail open when the counter store is down.
            logger.error(
                "quota_check_failed_open",
                extra={"request_id": request_id, "user_id": identity.id, "error": str(exc)},
            )

    def _screen_content(self, message: str, request_id: str, user_id: str) -> None:
        result = self._scanner.scan(message)
        if not result.has_detections:
            return
        logger.warning(
            "sensitive_content_blocked",
            extra={
                "request_id": request_id,
                "user_id": user_id,
                "types": sorted(set(result.types)),
                "count": len(result.detections),
            },
        )
        raise SensitiveContentError(result.public_detections())

    def _resolve_backend(self, model: str) -> None:
        try:
            self._registry.resolve(model)
        except ModelNotFoundError as exc:
            raise InvalidModelError(model, exc.available_models) from exc

    async def _resolve_conversation(
        self, identity: CallerIdentity, payload: ChatRequest
    ) -> tuple[str, list[dict[str, object]]]:
        try:
            if payload.session_id:
                session = await self._conversations.get_session(payload.session_id, identity.id)
                if session is None:
                    raise NotFoundError("Session")
                session_id = str(session["id"])
                history = await self._conversations.recent_messages(
                    session_id, limit=self._settings.history_limit
                )
            else:
                session = await self._conversations.create_session(identity.id, payload.model)
                session_id = str(session["id"])
                history = []
                self._runner.submit(
                    self._conversations.update_session_title(
                        session_id, generate_title(payload.message)
                    ),
                    name=f"session_title:{session_id}",
                )
        except DatabaseError as exc:
            raise InternalError("Conversation store is unavailable") from exc

        self._runner.submit(
            self._conversations.add_message(
                session_id=session_id, role="user", content=payload.message
            ),
            name=f"persist_user_message:{session_id}",
        )
        return session_id, history

    async def _open_stream(self, model: str, messages: list[dict[str, str]]) -> RoutedStream:
        try:
            return await self._registry.chat(
                model, messages, temperature=self._settings.default_temperature
            )
        except ModelNotFoundError as exc:
            raise InvalidModelError(model, exc.available_models) from exc
        except ProviderUnavailableError as exc:
            raise BackendUnavailableError(exc.backend or model) from exc
        except ProviderError as exc:
            raise BackendError(exc.backend or model) from exc

    # ---- Finalizing ----

    async def _finalize(
        self,
        tee: StreamTee,
        *,
        identity: CallerIdentity,
        session_id: str,
        routed: RoutedStream,
        request_id: str,
        started: float,
    ) -> None:
        chunks: list[bytes] = []
        async for chunk in tee.reader(PERSIST_READER):
            chunks.append(chunk)
        text = b"".join(chunks).decode("utf-8", errors="replace")

        if tee.error is not None:
            logger.error(
                "chat_stream_upstream_failed",
                extra={
                    "request_id": request_id,
                    "session_id": session_id,
                    "model": routed.model,
                    "backend": routed.backend,
                    "stage": PipelineStage.STREAMING.value,
                    "output_chars": len(text),
                    "error": str(tee.error) or type(tee.error).__name__,
                },
            )

        if text:
            try:
                await self._conversations.add_message(
                    session_id=session_id, role="assistant", content=text, model=routed.model
                )
                await self._conversations.touch_session(session_id)
                await self._conversations.record_usage(
                    user_hash=hash_user_id(identity.id),
                    model=routed.model,
                    tokens_out=len(text),
                )
            except DatabaseError as exc:
                logger.error(
                    "chat_response_persist_failed",
                    extra={
                        "request_id": request_id,
                        "session_id": session_id,
                        "stage": PipelineStage.FINALIZING.value,
                        "error": str(exc),
                    },
                )
                return

        final_stage = PipelineStage.FAILED if tee.error is not None else PipelineStage.COMPLETED
        logger.info(
            "chat_stream_completed",
            extra={
                "request_id": request_id,
                "user_id": identity.id,
                "session_id": session_id,
                "model": routed.model,
                "backend": routed.backend,
                "stage": final_stage.value,
                "output_chars": len(text),
                "latency_ms": round((perf_counter() - started) * 1000, 2),
            },
        )
