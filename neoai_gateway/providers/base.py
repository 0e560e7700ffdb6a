from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

UPSTREAM_ERROR_BODY_CHARS = 200


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        backend: str | None = None,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.backend = backend
        self.error_type = error_type


class ProviderUnavailableError(ProviderError):
    def __init__(self, backend: str):
        super().__init__(
            status_code=503,
            code="provider_unavailable",
            message=f"{backend} is not configured",
            backend=backend,
            error_type="unavailable",
        )


class ModelNotFoundError(Exception):
    def __init__(self, model: str, available_models: list[str]):
        super().__init__(f'Model "{model}" is not available')
        self.model = model
        self.available_models = available_models


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    backend: str
    description: str
    context_window: int
    max_output_tokens: int | None = None
    is_free: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.backend,
            "description": self.description,
            "contextWindow": self.context_window,
            "maxOutputTokens": self.max_output_tokens,
            "isFree": self.is_free,
        }


class BackendAdapter(Protocol):
    id: str
    name: str

    def is_available(self) -> bool:
        """Return True when the adapter has the credentials it needs."""

    def list_models(self) -> list[ModelDescriptor]:
        """Return the static model catalog of this backend."""

    async def chat(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int | None,
    ) -> AsyncIterator[bytes]:
        """Open the upstream call and return its text deltas as UTF-8 bytes."""


@dataclass
class UpstreamResponse:
    """An upstream response whose status has been checked but whose body is unread."""

    client: httpx.AsyncClient
    response: httpx.Response

    @property
    def content_type(self) -> str:
        return self.response.headers.get("content-type", "").split(";")[0].strip().lower()

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def read_json(self) -> Any:
        try:
            await self.response.aread()
            return self.response.json()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self.response.aclose()
        await self.client.aclose()


def _raise_for_status(backend: str, status_code: int, body_excerpt: str) -> None:
    if status_code == 429:
        raise ProviderError(
            status_code=429,
            code="provider_rate_limited",
            message=f"{backend} rate limit exceeded: {body_excerpt}",
            backend=backend,
            error_type="rate_limit",
        )
    if status_code >= 400:
        raise ProviderError(
            status_code=status_code,
            code="provider_error",
            message=f"{backend} API error {status_code}: {body_excerpt}",
            backend=backend,
        )


async def open_upstream(
    backend: str,
    url: str,
    *,
    body: dict[str, object],
    headers: dict[str, str],
    timeout_s: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> UpstreamResponse:
    """POST ``body`` and return the streaming response once its status is known good."""
    client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
    try:
        request = client.build_request("POST", url, json=body, headers=headers)
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        await client.aclose()
        raise ProviderError(
            status_code=503,
            code="provider_timeout",
            message=f"{backend} request timed out: {exc}",
            backend=backend,
        ) from exc
    except httpx.HTTPError as exc:
        await client.aclose()
        raise ProviderError(
            status_code=502,
            code="provider_connection_error",
            message=f"Cannot connect to {backend}: {exc}",
            backend=backend,
        ) from exc

    if response.status_code >= 400:
        try:
            raw = await response.aread()
        finally:
            await response.aclose()
            await client.aclose()
        excerpt = raw.decode("utf-8", errors="replace")[:UPSTREAM_ERROR_BODY_CHARS]
        _raise_for_status(backend, response.status_code, excerpt)

    return UpstreamResponse(client=client, response=response)
