"""Google Gemini streaming adapter (``streamGenerateContent`` with SSE framing)."""

from collections.abc import AsyncIterator

import httpx

from neoai_gateway.providers.base import (
    ModelDescriptor,
    ProviderUnavailableError,
    UpstreamResponse,
    open_upstream,
)
from neoai_gateway.providers.sse import dig, iter_sse_data, parse_json_record

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MAX_TOKENS = 4096
TOP_P = 0.95


def convert_messages(messages: list[dict[str, str]]) -> list[dict[str, object]]:
    """Map chat turns to Gemini ``contents``.

    Gemini has no system role: system content accumulates and is prepended
    to the next user turn.  ``assistant`` becomes ``model``.
    """
    contents: list[dict[str, object]] = []
    pending_system = ""
    for message in messages:
        role = message["role"]
        content = message["content"]
        if role == "system":
            pending_system += content + "\n"
            continue
        if role == "user" and pending_system:
            content = f"{pending_system}\n{content}"
            pending_system = ""
        contents.append(
            {"role": "model" if role == "assistant" else "user", "parts": [{"text": content}]}
        )
    return contents


class GeminiAdapter:
    id = "gemini"
    name = "Google Gemini"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = GEMINI_BASE_URL,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self._api_key)

    def list_models(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                id="gemini-2.5-flash",
                name="Gemini 2.5 Flash",
                backend=self.id,
                description="Fast thinking model with hybrid reasoning.",
                context_window=1_048_576,
                max_output_tokens=65_536,
            ),
            ModelDescriptor(
                id="gemini-2.5-flash-lite",
                name="Gemini 2.5 Flash Lite",
                backend=self.id,
                description="Lightweight thinking model, fast and efficient.",
                context_window=1_048_576,
                max_output_tokens=65_536,
            ),
            ModelDescriptor(
                id="gemini-3-flash-preview",
                name="Gemini 3 Flash Preview",
                backend=self.id,
                description="Next-generation Gemini Flash with thinking, preview tier.",
                context_window=1_048_576,
                max_output_tokens=65_536,
            ),
        ]

    def build_body(
        self, messages: list[dict[str, str]], temperature: float, max_tokens: int | None
    ) -> dict[str, object]:
        return {
            "contents": convert_messages(messages),
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens or DEFAULT_MAX_TOKENS,
                "topP": TOP_P,
            },
        }

    async def chat(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int | None,
    ) -> AsyncIterator[bytes]:
        if not self._api_key:
            raise ProviderUnavailableError(self.name)
        upstream = await open_upstream(
            self.name,
            f"{self._base_url}/models/{model_id}:streamGenerateContent?alt=sse",
            body=self.build_body(messages, temperature, max_tokens),
            headers={"x-goog-api-key": self._api_key, "content-type": "application/json"},
            timeout_s=self._timeout_s,
            transport=self._transport,
        )
        return self._deltas(upstream)

    @staticmethod
    async def _deltas(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        async for payload in iter_sse_data(upstream.iter_bytes()):
            record = parse_json_record(payload)
            text = dig(record, "candidates", 0, "content", "parts", 0, "text")
            if isinstance(text, str) and text:
                yield text.encode("utf-8")
