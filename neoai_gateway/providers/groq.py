"""Groq adapter for its OpenAI-compatible chat completions endpoint."""

from collections.abc import AsyncIterator

import httpx

from neoai_gateway.providers.base import (
    ModelDescriptor,
    ProviderUnavailableError,
    UpstreamResponse,
    open_upstream,
)
from neoai_gateway.providers.sse import dig, iter_sse_data, parse_json_record

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MAX_TOKENS = 4096


class GroqAdapter:
    id = "groq"
    name = "Groq"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = GROQ_BASE_URL,
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
                id="llama-3.3-70b-versatile",
                name="Llama 3.3 70B",
                backend=self.id,
                description="Meta Llama 3.3 70B, general-purpose model on Groq.",
                context_window=128_000,
                max_output_tokens=4096,
            ),
            ModelDescriptor(
                id="llama-3.1-8b-instant",
                name="Llama 3.1 8B",
                backend=self.id,
                description="Fast, lightweight Llama 3.1 8B for quick responses.",
                context_window=128_000,
                max_output_tokens=4096,
            ),
            ModelDescriptor(
                id="mixtral-8x7b-32768",
                name="Mixtral 8x7B",
                backend=self.id,
                description="Mistral mixture-of-experts model with 32K context on Groq.",
                context_window=32_768,
                max_output_tokens=4096,
            ),
            ModelDescriptor(
                id="gemma2-9b-it",
                name="Gemma 2 9B",
                backend=self.id,
                description="Google Gemma 2 9B instruction-tuned on Groq.",
                context_window=8192,
                max_output_tokens=4096,
            ),
            ModelDescriptor(
                id="deepseek-r1-distill-llama-70b",
                name="DeepSeek R1 70B",
                backend=self.id,
                description="DeepSeek R1 distilled Llama 70B for reasoning on Groq.",
                context_window=131_072,
                max_output_tokens=16_384,
            ),
        ]

    def build_body(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int | None,
    ) -> dict[str, object]:
        return {
            "model": model_id,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
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
            f"{self._base_url}/chat/completions",
            body=self.build_body(model_id, messages, temperature, max_tokens),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout_s=self._timeout_s,
            transport=self._transport,
        )
        return self._deltas(upstream)

    @staticmethod
    async def _deltas(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        async for payload in iter_sse_data(upstream.iter_bytes()):
            content = dig(parse_json_record(payload), "choices", 0, "delta", "content")
            if isinstance(content, str) and content:
                yield content.encode("utf-8")
