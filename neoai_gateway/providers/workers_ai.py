"""Cloudflare Workers AI adapter over the account-scoped REST endpoint."""

import json
from collections.abc import AsyncIterator

import httpx

from neoai_gateway.providers.base import (
    ModelDescriptor,
    ProviderUnavailableError,
    UpstreamResponse,
    open_upstream,
)
from neoai_gateway.providers.sse import dig, iter_sse_data, parse_json_record

WORKERS_AI_BASE_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_MAX_TOKENS = 2048


def _non_stream_text(document: object) -> str:
    for path in (("result", "response"), ("response",)):
        text = dig(document, *path)
        if isinstance(text, str):
            return text
    if isinstance(document, str):
        return document
    return json.dumps(document)


class WorkersAIAdapter:
    id = "workers-ai"
    name = "Workers AI"

    def __init__(
        self,
        account_id: str | None,
        api_token: str | None,
        base_url: str = WORKERS_AI_BASE_URL,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._account_id = account_id
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self._account_id and self._api_token)

    def list_models(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                id="@cf/meta/llama-3.1-8b-instruct",
                name="Llama 3.1 8B (Workers AI)",
                backend=self.id,
                description="Meta Llama 3.1 8B running on the Cloudflare edge.",
                context_window=4096,
                max_output_tokens=2048,
            ),
            ModelDescriptor(
                id="@cf/meta/llama-3.3-70b-instruct-fp8-fast",
                name="Llama 3.3 70B (Workers AI)",
                backend=self.id,
                description="Meta Llama 3.3 70B on the Cloudflare edge.",
                context_window=4096,
                max_output_tokens=2048,
            ),
            ModelDescriptor(
                id="@cf/deepseek-ai/deepseek-r1-distill-qwen-32b",
                name="DeepSeek R1 32B (Workers AI)",
                backend=self.id,
                description="DeepSeek R1 distilled Qwen 32B on the Cloudflare edge.",
                context_window=4096,
                max_output_tokens=2048,
            ),
        ]

    def build_body(
        self, messages: list[dict[str, str]], temperature: float, max_tokens: int | None
    ) -> dict[str, object]:
        return {
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
        if not self.is_available():
            raise ProviderUnavailableError(self.name)
        upstream = await open_upstream(
            self.name,
            f"{self._base_url}/accounts/{self._account_id}/ai/run/{model_id}",
            body=self.build_body(messages, temperature, max_tokens),
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Content-Type": "application/json",
            },
            timeout_s=self._timeout_s,
            transport=self._transport,
        )
        if upstream.content_type == "application/json":
            return self._single_chunk(upstream)
        return self._deltas(upstream)

    @staticmethod
    async def _single_chunk(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        text = _non_stream_text(await upstream.read_json())
        if text:
            yield text.encode("utf-8")

    @staticmethod
    async def _deltas(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        async for payload in iter_sse_data(upstream.iter_bytes()):
            content = dig(parse_json_record(payload), "response")
            if isinstance(content, str) and content:
                yield content.encode("utf-8")
