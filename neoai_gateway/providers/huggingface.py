"""HuggingFace Inference API adapter (text-generation streaming)."""

from collections.abc import AsyncIterator

import httpx

from neoai_gateway.providers.base import (
    ModelDescriptor,
    ProviderUnavailableError,
    UpstreamResponse,
    open_upstream,
)
from neoai_gateway.providers.sse import dig, iter_sse_data, parse_json_record

HF_BASE_URL = "https://api-inference.huggingface.co"
MODEL_PREFIX = "hf:"
DEFAULT_MAX_TOKENS = 2048

_TURN_TAGS = {"system": "<|system|>", "user": "<|user|>", "assistant": "<|assistant|>"}


def build_prompt(messages: list[dict[str, str]]) -> str:
    """Render chat turns with a ``<|role|>`` template, ending on an open assistant turn."""
    parts = [
        f"{_TURN_TAGS[m['role']]}\n{m['content']}</s>" for m in messages if m["role"] in _TURN_TAGS
    ]
    parts.append("<|assistant|>\n")
    return "\n".join(parts)


class HuggingFaceAdapter:
    id = "huggingface"
    name = "HuggingFace"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = HF_BASE_URL,
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
                id="hf:mistralai/Mistral-7B-Instruct-v0.3",
                name="Mistral 7B v0.3 (HF)",
                backend=self.id,
                description="Mistral 7B instruction-tuned via the HuggingFace Inference API.",
                context_window=32_768,
                max_output_tokens=2048,
            ),
            ModelDescriptor(
                id="hf:microsoft/Phi-3-mini-4k-instruct",
                name="Phi-3 Mini 4K (HF)",
                backend=self.id,
                description="Microsoft Phi-3 Mini, a compact and capable model.",
                context_window=4096,
                max_output_tokens=2048,
            ),
        ]

    def build_body(
        self, messages: list[dict[str, str]], temperature: float, max_tokens: int | None
    ) -> dict[str, object]:
        return {
            "inputs": build_prompt(messages),
            "parameters": {
                "temperature": temperature,
                "max_new_tokens": max_tokens or DEFAULT_MAX_TOKENS,
                "return_full_text": False,
                "do_sample": True,
            },
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
        model_name = model_id.removeprefix(MODEL_PREFIX)
        upstream = await open_upstream(
            self.name,
            f"{self._base_url}/models/{model_name}",
            body=self.build_body(messages, temperature, max_tokens),
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
            token = dig(parse_json_record(payload), "token")
            if not isinstance(token, dict) or token.get("special"):
                continue
            text = token.get("text")
            if isinstance(text, str) and text:
                yield text.encode("utf-8")
