import asyncio
import json

import httpx
import pytest
from conftest import GROQ_SSE_BODY

from neoai_gateway.providers.base import ProviderError, ProviderUnavailableError
from neoai_gateway.providers.gemini import GeminiAdapter, convert_messages
from neoai_gateway.providers.groq import GroqAdapter
from neoai_gateway.providers.huggingface import HuggingFaceAdapter, build_prompt
from neoai_gateway.providers.workers_ai import WorkersAIAdapter

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello!"},
    {"role": "user", "content": "What is 2+2?"},
]


class _Recorder:
    """MockTransport handler that records the request and replays a canned response."""

    def __init__(self, body: bytes, content_type: str = "text/event-stream", status: int = 200):
        self.body = body
        self.content_type = content_type
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status, headers={"content-type": self.content_type}, content=self.body
        )

    @property
    def json_body(self) -> dict[str, object]:
        return json.loads(self.requests[-1].content)


async def _chat(adapter, model_id: str, max_tokens: int | None = None) -> str:  # type: ignore[no-untyped-def]
    stream = await adapter.chat(model_id, MESSAGES, 0.7, max_tokens)
    return b"".join([chunk async for chunk in stream]).decode("utf-8")


# ---- Gemini ----


def test_gemini_folds_system_into_next_user_turn() -> None:
    contents = convert_messages(MESSAGES)

    assert contents == [
        {"role": "user", "parts": [{"text": "Be brief.\n\nHi"}]},
        {"role": "model", "parts": [{"text": "Hello!"}]},
        {"role": "user", "parts": [{"text": "What is 2+2?"}]},
    ]


def test_gemini_streams_candidate_text() -> None:
    recorder = _Recorder(
        b'data: {"candidates":[{"content":{"parts":[{"text":"Four"}]}}]}\r\n\r\n'
        b'data: {"candidates":[{"content":{"parts":[{"text":"."}]}}]}\r\n\r\n'
        b'data: {"usageMetadata":{"totalTokenCount":7}}\r\n\r\n'
    )
    adapter = GeminiAdapter("g-key", transport=httpx.MockTransport(recorder))

    text = asyncio.run(_chat(adapter, "gemini-2.5-flash"))

    assert text == "Four."
    request = recorder.requests[0]
    assert "/models/gemini-2.5-flash" in request.url.path
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "g-key"
    assert recorder.json_body["generationConfig"] == {
        "temperature": 0.7,
        "maxOutputTokens": 4096,
        "topP": 0.95,
    }


# ---- Groq ----


def test_groq_sends_openai_shaped_body_and_reads_deltas() -> None:
    recorder = _Recorder(GROQ_SSE_BODY)
    adapter = GroqAdapter("gsk-test", transport=httpx.MockTransport(recorder))

    text = asyncio.run(_chat(adapter, "llama-3.3-70b-versatile", max_tokens=256))

    assert text == "Hello world"
    request = recorder.requests[0]
    assert request.url.path == "/openai/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer gsk-test"
    body = recorder.json_body
    assert body["model"] == "llama-3.3-70b-versatile"
    assert body["stream"] is True
    assert body["max_tokens"] == 256
    assert body["messages"] == MESSAGES


def test_groq_without_key_is_unavailable() -> None:
    adapter = GroqAdapter(None)

    assert adapter.is_available() is False
    with pytest.raises(ProviderUnavailableError):
        asyncio.run(_chat(adapter, "llama-3.3-70b-versatile"))


def test_upstream_rate_limit_maps_to_provider_error() -> None:
    recorder = _Recorder(b'{"error":"slow down"}', content_type="application/json", status=429)
    adapter = GroqAdapter("gsk-test", transport=httpx.MockTransport(recorder))

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_chat(adapter, "llama-3.3-70b-versatile"))

    assert exc_info.value.code == "provider_rate_limited"
    assert exc_info.value.status_code == 429


def test_upstream_error_body_is_truncated() -> None:
    recorder = _Recorder(b"x" * 1000, content_type="text/plain", status=500)
    adapter = GroqAdapter("gsk-test", transport=httpx.MockTransport(recorder))

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_chat(adapter, "llama-3.3-70b-versatile"))

    assert exc_info.value.code == "provider_error"
    assert exc_info.value.message == "Groq API error 500: " + "x" * 200


def test_upstream_timeout_maps_to_retryable_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = GroqAdapter("gsk-test", transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_chat(adapter, "llama-3.3-70b-versatile"))

    assert exc_info.value.code == "provider_timeout"
    assert exc_info.value.status_code == 503


# ---- HuggingFace ----


def test_huggingface_prompt_template() -> None:
    prompt = build_prompt(MESSAGES[:2])

    assert prompt == "<|system|>\nBe brief.</s>\n<|user|>\nHi</s>\n<|assistant|>\n"


def test_huggingface_strips_prefix_and_skips_special_tokens() -> None:
    recorder = _Recorder(
        b'data:{"token":{"text":"Four","special":false}}\n\n'
        b'data:{"token":{"text":"</s>","special":true},"generated_text":"Four"}\n\n'
    )
    adapter = HuggingFaceAdapter("hf-key", transport=httpx.MockTransport(recorder))

    text = asyncio.run(_chat(adapter, "hf:mistralai/Mistral-7B-Instruct-v0.3"))

    assert text == "Four"
    assert recorder.requests[0].url.path == "/models/mistralai/Mistral-7B-Instruct-v0.3"
    body = recorder.json_body
    assert body["parameters"]["return_full_text"] is False
    assert body["parameters"]["max_new_tokens"] == 2048
    assert str(body["inputs"]).endswith("<|assistant|>\n")


# ---- Workers AI ----


def test_workers_ai_streams_response_deltas() -> None:
    recorder = _Recorder(b'data: {"response":"Fo"}\n\ndata: {"response":"ur"}\n\ndata: [DONE]\n\n')
    adapter = WorkersAIAdapter("acct-1", "cf-token", transport=httpx.MockTransport(recorder))

    text = asyncio.run(_chat(adapter, "@cf/meta/llama-3.1-8b-instruct"))

    assert text == "Four"
    path = recorder.requests[0].url.path
    assert path.startswith("/client/v4/accounts/acct-1/ai/run/")
    assert path.endswith("cf/meta/llama-3.1-8b-instruct")
    assert recorder.requests[0].headers["authorization"] == "Bearer cf-token"


def test_workers_ai_falls_back_to_single_json_document() -> None:
    recorder = _Recorder(
        b'{"result":{"response":"Four, in one piece."},"success":true}',
        content_type="application/json",
    )
    adapter = WorkersAIAdapter("acct-1", "cf-token", transport=httpx.MockTransport(recorder))

    text = asyncio.run(_chat(adapter, "@cf/meta/llama-3.1-8b-instruct"))

    assert text == "Four, in one piece."


def test_workers_ai_needs_account_and_token() -> None:
    assert WorkersAIAdapter("acct-1", None).is_available() is False
    assert WorkersAIAdapter(None, "cf-token").is_available() is False
    assert WorkersAIAdapter("acct-1", "cf-token").is_available() is True


# ---- Shared stream handling ----


def _stream_around_garbage(first: str, second: str) -> bytes:
    return (
        f"data: {first}\n\n"
        "data: {not json\n\n"
        "data: [1,2]\n\n"
        f"data: {second}\n\n"
    ).encode("utf-8")


@pytest.mark.parametrize(
    ("make_adapter", "model_id", "first", "second"),
    [
        (
            lambda transport: GeminiAdapter("g-key", transport=transport),
            "gemini-2.5-flash",
            '{"candidates":[{"content":{"parts":[{"text":"A"}]}}]}',
            '{"candidates":[{"content":{"parts":[{"text":"B"}]}}]}',
        ),
        (
            lambda transport: GroqAdapter("gsk-test", transport=transport),
            "llama-3.3-70b-versatile",
            '{"choices":[{"delta":{"content":"A"}}]}',
            '{"choices":[{"delta":{"content":"B"}}]}',
        ),
        (
            lambda transport: HuggingFaceAdapter("hf-key", transport=transport),
            "hf:mistralai/Mistral-7B-Instruct-v0.3",
            '{"token":{"text":"A","special":false}}',
            '{"token":{"text":"B","special":false}}',
        ),
        (
            lambda transport: WorkersAIAdapter("acct-1", "cf-token", transport=transport),
            "@cf/meta/llama-3.1-8b-instruct",
            '{"response":"A"}',
            '{"response":"B"}',
        ),
    ],
    ids=["gemini", "groq", "huggingface", "workers_ai"],
)
def test_malformed_records_are_skipped_mid_stream(make_adapter, model_id, first, second) -> None:  # type: ignore[no-untyped-def]
    recorder = _Recorder(_stream_around_garbage(first, second))
    adapter = make_adapter(httpx.MockTransport(recorder))

    assert asyncio.run(_chat(adapter, model_id)) == "AB"
