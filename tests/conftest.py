import time
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from neoai_gateway.config.settings import clear_settings_cache
from neoai_gateway.main import create_app

GROQ_SSE_BODY = (
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":" world"}}]}\n\n'
    b"data: [DONE]\n\n"
)
GROQ_MODEL = "llama-3.3-70b-versatile"
ACCESS_AUDIENCE = "aud-tag"

_BACKEND_ENV = (
    "NEOAI_GEMINI_API_KEY",
    "NEOAI_HF_API_KEY",
    "NEOAI_WORKERS_AI_ACCOUNT_ID",
    "NEOAI_WORKERS_AI_API_TOKEN",
    "NEOAI_ACCESS_TEAM_DOMAIN",
    "NEOAI_ACCESS_AUDIENCE",
    "NEOAI_ACCESS_CERTS_URL",
)


def groq_stream_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=GROQ_SSE_BODY
    )


class AccessSigner:
    """Signs broker-style assertions and serves the matching key set."""

    def __init__(self, kid: str = "key-1") -> None:
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.fetches = 0

    def jwk(self) -> dict[str, object]:
        key = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        key.update({"kid": self.kid, "use": "sig", "alg": "RS256"})
        return key

    def token(self, **overrides: object) -> str:
        claims: dict[str, object] = {
            "sub": "user-123",
            "email": "ada@example.com",
            "aud": [ACCESS_AUDIENCE],
            "exp": int(time.time()) + 300,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": self.kid})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.fetches += 1
        return httpx.Response(200, json={"keys": [self.jwk()]})


@pytest.fixture
def access_signer() -> AccessSigner:
    return AccessSigner()


@pytest.fixture
def gateway_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Path]:
    for name in _BACKEND_ENV:
        monkeypatch.delenv(name, raising=False)
    database_path = tmp_path / "neoai.db"
    monkeypatch.setenv("NEOAI_ENV", "development")
    monkeypatch.setenv("NEOAI_DATABASE_PATH", str(database_path))
    monkeypatch.setenv("NEOAI_GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("NEOAI_LOG_LEVEL", "WARNING")
    clear_settings_cache()
    yield database_path
    clear_settings_cache()


@pytest.fixture
def make_app(gateway_env: Path) -> Callable[..., FastAPI]:
    def _make(handler: Callable[[httpx.Request], httpx.Response] = groq_stream_handler) -> FastAPI:
        clear_settings_cache()
        return create_app(transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app()


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
