from conftest import GROQ_MODEL
from fastapi.testclient import TestClient


def test_models_lists_configured_backends_only(client: TestClient) -> None:
    response = client.get("/api/models")

    assert response.status_code == 200
    body = response.json()
    assert body["providers"] == ["groq"]
    assert body["count"] == len(body["models"])
    model = next(m for m in body["models"] if m["id"] == GROQ_MODEL)
    assert model == {
        "id": GROQ_MODEL,
        "name": "Llama 3.3 70B",
        "provider": "groq",
        "description": "Meta Llama 3.3 70B, general-purpose model on Groq.",
        "contextWindow": 128_000,
        "maxOutputTokens": 4096,
        "isFree": True,
    }


def test_health_reports_checks_and_warnings(client: TestClient) -> None:
    body = client.get("/api/health").json()

    assert body["status"] == "healthy"
    assert body["version"] == "1.0.0"
    assert body["checks"]["database"] == "ok"
    assert body["checks"]["env"] == "ok"
    assert body["checks"]["providers"] == 5
    assert "NEOAI_GEMINI_API_KEY not set, Gemini models unavailable" in body["warnings"]


def test_health_is_degraded_when_production_config_is_missing(make_app, monkeypatch) -> None:
    monkeypatch.setenv("NEOAI_ENV", "production")
    app = make_app()

    with TestClient(app) as client:
        body = client.get("/api/health").json()

    assert body["status"] == "degraded"
    assert body["checks"]["env"] == "missing_required"


def test_dev_identity_is_used_when_auth_is_bypassed(client: TestClient) -> None:
    assert client.get("/api/me").json() == {
        "user": {"id": "dev-user", "email": "dev@localhost", "name": "Dev User"}
    }
