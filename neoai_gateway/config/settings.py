from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are neoAI, a helpful, accurate, and concise AI assistant. "
    "Respond in markdown when appropriate. Be direct and helpful."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="NEOAI_", case_sensitive=False)

    env: str = "production"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    # Access broker
    access_team_domain: str | None = None
    access_audience: str | None = None
    access_certs_url: str | None = None
    access_token_header: str = "cf-access-jwt-assertion"
    access_jwks_ttl_seconds: float = 600.0
    access_timeout_s: float = 5.0

    # Quota
    rate_limit_per_hour: int = 50
    rate_limit_per_day: int = 500
    quota_cleanup_timeout_s: float = 5.0

    # Storage
    database_path: Path = Path("artifacts/neoai.db")
    kv_backend: str = "memory"
    kv_redis_url: str | None = None
    kv_redis_prefix: str = "neoai:kv"

    # Backends
    gemini_api_key: str | None = None
    groq_api_key: str | None = None
    hf_api_key: str | None = None
    workers_ai_account_id: str | None = None
    workers_ai_api_token: str | None = None
    provider_timeout_s: float = 60.0

    # Chat
    default_temperature: float = 0.7
    max_message_chars: int = 32_000
    history_limit: int = 50
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    shutdown_drain_timeout_s: float = 10.0

    @property
    def is_development(self) -> bool:
        return self.env.strip().lower() == "development"

    @property
    def access_certs_endpoint(self) -> str | None:
        if self.access_certs_url:
            return self.access_certs_url
        if not self.access_team_domain:
            return None
        domain = self.access_team_domain.strip()
        if "." not in domain:
            domain = f"{domain}.cloudflareaccess.com"
        return f"https://{domain}/cdn-cgi/access/certs"

    @property
    def auth_bypass_enabled(self) -> bool:
        return self.is_development and self.access_certs_endpoint is None

    @property
    def kv_backend_normalized(self) -> str:
        return self.kv_backend.strip().lower()


@dataclass
class EnvValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_environment(settings: Settings) -> EnvValidationResult:
    """Check required and optional configuration.

    Missing access broker settings are errors outside development; missing
    backend credentials only produce warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not settings.is_development:
        if not settings.access_team_domain and not settings.access_certs_url:
            errors.append("NEOAI_ACCESS_TEAM_DOMAIN is required in production")
        if not settings.access_audience:
            errors.append("NEOAI_ACCESS_AUDIENCE is required in production")
    elif settings.access_certs_endpoint is None:
        warnings.append("NEOAI_ACCESS_TEAM_DOMAIN not set, auth is bypassed in development")

    workers_ai_configured = bool(
        settings.workers_ai_account_id and settings.workers_ai_api_token
    )
    if not (
        settings.gemini_api_key
        or settings.groq_api_key
        or settings.hf_api_key
        or workers_ai_configured
    ):
        warnings.append(
            "No AI backend configured. Set at least one of NEOAI_GEMINI_API_KEY, "
            "NEOAI_GROQ_API_KEY, NEOAI_HF_API_KEY or the Workers AI account and token."
        )
    if not settings.gemini_api_key:
        warnings.append("NEOAI_GEMINI_API_KEY not set, Gemini models unavailable")
    if not settings.groq_api_key:
        warnings.append("NEOAI_GROQ_API_KEY not set, Groq models unavailable")
    if not settings.hf_api_key:
        warnings.append("NEOAI_HF_API_KEY not set, HuggingFace models unavailable")
    if not workers_ai_configured:
        warnings.append("Workers AI account or token not set, Workers AI models unavailable")

    return EnvValidationResult(valid=not errors, errors=errors, warnings=warnings)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
