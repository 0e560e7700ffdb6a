"""Backend registry: model catalog and model-to-adapter routing."""

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

import httpx

from neoai_gateway.config.settings import Settings
from neoai_gateway.providers.base import (
    BackendAdapter,
    ModelDescriptor,
    ModelNotFoundError,
    ProviderError,
    ProviderUnavailableError,
)
from neoai_gateway.providers.gemini import GeminiAdapter
from neoai_gateway.providers.groq import GroqAdapter
from neoai_gateway.providers.huggingface import HuggingFaceAdapter
from neoai_gateway.providers.workers_ai import WorkersAIAdapter

logger = logging.getLogger("neoai.providers")


@dataclass
class RoutedStream:
    stream: AsyncIterator[bytes]
    model: str
    backend: str
    backend_name: str


class BackendRegistry:
    """Routes model ids to the adapter that serves them.

    Only adapters that report themselves available are retained.  When two
    adapters list the same model id the later one in ``adapters`` wins.
    """

    def __init__(self, adapters: Sequence[BackendAdapter]) -> None:
        self._adapters: dict[str, BackendAdapter] = {}
        self._model_to_backend: dict[str, str] = {}
        for adapter in adapters:
            if not adapter.is_available():
                logger.info("backend_skipped", extra={"backend": adapter.id})
                continue
            self._adapters[adapter.id] = adapter
            models = adapter.list_models()
            for model in models:
                self._model_to_backend[model.id] = adapter.id
            logger.info(
                "backend_registered", extra={"backend": adapter.id, "count": len(models)}
            )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "BackendRegistry":
        timeout_s = settings.provider_timeout_s
        return cls(
            [
                GeminiAdapter(settings.gemini_api_key, timeout_s=timeout_s, transport=transport),
                GroqAdapter(settings.groq_api_key, timeout_s=timeout_s, transport=transport),
                WorkersAIAdapter(
                    settings.workers_ai_account_id,
                    settings.workers_ai_api_token,
                    timeout_s=timeout_s,
                    transport=transport,
                ),
                HuggingFaceAdapter(settings.hf_api_key, timeout_s=timeout_s, transport=transport),
            ]
        )

    def backends(self) -> list[str]:
        return list(self._adapters)

    def list_models(self) -> list[ModelDescriptor]:
        models: list[ModelDescriptor] = []
        for adapter in self._adapters.values():
            models.extend(adapter.list_models())
        return models

    def model_ids(self) -> list[str]:
        return [model.id for model in self.list_models()]

    def adapter_for(self, model_id: str) -> BackendAdapter | None:
        backend = self._model_to_backend.get(model_id)
        if backend is None:
            return None
        return self._adapters.get(backend)

    def resolve(self, model_id: str) -> BackendAdapter:
        adapter = self.adapter_for(model_id)
        if adapter is None:
            raise ModelNotFoundError(model_id, self.model_ids())
        return adapter

    async def chat(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int | None = None,
    ) -> RoutedStream:
        adapter = self.resolve(model_id)
        try:
            stream = await adapter.chat(model_id, messages, temperature, max_tokens)
        except ProviderUnavailableError:
            raise
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning(
                "backend_call_failed",
                extra={"backend": adapter.id, "model": model_id, "error": str(exc)},
            )
            status_code = exc.status_code if isinstance(exc, ProviderError) else 502
            raise ProviderError(
                status_code=status_code,
                code="provider_error",
                message=f"{adapter.name} encountered an error",
                backend=adapter.name,
            ) from exc
        return RoutedStream(
            stream=stream, model=model_id, backend=adapter.id, backend_name=adapter.name
        )
