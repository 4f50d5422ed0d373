"""LLM vendor adapters — OpenAI, Claude and Gemini.

Each adapter only maps the vendor wire format.  Retries, failover, circuit
breaking and metering live in the gateway.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from relaygate.adapters.outbound.http import HttpProviderAdapter
from relaygate.config import Settings
from relaygate.domain.enums import ProviderFamily
from relaygate.domain.exceptions import ConfigurationError
from relaygate.shared.providers.types import (
    CompletionRequest,
    LLMProviderConfig,
    NormalizedResult,
    ProviderConfig,
    ProviderDescriptor,
)

logger = structlog.get_logger(__name__)


class _LLMAdapter(HttpProviderAdapter):
    family = ProviderFamily.LLM
    default_model: str = ""

    def _validate(self, config: ProviderConfig) -> None:
        if not isinstance(config, LLMProviderConfig):
            raise ConfigurationError(self.provider_code, "expected an LLM provider config")
        if not config.api_key:
            raise ConfigurationError(self.provider_code, "API key is required")

    def _model(self, request: CompletionRequest) -> str:
        return request.model or self._config.model or self.default_model


# ── OpenAI ───────────────────────────────────────────────────
class OpenAIAdapter(_LLMAdapter):
    provider_code = "openai"
    provider_name = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o"

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._config.api_key}"}
        if self._config.organization_id:
            headers["OpenAI-Organization"] = self._config.organization_id
        return headers

    async def _send(self, request: CompletionRequest) -> httpx.Response:  # type: ignore[override]
        body: dict[str, Any] = {
            "model": self._model(request),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
        }
        if request.response_format == "json":
            body["response_format"] = {"type": "json_object"}
        return await self.client.post("/chat/completions", headers=self._headers(), json=body)

    def _parse(self, request: CompletionRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return NormalizedResult(
            success=True,
            payload={
                "content": choice["message"].get("content") or "",
                "finish_reason": choice.get("finish_reason"),
            },
            model=data.get("model") or self._model(request),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )

    async def _probe(self) -> httpx.Response:
        return await self.client.get("/models", headers=self._headers())


# ── Anthropic Claude ─────────────────────────────────────────
class ClaudeAdapter(_LLMAdapter):
    provider_code = "claude"
    provider_name = "Anthropic Claude"
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-3-5-sonnet-20241022"
    api_version = "2023-06-01"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._config.api_key,
            "anthropic-version": self._config.api_version or self.api_version,
        }

    async def _send(self, request: CompletionRequest) -> httpx.Response:  # type: ignore[override]
        system = "\n\n".join(m.content for m in request.messages if m.role == "system")
        body: dict[str, Any] = {
            "model": self._model(request),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in request.messages
                if m.role != "system"
            ],
        }
        if system:
            body["system"] = system
        return await self.client.post("/v1/messages", headers=self._headers(), json=body)

    def _parse(self, request: CompletionRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        text = "".join(
            part.get("text", "") for part in data.get("content", []) if part.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return NormalizedResult(
            success=True,
            payload={"content": text, "finish_reason": data.get("stop_reason")},
            model=data.get("model") or self._model(request),
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
        )

    async def _probe(self) -> httpx.Response:
        # Cheapest model, five tokens.
        return await self.client.post(
            "/v1/messages",
            headers=self._headers(),
            json={
                "model": "claude-3-haiku-20240307",
                "max_tokens": 5,
                "messages": [{"role": "user", "content": "ping"}],
            },
        )


# ── Google Gemini ────────────────────────────────────────────
class GeminiAdapter(_LLMAdapter):
    provider_code = "gemini"
    provider_name = "Google Gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-1.5-flash"

    async def _send(self, request: CompletionRequest) -> httpx.Response:  # type: ignore[override]
        system = [m.content for m in request.messages if m.role == "system"]
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in request.messages
                if m.role != "system"
            ],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if system:
            body["system_instruction"] = {"parts": [{"text": "\n\n".join(system)}]}
        if request.response_format == "json":
            body["generationConfig"]["responseMimeType"] = "application/json"
        return await self.client.post(
            f"/models/{self._model(request)}:generateContent",
            params={"key": self._config.api_key},
            json=body,
        )

    def _parse(self, request: CompletionRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        candidate = data["candidates"][0]
        parts = candidate.get("content", {}).get("parts", [])
        usage = data.get("usageMetadata") or {}
        return NormalizedResult(
            success=True,
            payload={
                "content": "".join(p.get("text", "") for p in parts),
                "finish_reason": candidate.get("finishReason"),
            },
            model=self._model(request),
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
        )

    async def _probe(self) -> httpx.Response:
        return await self.client.get("/models", params={"key": self._config.api_key})


LLM_ADAPTERS: dict[str, type[_LLMAdapter]] = {
    OpenAIAdapter.provider_code: OpenAIAdapter,
    ClaudeAdapter.provider_code: ClaudeAdapter,
    GeminiAdapter.provider_code: GeminiAdapter,
}


def build_llm_descriptors(settings: Settings) -> list[ProviderDescriptor]:
    """Descriptors for every LLM vendor with credentials in the environment.

    ``AI_PROVIDER`` picks the primary; when unset OpenAI leads.
    """
    timeout = settings.provider_timeout_seconds
    retries = settings.provider_max_retries
    primary = settings.ai_provider or "openai"
    descriptors: list[ProviderDescriptor] = []

    if settings.anthropic_api_key:
        descriptors.append(
            ProviderDescriptor(
                code="claude",
                display_name=ClaudeAdapter.provider_name,
                is_primary=primary == "claude",
                config=LLMProviderConfig(
                    api_key=settings.anthropic_api_key,
                    model=settings.anthropic_model,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )
    if settings.openai_api_key:
        descriptors.append(
            ProviderDescriptor(
                code="openai",
                display_name=OpenAIAdapter.provider_name,
                is_primary=primary == "openai",
                config=LLMProviderConfig(
                    api_key=settings.openai_api_key,
                    base_url=settings.openai_base_url or None,
                    model=settings.openai_model,
                    organization_id=settings.openai_organization_id or None,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )
    if settings.google_api_key:
        descriptors.append(
            ProviderDescriptor(
                code="gemini",
                display_name=GeminiAdapter.provider_name,
                is_primary=primary == "gemini",
                config=LLMProviderConfig(
                    api_key=settings.google_api_key,
                    model=settings.google_model,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )

    logger.info(
        "llm_descriptors_built",
        providers=[d.code for d in descriptors],
        primary=next((d.code for d in descriptors if d.is_primary), None),
    )
    return descriptors
