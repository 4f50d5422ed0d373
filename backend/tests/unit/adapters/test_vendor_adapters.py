"""Tests for the httpx vendor adapters and descriptor builders."""

from __future__ import annotations

import json

import httpx
import pytest

from relaygate.adapters.outbound.http import is_retryable_status
from relaygate.adapters.outbound.llm import (
    ClaudeAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    build_llm_descriptors,
)
from relaygate.adapters.outbound.messaging import (
    TwilioWhatsAppAdapter,
    WABACloudAdapter,
    WATIAdapter,
    build_messaging_descriptors,
)
from relaygate.config import get_settings
from relaygate.domain.exceptions import ConfigurationError
from relaygate.shared.providers.types import (
    ChatMessage,
    CompletionRequest,
    LLMProviderConfig,
    MessageRequest,
    MessagingProviderConfig,
)

PROMPT = CompletionRequest(
    messages=(ChatMessage("system", "Be brief."), ChatMessage("user", "Hi")),
    max_tokens=64,
)


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status: int = 200, body: object | None = None, exc: Exception | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {}
        self.exc = exc
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        return httpx.Response(self.status, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


async def _adapter(cls, config, handler: Recorder):
    adapter = cls(transport=httpx.MockTransport(handler))
    await adapter.initialize(config)
    return adapter


LLM_CONFIG = LLMProviderConfig(api_key="sk-test", model="gpt-4o")


# ═══════════════════════════════════════════════════════════════
#  Error classification
# ═══════════════════════════════════════════════════════════════
class TestRetryClassification:
    @pytest.mark.parametrize("status", [500, 502, 503, 504, 429, 529])
    def test_retryable_statuses(self, status: int) -> None:
        assert is_retryable_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_fatal(self, status: int) -> None:
        assert is_retryable_status(status) is False

    def test_overload_marker_in_body(self) -> None:
        assert is_retryable_status(400, "RESOURCE_EXHAUSTED quota") is True
        assert is_retryable_status(400, "overloaded_error") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "retryable"), [(500, True), (429, True), (529, True), (400, False), (401, False)]
    )
    async def test_http_errors_are_normalized(self, status: int, retryable: bool) -> None:
        handler = Recorder(status, {"error": {"type": "api_error", "message": "boom"}})
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, handler)

        result = await adapter.execute(PROMPT)

        assert result.success is False
        assert result.error.code == f"HTTP_{status}"
        assert result.error.message == "boom"
        assert result.retryable is retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self) -> None:
        handler = Recorder(exc=httpx.ConnectError("connection refused"))
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, handler)
        result = await adapter.execute(PROMPT)
        assert result.error.code == "NETWORK_ERROR"
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self) -> None:
        handler = Recorder(exc=httpx.ReadTimeout("read timed out"))
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, handler)
        result = await adapter.execute(PROMPT)
        assert result.error.code == "TIMEOUT"
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_unparseable_body_is_fatal(self) -> None:
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, Recorder(200, {"unexpected": True}))
        result = await adapter.execute(PROMPT)
        assert result.error.code == "INVALID_RESPONSE"
        assert result.retryable is False


# ═══════════════════════════════════════════════════════════════
#  Lifecycle
# ═══════════════════════════════════════════════════════════════
class TestAdapterLifecycle:
    @pytest.mark.asyncio
    async def test_missing_api_key_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="API key is required"):
            await OpenAIAdapter().initialize(LLMProviderConfig(api_key=""))

    @pytest.mark.asyncio
    async def test_wrong_config_family(self) -> None:
        with pytest.raises(ConfigurationError):
            await ClaudeAdapter().initialize(MessagingProviderConfig(api_key="k"))

    @pytest.mark.asyncio
    async def test_execute_before_initialize(self) -> None:
        result = await OpenAIAdapter().execute(PROMPT)
        assert result.error.code == "NOT_INITIALIZED"
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_wrong_request_family(self) -> None:
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, Recorder())
        result = await adapter.execute(MessageRequest(to="+15550001", text="hi"))
        assert result.error.code == "UNSUPPORTED_REQUEST"

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, Recorder(200, {"data": []}))
        health = await adapter.health_check()
        assert health.is_healthy is True
        assert adapter.is_healthy() is True

    @pytest.mark.asyncio
    async def test_failed_health_check_marks_unhealthy(self) -> None:
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, Recorder(401, {"error": {"message": "bad key"}}))
        health = await adapter.health_check()
        assert health.is_healthy is False
        assert "401" in health.message
        assert adapter.is_healthy() is False

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        adapter = await _adapter(OpenAIAdapter, LLM_CONFIG, Recorder())
        await adapter.close()
        assert adapter.is_healthy() is False
        assert (await adapter.execute(PROMPT)).error.code == "NOT_INITIALIZED"


# ═══════════════════════════════════════════════════════════════
#  LLM wire formats
# ═══════════════════════════════════════════════════════════════
class TestLLMAdapters:
    @pytest.mark.asyncio
    async def test_openai(self) -> None:
        handler = Recorder(
            200,
            {
                "model": "gpt-4o-2024-08-06",
                "choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )
        adapter = await _adapter(
            OpenAIAdapter, LLMProviderConfig(api_key="sk-test", organization_id="org-1"), handler
        )

        result = await adapter.execute(PROMPT)

        assert result.success is True
        assert result.payload["content"] == "Hello"
        assert (result.prompt_tokens, result.completion_tokens) == (12, 3)
        assert result.model == "gpt-4o-2024-08-06"
        sent = handler.last
        assert sent.url.path == "/v1/chat/completions"
        assert sent.headers["authorization"] == "Bearer sk-test"
        assert sent.headers["openai-organization"] == "org-1"
        body = json.loads(sent.content)
        assert body["model"] == "gpt-4o"
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_claude_moves_system_prompt(self) -> None:
        handler = Recorder(
            200,
            {
                "model": "claude-3-5-sonnet-20241022",
                "content": [{"type": "text", "text": "Hey"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 20, "output_tokens": 4},
            },
        )
        adapter = await _adapter(ClaudeAdapter, LLMProviderConfig(api_key="ak"), handler)

        result = await adapter.execute(PROMPT)

        assert result.payload["content"] == "Hey"
        assert (result.prompt_tokens, result.completion_tokens) == (20, 4)
        sent = handler.last
        assert sent.url.path == "/v1/messages"
        assert sent.headers["x-api-key"] == "ak"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(sent.content)
        assert body["model"] == "claude-3-5-sonnet-20241022"
        assert body["system"] == "Be brief."
        assert body["messages"] == [{"role": "user", "content": "Hi"}]

    @pytest.mark.asyncio
    async def test_claude_overloaded_is_retryable(self) -> None:
        handler = Recorder(529, {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        adapter = await _adapter(ClaudeAdapter, LLMProviderConfig(api_key="ak"), handler)
        result = await adapter.execute(PROMPT)
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_gemini(self) -> None:
        handler = Recorder(
            200,
            {
                "candidates": [{"content": {"parts": [{"text": "Yo"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 8, "candidatesTokenCount": 2},
            },
        )
        adapter = await _adapter(GeminiAdapter, LLMProviderConfig(api_key="gk"), handler)

        result = await adapter.execute(PROMPT)

        assert result.payload["content"] == "Yo"
        assert result.model == "gemini-1.5-flash"
        assert (result.prompt_tokens, result.completion_tokens) == (8, 2)
        sent = handler.last
        assert sent.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
        assert sent.url.params["key"] == "gk"
        body = json.loads(sent.content)
        assert body["system_instruction"] == {"parts": [{"text": "Be brief."}]}


# ═══════════════════════════════════════════════════════════════
#  Messaging wire formats
# ═══════════════════════════════════════════════════════════════
class TestMessagingAdapters:
    @pytest.mark.asyncio
    async def test_waba_template(self) -> None:
        handler = Recorder(200, {"messages": [{"id": "wamid.1"}]})
        adapter = await _adapter(
            WABACloudAdapter,
            MessagingProviderConfig(access_token="tok", phone_number_id="123"),
            handler,
        )

        result = await adapter.execute(
            MessageRequest(to="+91 98765 43210", template_name="otp", template_params=("4321",))
        )

        assert result.success is True
        assert result.payload["message_id"] == "wamid.1"
        assert result.message_count == 1
        assert result.model == "WHATSAPP"
        body = json.loads(handler.last.content)
        assert handler.last.url.path == "/v18.0/123/messages"
        assert body["to"] == "919876543210"
        assert body["template"]["components"][0]["parameters"] == [{"type": "text", "text": "4321"}]

    @pytest.mark.asyncio
    async def test_waba_requires_phone_number_id(self) -> None:
        with pytest.raises(ConfigurationError, match="phone_number_id"):
            await WABACloudAdapter().initialize(MessagingProviderConfig(access_token="tok"))

    @pytest.mark.asyncio
    async def test_wati_result_false_is_fatal(self) -> None:
        handler = Recorder(200, {"result": False, "info": "Invalid WhatsApp number"})
        adapter = await _adapter(
            WATIAdapter, MessagingProviderConfig(api_key="k", base_url="https://live.wati.io/1"), handler
        )

        result = await adapter.execute(MessageRequest(to="+15550001", text="hello"))

        assert result.success is False
        assert result.error.code == "WATI_ERROR"
        assert result.error.message == "Invalid WhatsApp number"
        assert result.retryable is False
        assert handler.last.url.path == "/1/api/v1/sendSessionMessage/15550001"

    @pytest.mark.asyncio
    async def test_twilio_form_post(self) -> None:
        handler = Recorder(201, {"sid": "SM1", "status": "queued"})
        adapter = await _adapter(
            TwilioWhatsAppAdapter,
            MessagingProviderConfig(account_sid="AC1", auth_token="secret", from_number="+14155238886"),
            handler,
        )

        result = await adapter.execute(MessageRequest(to="+15550001", text="hello"))

        assert result.payload == {"message_id": "SM1", "status": "queued"}
        sent = handler.last
        assert sent.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
        assert sent.headers["authorization"].startswith("Basic ")
        form = dict(httpx.QueryParams(sent.content.decode()))
        assert form == {"To": "whatsapp:+15550001", "From": "whatsapp:+14155238886", "Body": "hello"}


# ═══════════════════════════════════════════════════════════════
#  Descriptors from settings
# ═══════════════════════════════════════════════════════════════
class TestDescriptorBuilders:
    def test_llm_descriptors_follow_ai_provider(self) -> None:
        settings = get_settings(
            _env_file=None,
            ai_provider="Claude",
            openai_api_key="sk",
            anthropic_api_key="ak",
            google_api_key="",
        )
        descriptors = build_llm_descriptors(settings)
        assert [d.code for d in descriptors] == ["claude", "openai"]
        assert [d.code for d in descriptors if d.is_primary] == ["claude"]

    def test_openai_leads_by_default(self) -> None:
        settings = get_settings(
            _env_file=None, ai_provider="", openai_api_key="sk", anthropic_api_key="", google_api_key="gk"
        )
        primaries = [d.code for d in build_llm_descriptors(settings) if d.is_primary]
        assert primaries == ["openai"]

    def test_messaging_requires_complete_credentials(self) -> None:
        settings = get_settings(
            _env_file=None,
            messaging_provider="wati",
            waba_access_token="tok",
            waba_phone_number_id="",
            wati_api_key="k",
            wati_api_endpoint="https://live.wati.io/1",
            twilio_account_sid="",
            twilio_auth_token="",
            twilio_whatsapp_number="",
        )
        descriptors = build_messaging_descriptors(settings)
        assert [d.code for d in descriptors] == ["wati"]
        assert descriptors[0].is_primary is True
