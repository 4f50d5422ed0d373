"""WhatsApp-class messaging adapters — WABA Cloud API, WATI and Twilio."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from relaygate.adapters.outbound.http import HttpProviderAdapter
from relaygate.config import Settings
from relaygate.domain.enums import ProviderFamily
from relaygate.domain.exceptions import ConfigurationError
from relaygate.shared.providers.types import (
    MessageRequest,
    MessagingProviderConfig,
    NormalizedResult,
    ProviderConfig,
    ProviderDescriptor,
)

logger = structlog.get_logger(__name__)


def _digits(phone: str) -> str:
    return phone.strip().lstrip("+").replace(" ", "")


class _MessagingAdapter(HttpProviderAdapter):
    family = ProviderFamily.MESSAGING
    required: tuple[str, ...] = ()

    def _validate(self, config: ProviderConfig) -> None:
        if not isinstance(config, MessagingProviderConfig):
            raise ConfigurationError(self.provider_code, "expected a messaging provider config")
        missing = [name for name in self.required if not getattr(config, name)]
        if missing:
            raise ConfigurationError(self.provider_code, f"missing {', '.join(missing)}")

    def _sent(self, message_id: str | None, status: str | None = None) -> NormalizedResult:
        return NormalizedResult(
            success=True,
            payload={"message_id": message_id, "status": status or "sent"},
            model="WHATSAPP",
            message_count=1,
        )


# ── Meta WhatsApp Business (Cloud API) ───────────────────────
class WABACloudAdapter(_MessagingAdapter):
    provider_code = "waba"
    provider_name = "WhatsApp Business Cloud API"
    default_base_url = "https://graph.facebook.com/v18.0"
    required = ("access_token", "phone_number_id")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.access_token}"}

    async def _send(self, request: MessageRequest) -> httpx.Response:  # type: ignore[override]
        body: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": _digits(request.to),
        }
        if request.template_name:
            template: dict[str, Any] = {
                "name": request.template_name,
                "language": {"code": request.template_language},
            }
            if request.template_params:
                template["components"] = [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": p} for p in request.template_params],
                    }
                ]
            body.update(type="template", template=template)
        else:
            body.update(type="text", text={"preview_url": False, "body": request.text or ""})
        return await self.client.post(
            f"/{self._config.phone_number_id}/messages", headers=self._headers(), json=body
        )

    def _parse(self, request: MessageRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        messages = data.get("messages") or [{}]
        return self._sent(messages[0].get("id"))

    async def _probe(self) -> httpx.Response:
        return await self.client.get(f"/{self._config.phone_number_id}", headers=self._headers())


# ── WATI ─────────────────────────────────────────────────────
class WATIAdapter(_MessagingAdapter):
    provider_code = "wati"
    provider_name = "WATI"
    required = ("api_key", "base_url")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.api_key}"}

    async def _send(self, request: MessageRequest) -> httpx.Response:  # type: ignore[override]
        number = _digits(request.to)
        if request.template_name:
            return await self.client.post(
                "/api/v1/sendTemplateMessage",
                params={"whatsappNumber": number},
                headers=self._headers(),
                json={
                    "template_name": request.template_name,
                    "broadcast_name": request.template_name,
                    "parameters": [
                        {"name": str(i + 1), "value": value}
                        for i, value in enumerate(request.template_params)
                    ],
                },
            )
        return await self.client.post(
            f"/api/v1/sendSessionMessage/{number}",
            params={"messageText": request.text or ""},
            headers=self._headers(),
        )

    def _parse(self, request: MessageRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        # WATI answers 200 with result=false for rejected sends.
        if data.get("result") is False:
            return NormalizedResult.failure(
                "WATI_ERROR", str(data.get("info") or "Failed to send message"), retryable=False
            )
        message = data.get("message") or {}
        return self._sent(message.get("whatsappMessageId") or data.get("id"))

    async def _probe(self) -> httpx.Response:
        return await self.client.get("/api/v1/getContacts", headers=self._headers())


# ── Twilio WhatsApp ──────────────────────────────────────────
class TwilioWhatsAppAdapter(_MessagingAdapter):
    provider_code = "twilio-whatsapp"
    provider_name = "Twilio WhatsApp"
    default_base_url = "https://api.twilio.com/2010-04-01"
    required = ("account_sid", "auth_token", "from_number")

    @staticmethod
    def _whatsapp(phone: str) -> str:
        return phone if phone.startswith("whatsapp:") else f"whatsapp:+{_digits(phone)}"

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._config.account_sid, self._config.auth_token)

    async def _send(self, request: MessageRequest) -> httpx.Response:  # type: ignore[override]
        body = request.text or ""
        if request.template_name and not body:
            body = " ".join((request.template_name, *request.template_params))
        return await self.client.post(
            f"/Accounts/{self._config.account_sid}/Messages.json",
            auth=self._auth(),
            data={
                "To": self._whatsapp(request.to),
                "From": self._whatsapp(self._config.from_number),
                "Body": body,
            },
        )

    def _parse(self, request: MessageRequest, data: Any) -> NormalizedResult:  # type: ignore[override]
        return self._sent(data.get("sid"), data.get("status"))

    async def _probe(self) -> httpx.Response:
        return await self.client.get(
            f"/Accounts/{self._config.account_sid}.json", auth=self._auth()
        )


MESSAGING_ADAPTERS: dict[str, type[_MessagingAdapter]] = {
    WABACloudAdapter.provider_code: WABACloudAdapter,
    WATIAdapter.provider_code: WATIAdapter,
    TwilioWhatsAppAdapter.provider_code: TwilioWhatsAppAdapter,
}


def build_messaging_descriptors(settings: Settings) -> list[ProviderDescriptor]:
    """Descriptors for every messaging vendor fully configured in the environment.

    ``MESSAGING_PROVIDER`` picks the primary; when unset the first configured leads.
    """
    timeout = settings.provider_timeout_seconds
    retries = settings.provider_max_retries
    primary = settings.messaging_provider
    descriptors: list[ProviderDescriptor] = []

    if settings.waba_access_token and settings.waba_phone_number_id:
        descriptors.append(
            ProviderDescriptor(
                code="waba",
                display_name=WABACloudAdapter.provider_name,
                is_primary=primary == "waba",
                config=MessagingProviderConfig(
                    access_token=settings.waba_access_token,
                    phone_number_id=settings.waba_phone_number_id,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )
    if settings.wati_api_key and settings.wati_api_endpoint:
        descriptors.append(
            ProviderDescriptor(
                code="wati",
                display_name=WATIAdapter.provider_name,
                is_primary=primary == "wati",
                config=MessagingProviderConfig(
                    api_key=settings.wati_api_key,
                    base_url=settings.wati_api_endpoint,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )
    if (
        settings.twilio_account_sid
        and settings.twilio_auth_token
        and settings.twilio_whatsapp_number
    ):
        descriptors.append(
            ProviderDescriptor(
                code="twilio-whatsapp",
                display_name=TwilioWhatsAppAdapter.provider_name,
                is_primary=primary == "twilio-whatsapp",
                config=MessagingProviderConfig(
                    account_sid=settings.twilio_account_sid,
                    auth_token=settings.twilio_auth_token,
                    from_number=settings.twilio_whatsapp_number,
                    timeout_s=timeout,
                    max_retries=retries,
                ),
            )
        )

    logger.info(
        "messaging_descriptors_built",
        providers=[d.code for d in descriptors],
        primary=next((d.code for d in descriptors if d.is_primary), None),
    )
    return descriptors
