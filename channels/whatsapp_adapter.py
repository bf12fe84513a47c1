"""
WhatsApp Cloud API delivery client.

Provides:
- Phone number normalization
- Outbound: one message per call to /{phone_number_id}/messages
- Response reduction to DeliveryResult (success + wamid, or error code)
- Idempotency token forwarded as a request header

Only connection failures are retried here, because the request never
reached the provider. Everything else is returned to the caller to
classify; re-sending is the queue processor's decision.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryClient
from config.settings import WhatsAppConfig
from models.errors import DeliveryError
from models.schemas import ChannelCredentials, DeliveryResult

logger = structlog.get_logger()

# E.164 allows at most 15 digits; shorter than 7 is never a mobile number
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def format_error_message(error: dict[str, Any]) -> str:
    """`<type> - <message> (<user title>)`, skipping the parts that are absent."""
    message = error.get("message") or "Unknown WhatsApp API error"
    if error.get("type"):
        message = f"{error['type']} - {message}"
    if error.get("error_user_title"):
        message = f"{message} ({error['error_user_title']})"
    return message


class WhatsAppCloudClient(DeliveryClient):
    """WhatsApp Business Cloud API client."""

    def __init__(self, config: WhatsAppConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or WhatsAppConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def messages_path(self, phone_number_id: str) -> str:
        return f"/{self.config.graph_version}/{phone_number_id}/messages"

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, headers: dict[str, str], body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(path, headers=headers, json=body)

    async def send(
        self,
        credential: ChannelCredentials,
        recipient: str,
        payload: dict[str, Any],
        idempotency_token: str,
    ) -> DeliveryResult:
        """
        Raises DeliveryError(retryable=False) for a recipient that cannot be a
        phone number; no request is made.
        """
        to = normalize_phone(recipient)
        if not MIN_PHONE_DIGITS <= len(to) <= MAX_PHONE_DIGITS:
            logger.warning("whatsapp_invalid_recipient", recipient=recipient, digits=len(to))
            raise DeliveryError(f"invalid recipient phone number: {recipient!r}", retryable=False)

        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
            "X-Idempotency-Key": idempotency_token,
        }
        body = {"messaging_product": "whatsapp", "to": to, **payload}

        logger.info("whatsapp_request",
                    phone_number_id=credential.phone_number_id,
                    recipient=to,
                    type=payload.get("type"),
                    idempotency_key=idempotency_token)

        try:
            resp = await self._post(self.messages_path(credential.phone_number_id), headers, body)
        except httpx.HTTPError as e:
            logger.error("whatsapp_transport_error",
                         recipient=to,
                         phone_number_id=credential.phone_number_id,
                         error=str(e) or type(e).__name__)
            return DeliveryResult(
                success=False,
                error_message=str(e) or f"{type(e).__name__}: network error",
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.is_success:
            messages = data.get("messages") if isinstance(data, dict) else None
            message_id = None
            if messages and isinstance(messages, list):
                message_id = (messages[0] or {}).get("id")
            if not message_id:
                logger.warning("whatsapp_success_without_id", recipient=to, status=resp.status_code)
            return DeliveryResult(success=True, provider_message_id=message_id)

        error = data.get("error", {}) if isinstance(data, dict) else {}
        code = error.get("code") or resp.status_code
        logger.error("whatsapp_api_error",
                     code=code,
                     message=error.get("message"),
                     recipient=to,
                     phone_number_id=credential.phone_number_id)
        return DeliveryResult(
            success=False,
            error_code=_as_int(code),
            error_message=format_error_message(error),
            error_details=error or {"status": resp.status_code},
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
