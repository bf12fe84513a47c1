"""
Delivery Client boundary.

Provides:
- DeliveryClient: abstract sender, one message per call
- idempotency_token(): stable per-attempt token for provider-side dedupe
- RecordingDeliveryClient: scripted client for development and tests
"""
from __future__ import annotations

import abc
import hashlib
from typing import Any, Callable, Optional, Union

import structlog

from models.schemas import ChannelCredentials, DeliveryResult

logger = structlog.get_logger()


def idempotency_token(item_id: str, attempt_count: int) -> str:
    """Token derived from (item id, attempt) so a replayed attempt dedupes."""
    return hashlib.sha256(f"{item_id}:{attempt_count}".encode()).hexdigest()[:32]


class DeliveryClient(abc.ABC):
    """Sends a single message to the external provider."""

    @abc.abstractmethod
    async def send(
        self,
        credential: ChannelCredentials,
        recipient: str,
        payload: dict[str, Any],
        idempotency_token: str,
    ) -> DeliveryResult:
        """
        Deliver one message. Provider errors come back as a failed
        DeliveryResult; transport errors may raise.
        """
        ...

    async def close(self) -> None:
        pass


ScriptStep = Union[DeliveryResult, Exception, Callable[..., Any]]


class RecordingDeliveryClient(DeliveryClient):
    """
    In-process client that records every call and replays scripted results.

    Each step is a DeliveryResult, an exception to raise, or a callable
    (sync or async) receiving the call kwargs. When the script runs out the
    default result is returned.
    """

    def __init__(self, script: Optional[list[ScriptStep]] = None,
                 default: Optional[DeliveryResult] = None):
        self._script = list(script or [])
        self._default = default or DeliveryResult(success=True, provider_message_id="wamid.test")
        self.calls: list[dict[str, Any]] = []

    def push(self, *steps: ScriptStep) -> None:
        self._script.extend(steps)

    async def send(self, credential, recipient, payload, idempotency_token) -> DeliveryResult:
        call = {
            "channel_id": credential.id,
            "recipient": recipient,
            "payload": payload,
            "idempotency_token": idempotency_token,
        }
        self.calls.append(call)
        logger.debug("recording_client_send", channel_id=credential.id, recipient=recipient)

        step = self._script.pop(0) if self._script else self._default
        if isinstance(step, Exception):
            raise step
        if callable(step):
            result = step(**call)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return step
