"""Delivery clients for outbound WhatsApp messages."""
from channels.base import (
    DeliveryClient,
    RecordingDeliveryClient,
    idempotency_token,
)
from channels.template_payload import build_template_payload
from channels.whatsapp_adapter import WhatsAppCloudClient

__all__ = [
    "DeliveryClient", "RecordingDeliveryClient", "idempotency_token",
    "build_template_payload", "WhatsAppCloudClient",
]
