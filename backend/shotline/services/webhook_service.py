"""Outbound webhook signing, delivery and fan-out."""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from shotline.clock import Clock, system_clock
from shotline.config import Settings
from shotline.exceptions import WebhookDeliveryError
from shotline.models.webhook import Webhook, WebhookLog
from shotline.queues.registry import QueueRegistry
from shotline.store import Store, as_uuid

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "webhooks"


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass
class DeliveryResult:
    success: bool
    status_code: int | None = None


class WebhookService:
    def __init__(
        self,
        store: Store,
        registry: QueueRegistry,
        settings: Settings,
        client: httpx.Client | None = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings
        self.clock = clock
        self._client = client or httpx.Client(timeout=settings.webhook_timeout_s)

    def build_payload(self, event: str, data: dict[str, Any]) -> dict[str, Any]:
        return {"event": event, "timestamp": self.clock.now().isoformat(), "data": data}

    def trigger(self, owner_id: Any, event: str, data: dict[str, Any]) -> int:
        """Queue one delivery per active webhook of ``owner_id`` subscribed to ``event``."""
        webhooks = self.store.find_all(
            Webhook, Webhook.owner_id == as_uuid(owner_id), Webhook.is_active.is_(True)
        )
        payload = self.build_payload(event, data)
        queued = 0
        for webhook in webhooks:
            if not webhook.subscribes_to(event):
                continue
            self.registry.enqueue(
                WEBHOOK_QUEUE, "deliver", {"webhook_id": str(webhook.id), "event": event, "payload": payload}
            )
            queued += 1
        logger.info(f"Queued {queued} webhook(s) for event {event}")
        return queued

    def notify_url(self, url: str, event: str, data: dict[str, Any]) -> str:
        """Queue a delivery to an ad-hoc URL, signed with the default secret."""
        payload = self.build_payload(event, data)
        return self.registry.enqueue(
            WEBHOOK_QUEUE, "deliver", {"webhook_url": url, "event": event, "payload": payload}
        )

    def deliver(
        self,
        url: str,
        secret: str,
        event: str,
        payload: dict[str, Any],
        webhook: Webhook | None = None,
    ) -> DeliveryResult:
        """POST one signed payload and record the outcome.

        Raises ``WebhookDeliveryError`` for 5xx/429 and ``httpx.TransportError``
        for network failures so the caller can retry. Other non-2xx answers
        are recorded and returned as unsuccessful.
        """
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, secret),
            "X-Webhook-Event": event,
        }
        try:
            response = self._client.post(url, content=body, headers=headers, timeout=self.settings.webhook_timeout_s)
        except httpx.TransportError as e:
            self._record(webhook, url, event, payload, success=False, error=str(e) or type(e).__name__)
            raise

        success = response.is_success
        self._record(
            webhook,
            url,
            event,
            payload,
            success=success,
            status_code=response.status_code,
            response_text=response.text,
        )
        logger.info(f"Webhook {event} -> {url}: {response.status_code}")

        if response.status_code >= 500 or response.status_code == 429:
            raise WebhookDeliveryError(
                f"Receiver answered {response.status_code}", status_code=response.status_code
            )
        return DeliveryResult(success=success, status_code=response.status_code)

    def _record(
        self,
        webhook: Webhook | None,
        url: str,
        event: str,
        payload: dict[str, Any],
        *,
        success: bool,
        status_code: int | None = None,
        response_text: str | None = None,
        error: str | None = None,
    ) -> None:
        if response_text is not None:
            response_text = response_text[: self.settings.webhook_response_max_chars]
        self.store.create(
            WebhookLog(
                webhook_id=webhook.id if webhook else None,
                target_url=url,
                event=event,
                payload=payload,
                status_code=status_code,
                response=response_text,
                success=success,
                error=error,
            )
        )
        if webhook is not None:
            self.store.increment(Webhook, webhook.id, **{"success_count" if success else "fail_count": 1})
            self.store.update(Webhook, webhook.id, last_triggered_at=self.clock.now())

    def close(self) -> None:
        self._client.close()
