"""
Thin WhatsApp transport adapter.

Normalizes inbound webhook payloads into InboundMessage, suppresses
redelivered messages and sends replies through the wasender HTTP API.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from freshcart.config import (
    DEDUP_TTL_SECONDS,
    SEND_MAX_RETRIES,
    WHATSAPP_API_KEY,
    WHATSAPP_API_URL,
    WHATSAPP_INSTANCE_ID,
    WHATSAPP_TIMEOUT_SECONDS,
)
from freshcart.models import InboundMessage, MessageKind, ProductImage

logger = logging.getLogger(__name__)

# Messages without a provider id are deduplicated per sender and text within
# this window.
DEDUP_BUCKET_SECONDS = 5


class MessageDeduplicator:
    """Remembers recently seen message ids for a fixed time window."""

    def __init__(
        self,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_duplicate(self, message_id: str) -> bool:
        """Record the id and report whether it was already seen."""
        now = self.clock()
        with self._lock:
            expired = [key for key, seen_at in self._seen.items() if now - seen_at > self.ttl_seconds]
            for key in expired:
                del self._seen[key]
            if message_id in self._seen:
                return True
            self._seen[message_id] = now
            return False

    def __len__(self) -> int:
        return len(self._seen)


# =============================================================================
# Inbound
# =============================================================================

def _candidates(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Places a wasender payload may carry message fields, most specific last."""
    found = [payload]
    for key in ("key", "message", "messages", "data"):
        value = payload.get(key)
        if isinstance(value, dict):
            found.append(value)
    data = payload.get("data")
    data_messages = data.get("messages") if isinstance(data, dict) else None
    for container in (payload.get("messages"), data_messages):
        if isinstance(container, dict):
            found.append(container)
            for key in ("key", "message"):
                nested = container.get(key)
                if isinstance(nested, dict):
                    found.append(nested)
    return found


def _first(candidates: List[Dict[str, Any]], *keys: str) -> Optional[Any]:
    for candidate in candidates:
        for key in keys:
            value = candidate.get(key)
            if value not in (None, "", {}):
                return value
    return None


def _phone_from_jid(jid: Optional[str]) -> str:
    return jid.split("@")[0] if jid else ""


def normalize_webhook_payload(
    payload: Dict[str, Any],
    now: Optional[float] = None
) -> Optional[InboundMessage]:
    """
    Convert a wasender webhook payload into an InboundMessage.

    Returns:
        The message, or None when the payload carries no customer message
        (status updates, verification pings, unparseable bodies)
    """
    if not isinstance(payload, dict):
        return None

    candidates = _candidates(payload)
    sender = (
        _first(candidates, "cleanedSenderPn")
        or _phone_from_jid(_first(candidates, "remoteJid"))
        or _phone_from_jid(_first(candidates, "senderPn"))
    )
    if not sender:
        return None

    text = _first(candidates, "messageBody", "conversation")
    location = _first(candidates, "locationMessage")
    if not text and not location:
        return None

    now = time.time() if now is None else now
    message_id = _first(candidates, "id")
    if not isinstance(message_id, str) or not message_id:
        bucket = int(now // DEDUP_BUCKET_SECONDS)
        message_id = f"{sender}:{text or 'location'}:{bucket}"

    timestamp = payload.get("timestamp")
    try:
        sent_at = datetime.fromtimestamp(float(timestamp), timezone.utc)
    except (TypeError, ValueError, OverflowError):
        sent_at = datetime.fromtimestamp(now, timezone.utc)

    try:
        if isinstance(location, dict):
            return InboundMessage(
                message_id=message_id,
                sender=str(sender),
                kind=MessageKind.LOCATION,
                text=text,
                latitude=location.get("degreesLatitude"),
                longitude=location.get("degreesLongitude"),
                location_label=location.get("name") or location.get("address"),
                timestamp=sent_at,
            )
        return InboundMessage(
            message_id=message_id,
            sender=str(sender),
            kind=MessageKind.TEXT,
            text=str(text),
            timestamp=sent_at,
        )
    except ValidationError as e:
        logger.warning("Discarding malformed webhook message from %s: %s", sender, e)
        return None


# =============================================================================
# Outbound
# =============================================================================

class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1


class WhatsAppSender:
    """Sends text and image messages through the wasender REST API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        max_retries: int = SEND_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.api_url = (api_url or WHATSAPP_API_URL).rstrip("/")
        self.api_key = api_key or WHATSAPP_API_KEY
        self.instance_id = instance_id or WHATSAPP_INSTANCE_ID
        if not self.api_key or not self.instance_id:
            raise ValueError("WHATSAPP_API_KEY and WHATSAPP_INSTANCE_ID are required")
        self.client = client or httpx.Client(timeout=WHATSAPP_TIMEOUT_SECONDS)
        self.max_retries = max_retries
        self.sleep = sleep

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/instances/{self.instance_id}/messages"

    def _post(self, to: str, payload: Dict[str, Any]) -> SendResult:
        try:
            response = self.client.post(
                self.messages_url,
                json={"to": to, **payload},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            body = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            logger.error("WhatsApp API rejected message to %s: %s", to, e.response.text[:200])
            return SendResult(success=False, error=f"HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error sending WhatsApp message to %s: %s", to, e)
            return SendResult(success=False, error=str(e) or type(e).__name__)

        message_id = body.get("id") or body.get("messageId") if isinstance(body, dict) else None
        return SendResult(success=True, message_id=message_id)

    def send_text(self, to: str, body: str) -> SendResult:
        result = self._post(to, {"type": "text", "text": {"body": body}})
        if result.success:
            logger.info("Message sent to %s: %.50s", to, body)
        return result

    def send_image(self, to: str, image_url: str, caption: Optional[str] = None) -> SendResult:
        image = {"link": image_url}
        if caption:
            image["caption"] = caption
        return self._post(to, {"type": "image", "image": image})

    def _with_retry(self, send: Callable[[], SendResult], to: str) -> SendResult:
        result = SendResult(success=False, error="not attempted", attempts=0)
        for attempt in range(1, self.max_retries + 1):
            result = send()
            result.attempts = attempt
            if result.success:
                return result
            logger.warning("Retry %d/%d for %s", attempt, self.max_retries, to)
            if attempt < self.max_retries:
                self.sleep(2 ** attempt)
        return SendResult(
            success=False,
            error=f"Failed after {self.max_retries} attempts: {result.error}",
            attempts=self.max_retries,
        )

    def send_with_retry(self, to: str, body: str) -> SendResult:
        """Send text, retrying failures with exponential backoff (2s, 4s, ...)."""
        return self._with_retry(lambda: self.send_text(to, body), to)

    def send_images(self, to: str, images: List[ProductImage]) -> List[SendResult]:
        """Send product images captioned with their names; failures are not retried."""
        return [self.send_image(to, image.image_url, image.name) for image in images]

    def close(self):
        self.client.close()
