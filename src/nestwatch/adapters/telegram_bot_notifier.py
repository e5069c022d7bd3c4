"""Telegram Bot API delivery adapter.

Uses ``sendMessage`` for plain notifications and ``sendPhoto`` for rich ones,
and turns every failure into a classified ``DeliveryResult``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional

from nestwatch.core.models import DeliveryResult, FailureKind

LOGGER = logging.getLogger(__name__)

# Bot API descriptions are free text; these fragments identify who is at fault.
TARGET_ERROR_MARKERS = (
    "chat not found",
    "user not found",
    "bot was blocked by the user",
    "user is deactivated",
    "peer_id_invalid",
    "chat_id is empty",
    "bot can't initiate conversation",
)
ATTACHMENT_ERROR_MARKERS = (
    "wrong file identifier",
    "failed to get http url content",
    "wrong type of the web page content",
    "photo_invalid_dimensions",
    "image_process_failed",
    "file is too big",
    "webpage_media_empty",
    "webpage_curl_failed",
)


def classify_api_error(status: int, description: str) -> DeliveryResult:
    """Map a Bot API error response to a delivery result.

    Rate limits and server errors are transient. Client errors naming the
    chat or the media are permanent. Anything unrecognised is treated as
    transient so it is retried instead of silently dropped.
    """

    lowered = description.lower()
    if status == 429:
        return DeliveryResult.failed(FailureKind.TRANSIENT, f"Rate limit exceeded: {description}")
    if status >= 500:
        return DeliveryResult.failed(FailureKind.TRANSIENT, description or f"HTTP {status}")
    if status in (400, 403):
        if any(marker in lowered for marker in TARGET_ERROR_MARKERS):
            return DeliveryResult.failed(FailureKind.INVALID_TARGET, description)
        if any(marker in lowered for marker in ATTACHMENT_ERROR_MARKERS):
            return DeliveryResult.failed(FailureKind.INVALID_ATTACHMENT, description)
    return DeliveryResult.failed(FailureKind.TRANSIENT, description or f"HTTP {status}")


def _error_description(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(payload, dict) and payload.get("description"):
        return str(payload["description"])
    return body.strip()


class TelegramBotNotifier:
    """Delivery channel that sends messages via the Telegram Bot API."""

    name = "telegram"

    def __init__(self, bot_token: str, timeout: float = 10.0) -> None:
        self._bot_token = bot_token
        self._timeout = timeout

    def _endpoint(self, method: str) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/{method}"

    async def send_plain(self, target: str, text: str) -> DeliveryResult:
        payload = {
            "chat_id": target,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": False,
        }
        return await self._call("sendMessage", payload)

    async def send_rich(self, target: str, attachment_url: str, caption: str) -> DeliveryResult:
        payload = {
            "chat_id": target,
            "photo": attachment_url,
            "caption": caption,
            "parse_mode": "HTML",
        }
        return await self._call("sendPhoto", payload)

    async def _call(self, method: str, payload: dict[str, Any]) -> DeliveryResult:
        # urllib blocks, so the request runs on a worker thread to keep other
        # owner streams moving.
        return await asyncio.to_thread(self._post, method, payload)

    def _post(self, method: str, payload: dict[str, Any]) -> DeliveryResult:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(method), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            result = classify_api_error(e.code, _error_description(body))
            LOGGER.debug("Bot API %s failed with %s: %s", method, e.code, result.error)
            return result
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            reason = getattr(e, "reason", None) or e
            return DeliveryResult.failed(FailureKind.TRANSIENT, f"Network error: {reason}")

        return DeliveryResult.ok(message_id=_message_id(body))


def _message_id(body: str) -> Optional[int]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    result = payload.get("result") if isinstance(payload, dict) else None
    if isinstance(result, dict) and result.get("message_id") is not None:
        return int(result["message_id"])
    return None
