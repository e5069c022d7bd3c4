"""Telethon delivery adapter.

Sends notifications through a Telethon client logged in as a bot, mapping
Telethon's RPC error types onto ``DeliveryResult`` failure kinds.
"""

from __future__ import annotations

import asyncio
import logging

from telethon import errors

from nestwatch.core.models import DeliveryResult, FailureKind

LOGGER = logging.getLogger(__name__)

TARGET_ERRORS = (
    errors.PeerIdInvalidError,
    errors.ChatIdInvalidError,
    errors.UserIsBlockedError,
    errors.InputUserDeactivatedError,
    errors.ForbiddenError,
)
ATTACHMENT_ERRORS = (
    errors.WebpageMediaEmptyError,
    errors.WebpageCurlFailedError,
    errors.MediaEmptyError,
    errors.PhotoInvalidDimensionsError,
)
TRANSIENT_ERRORS = (
    errors.FloodError,
    errors.ServerError,
    errors.TimedOutError,
    ConnectionError,
    asyncio.TimeoutError,
    OSError,
)


def classify_exception(exc: Exception) -> DeliveryResult:
    """Map a Telethon (or transport) exception to a delivery result."""

    detail = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, errors.FloodWaitError):
        return DeliveryResult.failed(FailureKind.TRANSIENT, f"Rate limited for {exc.seconds}s")
    if isinstance(exc, TRANSIENT_ERRORS):
        return DeliveryResult.failed(FailureKind.TRANSIENT, detail)
    if isinstance(exc, TARGET_ERRORS):
        return DeliveryResult.failed(FailureKind.INVALID_TARGET, detail)
    if isinstance(exc, ATTACHMENT_ERRORS):
        return DeliveryResult.failed(FailureKind.INVALID_ATTACHMENT, detail)
    # Telethon raises ValueError when it cannot resolve the entity at all.
    if isinstance(exc, ValueError):
        return DeliveryResult.failed(FailureKind.INVALID_TARGET, detail)
    return DeliveryResult.failed(FailureKind.TRANSIENT, detail)


def _entity(target: str) -> "int | str":
    # Chat ids arrive as strings from storage; Telethon needs ints for ids.
    try:
        return int(target)
    except ValueError:
        return target


class TelegramClientNotifier:
    """Delivery channel that sends messages through a connected Telethon client."""

    name = "telegram"

    def __init__(self, client) -> None:
        self._client = client

    async def send_plain(self, target: str, text: str) -> DeliveryResult:
        try:
            message = await self._client.send_message(
                _entity(target), text, parse_mode="html", link_preview=True
            )
        except (errors.RPCError, ValueError, ConnectionError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.debug("send_message to %s failed: %s", target, exc)
            return classify_exception(exc)
        return DeliveryResult.ok(message_id=getattr(message, "id", None))

    async def send_rich(self, target: str, attachment_url: str, caption: str) -> DeliveryResult:
        try:
            message = await self._client.send_file(
                _entity(target), attachment_url, caption=caption, parse_mode="html"
            )
        except (errors.RPCError, ValueError, ConnectionError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.debug("send_file to %s failed: %s", target, exc)
            return classify_exception(exc)
        return DeliveryResult.ok(message_id=getattr(message, "id", None))
