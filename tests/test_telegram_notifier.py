from __future__ import annotations

import asyncio

from telethon import errors

from nestwatch.adapters.telegram_notifier import TelegramClientNotifier, classify_exception
from nestwatch.core.models import FailureKind


class DummyMessage:
    def __init__(self, message_id: int) -> None:
        self.id = message_id


class DummyClient:
    def __init__(self, error: "Exception | None" = None) -> None:
        self._error = error
        self.calls: list[tuple] = []

    async def send_message(self, entity, text, **kwargs):
        self.calls.append(("message", entity, text, kwargs))
        if self._error:
            raise self._error
        return DummyMessage(11)

    async def send_file(self, entity, file, **kwargs):
        self.calls.append(("file", entity, file, kwargs))
        if self._error:
            raise self._error
        return DummyMessage(12)


def test_send_plain_uses_numeric_chat_id_and_html() -> None:
    client = DummyClient()

    result = asyncio.run(TelegramClientNotifier(client).send_plain("-100123", "<b>hi</b>"))

    assert result.success
    assert result.message_id == 11
    kind, entity, text, kwargs = client.calls[0]
    assert (kind, entity, text) == ("message", -100123, "<b>hi</b>")
    assert kwargs["parse_mode"] == "html"


def test_send_rich_passes_caption() -> None:
    client = DummyClient()

    result = asyncio.run(TelegramClientNotifier(client).send_rich("@someone", "https://img/1.jpg", "cap"))

    assert result.message_id == 12
    assert client.calls[0][:3] == ("file", "@someone", "https://img/1.jpg")
    assert client.calls[0][3]["caption"] == "cap"


def test_peer_invalid_is_invalid_target() -> None:
    client = DummyClient(errors.PeerIdInvalidError(request=None))

    result = asyncio.run(TelegramClientNotifier(client).send_plain("1", "x"))

    assert result.kind is FailureKind.INVALID_TARGET
    assert not result.retryable


def test_media_errors_are_invalid_attachment() -> None:
    client = DummyClient(errors.WebpageCurlFailedError(request=None))

    result = asyncio.run(TelegramClientNotifier(client).send_rich("1", "https://bad/1.jpg", "x"))

    assert result.kind is FailureKind.INVALID_ATTACHMENT


def test_flood_wait_is_retryable() -> None:
    result = classify_exception(errors.FloodWaitError(request=None, capture=30))

    assert result.retryable
    assert "30" in result.error


def test_connection_errors_are_retryable() -> None:
    client = DummyClient(ConnectionError("lost connection"))

    result = asyncio.run(TelegramClientNotifier(client).send_plain("1", "x"))

    assert result.kind is FailureKind.TRANSIENT


def test_unresolvable_entity_is_invalid_target() -> None:
    result = classify_exception(ValueError("Cannot find any entity corresponding to \"ghost\""))

    assert result.kind is FailureKind.INVALID_TARGET
