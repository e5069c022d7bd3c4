from __future__ import annotations

import asyncio
import io
import json
import urllib.error

import pytest

from nestwatch.adapters import telegram_bot_notifier
from nestwatch.adapters.telegram_bot_notifier import TelegramBotNotifier, classify_api_error
from nestwatch.core.models import FailureKind

TOKEN = "123:secret"


class DummyResponse:
    def __init__(self, payload: dict) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "DummyResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


def _http_error(status: int, description: str) -> urllib.error.HTTPError:
    body = json.dumps({"ok": False, "error_code": status, "description": description}).encode("utf-8")
    return urllib.error.HTTPError("https://api.telegram.org", status, description, {}, io.BytesIO(body))


@pytest.fixture
def captured(monkeypatch):
    calls: list[dict] = []
    outcomes: list = []

    def fake_urlopen(request, timeout=None):
        calls.append({"url": request.full_url, "payload": json.loads(request.data.decode("utf-8"))})
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(telegram_bot_notifier.urllib.request, "urlopen", fake_urlopen)
    return calls, outcomes


def test_send_rich_posts_send_photo(captured) -> None:
    calls, outcomes = captured
    outcomes.append(DummyResponse({"ok": True, "result": {"message_id": 456}}))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_rich("555", "https://img/1.jpg", "caption"))

    assert result.success
    assert result.message_id == 456
    assert calls[0]["url"] == f"https://api.telegram.org/bot{TOKEN}/sendPhoto"
    assert calls[0]["payload"] == {
        "chat_id": "555",
        "photo": "https://img/1.jpg",
        "caption": "caption",
        "parse_mode": "HTML",
    }


def test_send_plain_posts_send_message(captured) -> None:
    calls, outcomes = captured
    outcomes.append(DummyResponse({"ok": True, "result": {"message_id": 7}}))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_plain("555", "<b>hi</b>"))

    assert result.success
    assert calls[0]["url"].endswith("/sendMessage")
    assert calls[0]["payload"]["parse_mode"] == "HTML"


def test_invalid_image_is_permanent_attachment_failure(captured) -> None:
    _, outcomes = captured
    outcomes.append(_http_error(400, "Bad Request: wrong file identifier/HTTP URL specified"))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_rich("555", "https://bad/1.jpg", "c"))

    assert not result.success
    assert not result.retryable
    assert result.kind is FailureKind.INVALID_ATTACHMENT
    assert "wrong file identifier" in result.error


def test_chat_not_found_is_invalid_target(captured) -> None:
    _, outcomes = captured
    outcomes.append(_http_error(400, "Bad Request: chat not found"))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_plain("0", "x"))

    assert result.kind is FailureKind.INVALID_TARGET
    assert not result.retryable


def test_blocked_bot_is_invalid_target(captured) -> None:
    _, outcomes = captured
    outcomes.append(_http_error(403, "Forbidden: bot was blocked by the user"))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_plain("555", "x"))

    assert result.kind is FailureKind.INVALID_TARGET


def test_network_error_is_retryable(captured) -> None:
    _, outcomes = captured
    outcomes.append(urllib.error.URLError("connection refused"))

    result = asyncio.run(TelegramBotNotifier(TOKEN).send_plain("555", "x"))

    assert result.retryable
    assert result.kind is FailureKind.TRANSIENT
    assert "connection refused" in result.error


@pytest.mark.parametrize(
    "status, description, kind",
    [
        (429, "Too Many Requests: retry after 5", FailureKind.TRANSIENT),
        (502, "Bad Gateway", FailureKind.TRANSIENT),
        (400, "Bad Request: PHOTO_INVALID_DIMENSIONS", FailureKind.INVALID_ATTACHMENT),
        (400, "Bad Request: can't parse entities", FailureKind.TRANSIENT),
        (401, "Unauthorized", FailureKind.TRANSIENT),
    ],
)
def test_classify_api_error(status, description, kind) -> None:
    result = classify_api_error(status, description)
    assert result.kind is kind
    assert result.retryable is (kind is FailureKind.TRANSIENT)
