"""Application entry point for the nestwatch notification worker.

Each ``nestwatch run`` is one batch meant to be triggered by an external
scheduler. Exit status 0 means the batch committed its cursor; 1 means an
infrastructure fault aborted it and the cursor was left in place.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

from nestwatch import settings
from nestwatch.adapters.notification_formatting import format_listing
from nestwatch.adapters.sqlite_storage import SQLiteStorage
from nestwatch.adapters.telegram_bot_notifier import TelegramBotNotifier
from nestwatch.adapters.telegram_notifier import TelegramClientNotifier
from nestwatch.client import build_client, require_bot_token
from nestwatch.core.config import DispatchConfig, NotificationConfig
from nestwatch.core.dispatcher import NotificationDispatcher
from nestwatch.core.models import DispatchResult
from nestwatch.core.ports import DeliveryChannelPort

NAME = "NESTWATCH"
FONT = "tarty-1"
DELIVERY_METHODS = ("bot", "telethon")


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    # The bot token is part of every Bot API URL, so it must never reach a log line.
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/nestwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _dispatch_config() -> DispatchConfig:
    return DispatchConfig(
        worker_name=settings.WORKER_NAME,
        lookback_hours=settings.LOOKBACK_HOURS,
        max_concurrent_users=settings.MAX_CONCURRENT_USERS,
        send_interval_seconds=settings.SEND_INTERVAL_SECONDS,
    )


def _notification_config() -> NotificationConfig:
    return NotificationConfig(snippet_chars=settings.SNIPPET_CHARS)


def _build_dispatcher(storage: SQLiteStorage, channel: DeliveryChannelPort) -> NotificationDispatcher:
    return NotificationDispatcher(
        filters=storage,
        listings=storage,
        ledger=storage,
        cursor=storage,
        channel=channel,
        formatter=functools.partial(format_listing, snippet_chars=_notification_config().snippet_chars),
        config=_dispatch_config(),
    )


async def _dispatch(storage: SQLiteStorage) -> DispatchResult:
    """Select the delivery adapter and run one batch through it."""

    if settings.DELIVERY_METHOD not in DELIVERY_METHODS:
        raise RuntimeError("notifications.delivery_method must be 'bot' or 'telethon'")
    bot_token = require_bot_token()
    logging.getLogger(__name__).info("Selected delivery method - %s", settings.DELIVERY_METHOD)

    if settings.DELIVERY_METHOD == "bot":
        return await _build_dispatcher(storage, TelegramBotNotifier(bot_token)).run()

    client = build_client()
    await client.start(bot_token=bot_token)
    try:
        return await _build_dispatcher(storage, TelegramClientNotifier(client)).run()
    finally:
        await client.disconnect()


def _run() -> int:
    if sys.stdout.isatty():
        _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting notification batch (worker=%s)", settings.WORKER_NAME)
    try:
        storage = SQLiteStorage(settings.DB_PATH)
        storage.init_db()
        result = asyncio.run(_dispatch(storage))
    except Exception as exc:
        logger.error("Notification batch aborted: %s", exc)
        return 1

    for failure in result.errors:
        logger.info(
            "Failed delivery: owner=%s listing=%s filter=%s retryable=%s error=%s",
            failure.owner_id,
            failure.listing_id,
            failure.filter_id,
            failure.retryable,
            failure.error,
        )
    logger.info("Cursor advanced to %s", result.cursor_after.isoformat() if result.cursor_after else None)
    return 0


def _init_db() -> int:
    _print_banner()
    _configure_logging()
    SQLiteStorage(settings.DB_PATH).init_db()
    print(f"Database ready at {settings.DB_PATH}")
    return 0


def _status() -> int:
    _print_banner()
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    states = storage.list_states()
    if not states:
        print("No dispatcher has committed a batch yet.")
        return 0

    for state in states:
        last_run = state.last_run_at.isoformat() if state.last_run_at else "never"
        line = f"{state.worker_name} | last run {last_run} | {state.last_status or 'unknown'}"
        if state.last_error:
            line = f"{line} | {state.last_error}"
        print(line)
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="nestwatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run one notification batch")
    subparsers.add_parser("init-db", help="Create the SQLite schema")
    subparsers.add_parser("status", help="Show the cursor state of each dispatcher")

    args = parser.parse_args(argv)
    if args.command == "init-db":
        sys.exit(_init_db())
    if args.command == "status":
        sys.exit(_status())
    sys.exit(_run())


if __name__ == "__main__":
    main()
