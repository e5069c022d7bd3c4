"""Telegram client factory for nestwatch.

We explicitly manage the client's lifecycle (start/disconnect) so it is
obvious when the bot session is opened and when it ends.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    The session name defaults to "nestwatch" to create a local .session file.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "nestwatch")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(session_name, int(api_id), api_hash)


def require_bot_token() -> str:
    """Return the bot token from the environment or fail fast."""

    load_dotenv()
    bot_token = os.getenv("BOT_API")
    if not bot_token:
        raise RuntimeError("BOT_API is required for notification delivery")
    return bot_token
