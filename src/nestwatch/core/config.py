"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DispatchConfig:
    """Batch settings for the notification dispatcher."""

    worker_name: str = "notify"
    lookback_hours: int = 24
    max_concurrent_users: int = 1
    send_interval_seconds: float = 0.0


@dataclass(frozen=True)
class NotificationConfig:
    """Notification formatting settings consumed by the message formatter."""

    snippet_chars: int = 300
