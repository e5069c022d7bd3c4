"""Ports (interfaces) used by the notification dispatcher.

Ports define the minimal contracts for storage and delivery adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from nestwatch.core.models import DeliveryResult, Filter, Listing


class FilterStorePort(Protocol):
    """Read access to enabled filters joined with their owner."""

    def list_enabled_filters(self) -> Sequence[Filter]:
        ...


class ListingStorePort(Protocol):
    """Read access to listings newer than a watermark."""

    def list_since(self, since: datetime) -> Sequence[Listing]:
        ...


class LedgerPort(Protocol):
    """Durable record of (owner, listing) pairs already delivered.

    ``insert_if_absent`` must be atomic at the storage layer and must never
    raise or overwrite on a duplicate key.
    """

    def exists(self, owner_id: int, listing_id: int) -> bool:
        ...

    def insert_if_absent(
        self,
        owner_id: int,
        listing_id: int,
        filter_id: Optional[int],
        channel: str,
        sent_at: datetime,
    ) -> bool:
        ...


class CursorPort(Protocol):
    """Per-worker watermark of the last successful batch."""

    def read(self, worker_name: str) -> Optional[datetime]:
        ...

    def write(
        self,
        worker_name: str,
        last_run_at: datetime,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        ...

    def mark_failed(self, worker_name: str, error: str) -> None:
        ...


class DeliveryChannelPort(Protocol):
    """Outbound messaging operations.

    Implementations report outcomes through ``DeliveryResult`` and do not
    raise for delivery failures.
    """

    name: str

    async def send_plain(self, target: str, text: str) -> DeliveryResult:
        ...

    async def send_rich(self, target: str, attachment_url: str, caption: str) -> DeliveryResult:
        ...
