"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage or Telegram-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Listing:
    """Canonical listing as produced by the normalization stage."""

    id: int
    title: str
    description: str
    url: str
    ingested_at: datetime
    price: Optional[float] = None
    currency: Optional[str] = None
    price_period: Optional[str] = None
    bedrooms: Optional[float] = None
    city: Optional[str] = None
    neighborhood: Optional[str] = None
    street: Optional[str] = None
    house_number: Optional[str] = None
    tags: frozenset[str] = frozenset()
    attachment_url: Optional[str] = None


@dataclass(frozen=True)
class Filter:
    """User-owned match criteria joined with the owner's delivery target.

    ``None`` bounds and empty collections mean "unconstrained".
    """

    id: int
    owner_id: int
    delivery_target: str
    name: str = ""
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[float] = None
    max_bedrooms: Optional[float] = None
    cities: frozenset[str] = frozenset()
    neighborhoods: frozenset[str] = frozenset()
    keywords: tuple[str, ...] = ()
    must_have_tags: frozenset[str] = frozenset()
    exclude_tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DeliveryRecord:
    """Ledger entry for one delivered (owner, listing) pair."""

    owner_id: int
    listing_id: int
    filter_id: Optional[int]
    channel: str
    sent_at: datetime


@dataclass(frozen=True)
class CursorState:
    """Persisted watermark and last run status for one dispatcher name."""

    worker_name: str
    last_run_at: Optional[datetime]
    last_status: Optional[str]
    last_error: Optional[str]


class FailureKind(str, Enum):
    """Why a delivery attempt failed."""

    TRANSIENT = "transient"
    INVALID_TARGET = "invalid_target"
    INVALID_ATTACHMENT = "invalid_attachment"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single send attempt returned by a delivery channel."""

    success: bool
    retryable: bool = False
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    message_id: Optional[int] = None

    @classmethod
    def ok(cls, message_id: Optional[int] = None) -> "DeliveryResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, kind: FailureKind, error: str) -> "DeliveryResult":
        return cls(
            success=False,
            retryable=kind is FailureKind.TRANSIENT,
            error=error,
            kind=kind,
        )


@dataclass(frozen=True)
class DeliveryFailure:
    """One failed (owner, listing) delivery, kept for the batch summary."""

    owner_id: int
    listing_id: int
    filter_id: int
    error: str
    retryable: bool


@dataclass
class DispatchResult:
    """Counters and failure details for one dispatcher batch."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    rich_sent: int = 0
    fallback_sent: int = 0
    plain_sent: int = 0
    errors: List[DeliveryFailure] = field(default_factory=list)
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    # ingested_at of the oldest listing whose delivery failed retryably.
    retry_from: Optional[datetime] = None

    @property
    def image_success_rate(self) -> float:
        if not self.sent:
            return 0.0
        return self.rich_sent / self.sent
