"""Notification dispatcher (core domain).

One ``run()`` call is one batch:
1) Read the cursor (or fall back to the lookback window)
2) Load enabled filters, then listings ingested since the cursor
3) Match every (filter, listing) pair and group matches per owner
4) Per owner, in ingestion order: ledger check, send, ledger record
5) Advance the cursor, stopping short of the oldest retryable failure

The cursor only moves once step 4 completes. Per-match delivery problems are
counted and logged; only faults raised by the stores abort the batch, which
leaves the cursor where it was so the next run re-scans the same window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from nestwatch.core.config import DispatchConfig
from nestwatch.core.matcher import match_listings
from nestwatch.core.models import (
    DeliveryFailure,
    DeliveryResult,
    DispatchResult,
    FailureKind,
    Filter,
    Listing,
)
from nestwatch.core.ports import (
    CursorPort,
    DeliveryChannelPort,
    FilterStorePort,
    LedgerPort,
    ListingStorePort,
)

LOGGER = logging.getLogger(__name__)

MODE_RICH = "rich"
MODE_FALLBACK = "fallback"
MODE_PLAIN = "plain"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _OwnerStream:
    """All pending matches for one owner, keyed by listing id."""

    owner_id: int
    target: str
    matches: Dict[int, Tuple[Listing, Filter]] = field(default_factory=dict)

    def ordered(self) -> List[Tuple[Listing, Filter]]:
        return sorted(self.matches.values(), key=lambda item: (item[0].ingested_at, item[0].id))


class NotificationDispatcher:
    """Orchestrates matching, ledger dedup, delivery and cursor commits."""

    def __init__(
        self,
        filters: FilterStorePort,
        listings: ListingStorePort,
        ledger: LedgerPort,
        cursor: CursorPort,
        channel: DeliveryChannelPort,
        formatter: Callable[[Listing], str],
        config: DispatchConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._filters = filters
        self._listings = listings
        self._ledger = ledger
        self._cursor = cursor
        self._channel = channel
        self._formatter = formatter
        self._config = config
        self._clock = clock

    async def run(self) -> DispatchResult:
        """Run one batch and return its counters.

        Raises whatever the stores raise; in that case the cursor timestamp
        is left untouched.
        """

        try:
            return await self._run_batch()
        except Exception as exc:
            LOGGER.exception("Notification batch %s failed; cursor not advanced", self._config.worker_name)
            self._mark_failed(exc)
            raise

    async def _run_batch(self) -> DispatchResult:
        worker = self._config.worker_name
        result = DispatchResult()

        # Captured before loading listings: anything ingested while the batch
        # runs is newer than this and gets picked up next time.
        run_started_at = self._clock()
        previous = self._cursor.read(worker)
        result.cursor_before = previous
        since = previous or run_started_at - timedelta(hours=self._config.lookback_hours)

        filters = sorted(self._filters.list_enabled_filters(), key=lambda item: item.id)
        listings: List[Listing] = []
        if filters:
            listings = sorted(self._listings.list_since(since), key=lambda item: (item.ingested_at, item.id))
        LOGGER.info(
            "Notification batch start: worker=%s filters=%s listings=%s since=%s",
            worker,
            len(filters),
            len(listings),
            since.isoformat(),
        )

        if filters and listings:
            streams = self._build_streams(filters, listings)
            await self._deliver_all(streams, result)

        result.cursor_after = self._commit(previous, run_started_at, listings, result)
        LOGGER.info(
            "Notification batch complete: sent=%s failed=%s skipped=%s rich=%s fallback=%s plain=%s "
            "image_success_rate=%.2f",
            result.sent,
            result.failed,
            result.skipped,
            result.rich_sent,
            result.fallback_sent,
            result.plain_sent,
            result.image_success_rate,
        )
        return result

    def _build_streams(self, filters: Sequence[Filter], listings: Sequence[Listing]) -> List[_OwnerStream]:
        """Group matches per owner, one entry per listing.

        Filters are visited in id order, so a listing matched by several
        filters of the same owner is attributed to the lowest filter id.
        """

        streams: Dict[int, _OwnerStream] = {}
        for criteria in filters:
            matched = match_listings(criteria, listings)
            LOGGER.debug("Filter %s matched %s listings", criteria.id, len(matched))
            if not matched:
                continue
            stream = streams.get(criteria.owner_id)
            if stream is None:
                stream = _OwnerStream(owner_id=criteria.owner_id, target=criteria.delivery_target)
                streams[criteria.owner_id] = stream
            for listing in matched:
                stream.matches.setdefault(listing.id, (listing, criteria))
        return list(streams.values())

    async def _deliver_all(self, streams: Sequence[_OwnerStream], result: DispatchResult) -> None:
        limit = asyncio.Semaphore(max(1, self._config.max_concurrent_users))

        async def _guarded(stream: _OwnerStream) -> None:
            async with limit:
                await self._deliver_stream(stream, result)

        outcomes = await asyncio.gather(*(_guarded(stream) for stream in streams), return_exceptions=True)
        # Store faults from any owner stream abort the batch once all streams settle.
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _deliver_stream(self, stream: _OwnerStream, result: DispatchResult) -> None:
        pending = stream.ordered()
        attempts = 0
        for position, (listing, criteria) in enumerate(pending):
            if self._ledger.exists(stream.owner_id, listing.id):
                LOGGER.debug("Already delivered listing %s to owner %s", listing.id, stream.owner_id)
                result.skipped += 1
                continue

            if attempts and self._config.send_interval_seconds > 0:
                await asyncio.sleep(self._config.send_interval_seconds)
            attempts += 1

            try:
                outcome, mode = await self._deliver(stream.target, listing)
            except Exception as exc:
                LOGGER.exception("Delivery of listing %s to owner %s raised", listing.id, stream.owner_id)
                outcome, mode = DeliveryResult.failed(FailureKind.TRANSIENT, str(exc) or type(exc).__name__), MODE_PLAIN

            if outcome.success:
                self._ledger.insert_if_absent(
                    stream.owner_id,
                    listing.id,
                    criteria.id,
                    self._channel.name,
                    self._clock(),
                )
                result.sent += 1
                if mode == MODE_RICH:
                    result.rich_sent += 1
                elif mode == MODE_FALLBACK:
                    result.fallback_sent += 1
                else:
                    result.plain_sent += 1
                LOGGER.info(
                    "Notification sent: owner=%s listing=%s filter=%s mode=%s message_id=%s",
                    stream.owner_id,
                    listing.id,
                    criteria.id,
                    mode,
                    outcome.message_id,
                )
                continue

            result.failed += 1
            result.errors.append(
                DeliveryFailure(
                    owner_id=stream.owner_id,
                    listing_id=listing.id,
                    filter_id=criteria.id,
                    error=outcome.error or "Unknown delivery error",
                    retryable=outcome.retryable,
                )
            )
            if outcome.retryable and (result.retry_from is None or listing.ingested_at < result.retry_from):
                result.retry_from = listing.ingested_at
            if outcome.kind is FailureKind.INVALID_TARGET:
                LOGGER.warning(
                    "Delivery target for owner %s rejected (%s); skipping %s remaining matches",
                    stream.owner_id,
                    outcome.error,
                    len(pending) - position - 1,
                )
                return
            LOGGER.warning(
                "Delivery failed: owner=%s listing=%s retryable=%s error=%s",
                stream.owner_id,
                listing.id,
                outcome.retryable,
                outcome.error,
            )

    async def _deliver(self, target: str, listing: Listing) -> Tuple[DeliveryResult, str]:
        """Send one listing, degrading from rich to plain when the media is at fault."""

        text = self._formatter(listing)
        if not listing.attachment_url:
            return await self._channel.send_plain(target, text), MODE_PLAIN

        LOGGER.debug("Rich send attempt: listing=%s url=%s", listing.id, listing.attachment_url)
        rich = await self._channel.send_rich(target, listing.attachment_url, text)
        if rich.success or rich.retryable or rich.kind is FailureKind.INVALID_TARGET:
            return rich, MODE_RICH

        LOGGER.info("Rich send failed for listing %s (%s); falling back to plain text", listing.id, rich.error)
        return await self._channel.send_plain(target, text), MODE_FALLBACK

    def _commit(
        self,
        previous: Optional[datetime],
        run_started_at: datetime,
        listings: Sequence[Listing],
        result: DispatchResult,
    ) -> datetime:
        cursor = run_started_at
        if listings:
            cursor = max(cursor, listings[-1].ingested_at)
        if result.retry_from is not None:
            # Stop just short of the oldest retryable failure so the next run loads it again.
            # It was loaded because it is newer than ``previous``, so this never moves backwards.
            cursor = min(cursor, result.retry_from - timedelta(microseconds=1))
        elif previous is not None and cursor <= previous:
            cursor = previous + timedelta(microseconds=1)

        error = f"{result.failed} deliveries failed" if result.failed else None
        self._cursor.write(self._config.worker_name, cursor, "ok", error)
        return cursor

    def _mark_failed(self, exc: Exception) -> None:
        try:
            self._cursor.mark_failed(self._config.worker_name, str(exc) or type(exc).__name__)
        except Exception:
            LOGGER.warning("Could not record failure status for %s", self._config.worker_name, exc_info=True)
