"""SQLite storage adapter.

Implements the filter store, listing store, ledger and cursor ports using a
single SQLite database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from nestwatch.core.matcher import build_filters
from nestwatch.core.models import CursorState, DeliveryRecord, Filter, Listing

LOGGER = logging.getLogger(__name__)

# Fixed width keeps lexical order equal to chronological order in SQL.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC string."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""

    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _parse_json_array(raw: Optional[str], column: str) -> List[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        LOGGER.warning("Ignoring malformed JSON in %s: %r", column, raw)
        return []
    if not isinstance(value, list):
        LOGGER.warning("Ignoring non-list JSON in %s: %r", column, raw)
        return []
    return value


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the store, ledger and cursor ports."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - users / filters: written by the conversation UI, read here
        - listings: written by the normalization stage, read here
        - notifications_sent: delivery ledger, one row per (user, listing)
        - worker_state: per-dispatcher watermark and last run status
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_chat_id TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            # List-valued criteria are stored as JSON arrays; NULL means
            # the criterion is unconstrained.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    min_price REAL,
                    max_price REAL,
                    min_bedrooms REAL,
                    max_bedrooms REAL,
                    cities_json TEXT,
                    neighborhoods_json TEXT,
                    keywords_json TEXT,
                    must_have_tags_json TEXT,
                    exclude_tags_json TEXT,
                    enabled BOOLEAN NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_item_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    price REAL,
                    currency TEXT,
                    price_period TEXT,
                    bedrooms REAL,
                    city TEXT,
                    neighborhood TEXT,
                    street TEXT,
                    house_number TEXT,
                    tags_json TEXT,
                    image_url TEXT,
                    url TEXT NOT NULL,
                    ingested_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_listings_ingested_at ON listings(ingested_at)"
            )
            # The composite primary key is what makes insert-if-absent atomic.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications_sent (
                    user_id INTEGER NOT NULL,
                    listing_id INTEGER NOT NULL,
                    filter_id INTEGER,
                    channel TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, listing_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_state (
                    worker_name TEXT PRIMARY KEY,
                    last_run_at TEXT,
                    last_status TEXT CHECK(last_status IN ('ok', 'error')),
                    last_error TEXT
                )
                """
            )

    # Filter store

    def list_enabled_filters(self) -> List[Filter]:
        """Return enabled filters joined with their owner's chat id."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT f.*, u.telegram_chat_id
                FROM filters f
                JOIN users u ON f.user_id = u.id
                WHERE f.enabled = 1
                ORDER BY f.id
                """
            ).fetchall()
        return build_filters(self._filter_mapping(row) for row in rows)

    @staticmethod
    def _filter_mapping(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "owner_id": row["user_id"],
            "delivery_target": row["telegram_chat_id"],
            "name": row["name"],
            "min_price": row["min_price"],
            "max_price": row["max_price"],
            "min_bedrooms": row["min_bedrooms"],
            "max_bedrooms": row["max_bedrooms"],
            "cities": _parse_json_array(row["cities_json"], "cities_json"),
            "neighborhoods": _parse_json_array(row["neighborhoods_json"], "neighborhoods_json"),
            "keywords": _parse_json_array(row["keywords_json"], "keywords_json"),
            "must_have_tags": _parse_json_array(row["must_have_tags_json"], "must_have_tags_json"),
            "exclude_tags": _parse_json_array(row["exclude_tags_json"], "exclude_tags_json"),
            "enabled": bool(row["enabled"]),
        }

    # Listing store

    def list_since(self, since: datetime) -> List[Listing]:
        """Return listings ingested strictly after ``since``, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM listings WHERE ingested_at > ? ORDER BY ingested_at, id",
                (format_timestamp(since),),
            ).fetchall()
        return [self._listing_from_row(row) for row in rows]

    @staticmethod
    def _listing_from_row(row: sqlite3.Row) -> Listing:
        tags = _parse_json_array(row["tags_json"], "tags_json")
        return Listing(
            id=int(row["id"]),
            title=row["title"],
            description=row["description"] or "",
            url=row["url"],
            ingested_at=parse_timestamp(row["ingested_at"]),
            price=row["price"],
            currency=row["currency"],
            price_period=row["price_period"],
            bedrooms=row["bedrooms"],
            city=row["city"],
            neighborhood=row["neighborhood"],
            street=row["street"],
            house_number=row["house_number"],
            tags=frozenset(str(tag) for tag in tags),
            attachment_url=row["image_url"],
        )

    # Ledger

    def exists(self, owner_id: int, listing_id: int) -> bool:
        """Check whether the listing was already delivered to the owner."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM notifications_sent WHERE user_id = ? AND listing_id = ? LIMIT 1",
                (owner_id, listing_id),
            ).fetchone()
        return row is not None

    def insert_if_absent(
        self,
        owner_id: int,
        listing_id: int,
        filter_id: Optional[int],
        channel: str,
        sent_at: datetime,
    ) -> bool:
        """Record a delivery; return False if the pair was already recorded."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO notifications_sent (user_id, listing_id, filter_id, channel, sent_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (owner_id, listing_id, filter_id, channel, format_timestamp(sent_at)),
            )
            return cur.rowcount == 1

    def list_deliveries(self, owner_id: Optional[int] = None) -> List[DeliveryRecord]:
        """Return ledger rows, optionally for one owner, oldest first."""

        with self._connect() as conn:
            if owner_id is None:
                rows = conn.execute("SELECT * FROM notifications_sent ORDER BY sent_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM notifications_sent WHERE user_id = ? ORDER BY sent_at",
                    (owner_id,),
                ).fetchall()
        return [
            DeliveryRecord(
                owner_id=int(row["user_id"]),
                listing_id=int(row["listing_id"]),
                filter_id=row["filter_id"],
                channel=row["channel"],
                sent_at=parse_timestamp(row["sent_at"]),
            )
            for row in rows
        ]

    # Cursor

    def read(self, worker_name: str) -> Optional[datetime]:
        """Return the last successful run timestamp for a worker, if any."""

        state = self.get_state(worker_name)
        return state.last_run_at if state else None

    def write(
        self,
        worker_name: str,
        last_run_at: datetime,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        """Upsert the watermark and status for a worker."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO worker_state (worker_name, last_run_at, last_status, last_error)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(worker_name) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_status = excluded.last_status,
                    last_error = excluded.last_error
                """,
                (worker_name, format_timestamp(last_run_at), status, error),
            )

    def mark_failed(self, worker_name: str, error: str) -> None:
        """Flag the last run as failed without moving the watermark.

        A worker that has never committed gets a row with no watermark, so
        ``status`` still shows the error and ``read`` keeps returning ``None``.
        """

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO worker_state (worker_name, last_run_at, last_status, last_error)
                VALUES (?, NULL, 'error', ?)
                ON CONFLICT(worker_name) DO UPDATE SET
                    last_status = 'error',
                    last_error = excluded.last_error
                """,
                (worker_name, error),
            )

    def get_state(self, worker_name: str) -> Optional[CursorState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM worker_state WHERE worker_name = ?",
                (worker_name,),
            ).fetchone()
        return self._state_from_row(row) if row else None

    def list_states(self) -> List[CursorState]:
        """Return cursor state for every worker, ordered by name."""

        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM worker_state ORDER BY worker_name").fetchall()
        return [self._state_from_row(row) for row in rows]

    @staticmethod
    def _state_from_row(row: sqlite3.Row) -> CursorState:
        return CursorState(
            worker_name=row["worker_name"],
            last_run_at=parse_timestamp(row["last_run_at"]) if row["last_run_at"] else None,
            last_status=row["last_status"],
            last_error=row["last_error"],
        )

    # Collaborator-side writers, used for seeding and tests.

    def add_user(self, telegram_chat_id: str, display_name: str) -> int:
        created_at = format_timestamp(datetime.now(timezone.utc))
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO users (telegram_chat_id, display_name, created_at) VALUES (?, ?, ?)",
                (telegram_chat_id, display_name, created_at),
            )
            return int(cur.lastrowid)

    def add_filter(
        self,
        user_id: int,
        name: str,
        *,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        min_bedrooms: Optional[float] = None,
        max_bedrooms: Optional[float] = None,
        cities: Optional[Iterable[str]] = None,
        neighborhoods: Optional[Iterable[str]] = None,
        keywords: Optional[Iterable[str]] = None,
        must_have_tags: Optional[Iterable[str]] = None,
        exclude_tags: Optional[Iterable[str]] = None,
        enabled: bool = True,
    ) -> int:
        def _json(values: Optional[Iterable[str]]) -> Optional[str]:
            return json.dumps(list(values), ensure_ascii=False) if values is not None else None

        created_at = format_timestamp(datetime.now(timezone.utc))
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO filters (
                    user_id, name, min_price, max_price, min_bedrooms, max_bedrooms,
                    cities_json, neighborhoods_json, keywords_json,
                    must_have_tags_json, exclude_tags_json, enabled, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    min_price,
                    max_price,
                    min_bedrooms,
                    max_bedrooms,
                    _json(cities),
                    _json(neighborhoods),
                    _json(keywords),
                    _json(must_have_tags),
                    _json(exclude_tags),
                    1 if enabled else 0,
                    created_at,
                ),
            )
            return int(cur.lastrowid)

    def add_listing(
        self,
        title: str,
        url: str,
        ingested_at: datetime,
        *,
        description: str = "",
        price: Optional[float] = None,
        currency: Optional[str] = None,
        price_period: Optional[str] = None,
        bedrooms: Optional[float] = None,
        city: Optional[str] = None,
        neighborhood: Optional[str] = None,
        street: Optional[str] = None,
        house_number: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        image_url: Optional[str] = None,
        source_item_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO listings (
                    source_item_id, title, description, price, currency, price_period,
                    bedrooms, city, neighborhood, street, house_number, tags_json,
                    image_url, url, ingested_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_item_id,
                    title,
                    description,
                    price,
                    currency,
                    price_period,
                    bedrooms,
                    city,
                    neighborhood,
                    street,
                    house_number,
                    json.dumps(list(tags or []), ensure_ascii=False),
                    image_url,
                    url,
                    format_timestamp(ingested_at),
                ),
            )
            return int(cur.lastrowid)
