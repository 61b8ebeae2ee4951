"""
Availability Store - SQLite-backed relational store
"""

import logging
import re
import sqlite3
import time
import unicodedata
from contextlib import closing
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .calendar import AvailabilityDay, ScrapeRange
from .errors import StorageConflict

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    slug = re.sub(r"\s+", "-", ascii_name.strip().lower())
    return re.sub(r"[^a-z0-9-]", "", slug)


# ============================================
# DATA CLASSES
# ============================================

@dataclass
class Property:
    """A bookable location (mountain hut) with one booking widget."""
    id: int
    name: str
    booking_url: str
    slug: str = ""
    is_active: bool = True

    def __post_init__(self):
        if not self.name.strip():
            raise ValueError("Property name must not be empty")
        if not self.booking_url.strip():
            raise ValueError(f"Property {self.name!r} has no booking URL")
        if not self.slug:
            self.slug = slugify(self.name)


@dataclass
class RoomType:
    """One rentable unit category of a property."""
    id: int
    property_id: int
    name: str
    external_id: str
    capacity: int = 1
    is_active: bool = True

    def __post_init__(self):
        if not self.name.strip():
            raise ValueError("Room type name must not be empty")
        if not self.external_id.strip():
            raise ValueError(f"Room type {self.name!r} has no external id")
        if self.capacity < 1:
            raise ValueError(f"Room type {self.name!r} capacity must be positive")


@dataclass(frozen=True)
class AvailabilityRecord:
    """Stored availability of one room type on one date."""
    room_type_id: int
    date: date
    can_checkin: bool
    can_checkout: bool
    scraped_at: str


_SCHEMA = """
CREATE TABLE IF NOT EXISTS properties (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    booking_url TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at REAL
);

CREATE TABLE IF NOT EXISTS room_types (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    property_id INTEGER NOT NULL REFERENCES properties(id),
    name TEXT NOT NULL,
    external_id TEXT NOT NULL,
    capacity INTEGER NOT NULL DEFAULT 1,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at REAL,
    UNIQUE (property_id, external_id)
);

CREATE TABLE IF NOT EXISTS available_dates (
    room_type_id INTEGER NOT NULL REFERENCES room_types(id),
    date TEXT NOT NULL,
    can_checkin INTEGER NOT NULL,
    can_checkout INTEGER NOT NULL,
    scraped_at TEXT NOT NULL,
    PRIMARY KEY (room_type_id, date)
);

CREATE TABLE IF NOT EXISTS scrape_coverage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_type_id INTEGER NOT NULL REFERENCES room_types(id),
    min_date TEXT NOT NULL,
    max_date TEXT NOT NULL,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_available_dates_date ON available_dates(date);
CREATE INDEX IF NOT EXISTS idx_room_types_property ON room_types(property_id);
CREATE INDEX IF NOT EXISTS idx_coverage_room_type ON scrape_coverage(room_type_id, min_date);
"""


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class AvailabilityStore:
    """
    SQLite store for properties, room types and scraped availability.

    Only dates a guest could book (fully or partially available) are
    stored. Every synchronization also appends the range it covered to a
    coverage ledger, so a missing record can be told apart:
    inside a covered range it means "unavailable", outside it means
    "never scraped".

    Example:
    -------
    ```python
    store = AvailabilityStore(Path("/var/lib/huts/availability.db"))

    hut = store.add_property("Triglavski Dom", "https://www.bentral.com/...")
    room = store.add_room_type(hut.id, "Enoposteljna soba", "5f5451794e7a4d4d", capacity=1)

    store.replace_range(room.id, calendar.scrape_range, calendar.bookable_days())
    ```
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait for a competing writer before
                giving up with StorageConflict
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        """Initialize database schema"""
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

    # ============================================
    # SYNCHRONIZER
    # ============================================

    def replace_range(
        self,
        room_type_id: int,
        scrape_range: ScrapeRange,
        days: Sequence[AvailabilityDay],
    ) -> int:
        """
        Replace a room type's stored availability inside one date range.

        Deletes every record of the room type dated within the range and
        inserts one record per given day, in a single transaction. Records
        outside the range are never touched. An empty `days` list records
        that the whole range was checked and found unavailable.

        Args:
            room_type_id: Room type whose records are replaced
            scrape_range: Inclusive range the scrape covered
            days: Available and partially available days inside the range

        Returns:
            Number of records written

        Raises:
            ValueError: unknown room type, unavailable day, duplicate date
                or a day outside the range (nothing is written)
            StorageConflict: the database stayed locked by another writer
        """
        rows = self._records_for(room_type_id, scrape_range, days)
        synced_at = datetime.utcnow().isoformat()

        try:
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    known = conn.execute(
                        "SELECT 1 FROM room_types WHERE id = ?", (room_type_id,)
                    ).fetchone()
                    if not known:
                        raise ValueError(f"Room type ID {room_type_id} not found")

                    deleted = conn.execute(
                        "DELETE FROM available_dates WHERE room_type_id = ? AND date BETWEEN ? AND ?",
                        (room_type_id, scrape_range.min_date.isoformat(), scrape_range.max_date.isoformat()),
                    ).rowcount

                    conn.executemany(
                        "INSERT INTO available_dates (room_type_id, date, can_checkin, can_checkout, scraped_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        [row + (synced_at,) for row in rows],
                    )

                    conn.execute(
                        "INSERT INTO scrape_coverage (room_type_id, min_date, max_date, synced_at) "
                        "VALUES (?, ?, ?, ?)",
                        (room_type_id, scrape_range.min_date.isoformat(),
                         scrape_range.max_date.isoformat(), synced_at),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise StorageConflict(
                    f"Room type {room_type_id} range {scrape_range.min_date}..{scrape_range.max_date}: {e}"
                ) from e
            raise

        logger.info(
            f"[SYNC] Room type {room_type_id} {scrape_range.min_date}..{scrape_range.max_date}: "
            f"deleted {deleted}, inserted {len(rows)}"
        )
        return len(rows)

    @staticmethod
    def _records_for(room_type_id: int, scrape_range: ScrapeRange, days: Iterable[AvailabilityDay]) -> List[tuple]:
        rows = []
        seen = set()
        for day in days:
            if not day.is_bookable:
                raise ValueError(f"{day.date} is unavailable and cannot be stored")
            if not scrape_range.contains(day.date):
                raise ValueError(
                    f"{day.date} lies outside {scrape_range.min_date}..{scrape_range.max_date}"
                )
            if day.date in seen:
                raise ValueError(f"Duplicate date {day.date} for room type {room_type_id}")
            seen.add(day.date)
            rows.append((room_type_id, day.date.isoformat(), int(day.can_checkin), int(day.can_checkout)))
        return rows

    # ============================================
    # ONBOARDING
    # ============================================

    def add_property(self, name: str, booking_url: str, slug: Optional[str] = None) -> Property:
        """Create a property; the slug must be unique."""
        prop = Property(id=0, name=name, booking_url=booking_url, slug=slug or "")
        try:
            with closing(self._connect()) as conn:
                cursor = conn.execute(
                    "INSERT INTO properties (name, slug, booking_url, is_active, created_at) VALUES (?, ?, ?, 1, ?)",
                    (prop.name, prop.slug, prop.booking_url, time.time()),
                )
                prop.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Property {prop.slug!r} already exists") from e

        return prop

    def add_room_type(self, property_id: int, name: str, external_id: str, capacity: int = 1) -> RoomType:
        """Create a room type; the external id must be unique within the property."""
        room = RoomType(id=0, property_id=property_id, name=name, external_id=external_id, capacity=capacity)
        try:
            with closing(self._connect()) as conn:
                cursor = conn.execute(
                    "INSERT INTO room_types (property_id, name, external_id, capacity, is_active, created_at) "
                    "VALUES (?, ?, ?, ?, 1, ?)",
                    (property_id, room.name, room.external_id, room.capacity, time.time()),
                )
                room.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(
                f"Room type {external_id!r} already exists for property {property_id} "
                f"or the property does not exist"
            ) from e

        return room

    def deactivate_property(self, property_id: int) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute("UPDATE properties SET is_active = 0 WHERE id = ?", (property_id,))
            return cursor.rowcount > 0

    def deactivate_room_type(self, room_type_id: int) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute("UPDATE room_types SET is_active = 0 WHERE id = ?", (room_type_id,))
            return cursor.rowcount > 0

    # ============================================
    # QUERIES
    # ============================================

    def get_property_by_name(self, name: str) -> Optional[Property]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM properties WHERE name = ? AND is_active = 1 LIMIT 1", (name,)
            ).fetchone()
        return self._property(row) if row else None

    def list_properties(self, names: Optional[Sequence[str]] = None, active_only: bool = True) -> List[Property]:
        """
        List properties ordered by name.

        Args:
            names: Optional filter; matches name or slug, case-insensitive
            active_only: Skip soft-deactivated properties
        """
        query = "SELECT * FROM properties"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY name"

        with closing(self._connect()) as conn:
            properties = [self._property(row) for row in conn.execute(query)]

        if names is not None:
            wanted = {n.casefold() for n in names}
            properties = [p for p in properties if p.name.casefold() in wanted or p.slug in wanted]
        return properties

    def list_room_types(self, property_id: int, active_only: bool = True) -> List[RoomType]:
        query = "SELECT * FROM room_types WHERE property_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY name"

        with closing(self._connect()) as conn:
            return [self._room_type(row) for row in conn.execute(query, (property_id,))]

    def get_available_dates(
        self,
        room_type_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[AvailabilityRecord]:
        """Stored records of a room type, ordered by date."""
        query = "SELECT * FROM available_dates WHERE room_type_id = ?"
        params: list = [room_type_id]
        if start:
            query += " AND date >= ?"
            params.append(start.isoformat())
        if end:
            query += " AND date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY date"

        with closing(self._connect()) as conn:
            return [
                AvailabilityRecord(
                    room_type_id=row["room_type_id"],
                    date=date.fromisoformat(row["date"]),
                    can_checkin=bool(row["can_checkin"]),
                    can_checkout=bool(row["can_checkout"]),
                    scraped_at=row["scraped_at"],
                )
                for row in conn.execute(query, params)
            ]

    def get_coverage(self, room_type_id: int) -> List[ScrapeRange]:
        """Ranges ever synchronized for a room type, merged where they touch."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT min_date, max_date FROM scrape_coverage WHERE room_type_id = ? ORDER BY min_date",
                (room_type_id,),
            ).fetchall()

        merged: List[ScrapeRange] = []
        for row in rows:
            current = ScrapeRange(date.fromisoformat(row["min_date"]), date.fromisoformat(row["max_date"]))
            if merged and (current.min_date - merged[-1].max_date).days <= 1:
                last = merged.pop()
                current = ScrapeRange(last.min_date, max(last.max_date, current.max_date))
            merged.append(current)
        return merged

    def is_covered(self, room_type_id: int, day: date) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM scrape_coverage WHERE room_type_id = ? AND ? BETWEEN min_date AND max_date LIMIT 1",
                (room_type_id, day.isoformat()),
            ).fetchone()
        return row is not None

    def get_day_status(self, room_type_id: int, day: date) -> str:
        """Day status: available, unavailable (scraped, no record) or unknown (never scraped)."""
        if self.get_available_dates(room_type_id, day, day):
            return "available"
        return "unavailable" if self.is_covered(room_type_id, day) else "unknown"

    def get_last_scrape(self, property_id: int) -> Optional[str]:
        """Timestamp of the latest synchronization of any room type of a property."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                """
                SELECT MAX(c.synced_at) AS last_run
                FROM scrape_coverage c
                JOIN room_types rt ON c.room_type_id = rt.id
                WHERE rt.property_id = ?
                """,
                (property_id,),
            ).fetchone()
        return row["last_run"] if row else None

    def stats(self, property_id: Optional[int] = None) -> List[dict]:
        """
        Per room type statistics of stored availability.

        Returns:
            List of dicts with property, room type, record count,
            earliest/latest date and last update
        """
        query = """
            SELECT
                p.name AS property_name,
                rt.id AS room_type_id,
                rt.name AS room_type_name,
                COUNT(ad.date) AS available_dates_count,
                MIN(ad.date) AS earliest_date,
                MAX(ad.date) AS latest_date,
                MAX(ad.scraped_at) AS last_updated
            FROM room_types rt
            JOIN properties p ON rt.property_id = p.id
            LEFT JOIN available_dates ad ON ad.room_type_id = rt.id
        """
        params: list = []
        if property_id is not None:
            query += " WHERE p.id = ?"
            params.append(property_id)
        query += " GROUP BY rt.id ORDER BY p.name, rt.name"

        with closing(self._connect()) as conn:
            return [dict(row) for row in conn.execute(query, params)]

    @staticmethod
    def _property(row: sqlite3.Row) -> Property:
        return Property(
            id=row["id"],
            name=row["name"],
            booking_url=row["booking_url"],
            slug=row["slug"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _room_type(row: sqlite3.Row) -> RoomType:
        return RoomType(
            id=row["id"],
            property_id=row["property_id"],
            name=row["name"],
            external_id=row["external_id"],
            capacity=row["capacity"],
            is_active=bool(row["is_active"]),
        )
