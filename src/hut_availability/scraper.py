"""
Hut Availability Scraper - Orchestration of scrape runs
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import AsyncContextManager, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

import httpx

from .calendar import AvailabilitySummary, RoomCalendar, scrape_room
from .errors import AutomationFailure, ScraperError
from .session import CalendarSession, open_bentral_session
from .store import AvailabilityStore, Property, RoomType

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[Property], AsyncContextManager[CalendarSession]]


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class ScraperConfig:
    """
    Scraper configuration.

    Attributes:
        batch_size: Room types started together per property
        batch_delay: Politeness pause between batches (seconds)
        max_concurrent_properties: Properties scraped at the same time
        max_concurrent_rooms: Open browser sessions per property
        max_retries: Retries per scrape task after the first attempt
        retry_delay: Seconds before the first retry
        retry_backoff_base: Multiplier applied to the delay per further retry
            (1.0 keeps the delay fixed)
        max_steps: Month advances allowed when walking to a target month
        settle_delay: Seconds the widget gets to re-render after an advance
        selection_delay: Seconds to wait after selecting a room
        headless: Run the browser headless
        browser_timeout: Timeout for page loads and widget actions (seconds)
        probe_widgets: Check each property's widget URL before opening sessions
        request_timeout: HTTP timeout of the widget probe
        db_path: SQLite database file
    """
    batch_size: int = 2
    batch_delay: float = 15.0
    max_concurrent_properties: int = 2
    max_concurrent_rooms: int = 2
    max_retries: int = 1
    retry_delay: float = 5.0
    retry_backoff_base: float = 1.0
    max_steps: int = 24
    settle_delay: float = 0.5
    selection_delay: float = 2.0
    headless: bool = True
    browser_timeout: float = 30.0
    probe_widgets: bool = True
    request_timeout: float = 10.0
    db_path: Path = Path("/tmp/hut_availability/availability.db")

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_concurrent_properties < 1 or self.max_concurrent_rooms < 1:
            raise ValueError("Concurrency bounds must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls, prefix: str = "HUT_SCRAPER_") -> "ScraperConfig":
        """Build a config from HUT_SCRAPER_<FIELD> environment variables."""
        values = {}
        for f in fields(cls):
            raw = os.environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(raw, f.default)
        return cls(**values)


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw)
    return raw


# ============================================
# RETRY
# ============================================

def is_retryable(error: BaseException) -> bool:
    """Taxonomy errors carry their own flag; anything else is a bug, not a glitch."""
    return isinstance(error, ScraperError) and error.retryable


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 5.0,
    backoff: float = 1.0,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    label: str = "",
) -> T:
    """
    Await `operation` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine function, called once per attempt
        attempts: Total attempts including the first
        delay: Seconds before the first retry
        backoff: Delay multiplier per further retry
        retry_on: Classifies an error as retryable
        label: Name used in log messages

    Returns:
        Result of the first successful attempt

    Raises:
        The last error, or the first non-retryable one
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not retry_on(e):
                raise
            wait_time = delay * backoff ** (attempt - 1)
            logger.warning(
                f"[RETRY] {label} attempt {attempt}/{attempts} failed "
                f"({type(e).__name__}: {e}), retrying in {wait_time:.1f}s"
            )
            await asyncio.sleep(wait_time)

    raise AssertionError("unreachable")


def create_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split items into consecutive batches."""
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


# ============================================
# RUN REPORT
# ============================================

@dataclass
class TaskFailure:
    """A scrape task that exhausted its retry budget."""
    property_name: str
    room_type_name: str
    error_type: str
    reason: str

    def to_dict(self) -> dict:
        return {
            "property": self.property_name,
            "room_type": self.room_type_name,
            "error_type": self.error_type,
            "reason": self.reason,
        }


@dataclass
class TaskOutcome:
    """Result of one (room type, months) scrape task."""
    property_name: str
    room_type_name: str
    records_written: int = 0
    summary: Optional[AvailabilitySummary] = None
    failure: Optional[TaskFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, prop: Property, room: RoomType, error: ScraperError) -> "TaskOutcome":
        return cls(
            property_name=prop.name,
            room_type_name=room.name,
            failure=TaskFailure(prop.name, room.name, type(error).__name__, str(error)),
        )


@dataclass
class PropertyResult:
    """Outcomes of every task of one property."""
    property_name: str
    outcomes: List[TaskOutcome] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class RunReport:
    """Aggregate of one scrape run, handed back for logging and alerting."""
    target_months: List[str]
    properties_processed: int = 0
    room_types_processed: int = 0
    records_written: int = 0
    successes: int = 0
    failures: List[TaskFailure] = field(default_factory=list)
    cancelled: bool = False
    started_at: str = ""
    finished_at: str = ""
    start_time: float = field(default_factory=time.time)

    def record(self, result: PropertyResult) -> None:
        """Fold one property's outcomes into the report."""
        if result.outcomes:
            self.properties_processed += 1
        self.cancelled = self.cancelled or result.cancelled

        for outcome in result.outcomes:
            self.room_types_processed += 1
            if outcome.succeeded:
                self.successes += 1
                self.records_written += outcome.records_written
            else:
                self.failures.append(outcome.failure)

    @property
    def success_rate(self) -> float:
        if self.room_types_processed == 0:
            return 0.0
        return self.successes / self.room_types_processed * 100

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> dict:
        return {
            "target_months": self.target_months,
            "properties_processed": self.properties_processed,
            "room_types_processed": self.room_types_processed,
            "records_written": self.records_written,
            "successes": self.successes,
            "failures": [f.to_dict() for f in self.failures],
            "success_rate": round(self.success_rate, 2),
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_time_sec": round(self.elapsed_time, 2),
        }


# ============================================
# MAIN SCRAPER CLASS
# ============================================

class AvailabilityScraper:
    """
    Scrapes every active room type of every active property and keeps the
    store in sync.

    Features:
    - One scrape task per room type, retried with backoff
    - Outer concurrency bound across properties, inner bound across room
      types of one property
    - Fixed-size batches with a politeness delay in between
    - Widget reachability probe before any browser is launched
    - Run report instead of exceptions: a run always completes

    Example:
        store = AvailabilityStore(Path("availability.db"))
        async with AvailabilityScraper(store) as scraper:
            report = await scraper.run(target_months(3), property_names=["Triglavski Dom"])
        print(report.to_dict())
    """

    def __init__(
        self,
        store: Optional[AvailabilityStore] = None,
        config: Optional[ScraperConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or ScraperConfig()
        self.store = store or AvailabilityStore(self.config.db_path)
        self.session_factory = session_factory or self._bentral_session

        self._stop_requested = False
        self.client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout,
            headers={
                "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0.0.0",
                "Accept": "text/html,application/xhtml+xml",
                "Accept-Language": "sl,en-US;q=0.9,en;q=0.8",
            },
            follow_redirects=True,
            http2=True,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    def stop(self):
        """Stop before the next batch; batches already running finish."""
        logger.warning("[RUN] Stop requested")
        self._stop_requested = True

    def _bentral_session(self, prop: Property) -> AsyncContextManager[CalendarSession]:
        return open_bentral_session(
            prop.booking_url,
            headless=self.config.headless,
            timeout=self.config.browser_timeout,
            selection_delay=self.config.selection_delay,
        )

    async def run(
        self,
        months: Sequence[str],
        property_names: Optional[Sequence[str]] = None,
    ) -> RunReport:
        """
        Scrape the target months for all matching properties.

        Args:
            months: Ordered month labels, e.g. ["September 2025", "Oktober 2025"]
            property_names: Optional filter by property name or slug

        Returns:
            RunReport with counts and the list of failed tasks
        """
        if not months:
            raise ValueError("At least one target month is required")

        self._stop_requested = False
        report = RunReport(target_months=list(months), started_at=datetime.utcnow().isoformat())

        work: List[Tuple[Property, List[RoomType]]] = []
        for prop in self.store.list_properties(names=property_names):
            rooms = self.store.list_room_types(prop.id)
            if not rooms:
                logger.warning(f"[RUN] {prop.name} has no active room types, skipping")
                continue
            work.append((prop, rooms))

        logger.info(
            f"[RUN] {len(work)} properties, {sum(len(r) for _, r in work)} room types, "
            f"months: {', '.join(months)}"
        )

        outer = asyncio.Semaphore(self.config.max_concurrent_properties)

        async def run_property(prop: Property, rooms: List[RoomType]) -> PropertyResult:
            async with outer:
                if self._stop_requested:
                    return PropertyResult(prop.name, cancelled=True)
                try:
                    return await self._scrape_property(prop, rooms, months)
                except Exception as e:
                    error = AutomationFailure(f"{type(e).__name__}: {e}")
                    logger.error(f"[RUN] {prop.name} aborted: {error}")
                    return PropertyResult(prop.name, [TaskOutcome.failed(prop, room, error) for room in rooms])

        results = await asyncio.gather(*(run_property(p, r) for p, r in work))
        for result in results:
            report.record(result)

        report.finished_at = datetime.utcnow().isoformat()
        logger.info(
            f"[RUN] Done: {report.successes}/{report.room_types_processed} room types, "
            f"{report.records_written} records, {len(report.failures)} failures"
            f"{' (cancelled)' if report.cancelled else ''} in {report.elapsed_time:.1f}s"
        )
        return report

    async def _scrape_property(
        self,
        prop: Property,
        rooms: List[RoomType],
        months: Sequence[str],
    ) -> PropertyResult:
        if self.config.probe_widgets:
            reason = await self._probe_widget(prop)
            if reason:
                error = AutomationFailure(f"Booking widget unreachable: {reason}")
                logger.error(f"[PROBE] {prop.name}: {error}")
                return PropertyResult(prop.name, [TaskOutcome.failed(prop, room, error) for room in rooms])

        inner = asyncio.Semaphore(self.config.max_concurrent_rooms)
        batches = create_batches(rooms, self.config.batch_size)
        outcomes: List[TaskOutcome] = []

        for index, batch in enumerate(batches):
            if self._stop_requested:
                logger.warning(f"[BATCH] {prop.name}: stopping, {len(batches) - index} batches skipped")
                return PropertyResult(prop.name, outcomes, cancelled=True)

            logger.info(
                f"[BATCH] {prop.name} {index + 1}/{len(batches)}: {', '.join(r.name for r in batch)}"
            )
            outcomes.extend(
                await asyncio.gather(*(self._run_task(prop, room, months, inner) for room in batch))
            )

            if index < len(batches) - 1 and self.config.batch_delay > 0:
                await asyncio.sleep(self.config.batch_delay)

        return PropertyResult(prop.name, outcomes)

    async def _run_task(
        self,
        prop: Property,
        room: RoomType,
        months: Sequence[str],
        semaphore: asyncio.Semaphore,
    ) -> TaskOutcome:
        label = f"{prop.name} / {room.name}"

        async with semaphore:
            try:
                calendar, written = await retry_with_backoff(
                    lambda: self._scrape_and_sync(prop, room, months),
                    attempts=self.config.max_retries + 1,
                    delay=self.config.retry_delay,
                    backoff=self.config.retry_backoff_base,
                    label=label,
                )
            except Exception as e:
                error = e if isinstance(e, ScraperError) else AutomationFailure(f"{type(e).__name__}: {e}")
                logger.error(f"[TASK] {label} failed: {type(error).__name__}: {error}")
                return TaskOutcome.failed(prop, room, error)

        stats = calendar.summary
        logger.info(
            f"[TASK] {label}: {stats.available_days}/{stats.total_days} days available "
            f"({stats.availability_rate:.1f}%), {written} records written"
        )
        return TaskOutcome(
            property_name=prop.name,
            room_type_name=room.name,
            records_written=written,
            summary=stats,
        )

    async def _scrape_and_sync(
        self,
        prop: Property,
        room: RoomType,
        months: Sequence[str],
    ) -> Tuple[RoomCalendar, int]:
        """One attempt: fresh session, scrape, then replace the scraped range."""
        try:
            async with self.session_factory(prop) as session:
                calendar = await scrape_room(
                    session,
                    room.external_id,
                    months,
                    max_steps=self.config.max_steps,
                    settle_delay=self.config.settle_delay,
                )
        except ScraperError:
            raise
        except Exception as e:
            raise AutomationFailure(f"{type(e).__name__}: {e}") from e

        written = await asyncio.to_thread(
            self.store.replace_range, room.id, calendar.scrape_range, calendar.bookable_days()
        )
        return calendar, written

    async def _probe_widget(self, prop: Property) -> Optional[str]:
        """Return None if the widget URL answers, else the reason it does not."""
        reason = "no response"

        for attempt in range(self.config.max_retries + 1):
            try:
                response = await self.client.get(prop.booking_url)

                if response.status_code < 400:
                    logger.debug(f"[PROBE] {prop.name}: HTTP {response.status_code}")
                    return None
                reason = f"HTTP {response.status_code}"
                if response.status_code != 429 and response.status_code < 500:
                    return reason

            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
                reason = f"{type(e).__name__}: {e}"

            except (httpx.HTTPError, httpx.InvalidURL) as e:
                return f"{type(e).__name__}: {e}"

            if attempt < self.config.max_retries:
                wait_time = self.config.retry_delay * self.config.retry_backoff_base ** attempt
                logger.warning(f"[PROBE] {prop.name}: {reason}, retry {attempt + 1} in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

        return reason
