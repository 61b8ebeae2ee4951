"""
Hut Availability Scraper v1.0 - Booking widget availability sync
================================================================

Keeps a relational store of mountain hut room availability in sync with
the huts' embedded booking widgets:
- Four-state day classification (available, partial check-in/check-out, unavailable)
- Bounded month navigation of the widget's datepicker
- Range replacement in a single transaction (readers never see half a sync)
- Coverage ledger: "unavailable" vs "never scraped"
- Concurrent properties and room types with batching and politeness delays
- Retry with backoff, one fresh browser session per attempt
- A run report instead of crashes

Quick Start:
-----------
```python
from pathlib import Path
from hut_availability import AvailabilityScraper, AvailabilityStore, ScraperConfig, target_months

async def main():
    store = AvailabilityStore(Path("availability.db"))
    hut = store.add_property("Triglavski Dom", "https://www.bentral.com/service/embed/booking.html?id=...")
    store.add_room_type(hut.id, "Skupna soba", "5f5451794e7a4d4d", capacity=12)

    async with AvailabilityScraper(store, ScraperConfig(headless=True)) as scraper:
        report = await scraper.run(target_months(3))

    print(f"Success rate: {report.success_rate:.0f}%")
    for failure in report.failures:
        print(f"{failure.property_name} / {failure.room_type_name}: {failure.reason}")
```
"""

__version__ = "1.0.0"

from .scraper import (
    AvailabilityScraper,
    ScraperConfig,
    RunReport,
    TaskFailure,
    TaskOutcome,
    retry_with_backoff,
)

from .calendar import (
    AvailabilityDay,
    AvailabilityState,
    AvailabilitySummary,
    CalendarCell,
    MonthAvailability,
    RoomCalendar,
    ScrapeRange,
    classify_cell,
    walk_to_month,
    scrape_room,
    find_stays,
    parse_month_label,
    format_month_label,
    target_months,
)

from .session import BentralCalendarSession, CalendarSession, open_bentral_session

from .store import AvailabilityRecord, AvailabilityStore, Property, RoomType

from .errors import (
    ScraperError,
    RoomSelectionError,
    NavigationExhausted,
    StorageConflict,
    AutomationFailure,
)

__all__ = [
    # Main classes
    "AvailabilityScraper",
    "ScraperConfig",
    "AvailabilityStore",
    "BentralCalendarSession",
    "CalendarSession",

    # Data classes
    "Property",
    "RoomType",
    "AvailabilityRecord",
    "CalendarCell",
    "AvailabilityDay",
    "AvailabilityState",
    "AvailabilitySummary",
    "MonthAvailability",
    "RoomCalendar",
    "ScrapeRange",
    "RunReport",
    "TaskFailure",
    "TaskOutcome",

    # Functions
    "classify_cell",
    "walk_to_month",
    "scrape_room",
    "find_stays",
    "parse_month_label",
    "format_month_label",
    "target_months",
    "open_bentral_session",
    "retry_with_backoff",

    # Errors
    "ScraperError",
    "RoomSelectionError",
    "NavigationExhausted",
    "StorageConflict",
    "AutomationFailure",
]
