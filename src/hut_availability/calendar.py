"""
Hut Calendar Scraper - Availability Classification and Extraction
=================================================================

Reads the day cells of a booking widget's datepicker and turns them into
typed availability:
- available          (a stay may begin and end on the day)
- partial_no_start   (a stay may end here, not begin here)
- partial_no_end     (a stay may begin here, not end here)
- unavailable

The two partial states are what minimum-stay logic downstream depends on,
so a blocking marker is never treated as a plain yes/no.

A scrape task walks the widget month by month, classifies every cell of
the displayed month and reports per-month statistics together with the
inclusive date range it covered. That range is exactly what the store
replaces on synchronization.
"""

import asyncio
import logging
import re
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from .errors import NavigationExhausted

if TYPE_CHECKING:
    from .session import CalendarSession

logger = logging.getLogger(__name__)


# ============================================
# MONTH LABELS
# ============================================

MONTH_NAMES = {
    "en": [
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ],
    "sl": [
        "Januar", "Februar", "Marec", "April", "Maj", "Junij",
        "Julij", "Avgust", "September", "Oktober", "November", "December",
    ],
    "de": [
        "Januar", "Februar", "März", "April", "Mai", "Juni",
        "Juli", "August", "September", "Oktober", "November", "Dezember",
    ],
}

_MONTH_LOOKUP: Dict[str, int] = {
    name.casefold(): index + 1
    for names in MONTH_NAMES.values()
    for index, name in enumerate(names)
}

_LABEL_PATTERN = re.compile(r"^\s*([^\W\d_]+)\s+(\d{4})\s*$")
_LABEL_SEARCH = re.compile(r"([^\W\d_]+)\s+(\d{4})")


def parse_month_label(label: str) -> Tuple[int, int]:
    """
    Parse a month label such as "September 2025" or "Oktober 2025".

    Returns:
        (year, month) tuple

    Raises:
        ValueError: if the label is not "<month name> <year>" in a known language
    """
    match = _LABEL_PATTERN.match(label or "")
    if not match:
        raise ValueError(f"Invalid month label: {label!r}")

    month = _MONTH_LOOKUP.get(match.group(1).casefold())
    if month is None:
        raise ValueError(f"Unknown month name in label: {label!r}")

    return int(match.group(2)), month


def format_month_label(year: int, month: int, locale: str = "sl") -> str:
    """Format a month label the way the widget displays it."""
    if locale not in MONTH_NAMES:
        raise ValueError(f"Unsupported locale: {locale}")
    return f"{MONTH_NAMES[locale][month - 1]} {year}"


def target_months(count: int = 12, start: Optional[date] = None, locale: str = "sl") -> List[str]:
    """Labels for `count` consecutive months beginning with the month of `start`."""
    start = start or date.today()
    year, month = start.year, start.month

    labels = []
    for _ in range(count):
        labels.append(format_month_label(year, month, locale))
        month += 1
        if month > 12:
            month = 1
            year += 1

    return labels


def _find_month(text: str) -> Optional[Tuple[int, int]]:
    for match in _LABEL_SEARCH.finditer(text or ""):
        month = _MONTH_LOOKUP.get(match.group(1).casefold())
        if month is not None:
            return int(match.group(2)), month
    return None


def labels_match(displayed: str, target: str) -> bool:
    """
    True if the displayed calendar header shows the target month.

    Labels are compared as (year, month), so "October 2025" matches a
    widget showing "Oktober 2025". Text that names no known month falls
    back to a normalized containment match.
    """
    wanted, shown = _find_month(target), _find_month(displayed)
    if wanted is not None and shown is not None:
        return wanted == shown

    normalized_target = " ".join(target.split()).casefold()
    normalized_displayed = " ".join((displayed or "").split()).casefold()
    return bool(normalized_target) and normalized_target in normalized_displayed


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """First and last day of a month."""
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


# ============================================
# DATA CLASSES
# ============================================

class AvailabilityState(str, Enum):
    """Availability of one calendar day."""

    AVAILABLE = "available"
    PARTIAL_NO_START = "partial_no_start"
    PARTIAL_NO_END = "partial_no_end"
    UNAVAILABLE = "unavailable"

    @property
    def is_bookable(self) -> bool:
        return self is not AvailabilityState.UNAVAILABLE

    @property
    def is_partial(self) -> bool:
        return self in (AvailabilityState.PARTIAL_NO_START, AvailabilityState.PARTIAL_NO_END)


@dataclass(frozen=True)
class CalendarCell:
    """Raw signals of one rendered datepicker cell."""
    day: int
    in_month: bool = True
    start_blocked: bool = False
    end_blocked: bool = False
    disallowed: bool = False
    occupied: bool = False
    tooltip: Optional[str] = None

    def __post_init__(self):
        if not 1 <= self.day <= 31:
            raise ValueError(f"Day of month out of range: {self.day}")


@dataclass(frozen=True)
class AvailabilityDay:
    """Classified availability for a single date."""
    date: date
    state: AvailabilityState
    can_checkin: bool
    can_checkout: bool

    @property
    def is_bookable(self) -> bool:
        return self.state.is_bookable

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "state": self.state.value,
            "can_checkin": self.can_checkin,
            "can_checkout": self.can_checkout,
        }


@dataclass(frozen=True)
class ScrapeRange:
    """Inclusive date span covered by one scrape task."""
    min_date: date
    max_date: date

    def __post_init__(self):
        if self.min_date > self.max_date:
            raise ValueError(f"Invalid range: {self.min_date} > {self.max_date}")

    @classmethod
    def for_months(cls, labels: Sequence[str]) -> "ScrapeRange":
        """Union of first-to-last day of every labelled month."""
        if not labels:
            raise ValueError("At least one target month is required")

        bounds = [month_bounds(*parse_month_label(label)) for label in labels]
        return cls(
            min_date=min(first for first, _ in bounds),
            max_date=max(last for _, last in bounds),
        )

    def contains(self, day: date) -> bool:
        return self.min_date <= day <= self.max_date

    @property
    def total_days(self) -> int:
        return (self.max_date - self.min_date).days + 1

    def to_dict(self) -> dict:
        return {
            "min_date": self.min_date.isoformat(),
            "max_date": self.max_date.isoformat(),
            "total_days": self.total_days,
        }


@dataclass
class AvailabilitySummary:
    """Counts over a set of classified days."""
    total_days: int = 0
    available_days: int = 0  # fully + partially available
    fully_available_days: int = 0
    partial_days: int = 0
    unavailable_days: int = 0

    @classmethod
    def from_days(cls, days: Sequence[AvailabilityDay]) -> "AvailabilitySummary":
        fully = sum(1 for d in days if d.state is AvailabilityState.AVAILABLE)
        partial = sum(1 for d in days if d.state.is_partial)
        return cls(
            total_days=len(days),
            available_days=fully + partial,
            fully_available_days=fully,
            partial_days=partial,
            unavailable_days=len(days) - fully - partial,
        )

    @property
    def availability_rate(self) -> float:
        """Share of bookable days in percent."""
        if self.total_days == 0:
            return 0.0
        return self.available_days / self.total_days * 100

    def to_dict(self) -> dict:
        return {
            "total_days": self.total_days,
            "available_days": self.available_days,
            "fully_available_days": self.fully_available_days,
            "partial_days": self.partial_days,
            "unavailable_days": self.unavailable_days,
            "availability_rate": round(self.availability_rate, 1),
        }


@dataclass
class MonthAvailability:
    """Classified days of one displayed month."""
    label: str
    year: int
    month: int
    days: List[AvailabilityDay] = field(default_factory=list)

    @property
    def summary(self) -> AvailabilitySummary:
        return AvailabilitySummary.from_days(self.days)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "summary": self.summary.to_dict(),
            "days": [d.to_dict() for d in self.days],
        }


@dataclass
class RoomCalendar:
    """Result of one scrape task: every target month of one room type."""
    external_id: str
    scrape_range: ScrapeRange
    months: Dict[str, MonthAvailability] = field(default_factory=dict)
    scraped_at: str = ""

    @property
    def days(self) -> List[AvailabilityDay]:
        """All classified days, in target month order."""
        return [day for month in self.months.values() for day in month.days]

    @property
    def summary(self) -> AvailabilitySummary:
        return AvailabilitySummary.from_days(self.days)

    def bookable_days(self) -> List[AvailabilityDay]:
        """Days that produce a stored record (available and partial)."""
        return [d for d in self.days if d.is_bookable]

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "scraped_at": self.scraped_at,
            "range": self.scrape_range.to_dict(),
            "stats": self.summary.to_dict(),
            "months": {label: m.to_dict() for label, m in self.months.items()},
        }


# ============================================
# CLASSIFIER
# ============================================

OCCUPIED_LABELS = ("zasedeno", "occupied", "belegt")


def _has_occupied_label(cell: CalendarCell) -> bool:
    if cell.occupied:
        return True
    tooltip = (cell.tooltip or "").casefold()
    return any(label in tooltip for label in OCCUPIED_LABELS)


def classify_cell(cell: CalendarCell, year: int, month: int) -> Optional[AvailabilityDay]:
    """
    Classify one datepicker cell of the displayed month.

    Args:
        cell: Raw cell signals
        year: Year of the displayed month
        month: Displayed month (1-12)

    Returns:
        AvailabilityDay, or None for filler cells of adjacent months
    """
    if not cell.in_month:
        return None

    day = date(year, month, cell.day)

    if cell.start_blocked and cell.end_blocked:
        return AvailabilityDay(day, AvailabilityState.UNAVAILABLE, False, False)

    if cell.start_blocked:
        return AvailabilityDay(day, AvailabilityState.PARTIAL_NO_START, False, True)

    if cell.end_blocked:
        return AvailabilityDay(day, AvailabilityState.PARTIAL_NO_END, True, False)

    if not cell.disallowed and not _has_occupied_label(cell):
        return AvailabilityDay(day, AvailabilityState.AVAILABLE, True, True)

    return AvailabilityDay(day, AvailabilityState.UNAVAILABLE, False, False)


# ============================================
# MONTH WALKER
# ============================================

async def walk_to_month(
    session: "CalendarSession",
    target: str,
    max_steps: int = 24,
    settle_delay: float = 0.5,
) -> int:
    """
    Advance the calendar until it displays `target`.

    Args:
        session: Open calendar session
        target: Month label to reach, e.g. "September 2025"
        max_steps: Maximum number of advances (24 = two years)
        settle_delay: Seconds to let the widget re-render after each advance

    Returns:
        Number of advances performed

    Raises:
        NavigationExhausted: if the target is not displayed after max_steps advances
    """
    displayed = await session.read_displayed_month_label()
    steps = 0

    while not labels_match(displayed, target):
        if steps >= max_steps:
            raise NavigationExhausted(target, steps, displayed)

        await session.advance_month()
        await asyncio.sleep(settle_delay)
        displayed = await session.read_displayed_month_label()
        steps += 1

    logger.debug(f"[WALK] Reached {target} after {steps} steps")
    return steps


# ============================================
# SCRAPE TASK
# ============================================

async def scrape_room(
    session: "CalendarSession",
    external_id: str,
    months: Sequence[str],
    max_steps: int = 24,
    settle_delay: float = 0.5,
) -> RoomCalendar:
    """
    Scrape every target month of one room type.

    Months are processed strictly in the given order. Any failure
    propagates and the partial result is dropped; retrying is the
    caller's job.

    Args:
        session: Open calendar session on the property's widget
        external_id: Widget token selecting the room type
        months: Ordered target month labels
        max_steps: Step bound for each month walk
        settle_delay: Seconds to wait after each calendar advance

    Returns:
        RoomCalendar with per-month days, statistics and the covered range
    """
    scrape_range = ScrapeRange.for_months(months)

    await session.select_room(external_id)
    await session.open_calendar()

    results: Dict[str, MonthAvailability] = {}
    seen = set()

    for label in months:
        year, month = parse_month_label(label)
        if (year, month) in seen:
            logger.warning(f"[MONTH] Skipping duplicate target month {label}")
            continue
        seen.add((year, month))

        await walk_to_month(session, label, max_steps=max_steps, settle_delay=settle_delay)

        cells = await session.read_calendar_cells()
        by_date: Dict[date, AvailabilityDay] = {}
        for cell in cells:
            day = classify_cell(cell, year, month)
            if day is not None and day.date not in by_date:
                by_date[day.date] = day

        month_data = MonthAvailability(
            label=label,
            year=year,
            month=month,
            days=sorted(by_date.values(), key=lambda d: d.date),
        )
        results[label] = month_data

        stats = month_data.summary
        logger.info(
            f"[MONTH] {external_id} {label}: {stats.available_days}/{stats.total_days} days "
            f"({stats.fully_available_days} full, {stats.partial_days} partial, "
            f"{stats.availability_rate:.1f}%)"
        )

    return RoomCalendar(
        external_id=external_id,
        scrape_range=scrape_range,
        months=results,
        scraped_at=datetime.utcnow().isoformat(),
    )


# Utility functions

def find_stays(days: Sequence[AvailabilityDay], nights: int = 1) -> List[Dict]:
    """
    Find every stay of exactly `nights` nights the classified days allow.

    A stay needs a check-in day that allows check-in, fully available
    nights in between, and a check-out day that allows check-out. Partial
    days therefore open or close stays but never sit inside one.

    Args:
        days: Classified days (any order, gaps mean unknown/unavailable)
        nights: Length of stay

    Returns:
        List of {"checkin", "checkout", "nights"} dicts, ordered by check-in
    """
    if nights < 1:
        raise ValueError("A stay has at least one night")

    by_date = {d.date: d for d in days}
    stays = []

    for checkin in sorted(by_date):
        if not by_date[checkin].can_checkin:
            continue

        checkout = checkin + timedelta(days=nights)
        last = by_date.get(checkout)
        if last is None or not last.can_checkout:
            continue

        middle = (by_date.get(checkin + timedelta(days=i)) for i in range(1, nights))
        if all(d is not None and d.state is AvailabilityState.AVAILABLE for d in middle):
            stays.append({
                "checkin": checkin.isoformat(),
                "checkout": checkout.isoformat(),
                "nights": nights,
            })

    return stays
