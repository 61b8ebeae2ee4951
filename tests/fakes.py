"""
In-memory calendar widgets for tests
"""

import asyncio
from calendar import monthrange
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional

from hut_availability.calendar import CalendarCell
from hut_availability.errors import AutomationFailure, RoomSelectionError


def month_cells(
    year: int,
    month: int,
    open_days: Optional[Iterable[int]] = None,
    start_blocked: Iterable[int] = (),
    end_blocked: Iterable[int] = (),
) -> List[CalendarCell]:
    """
    Cells of one month as a datepicker renders them, including filler
    cells of the previous and next month.

    open_days=None opens every day; otherwise days not listed (and not
    blocked) are disallowed.
    """
    start_blocked, end_blocked = set(start_blocked), set(end_blocked)
    open_set = None if open_days is None else set(open_days)

    cells = [CalendarCell(day=d, in_month=False) for d in (29, 30, 31)]
    for day in range(1, monthrange(year, month)[1] + 1):
        cells.append(CalendarCell(
            day=day,
            start_blocked=day in start_blocked,
            end_blocked=day in end_blocked,
            disallowed=open_set is not None and day not in open_set
            and day not in start_blocked and day not in end_blocked,
        ))
    cells.extend(CalendarCell(day=d, in_month=False) for d in (1, 2, 3, 4))
    return cells


class FakeSession:
    """CalendarSession over prepared months; advancing past the last month is a no-op."""

    def __init__(
        self,
        calendars: Dict[str, Dict[str, List[CalendarCell]]],
        stuck: bool = False,
        widget: Optional["FakeWidget"] = None,
    ):
        self.calendars = calendars
        self.labels = list(next(iter(calendars.values())))
        self.index = 0
        self.stuck = stuck
        self.widget = widget
        self.selected = None
        self.opened = False
        self.advances = 0

    async def select_room(self, external_id: str) -> None:
        if external_id not in self.calendars:
            raise RoomSelectionError(f"No room option {external_id}")
        self.selected = external_id

    async def open_calendar(self) -> None:
        self.opened = True

    async def read_displayed_month_label(self) -> str:
        return self.labels[self.index]

    async def advance_month(self) -> None:
        self.advances += 1
        if not self.stuck and self.index < len(self.labels) - 1:
            self.index += 1

    async def read_calendar_cells(self) -> List[CalendarCell]:
        if self.widget is not None:
            await self.widget.on_read(self.selected)
        return list(self.calendars[self.selected][self.labels[self.index]])


class FakeWidget:
    """
    Session factory for the orchestrator.

    Tracks how many sessions are open at once and can make the first
    reads of a room fail with AutomationFailure.
    """

    def __init__(
        self,
        calendars: Dict[str, Dict[str, List[CalendarCell]]],
        failing_reads: Optional[Dict[str, int]] = None,
        hold: float = 0.01,
    ):
        self.calendars = calendars
        self.failing_reads = dict(failing_reads or {})
        self.hold = hold
        self.open_sessions = 0
        self.max_open_sessions = 0
        self.sessions_opened = 0
        self.properties_seen: List[str] = []

    @asynccontextmanager
    async def session(self, prop):
        self.open_sessions += 1
        self.sessions_opened += 1
        self.max_open_sessions = max(self.max_open_sessions, self.open_sessions)
        self.properties_seen.append(prop.name)
        try:
            yield FakeSession(self.calendars, widget=self)
        finally:
            self.open_sessions -= 1

    async def on_read(self, external_id: str) -> None:
        await asyncio.sleep(self.hold)
        if self.failing_reads.get(external_id, 0) > 0:
            self.failing_reads[external_id] -= 1
            raise AutomationFailure(f"Session crashed while reading {external_id}")
