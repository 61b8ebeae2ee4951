"""
Calendar sessions - the boundary to the browser automation driver.

The scrape task only needs five widget interactions; everything that knows
about markup lives here. `BentralCalendarSession` drives the Bentral
booking widget (embedded datepicker) through Playwright.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol

from playwright.async_api import Error as PlaywrightError, Page, async_playwright

from .calendar import CalendarCell
from .errors import AutomationFailure, RoomSelectionError

logger = logging.getLogger(__name__)


class CalendarSession(Protocol):
    """Widget capability consumed by the month walker and scrape task."""

    async def select_room(self, external_id: str) -> None:
        ...

    async def open_calendar(self) -> None:
        ...

    async def read_displayed_month_label(self) -> str:
        ...

    async def advance_month(self) -> None:
        ...

    async def read_calendar_cells(self) -> List[CalendarCell]:
        ...


# ============================================
# BENTRAL WIDGET
# ============================================

@dataclass
class BentralSelectors:
    """CSS selectors of the Bentral booking widget."""
    room_select: str = 'select[name="unit[]"]'
    arrival_input: str = 'input[name="formated_arrival"]'
    calendar_switch: str = ".datepicker-switch"
    calendar_days: str = ".datepicker-days td"
    next_button: str = ".datepicker-days .next"


_READ_CELLS_JS = """
els => els.map(el => ({
    text: (el.textContent || "").trim(),
    classes: el.className || "",
    title: el.getAttribute("title") || ""
}))
"""

_READ_OPTIONS_JS = "els => els.map(el => el.value)"

_DAY_PATTERN = re.compile(r"^\d{1,2}$")


def cell_from_markup(text: str, classes: str, title: str = "") -> Optional[CalendarCell]:
    """
    Map one datepicker <td> to a CalendarCell.

    Returns None for cells that are not day cells (headers, week numbers).
    """
    tokens = set(classes.split())
    if not _DAY_PATTERN.match(text.strip()) or "day" not in tokens:
        return None

    return CalendarCell(
        day=int(text),
        in_month=not ({"old", "new"} & tokens),
        start_blocked="unavail_start" in tokens,
        end_blocked="unavail_end" in tokens,
        disallowed=bool({"unavail", "disabled"} & tokens),
        tooltip=title or None,
    )


class BentralCalendarSession:
    """
    CalendarSession over a Playwright page showing a Bentral widget.

    Every Playwright error is re-raised as AutomationFailure so the
    orchestrator retries the task with a fresh session.
    """

    def __init__(
        self,
        page: Page,
        selectors: Optional[BentralSelectors] = None,
        selection_delay: float = 2.0,
        timeout: float = 30.0,
    ):
        self.page = page
        self.selectors = selectors or BentralSelectors()
        self.selection_delay = selection_delay
        self.timeout_ms = timeout * 1000

    async def select_room(self, external_id: str) -> None:
        try:
            options = await self.page.eval_on_selector_all(
                f"{self.selectors.room_select} option", _READ_OPTIONS_JS
            )
            if external_id not in options:
                raise RoomSelectionError(
                    f"No room option with external id {external_id!r} "
                    f"({len(options)} options in widget)"
                )

            await self.page.select_option(
                self.selectors.room_select, external_id, timeout=self.timeout_ms
            )
            await self.page.wait_for_timeout(self.selection_delay * 1000)
        except PlaywrightError as e:
            raise AutomationFailure(f"Room selection failed: {e}") from e

    async def open_calendar(self) -> None:
        try:
            await self.page.click(self.selectors.arrival_input, timeout=self.timeout_ms)
            await self.page.wait_for_selector(self.selectors.calendar_switch, timeout=self.timeout_ms)
        except PlaywrightError as e:
            raise AutomationFailure(f"Could not open calendar: {e}") from e

    async def read_displayed_month_label(self) -> str:
        try:
            label = await self.page.text_content(
                self.selectors.calendar_switch, timeout=self.timeout_ms
            )
        except PlaywrightError as e:
            raise AutomationFailure(f"Could not read calendar header: {e}") from e
        return (label or "").strip()

    async def advance_month(self) -> None:
        try:
            await self.page.click(self.selectors.next_button, timeout=self.timeout_ms)
        except PlaywrightError as e:
            raise AutomationFailure(f"Could not advance calendar: {e}") from e

    async def read_calendar_cells(self) -> List[CalendarCell]:
        try:
            raw = await self.page.eval_on_selector_all(self.selectors.calendar_days, _READ_CELLS_JS)
        except PlaywrightError as e:
            raise AutomationFailure(f"Could not read calendar cells: {e}") from e

        cells = []
        for item in raw:
            cell = cell_from_markup(item.get("text", ""), item.get("classes", ""), item.get("title", ""))
            if cell is not None:
                cells.append(cell)
        return cells


@asynccontextmanager
async def open_bentral_session(
    booking_url: str,
    headless: bool = True,
    timeout: float = 30.0,
    selection_delay: float = 2.0,
    selectors: Optional[BentralSelectors] = None,
) -> AsyncIterator[BentralCalendarSession]:
    """
    Launch a browser, load the widget and yield a session on it.

    The browser is always closed on exit, so each retry starts from a
    clean session.
    """
    async with async_playwright() as playwright:
        try:
            browser = await playwright.chromium.launch(headless=headless)
        except PlaywrightError as e:
            raise AutomationFailure(f"Could not launch browser: {e}") from e

        try:
            page = await browser.new_page()
            try:
                await page.goto(booking_url, wait_until="networkidle", timeout=timeout * 1000)
            except PlaywrightError as e:
                raise AutomationFailure(f"Could not load booking widget: {e}") from e

            logger.debug(f"[SESSION] Loaded {booking_url}")
            yield BentralCalendarSession(
                page,
                selectors=selectors,
                selection_delay=selection_delay,
                timeout=timeout,
            )
        finally:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.warning(f"[SESSION] Browser close failed: {e}")
            else:
                logger.debug("[SESSION] Browser closed")
