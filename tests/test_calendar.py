"""
Tests for calendar classification, navigation and scrape tasks
"""

from datetime import date

import pytest

from hut_availability.calendar import (
    AvailabilityDay,
    AvailabilityState,
    AvailabilitySummary,
    CalendarCell,
    ScrapeRange,
    classify_cell,
    find_stays,
    format_month_label,
    labels_match,
    parse_month_label,
    scrape_room,
    target_months,
    walk_to_month,
)
from hut_availability.errors import NavigationExhausted, RoomSelectionError

from fakes import FakeSession, month_cells


def sept_oct_nov():
    return {
        "September 2025": month_cells(2025, 9, open_days=[5, 12], end_blocked=[20]),
        "Oktober 2025": month_cells(2025, 10),
        "November 2025": month_cells(2025, 11, open_days=[]),
    }


class TestMonthLabels:
    """Tests for month label parsing and generation"""

    def test_parse_english_and_slovenian(self):
        assert parse_month_label("September 2025") == (2025, 9)
        assert parse_month_label("Oktober 2025") == (2025, 10)
        assert parse_month_label("  marec 2026 ") == (2026, 3)

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_month_label("Smarch 2025")
        with pytest.raises(ValueError):
            parse_month_label("2025-09")

    def test_target_months_wraps_year(self):
        labels = target_months(3, start=date(2025, 11, 15))
        assert labels == ["November 2025", "December 2025", "Januar 2026"]

    def test_format_english(self):
        assert format_month_label(2025, 10, locale="en") == "October 2025"

    def test_labels_match_ignores_case_and_spacing(self):
        assert labels_match("  september   2025", "September 2025")
        assert labels_match("« September 2025 »", "September 2025")
        assert not labels_match("Oktober 2025", "September 2025")
        assert not labels_match("", "September 2025")

    def test_labels_match_across_languages(self):
        assert labels_match("Oktober 2025", "October 2025")
        assert labels_match("Maj 2026", "May 2026")
        assert labels_match("« März 2026 »", "Marec 2026")
        assert not labels_match("Oktober 2026", "October 2025")


class TestClassifier:
    """Tests for the availability classifier"""

    def test_both_blocking_markers_unavailable(self):
        for disallowed in (True, False):
            for tooltip in (None, "Zasedeno", "Prosto"):
                cell = CalendarCell(day=10, start_blocked=True, end_blocked=True,
                                    disallowed=disallowed, tooltip=tooltip)
                result = classify_cell(cell, 2025, 9)

                assert result.state is AvailabilityState.UNAVAILABLE
                assert result.can_checkin is False
                assert result.can_checkout is False

    def test_outside_month_ignored(self):
        cells = [
            CalendarCell(day=30, in_month=False),
            CalendarCell(day=1, in_month=False, start_blocked=True),
            CalendarCell(day=2, in_month=False, end_blocked=True, disallowed=True),
            CalendarCell(day=3, in_month=False, tooltip="occupied"),
        ]
        assert all(classify_cell(cell, 2025, 9) is None for cell in cells)

    def test_start_blocked_is_partial_no_start(self):
        result = classify_cell(CalendarCell(day=4, start_blocked=True), 2025, 9)

        assert result == AvailabilityDay(date(2025, 9, 4), AvailabilityState.PARTIAL_NO_START, False, True)

    def test_end_blocked_is_partial_no_end(self):
        result = classify_cell(CalendarCell(day=20, end_blocked=True, disallowed=True), 2025, 9)

        assert result.state is AvailabilityState.PARTIAL_NO_END
        assert result.can_checkin is True
        assert result.can_checkout is False

    def test_open_day_available(self):
        result = classify_cell(CalendarCell(day=5, tooltip="Prosto"), 2025, 9)

        assert result.state is AvailabilityState.AVAILABLE
        assert result.can_checkin and result.can_checkout

    def test_disallowed_or_occupied_unavailable(self):
        for cell in (
            CalendarCell(day=6, disallowed=True),
            CalendarCell(day=6, occupied=True),
            CalendarCell(day=6, tooltip="ZASEDENO"),
            CalendarCell(day=6, tooltip="Room occupied"),
        ):
            assert classify_cell(cell, 2025, 9).state is AvailabilityState.UNAVAILABLE

    def test_invalid_day_rejected(self):
        with pytest.raises(ValueError):
            CalendarCell(day=0)
        with pytest.raises(ValueError):
            classify_cell(CalendarCell(day=31), 2025, 9)


class TestScrapeRange:
    """Tests for scrape ranges"""

    def test_for_months_spans_first_to_last_day(self):
        scrape_range = ScrapeRange.for_months(["Oktober 2025", "September 2025"])

        assert scrape_range.min_date == date(2025, 9, 1)
        assert scrape_range.max_date == date(2025, 10, 31)
        assert scrape_range.total_days == 61
        assert scrape_range.to_dict()["total_days"] == 61

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            ScrapeRange(date(2025, 9, 2), date(2025, 9, 1))
        with pytest.raises(ValueError):
            ScrapeRange.for_months([])


class TestMonthWalker:
    """Tests for month navigation"""

    @pytest.mark.asyncio
    async def test_already_displayed(self):
        session = FakeSession({"r1": sept_oct_nov()})

        steps = await walk_to_month(session, "September 2025", settle_delay=0)

        assert steps == 0
        assert session.advances == 0

    @pytest.mark.asyncio
    async def test_advances_to_target(self):
        session = FakeSession({"r1": sept_oct_nov()})

        steps = await walk_to_month(session, "November 2025", settle_delay=0)

        assert steps == 2
        assert await session.read_displayed_month_label() == "November 2025"

    @pytest.mark.asyncio
    async def test_english_target_on_slovenian_widget(self):
        session = FakeSession({"r1": sept_oct_nov()})

        steps = await walk_to_month(session, "October 2025", max_steps=3, settle_delay=0)

        assert steps == 1
        assert await session.read_displayed_month_label() == "Oktober 2025"

    @pytest.mark.asyncio
    async def test_exhausted_after_max_steps(self):
        session = FakeSession({"r1": sept_oct_nov()}, stuck=True)

        with pytest.raises(NavigationExhausted) as exc_info:
            await walk_to_month(session, "November 2025", max_steps=5, settle_delay=0)

        assert exc_info.value.steps == 5
        assert exc_info.value.last_label == "September 2025"
        assert session.advances == 5

    @pytest.mark.asyncio
    async def test_zero_steps_fails_immediately(self):
        session = FakeSession({"r1": sept_oct_nov()})

        with pytest.raises(NavigationExhausted):
            await walk_to_month(session, "Oktober 2025", max_steps=0, settle_delay=0)

        assert session.advances == 0


class TestScrapeRoom:
    """Tests for a complete scrape task"""

    @pytest.mark.asyncio
    async def test_september_scenario(self):
        session = FakeSession({"r1": sept_oct_nov()})

        calendar = await scrape_room(session, "r1", ["September 2025"], settle_delay=0)

        assert session.selected == "r1"
        assert session.opened
        assert calendar.scrape_range == ScrapeRange(date(2025, 9, 1), date(2025, 9, 30))

        september = calendar.months["September 2025"]
        assert len(september.days) == 30
        assert [d.date.day for d in calendar.bookable_days()] == [5, 12, 20]
        assert calendar.bookable_days()[2].state is AvailabilityState.PARTIAL_NO_END

        summary = september.summary
        assert summary.available_days == 3
        assert summary.fully_available_days == 2
        assert summary.partial_days == 1
        assert summary.unavailable_days == 27

    @pytest.mark.asyncio
    async def test_months_in_order(self):
        session = FakeSession({"r1": sept_oct_nov()})

        calendar = await scrape_room(
            session, "r1", ["September 2025", "Oktober 2025", "November 2025"], settle_delay=0
        )

        assert list(calendar.months) == ["September 2025", "Oktober 2025", "November 2025"]
        assert calendar.summary.total_days == 30 + 31 + 30
        assert calendar.months["Oktober 2025"].summary.available_days == 31
        assert calendar.months["November 2025"].summary.available_days == 0
        assert calendar.scrape_range.max_date == date(2025, 11, 30)

    @pytest.mark.asyncio
    async def test_same_month_in_two_languages_scraped_once(self):
        session = FakeSession({"r1": sept_oct_nov()})

        calendar = await scrape_room(session, "r1", ["Oktober 2025", "October 2025"], settle_delay=0)

        assert list(calendar.months) == ["Oktober 2025"]
        assert len(calendar.days) == 31

    @pytest.mark.asyncio
    async def test_unknown_room_fails_before_navigation(self):
        session = FakeSession({"r1": sept_oct_nov()})

        with pytest.raises(RoomSelectionError):
            await scrape_room(session, "missing", ["September 2025"], settle_delay=0)

        assert session.advances == 0

    @pytest.mark.asyncio
    async def test_empty_months_rejected(self):
        session = FakeSession({"r1": sept_oct_nov()})

        with pytest.raises(ValueError):
            await scrape_room(session, "r1", [], settle_delay=0)

        assert session.selected is None

    @pytest.mark.asyncio
    async def test_unreachable_month_propagates(self):
        session = FakeSession({"r1": sept_oct_nov()})

        with pytest.raises(NavigationExhausted):
            await scrape_room(session, "r1", ["September 2025", "December 2025"],
                              max_steps=3, settle_delay=0)


class TestFindStays:
    """Tests for stay window detection"""

    def days(self, states):
        return [
            classify_cell(CalendarCell(day=i + 1, **markers), 2025, 9)
            for i, markers in enumerate(states)
        ]

    def test_single_nights(self):
        days = self.days([
            {},                      # 1 available
            {"start_blocked": True},  # 2 partial_no_start
            {"disallowed": True},    # 3 unavailable
            {"end_blocked": True},   # 4 partial_no_end
            {},                      # 5 available
        ])

        stays = find_stays(days, nights=1)

        assert [s["checkin"] for s in stays] == ["2025-09-01", "2025-09-04"]
        assert stays[0]["checkout"] == "2025-09-02"

    def test_partial_day_never_inside_stay(self):
        days = self.days([{}, {"end_blocked": True}, {}, {}])

        stays = find_stays(days, nights=2)

        assert [s["checkin"] for s in stays] == ["2025-09-02"]

    def test_invalid_nights(self):
        with pytest.raises(ValueError):
            find_stays([], nights=0)


class TestSummary:
    """Tests for availability statistics"""

    def test_empty_summary(self):
        summary = AvailabilitySummary.from_days([])

        assert summary.availability_rate == 0
        assert isinstance(summary.availability_rate, float)
        assert summary.to_dict()["total_days"] == 0
