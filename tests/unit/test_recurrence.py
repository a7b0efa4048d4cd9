# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""Unit tests for the recurrence calendar of scheduled orders."""

from datetime import UTC, datetime

import pytest

from order_engine.core.clock import add_months
from order_engine.core.recurrence import next_occurrence
from order_engine.models.order import RecurrencePattern
from tests.helper import NOW


class TestNextOccurrence:
    """Test cases for ``next_occurrence``"""

    def test_daily(self) -> None:
        assert next_occurrence(RecurrencePattern.DAILY, NOW) == datetime(
            2025, 1, 16, 12, 0, tzinfo=UTC,
        )

    @pytest.mark.parametrize(
        ("day", "expected"),
        [
            (1, datetime(2025, 1, 20, 12, 0, tzinfo=UTC)),
            (3, datetime(2025, 1, 22, 12, 0, tzinfo=UTC)),
            (5, datetime(2025, 1, 17, 12, 0, tzinfo=UTC)),
            (7, datetime(2025, 1, 19, 12, 0, tzinfo=UTC)),
            (None, datetime(2025, 1, 22, 12, 0, tzinfo=UTC)),
        ],
    )
    def test_weekly(self, day: int | None, expected: datetime) -> None:
        """Weekly days count from Monday; the current day means next week"""
        assert next_occurrence(RecurrencePattern.WEEKLY, NOW, day) == expected

    @pytest.mark.parametrize(
        ("day", "expected"),
        [
            (10, datetime(2025, 2, 10, tzinfo=UTC)),
            (20, datetime(2025, 1, 20, tzinfo=UTC)),
            (31, datetime(2025, 1, 28, tzinfo=UTC)),
            (None, datetime(2025, 2, 15, 12, 0, tzinfo=UTC)),
        ],
    )
    def test_monthly(self, day: int | None, expected: datetime) -> None:
        """Monthly days are capped to the 28th and start at midnight"""
        assert next_occurrence(RecurrencePattern.MONTHLY, NOW, day) == expected

    def test_monthly_across_year_end(self) -> None:
        now = datetime(2025, 12, 20, 8, 30, tzinfo=UTC)
        assert next_occurrence(RecurrencePattern.MONTHLY, now, 5) == datetime(
            2026, 1, 5, tzinfo=UTC,
        )

    def test_quarterly(self) -> None:
        assert next_occurrence(RecurrencePattern.QUARTERLY, NOW) == datetime(
            2025, 4, 15, 12, 0, tzinfo=UTC,
        )

    def test_once_is_not_repeating(self) -> None:
        with pytest.raises(ValueError, match="Unknown recurrence pattern"):
            next_occurrence(RecurrencePattern.ONCE, NOW)


class TestAddMonths:
    """Test cases for ``add_months``"""

    def test_clamps_to_month_end(self) -> None:
        assert add_months(datetime(2025, 1, 31, tzinfo=UTC), 1) == datetime(
            2025, 2, 28, tzinfo=UTC,
        )

    def test_leap_year(self) -> None:
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(
            2024, 2, 29, tzinfo=UTC,
        )

    def test_target_day(self) -> None:
        assert add_months(datetime(2025, 3, 2, tzinfo=UTC), 1, day=31) == datetime(
            2025, 4, 30, tzinfo=UTC,
        )

    def test_negative_months(self) -> None:
        assert add_months(datetime(2025, 1, 15, tzinfo=UTC), -2) == datetime(
            2024, 11, 15, tzinfo=UTC,
        )
