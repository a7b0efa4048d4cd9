# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import calendar
from datetime import UTC, datetime
from typing import Callable

#: Signature of the wall clock injected into the services.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current, timezone-aware UTC time."""
    return datetime.now(UTC)


def add_months(value: datetime, months: int, day: int | None = None) -> datetime:
    """
    Shift ``value`` by ``months`` calendar months, optionally onto ``day``.
    The day is clamped to the length of the target month.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(day or value.day, last_day))
