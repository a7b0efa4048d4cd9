# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from datetime import datetime, timedelta

from order_engine.core.clock import add_months
from order_engine.models.order import RecurrencePattern


def next_occurrence(
    pattern: RecurrencePattern,
    now: datetime,
    day: int | None = None,
) -> datetime:
    """
    Compute the next execution instant after ``now``.

    Weekly days count from 1 (Monday) to 7 (Sunday). Monthly days are capped
    to the 28th and the instant is moved to the start of that day. Without a
    day, weekly and monthly orders run one week or one month after ``now``.
    """
    match pattern:
        case RecurrencePattern.DAILY:
            return now + timedelta(days=1)
        case RecurrencePattern.WEEKLY:
            if not day or not 1 <= day <= 7:  # noqa: PLR2004
                return now + timedelta(weeks=1)
            candidate = now + timedelta(days=(day - 1) - now.weekday())
            if candidate <= now:
                candidate += timedelta(weeks=1)
            return candidate
        case RecurrencePattern.MONTHLY:
            if not day or not 1 <= day <= 31:  # noqa: PLR2004
                return add_months(now, 1)
            candidate = now.replace(day=min(day, 28))
            if candidate <= now:
                candidate = add_months(candidate, 1)
            return candidate.replace(hour=0, minute=0, second=0, microsecond=0)
        case RecurrencePattern.QUARTERLY:
            return add_months(now, 3)
    raise ValueError(f"Unknown recurrence pattern: {pattern}")
