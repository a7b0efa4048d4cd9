# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""Helpers shared by the unit and integration tests."""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import Mock

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)  # a Wednesday
SPACE_ID = "space-1"
USER_ID = "user-1"
VALID_OTP = "123456"
TOTP_SECRET = "JBSWY3DPEHPK3PXP"  # noqa: S105


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:  # noqa: ANN401
        self.now += timedelta(**kwargs)


def audited_actions(audit_sink: Mock) -> list[str]:
    """Return the actions of all audit events written to a sink double."""
    return [call.args[0].action for call in audit_sink.log.call_args_list]
