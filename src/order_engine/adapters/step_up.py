# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from typing import Self

import pyotp

from order_engine.interfaces import IStepUpOracle


class TOTPStepUpOracle(IStepUpOracle):
    """Validates time-based one-time passwords (RFC 6238)."""

    def __init__(self: Self, valid_window: int = 1) -> None:
        self.__valid_window = valid_window

    def verify(self: Self, secret: str, code: str) -> bool:
        return pyotp.TOTP(secret).verify(code, valid_window=self.__valid_window)
