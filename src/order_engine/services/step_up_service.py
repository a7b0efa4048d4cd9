# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import re
from decimal import Decimal
from logging import getLogger
from typing import Self

from order_engine.interfaces import IAccountDirectory, IStepUpOracle
from order_engine.models.order import OrderType

LOG = getLogger(__name__)

OTP_PATTERN = re.compile(r"[0-9]{6}")


class StepUpService:
    """Decides on and validates one-time code confirmations."""

    def __init__(
        self: Self,
        accounts: IAccountDirectory,
        oracle: IStepUpOracle,
        high_value_threshold: Decimal = Decimal(10_000),
    ) -> None:
        self.__accounts = accounts
        self.__oracle = oracle
        self.__threshold = high_value_threshold

    @property
    def high_value_threshold(self: Self) -> Decimal:
        return self.__threshold

    def requires_step_up(
        self: Self,
        user_id: str,
        order_type: OrderType,
        amount: Decimal,
    ) -> bool:
        if amount >= self.__threshold:
            return True
        if order_type in {OrderType.SELL, OrderType.WITHDRAW}:
            return True
        return self.__accounts.is_step_up_enabled(user_id)

    @staticmethod
    def is_well_formed(code: str) -> bool:
        return bool(OTP_PATTERN.fullmatch(code))

    def verify(self: Self, user_id: str, code: str) -> bool:
        """Validate a code against the user's shared secret."""
        if not self.is_well_formed(code):
            return False
        if not (secret := self.__accounts.get_step_up_secret(user_id)):
            LOG.warning("User %s has no step-up secret configured", user_id)
            return False
        return self.__oracle.verify(secret, code)
