# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from datetime import datetime, timedelta
from decimal import Decimal
from logging import getLogger
from typing import Self

from order_engine.core.clock import Clock, add_months, utc_now
from order_engine.exceptions import InsufficientBalanceError, LimitExceededError
from order_engine.infrastructure.database import OrderLimitTable
from order_engine.interfaces import IAccountDirectory
from order_engine.models.order import Order, OrderLimit, OrderType

LOG = getLogger(__name__)

BALANCE_CHECKED_TYPES = frozenset({OrderType.SELL, OrderType.TRANSFER})


def next_reset(limit_type: str, reset_at: datetime, now: datetime) -> datetime:
    """Roll a limit window forward until its reset instant lies after ``now``."""
    while reset_at <= now:
        match limit_type:
            case "weekly":
                reset_at += timedelta(weeks=1)
            case "monthly":
                reset_at = add_months(reset_at, 1)
            case _:
                reset_at += timedelta(days=1)
    return reset_at


class LimitService:
    """Enforces order limits and source account balances."""

    def __init__(
        self: Self,
        limit_table: OrderLimitTable,
        accounts: IAccountDirectory,
        clock: Clock = utc_now,
    ) -> None:
        self.__limits = limit_table
        self.__accounts = accounts
        self.__clock = clock

    def get_applicable(
        self: Self,
        user_id: str,
        space_id: str,
        order_type: OrderType,
        currency: str,
    ) -> list[OrderLimit]:
        """Return the matching limits, starting new windows where due."""
        now = self.__clock()
        limits = []
        for limit in self.__limits.get_matching(user_id, space_id, order_type, currency):
            if limit.reset_at <= now:
                reset_at = next_reset(limit.limit_type, limit.reset_at, now)
                LOG.info("Resetting %s limit %s until %s", limit.limit_type, limit.id, reset_at)
                self.__limits.reset(limit.id, reset_at)
                limit = limit.model_copy(
                    update={"used_amount": Decimal(0), "reset_at": reset_at},
                )
            limits.append(limit)
        return limits

    def check_limits(  # noqa: PLR0913
        self: Self,
        user_id: str,
        space_id: str,
        order_type: OrderType,
        amount: Decimal,
        currency: str,
    ) -> None:
        """Raise :class:`LimitExceededError` if any matching limit is exceeded."""
        for limit in self.get_applicable(user_id, space_id, order_type, currency):
            if amount > limit.available:
                raise LimitExceededError(
                    f"Order exceeds {limit.limit_type} limit. "
                    f"Available: {limit.available} {limit.currency}",
                )

    def validate_balance(
        self: Self,
        account_id: str,
        order_type: OrderType,
        amount: Decimal,
    ) -> None:
        """Raise :class:`InsufficientBalanceError` for uncovered sells and transfers."""
        if order_type not in BALANCE_CHECKED_TYPES:
            return
        if (balance := self.__accounts.get_balance(account_id)) < amount:
            raise InsufficientBalanceError(
                f"Insufficient balance. Available: {balance}",
            )

    def record_usage(self: Self, order: Order, amount: Decimal) -> None:
        """Add an executed amount to every matching limit."""
        for limit in self.get_applicable(
            order.user_id,
            order.space_id,
            order.type,
            order.currency,
        ):
            self.__limits.add_usage(limit.id, amount)
