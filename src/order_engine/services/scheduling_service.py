# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Order scheduler.

Executes one-time orders once their scheduled instant passed and recurring
orders (dollar-cost averaging) each time their next execution instant
passed, re-arming them until their last run.
"""

from datetime import datetime
from logging import getLogger
from typing import Self

from order_engine.core.clock import Clock, utc_now
from order_engine.core.recurrence import next_occurrence
from order_engine.exceptions import BadRequestError, InvalidOrderStateError
from order_engine.infrastructure.database import OrderTable
from order_engine.models.order import (
    CreateOrderDTO,
    ErrorCode,
    Order,
    RecurrencePattern,
)
from order_engine.services.order_service import OrderService

LOG = getLogger(__name__)


class SchedulingService:
    """Fires due scheduled and recurring orders."""

    def __init__(
        self: Self,
        order_table: OrderTable,
        order_service: OrderService,
        clock: Clock = utc_now,
    ) -> None:
        self.__orders = order_table
        self.__order_service = order_service
        self.__clock = clock

    def plan_next_execution(self: Self, order: Order) -> datetime | None:
        """
        Return the instant a recurring order runs after the upcoming run, or
        None if the upcoming run is its last one.
        """
        if not order.is_recurring:
            return None

        execution_count = order.execution_count + 1
        if order.max_executions and execution_count >= order.max_executions:
            LOG.info("Order %s reaches its maximum of %d executions", order.id, order.max_executions)
            return None

        next_execution_at = next_occurrence(
            order.recurrence,  # type: ignore[arg-type]
            self.__clock(),
            order.recurrence_day,
        )
        if order.recurrence_end and next_execution_at > order.recurrence_end:
            LOG.info("Order %s reaches its recurrence end", order.id)
            return None
        return next_execution_at

    def process_scheduled_orders(self: Self) -> int:
        """
        Execute all due orders, highest priority first. Returns the number of
        successful executions.
        """
        orders = self.__orders.get_due(self.__clock())
        if not orders:
            LOG.debug("No scheduled orders due for execution")
            return 0

        LOG.info("Found %d orders to execute", len(orders))
        executed = 0
        for order in orders:
            if self.__execute(order):
                executed += 1
        LOG.info("Scheduled order processing completed")
        return executed

    def __execute(self: Self, order: Order) -> bool:
        LOG.info("Executing scheduled order %s", order.id)
        try:
            rearm_at = self.plan_next_execution(order)
            self.__order_service.execute_order(
                order.id,
                order.user_id,
                rearm_at=rearm_at,
            )
        except InvalidOrderStateError as exc:
            LOG.info("Skipping scheduled order %s: %s", order.id, exc)
            return False
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOG.error("Failed to execute scheduled order %s: %s", order.id, exc)
            self.__order_service.fail_order(
                order.id,
                ErrorCode.SCHEDULED_EXECUTION_FAILED,
                str(exc),
            )
            return False

        if rearm_at is not None:
            LOG.info("Scheduled next execution for order %s at %s", order.id, rearm_at)
        else:
            LOG.info("Scheduled order %s completed", order.id)
        return True

    def create_recurring_order(  # noqa: PLR0913
        self: Self,
        space_id: str,
        user_id: str,
        request: CreateOrderDTO,
        pattern: RecurrencePattern,
        *,
        day: int | None = None,
        end_date: datetime | None = None,
        max_executions: int | None = None,
    ) -> Order:
        """
        Create a recurring order. With a recurrence day the first run is the
        next matching day, otherwise the order is due right away.
        """
        if pattern == RecurrencePattern.ONCE:
            raise BadRequestError("Recurring orders need a repeating pattern")

        order = self.__order_service.create_order(
            space_id,
            user_id,
            request.model_copy(
                update={
                    "recurrence": pattern,
                    "recurrence_day": day,
                    "recurrence_end": end_date,
                    "max_executions": max_executions,
                },
            ),
        )
        LOG.info(
            "Created recurring %s order %s, first execution at %s",
            pattern,
            order.id,
            order.next_execution_at,
        )
        return order

    def cancel_recurring(self: Self, order_id: str, user_id: str) -> Order:
        """Cancel all future executions of a recurring order."""
        order = self.__order_service.cancel_order(
            order_id,
            user_id,
            recurrence_end=self.__clock(),
        )
        LOG.info("Cancelled recurring order %s", order_id)
        return order
