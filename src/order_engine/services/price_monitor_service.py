# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Advanced order monitor.

Periodically evaluates the resting conditional orders (stop-loss,
take-profit, trailing-stop and one-cancels-other) against the latest market
prices and hands triggered orders to the orchestrator for execution.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from logging import getLogger
from typing import NamedTuple, Self

from order_engine.core.clock import Clock, utc_now
from order_engine.exceptions import BadRequestError, NotFoundError, PriceUnavailableError
from order_engine.infrastructure.database import OrderTable
from order_engine.interfaces import IPriceFeed
from order_engine.models.order import AdvancedOrderType, ErrorCode, Order, OrderStatus
from order_engine.services.order_service import OrderService

LOG = getLogger(__name__)


class CachedPrice(NamedTuple):
    price: Decimal
    timestamp: datetime


class PriceCache:
    """Short-lived in-memory cache of market prices."""

    def __init__(self: Self, ttl: timedelta, clock: Clock = utc_now) -> None:
        self.__ttl = ttl
        self.__clock = clock
        self.__prices: dict[tuple[str, str], CachedPrice] = {}

    def get(self: Self, asset_symbol: str, currency: str) -> Decimal | None:
        cached = self.__prices.get((asset_symbol.upper(), currency.upper()))
        if cached is None or self.__clock() - cached.timestamp >= self.__ttl:
            return None
        return cached.price

    def set(self: Self, asset_symbol: str, currency: str, price: Decimal) -> None:
        self.__prices[(asset_symbol.upper(), currency.upper())] = CachedPrice(
            price,
            self.__clock(),
        )


class Evaluation(NamedTuple):
    triggered: bool
    reason: str = ""


def should_trigger(order: Order, price: Decimal, highest_price: Decimal | None) -> Evaluation:
    """
    Decide whether an advanced order triggers at ``price``. For trailing
    stops ``highest_price`` is the highest price seen including ``price``.
    """
    match order.advanced_type:
        case AdvancedOrderType.STOP_LOSS:
            if order.stop_price is not None and price <= order.stop_price:
                return Evaluation(
                    True,
                    f"Stop-loss triggered: price {price} <= stop {order.stop_price}",
                )
        case AdvancedOrderType.TAKE_PROFIT:
            if order.take_profit_price is not None and price >= order.take_profit_price:
                return Evaluation(
                    True,
                    f"Take-profit triggered: price {price} >= target "
                    f"{order.take_profit_price}",
                )
        case AdvancedOrderType.TRAILING_STOP:
            highest = max(highest_price or price, price)
            if order.trailing_amount is not None:
                stop = highest - order.trailing_amount
            elif order.trailing_percent is not None:
                stop = highest * (1 - order.trailing_percent / 100)
            else:
                return Evaluation(False)
            if price <= stop:
                return Evaluation(
                    True,
                    f"Trailing stop triggered: price {price} <= stop {stop}",
                )
        case AdvancedOrderType.OCO:
            if order.stop_price is not None and price <= order.stop_price:
                return Evaluation(True, "OCO order triggered: stop price reached")
            if order.take_profit_price is not None and price >= order.take_profit_price:
                return Evaluation(True, "OCO order triggered: take-profit price reached")
    return Evaluation(False)


class PriceMonitorService:
    """Evaluates pending-trigger orders against market prices."""

    def __init__(  # noqa: PLR0913
        self: Self,
        order_table: OrderTable,
        order_service: OrderService,
        price_feed: IPriceFeed,
        cache_ttl: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ) -> None:
        self.__orders = order_table
        self.__order_service = order_service
        self.__price_feed = price_feed
        self.__clock = clock
        self.__cache = PriceCache(cache_ttl, clock)

    def monitor_prices(self: Self) -> int:
        """
        Run one monitoring cycle over all pending-trigger orders. Returns the
        number of triggered orders.
        """
        orders = [
            order
            for order in self.__orders.get_by_status(OrderStatus.PENDING_TRIGGER)
            if order.is_advanced
        ]
        if not orders:
            LOG.debug("No pending trigger orders to monitor")
            return 0

        LOG.info("Monitoring %d advanced orders", len(orders))
        self.__fetch_prices(
            {
                (order.asset_symbol, order.currency)
                for order in orders
                if order.asset_symbol
            },
        )

        triggered = 0
        for order in orders:
            try:
                if self.__evaluate(order):
                    triggered += 1
            except Exception:  # pylint: disable=broad-exception-caught
                LOG.exception("Failed to evaluate order %s", order.id)
        LOG.info("Price monitoring cycle completed, %d triggered", triggered)
        return triggered

    def check_order_price(self: Self, order_id: str) -> bool:
        """Evaluate a single pending-trigger order on demand."""
        if (order := self.__orders.get(order_id)) is None:
            raise NotFoundError("Order not found")
        if order.status != OrderStatus.PENDING_TRIGGER:
            raise BadRequestError("Order is not in pending_trigger status")
        if order.asset_symbol:
            self.__fetch_prices({(order.asset_symbol, order.currency)})
        return self.__evaluate(order)

    def __fetch_prices(self: Self, pairs: set[tuple[str, str]]) -> None:
        for asset_symbol, currency in pairs:
            if self.__cache.get(asset_symbol, currency) is not None:
                continue
            try:
                price = self.__price_feed.get_price(asset_symbol, currency)
            except PriceUnavailableError as exc:
                LOG.error("Failed to fetch price for %s/%s: %s", asset_symbol, currency, exc)
                continue
            self.__cache.set(asset_symbol, currency, price)

    def __evaluate(self: Self, order: Order) -> bool:
        """Evaluate one order; returns True if it was triggered."""
        if not order.asset_symbol:
            LOG.warning("Order %s has no asset symbol", order.id)
            return False

        price = self.__cache.get(order.asset_symbol, order.currency)
        if price is None:
            LOG.warning("No price available for %s/%s", order.asset_symbol, order.currency)
            self.__orders.update(order.id, last_price_check=self.__clock())
            return False

        highest_price = None
        if order.advanced_type == AdvancedOrderType.TRAILING_STOP:
            highest_price = self.__orders.raise_highest_price(order.id, price)
        self.__orders.update(order.id, last_price_check=self.__clock())

        evaluation = should_trigger(order, price, highest_price)
        if not evaluation.triggered:
            return False

        LOG.info("Triggering order %s: %s", order.id, evaluation.reason)
        self.__trigger(order, price, evaluation.reason)
        return True

    def __trigger(self: Self, order: Order, price: Decimal, reason: str) -> None:
        try:
            if self.__order_service.trigger_order(order.id, price, reason) is None:
                LOG.info("Order %s was no longer pending a trigger", order.id)
                return
            self.__order_service.execute_order(order.id, order.user_id)
            LOG.info("Successfully triggered and executed order %s", order.id)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOG.error("Failed to trigger order %s: %s", order.id, exc)
            self.__order_service.fail_order(
                order.id,
                ErrorCode.TRIGGER_EXECUTION_FAILED,
                str(exc),
            )
