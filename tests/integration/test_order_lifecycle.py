# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
End-to-end order lifecycles through the fully wired engine.

The engine runs on an in-memory SQLite database with a deterministic clock.
Bitso market data is served by a patched HTTP session, every order uses the
dry-run path so that no order ever reaches an exchange.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pyotp
import pytest

from order_engine.core.engine import OrderEngine
from order_engine.exceptions import InvalidOtpError
from order_engine.models.order import (
    CreateOrderDTO,
    OrderFilterDTO,
    OrderStatus,
    RecurrencePattern,
)
from tests.helper import NOW, SPACE_ID, TOTP_SECRET, USER_ID, FakeClock

pytestmark = pytest.mark.integration


def request(**overrides: Any) -> CreateOrderDTO:  # noqa: ANN401
    fields: dict[str, Any] = {
        "idempotency_key": str(uuid.uuid4()),
        "account_id": "acc-usd",
        "type": "buy",
        "amount": Decimal(500),
        "currency": "USD",
        "provider": "bitso",
        "asset_symbol": "BTC",
        "dry_run": True,
    }
    return CreateOrderDTO(**(fields | overrides))


def test_dry_run_order(engine: OrderEngine) -> None:
    """A small order is executable right away and completes on execution"""
    order = engine.orders.create_order(SPACE_ID, USER_ID, request())
    assert order.status == OrderStatus.PENDING_EXECUTION

    order = engine.orders.execute_order(order.id, USER_ID)

    assert order.status == OrderStatus.COMPLETED
    assert order.executed_amount == Decimal(500)
    assert order.provider_order_id == f"dryrun_{int(NOW.timestamp() * 1000)}"
    assert Decimal(45_000) <= order.executed_price <= Decimal(46_350)  # type: ignore[operator]
    assert order.fees == Decimal(1)

    details = engine.orders.find_order(order.id, USER_ID)
    assert len(details.executions) == 1
    assert details.executions[0].status == OrderStatus.COMPLETED


def test_repeated_request(engine: OrderEngine) -> None:
    """The same key and body returns the first order without side effects"""
    first = engine.orders.create_order(SPACE_ID, USER_ID, request(idempotency_key="key-1"))
    second = engine.orders.create_order(SPACE_ID, USER_ID, request(idempotency_key="key-1"))

    assert second.id == first.id
    assert engine.orders.find_order(first.id, USER_ID).executions == []
    page = engine.orders.list_orders(SPACE_ID, filters=OrderFilterDTO())
    assert page.total == 1


def test_step_up_verification(engine: OrderEngine) -> None:
    """High-value orders wait for a valid one-time code"""
    order = engine.orders.create_order(SPACE_ID, USER_ID, request(amount=Decimal(15_000)))
    assert order.status == OrderStatus.PENDING_VERIFICATION

    with pytest.raises(InvalidOtpError, match="Invalid OTP code format"):
        engine.orders.verify_order(order.id, USER_ID, "12345")
    assert engine.orders.get_order(order.id).status == OrderStatus.PENDING_VERIFICATION

    order = engine.orders.verify_order(order.id, USER_ID, pyotp.TOTP(TOTP_SECRET).now())

    assert order.status == OrderStatus.PENDING_EXECUTION
    assert order.otp_verified


def test_stop_loss_triggers(
    engine: OrderEngine,
    clock: FakeClock,
    market: dict[str, Decimal],
) -> None:
    """A monitoring cycle triggers and executes a stop-loss below its stop"""
    notifications: list[dict] = []
    engine.event_bus.subscribe("order_triggered", notifications.append)

    order = engine.orders.create_order(
        SPACE_ID,
        USER_ID,
        request(advanced_type="stop_loss", stop_price=Decimal(100)),
    )
    assert order.status == OrderStatus.PENDING_TRIGGER

    market["btc_usd"] = Decimal(101)
    assert engine.monitor.monitor_prices() == 0
    assert engine.orders.get_order(order.id).status == OrderStatus.PENDING_TRIGGER

    market["btc_usd"] = Decimal(95)
    clock.advance(minutes=6)
    assert engine.monitor.monitor_prices() == 1

    order = engine.orders.get_order(order.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.trigger_price == Decimal(95)
    assert order.triggered_at == clock.now
    assert [event["order_id"] for event in notifications] == [order.id]


def test_monthly_recurring_order(engine: OrderEngine, clock: FakeClock) -> None:
    """A monthly order with three executions is never rescheduled after the third"""
    order = engine.scheduler.create_recurring_order(
        SPACE_ID,
        USER_ID,
        request(amount=Decimal(100)),
        RecurrencePattern.MONTHLY,
        max_executions=3,
    )

    for expected_count in (1, 2, 3):
        clock.now = engine.orders.get_order(order.id).next_execution_at  # type: ignore[assignment]
        assert engine.scheduler.process_scheduled_orders() == 1
        assert engine.orders.get_order(order.id).execution_count == expected_count

    order = engine.orders.get_order(order.id)
    assert order.status == OrderStatus.COMPLETED
    assert clock.now == datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

    clock.advance(days=90)
    assert engine.scheduler.process_scheduled_orders() == 0
    assert len(engine.orders.find_order(order.id, USER_ID).executions) == 3

