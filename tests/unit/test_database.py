# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""Unit tests for the database module."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from order_engine.exceptions import InvalidOrderStateError, NotFoundError
from order_engine.infrastructure.database import (
    AccountTable,
    DBConnect,
    ExecutionAttemptTable,
    IdempotencyKeyTable,
    OrderLimitTable,
    OrderTable,
    UserProfileTable,
)
from order_engine.models.order import (
    ExecutionAttempt,
    IdempotencyRecord,
    Order,
    OrderLimit,
    OrderPriority,
    OrderStatus,
    RecurrencePattern,
)
from tests.helper import NOW, SPACE_ID, USER_ID


def _order(order_id: str, **fields: object) -> Order:
    values: dict = {
        "id": order_id,
        "space_id": SPACE_ID,
        "user_id": USER_ID,
        "account_id": "acc-usd",
        "idempotency_key": f"key-{order_id}",
        "type": "buy",
        "status": OrderStatus.PENDING_EXECUTION,
        "amount": Decimal(100),
        "currency": "USD",
        "provider": "bitso",
        "asset_symbol": "BTC",
        "submitted_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    return Order(**(values | fields))


def test_db_connect_init(db: DBConnect) -> None:
    """Test the initialization of DBConnect."""
    assert db.engine is not None
    assert db.session is not None
    assert db.metadata is not None


class TestOrderTable:

    def test_add_and_get(self, order_table: OrderTable) -> None:
        """Timestamps come back timezone-aware, amounts as decimals"""
        order_table.add(
            _order("o-1", metadata={"source": "app"}, target_price=Decimal("45000.5")),
        )

        order = order_table.get("o-1")
        assert order is not None
        assert order.created_at == NOW
        assert order.created_at.tzinfo is not None
        assert order.amount == Decimal(100)
        assert order.target_price == Decimal("45000.5")
        assert order.metadata == {"source": "app"}

    def test_get_restricted_to_owner(self, order_table: OrderTable) -> None:
        order_table.add(_order("o-1"))

        assert order_table.get("o-1", USER_ID) is not None
        assert order_table.get("o-1", "someone-else") is None
        assert order_table.get("unknown") is None

    def test_transition(self, order_table: OrderTable) -> None:
        order_table.add(_order("o-1"))

        assert order_table.transition(
            "o-1",
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.EXECUTING,
            executed_at=NOW,
        )
        order = order_table.get("o-1")
        assert order.status == OrderStatus.EXECUTING  # type: ignore[union-attr]
        assert order.executed_at == NOW  # type: ignore[union-attr]

    def test_transition_lost_race(self, order_table: OrderTable) -> None:
        """Only the first caller moves the order out of its expected state"""
        order_table.add(_order("o-1"))

        assert order_table.transition(
            "o-1",
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.EXECUTING,
        )
        assert not order_table.transition(
            "o-1",
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.EXECUTING,
        )

    def test_transition_outside_graph(self, order_table: OrderTable) -> None:
        order_table.add(_order("o-1", status=OrderStatus.COMPLETED))

        with pytest.raises(InvalidOrderStateError):
            order_table.transition(
                "o-1",
                OrderStatus.COMPLETED,
                OrderStatus.PENDING_EXECUTION,
            )

    def test_update(self, order_table: OrderTable) -> None:
        order_table.add(_order("o-1"))

        assert order_table.update("o-1", notes="hello")
        assert not order_table.update(
            "o-1",
            expected=OrderStatus.PENDING_VERIFICATION,
            notes="ignored",
        )
        assert order_table.get("o-1").notes == "hello"  # type: ignore[union-attr]

        with pytest.raises(ValueError, match="transition"):
            order_table.update("o-1", status=OrderStatus.CANCELLED)

    def test_get_due(self, order_table: OrderTable) -> None:
        """Due orders are returned by priority, then by age"""
        order_table.add(_order("one-time", scheduled_for=NOW - timedelta(minutes=5)))
        order_table.add(
            _order(
                "critical",
                scheduled_for=NOW,
                priority=OrderPriority.CRITICAL,
                created_at=NOW + timedelta(seconds=1),
            ),
        )
        order_table.add(
            _order(
                "recurring",
                recurrence=RecurrencePattern.DAILY,
                scheduled_for=NOW + timedelta(days=9),
                next_execution_at=NOW - timedelta(hours=1),
                created_at=NOW - timedelta(days=1),
            ),
        )
        order_table.add(_order("future", scheduled_for=NOW + timedelta(minutes=1)))
        order_table.add(_order("unscheduled"))
        order_table.add(
            _order(
                "verifying",
                status=OrderStatus.PENDING_VERIFICATION,
                scheduled_for=NOW,
            ),
        )

        assert [order.id for order in order_table.get_due(NOW)] == [
            "critical",
            "recurring",
            "one-time",
        ]

    def test_get_by_status(self, order_table: OrderTable) -> None:
        order_table.add(_order("low", priority=OrderPriority.LOW))
        order_table.add(_order("high", priority=OrderPriority.HIGH))
        order_table.add(_order("done", status=OrderStatus.COMPLETED))

        assert [
            order.id for order in order_table.get_by_status(OrderStatus.PENDING_EXECUTION)
        ] == ["high", "low"]

    def test_get_orders_and_count(self, order_table: OrderTable) -> None:
        for number, amount in enumerate((300, 100, 200)):
            order_table.add(_order(f"o-{number}", amount=Decimal(amount)))

        orders = order_table.get_orders(
            filters={"space_id": SPACE_ID},
            order_by=("amount", "asc"),
            limit=2,
        )
        assert [order.id for order in orders] == ["o-1", "o-2"]
        assert order_table.count({"space_id": SPACE_ID}) == 3
        assert order_table.count({"space_id": "space-2"}) == 0

    def test_raise_highest_price(self, order_table: OrderTable) -> None:
        """The highest price seen never decreases"""
        order_table.add(_order("o-1", status=OrderStatus.PENDING_TRIGGER))

        assert order_table.raise_highest_price("o-1", Decimal(45_000)) == Decimal(45_000)
        assert order_table.raise_highest_price("o-1", Decimal(47_000)) == Decimal(47_000)
        assert order_table.raise_highest_price("o-1", Decimal(46_000)) == Decimal(47_000)


class TestExecutionAttemptTable:

    def _attempt(self, number: int = 1) -> ExecutionAttempt:
        return ExecutionAttempt(
            id=f"attempt-{number}",
            order_id="o-1",
            attempt_number=1,
            status=OrderStatus.EXECUTING,
            provider="bitso",
            provider_request={"amount": "100"},
            started_at=NOW,
        )

    def test_numbering(self, attempt_table: ExecutionAttemptTable) -> None:
        """Attempts are numbered consecutively per order"""
        first = attempt_table.add(self._attempt(1))
        second = attempt_table.add(self._attempt(2))

        assert (first.attempt_number, second.attempt_number) == (1, 2)
        assert attempt_table.count("o-1") == 2
        assert attempt_table.get_latest("o-1").id == "attempt-2"  # type: ignore[union-attr]
        assert attempt_table.get_latest("o-2") is None

    def test_update(self, attempt_table: ExecutionAttemptTable) -> None:
        attempt_table.add(self._attempt())

        attempt_table.update(
            "attempt-1",
            status=OrderStatus.COMPLETED,
            executed_price=Decimal(45_000),
            duration_ms=12,
        )

        (attempt,) = attempt_table.get_for_order("o-1")
        assert attempt.status == OrderStatus.COMPLETED
        assert attempt.executed_price == Decimal(45_000)
        assert attempt.provider_request == {"amount": "100"}


class TestIdempotencyKeyTable:

    def _record(self) -> IdempotencyRecord:
        return IdempotencyRecord(
            key="key-1",
            user_id=USER_ID,
            space_id=SPACE_ID,
            request_hash="abc",
            expires_at=NOW + timedelta(days=7),
            created_at=NOW,
        )

    def test_create_once(self, idempotency_table: IdempotencyKeyTable) -> None:
        assert idempotency_table.create(self._record())
        assert not idempotency_table.create(self._record())

    def test_set_order_once(self, idempotency_table: IdempotencyKeyTable) -> None:
        idempotency_table.create(self._record())

        idempotency_table.set_order("key-1", "o-1")
        idempotency_table.set_order("key-1", "o-2")

        record = idempotency_table.get("key-1")
        assert record.order_id == "o-1"  # type: ignore[union-attr]
        assert record.expires_at == NOW + timedelta(days=7)  # type: ignore[union-attr]

    def test_remove(self, idempotency_table: IdempotencyKeyTable) -> None:
        idempotency_table.create(self._record())
        idempotency_table.remove("key-1")
        assert idempotency_table.get("key-1") is None


class TestOrderLimitTable:

    def _limit(self, limit_id: str, **fields: object) -> OrderLimit:
        values: dict = {
            "id": limit_id,
            "user_id": USER_ID,
            "limit_type": "daily",
            "currency": "USD",
            "max_amount": Decimal(1_000),
            "reset_at": datetime(2025, 1, 16, tzinfo=UTC),
        }
        return OrderLimit(**(values | fields))

    def test_get_matching(self, limit_table: OrderLimitTable) -> None:
        """Limits match specifically or as a wildcard"""
        limit_table.add(self._limit("wildcard"))
        limit_table.add(self._limit("space", space_id=SPACE_ID, limit_type="monthly"))
        limit_table.add(self._limit("buys", order_type="buy", limit_type="weekly"))
        limit_table.add(self._limit("other-space", space_id="space-2"))
        limit_table.add(self._limit("sells", order_type="sell"))
        limit_table.add(self._limit("mxn", currency="MXN"))
        limit_table.add(self._limit("disabled", enforced=False))

        assert [
            limit.id for limit in limit_table.get_matching(USER_ID, SPACE_ID, "buy", "USD")
        ] == ["wildcard", "space", "buys"]

    def test_usage_and_reset(self, limit_table: OrderLimitTable) -> None:
        limit_table.add(self._limit("daily"))

        limit_table.add_usage("daily", Decimal("250.5"))
        limit_table.add_usage("daily", Decimal(100))
        assert limit_table.get("daily").available == Decimal("649.5")  # type: ignore[union-attr]

        limit_table.reset("daily", datetime(2025, 1, 17, tzinfo=UTC))
        limit = limit_table.get("daily")
        assert limit.used_amount == 0  # type: ignore[union-attr]
        assert limit.reset_at == datetime(2025, 1, 17, tzinfo=UTC)  # type: ignore[union-attr]


class TestAccountAndProfileTables:

    def test_adjust_balance(self, account_table: AccountTable) -> None:
        account_table.adjust_balance("acc-usd", Decimal(-100))
        assert account_table.get("acc-usd").balance == Decimal(49_900)  # type: ignore[union-attr]
        assert account_table.get("unknown") is None

    def test_move_balance(self, account_table: AccountTable) -> None:
        assert account_table.move_balance("acc-usd", Decimal(20_000), "acc-usd-2")
        assert account_table.move_balance("acc-usd", Decimal(30_000))
        assert not account_table.move_balance("acc-usd", Decimal("0.01"), "acc-usd-2")
        assert not account_table.move_balance("unknown", Decimal(1))

        assert account_table.get("acc-usd").balance == 0  # type: ignore[union-attr]
        assert account_table.get("acc-usd-2").balance == Decimal(20_000)  # type: ignore[union-attr]

    def test_move_balance_to_unknown_account(self, account_table: AccountTable) -> None:
        with pytest.raises(NotFoundError):
            account_table.move_balance("acc-usd", Decimal(100), "unknown")
        assert account_table.get("acc-usd").balance == Decimal(50_000)  # type: ignore[union-attr]

    def test_upsert_profile(self, user_profile_table: UserProfileTable) -> None:
        user_profile_table.upsert(USER_ID, step_up_enabled=True, totp_secret="SECRET")
        user_profile_table.upsert("user-2")

        assert user_profile_table.get(USER_ID)["step_up_enabled"] is True  # type: ignore[index]
        assert user_profile_table.get("user-2")["totp_secret"] is None  # type: ignore[index]
        assert user_profile_table.get("user-3") is None
