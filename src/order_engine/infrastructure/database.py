# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Persistence layer of the order engine.

:class:`DBConnect` wraps the SQLAlchemy engine and offers the generic row
operations, while one table class per entity exposes typed operations that
accept and return the pydantic domain models. The services never see SQL.
"""

import json
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from logging import getLogger
from threading import RLock
from typing import Any, Generator, Iterable, Self

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ColumnElement,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    and_,
    asc,
    case,
    create_engine,
    delete,
    desc,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from order_engine.core.clock import Clock, utc_now
from order_engine.core.state_machine import ensure_transition
from order_engine.exceptions import NotFoundError
from order_engine.models.configuration import DBConfigDTO
from order_engine.models.order import (
    Account,
    ExecutionAttempt,
    IdempotencyRecord,
    Order,
    OrderLimit,
    OrderPriority,
    OrderStatus,
    RecurrencePattern,
)

LOG = getLogger(__name__)

AMOUNT = Numeric(precision=28, scale=8, asdecimal=True)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC timestamps and returns timezone-aware ones."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> Any:  # noqa: ANN401, ARG002
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> Any:  # noqa: ANN401, ARG002
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class DBConnect:
    """Class handling the connection to the SQLite or PostgreSQL database."""

    def __init__(self: Self, db_config: DBConfigDTO) -> None:
        LOG.info("Connecting to the database...")
        engine_args: dict[str, Any] = {
            "json_serializer": lambda obj: json.dumps(obj, default=str),
        }
        if db_config.sqlite_file:
            db_url = f"sqlite:///{db_config.sqlite_file}"
            engine_args["connect_args"] = {"check_same_thread": False}
            if db_config.sqlite_file == ":memory:":
                engine_args["poolclass"] = StaticPool
        else:
            db_url = (
                "postgresql://"
                f"{db_config.db_user}:{db_config.db_password}"
                f"@{db_config.db_host}:{db_config.db_port}/{db_config.db_name}"
            )

        self.engine = create_engine(db_url, **engine_args)
        self.session = sessionmaker(bind=self.engine)
        self.metadata = MetaData()
        self.__lock = RLock()

    @contextmanager
    def transaction(self: Self) -> Generator[Session, None, None]:
        """Run the enclosed statements in one serialized transaction."""
        with self.__lock, self.session.begin() as session:
            yield session

    def init_db(self: Self) -> None:
        """Create tables if they do not exist"""
        LOG.debug("Initializing the database...")
        self.metadata.create_all(self.engine)

    @staticmethod
    def where(table: Table, filters: dict | None) -> list[ColumnElement]:
        """Translate a dict of column filters into SQL clauses."""
        clauses: list[ColumnElement] = []
        for key, value in (filters or {}).items():
            column = table.c[key]
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def add_row(self: Self, table: Table, **kwargs: Any) -> None:  # noqa: ANN401
        """Insert a row into a specific table"""
        LOG.debug("Inserting a row into '%s': %s", table.name, kwargs)
        with self.transaction() as session:
            session.execute(insert(table).values(**kwargs))

    def add_unique_row(self: Self, table: Table, **kwargs: Any) -> bool:  # noqa: ANN401
        """Insert a row, returning False if a unique constraint is violated"""
        try:
            self.add_row(table, **kwargs)
        except IntegrityError:
            LOG.debug("Row already present in '%s'", table.name)
            return False
        return True

    def get_rows(
        self: Self,
        table: Table,
        filters: dict | None = None,
        where: Iterable[ColumnElement] = (),
        order_by: Iterable[ColumnElement] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows from a specific table with optional filtering"""
        query = select(table).where(*self.where(table, filters), *where)
        query = query.order_by(*order_by)
        if limit is not None:
            query = query.limit(limit)
        if offset:
            query = query.offset(offset)
        with self.transaction() as session:
            return [dict(row) for row in session.execute(query).mappings().all()]

    def count_rows(
        self: Self,
        table: Table,
        filters: dict | None = None,
        where: Iterable[ColumnElement] = (),
    ) -> int:
        query = (
            select(func.count())
            .select_from(table)
            .where(*self.where(table, filters), *where)
        )
        with self.transaction() as session:
            return int(session.execute(query).scalar_one())

    def update_row(
        self: Self,
        table: Table,
        filters: dict,
        updates: dict,
    ) -> int:
        """Update rows in a specific table, returning the number of changed rows"""
        LOG.debug("Updating '%s' where %s with %s", table.name, filters, updates)
        with self.transaction() as session:
            result = session.execute(
                update(table).where(*self.where(table, filters)).values(**updates),
            )
            return result.rowcount

    def delete_row(self: Self, table: Table, filters: dict) -> int:
        """Delete rows from a specific table"""
        with self.transaction() as session:
            result = session.execute(
                delete(table).where(*self.where(table, filters)),
            )
            return result.rowcount

    def close(self: Self) -> None:
        """Close database"""
        self.engine.dispose()


# ==============================================================================
# Tables


class OrderTable:
    """Table containing the orders and their lifecycle."""

    def __init__(self: Self, db: DBConnect, clock: Clock = utc_now) -> None:
        LOG.debug("Initializing the 'orders' table...")
        self.__db = db
        self.__clock = clock
        self.__table = Table(
            "orders",
            self.__db.metadata,
            Column("id", String(36), primary_key=True),
            Column("space_id", String(64), nullable=False, index=True),
            Column("user_id", String(64), nullable=False, index=True),
            Column("account_id", String(64), nullable=False),
            Column("to_account_id", String(64)),
            Column("idempotency_key", String(255), nullable=False),
            Column("type", String(16), nullable=False),
            Column("status", String(32), nullable=False, index=True),
            Column("priority", String(16), nullable=False),
            Column("amount", AMOUNT, nullable=False),
            Column("currency", String(3), nullable=False),
            Column("asset_symbol", String(16)),
            Column("target_price", AMOUNT),
            Column("max_slippage", AMOUNT),
            Column("provider", String(16), nullable=False),
            Column("dry_run", Boolean, nullable=False, default=False),
            Column("auto_execute", Boolean, nullable=False, default=False),
            Column("goal_id", String(64)),
            Column("notes", Text),
            Column("metadata", JSON, nullable=False),
            Column("ip_address", String(64)),
            Column("user_agent", Text),
            # Advanced orders
            Column("advanced_type", String(16)),
            Column("stop_price", AMOUNT),
            Column("take_profit_price", AMOUNT),
            Column("trailing_amount", AMOUNT),
            Column("trailing_percent", AMOUNT),
            Column("highest_price", AMOUNT),
            Column("linked_order_id", String(36)),
            Column("last_price_check", UTCDateTime),
            Column("trigger_price", AMOUNT),
            Column("triggered_at", UTCDateTime),
            # Scheduling
            Column("scheduled_for", UTCDateTime),
            Column("recurrence", String(16)),
            Column("recurrence_day", Integer),
            Column("recurrence_end", UTCDateTime),
            Column("max_executions", Integer),
            Column("execution_count", Integer, nullable=False, default=0),
            Column("next_execution_at", UTCDateTime),
            # Outcome
            Column("executed_amount", AMOUNT),
            Column("executed_price", AMOUNT),
            Column("fees", AMOUNT),
            Column("fee_currency", String(8)),
            Column("provider_order_id", String(128)),
            Column("provider_response", JSON),
            Column("error_code", String(64)),
            Column("error_message", Text),
            # Timestamps
            Column("otp_verified", Boolean, nullable=False, default=False),
            Column("otp_verified_at", UTCDateTime),
            Column("submitted_at", UTCDateTime, nullable=False),
            Column("verified_at", UTCDateTime),
            Column("executed_at", UTCDateTime),
            Column("completed_at", UTCDateTime),
            Column("cancelled_at", UTCDateTime),
            Column("expires_at", UTCDateTime),
            Column("created_at", UTCDateTime, nullable=False),
            Column("updated_at", UTCDateTime, nullable=False),
        )

    @property
    def table(self: Self) -> Table:
        return self.__table

    def add(self: Self, order: Order) -> None:
        """Add an order to the table."""
        self.__db.add_row(self.__table, **order.model_dump())

    def get(self: Self, order_id: str, user_id: str | None = None) -> Order | None:
        """Return an order, optionally restricted to its owner."""
        filters: dict[str, Any] = {"id": order_id}
        if user_id is not None:
            filters["user_id"] = user_id
        if rows := self.__db.get_rows(self.__table, filters=filters, limit=1):
            return Order.model_validate(rows[0])
        return None

    def get_orders(
        self: Self,
        filters: dict | None = None,
        order_by: tuple[str, str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Order]:
        """Get orders from the table with optional filtering and sorting."""
        ordering: list[ColumnElement] = []
        if order_by:
            column_name, direction = order_by
            column = (
                self.__priority_rank()
                if column_name == "priority"
                else self.__table.c[column_name]
            )
            ordering.append(desc(column) if direction == "desc" else asc(column))
        ordering.append(asc(self.__table.c.id))
        return [
            Order.model_validate(row)
            for row in self.__db.get_rows(
                self.__table,
                filters=filters,
                order_by=ordering,
                limit=limit,
                offset=offset,
            )
        ]

    def count(self: Self, filters: dict | None = None) -> int:
        return self.__db.count_rows(self.__table, filters=filters)

    def get_by_status(self: Self, status: OrderStatus) -> list[Order]:
        """Return all orders of a state, highest priority first."""
        return self.get_orders(
            filters={"status": status},
            order_by=("priority", "desc"),
        )

    def get_due(self: Self, now: datetime) -> list[Order]:
        """
        Return the orders waiting for execution whose scheduled instant
        (one-time) or next execution instant (recurring) has passed, highest
        priority first.
        """
        c = self.__table.c
        one_time = or_(
            c.recurrence.is_(None),
            c.recurrence == RecurrencePattern.ONCE,
        )
        due = or_(
            and_(one_time, c.scheduled_for.is_not(None), c.scheduled_for <= now),
            and_(
                ~one_time,
                c.next_execution_at.is_not(None),
                c.next_execution_at <= now,
            ),
        )
        rows = self.__db.get_rows(
            self.__table,
            filters={"status": OrderStatus.PENDING_EXECUTION},
            where=[due],
            order_by=[desc(self.__priority_rank()), asc(c.created_at)],
        )
        return [Order.model_validate(row) for row in rows]

    def update(
        self: Self,
        order_id: str,
        expected: OrderStatus | None = None,
        **fields: Any,  # noqa: ANN401
    ) -> bool:
        """
        Update fields that do not touch the status of an order, optionally
        only while the order is in the ``expected`` state.
        """
        if "status" in fields:
            raise ValueError("Use 'transition' to change the status of an order")
        filters: dict[str, Any] = {"id": order_id}
        if expected is not None:
            filters["status"] = expected
        return bool(
            self.__db.update_row(
                self.__table,
                filters=filters,
                updates=fields | {"updated_at": self.__clock()},
            ),
        )

    def transition(
        self: Self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **fields: Any,  # noqa: ANN401
    ) -> bool:
        """
        Move an order from ``expected`` to ``new`` in a single conditional
        update. Returns False if the order was not in ``expected`` anymore,
        meaning another caller won the race.
        """
        ensure_transition(expected, new)
        changed = self.__db.update_row(
            self.__table,
            filters={"id": order_id, "status": expected},
            updates=fields | {"status": new, "updated_at": self.__clock()},
        )
        if changed:
            LOG.info("Order %s: %s -> %s", order_id, expected, new)
        return bool(changed)

    def raise_highest_price(self: Self, order_id: str, price: Decimal) -> Decimal:
        """
        Raise the highest price seen of an order to ``price`` if it is larger
        and return the resulting value. The value never decreases.
        """
        c = self.__table.c
        self.__db.update_row(
            self.__table,
            filters={"id": order_id},
            updates={
                "highest_price": case(
                    (or_(c.highest_price.is_(None), c.highest_price < price), price),
                    else_=c.highest_price,
                ),
            },
        )
        rows = self.__db.get_rows(self.__table, filters={"id": order_id}, limit=1)
        return rows[0]["highest_price"]

    def __priority_rank(self: Self) -> ColumnElement:
        return case(
            {priority.value: priority.rank for priority in OrderPriority},
            value=self.__table.c.priority,
            else_=0,
        )


class ExecutionAttemptTable:
    """Append-only table of execution attempts."""

    def __init__(self: Self, db: DBConnect) -> None:
        LOG.debug("Initializing the 'execution_attempts' table...")
        self.__db = db
        self.__table = Table(
            "execution_attempts",
            self.__db.metadata,
            Column("id", String(36), primary_key=True),
            Column("order_id", String(36), nullable=False, index=True),
            Column("attempt_number", Integer, nullable=False),
            Column("status", String(32), nullable=False),
            Column("provider", String(16), nullable=False),
            Column("provider_order_id", String(128)),
            Column("executed_amount", AMOUNT),
            Column("executed_price", AMOUNT),
            Column("fees", AMOUNT),
            Column("fee_currency", String(8)),
            Column("error_code", String(64)),
            Column("error_message", Text),
            Column("provider_request", JSON),
            Column("provider_response", JSON),
            Column("started_at", UTCDateTime, nullable=False),
            Column("completed_at", UTCDateTime),
            Column("duration_ms", Integer),
            UniqueConstraint("order_id", "attempt_number"),
        )

    def add(self: Self, attempt: ExecutionAttempt) -> ExecutionAttempt:
        """
        Insert an attempt numbered right after the highest existing attempt
        of the same order. The passed attempt number is ignored.
        """
        c = self.__table.c
        with self.__db.transaction() as session:
            highest = session.execute(
                select(func.max(c.attempt_number)).where(
                    c.order_id == attempt.order_id,
                ),
            ).scalar_one()
            attempt = attempt.model_copy(
                update={"attempt_number": (highest or 0) + 1},
            )
            session.execute(insert(self.__table).values(**attempt.model_dump()))
        return attempt

    def get_for_order(self: Self, order_id: str) -> list[ExecutionAttempt]:
        """Return all attempts of an order in attempt order."""
        return [
            ExecutionAttempt.model_validate(row)
            for row in self.__db.get_rows(
                self.__table,
                filters={"order_id": order_id},
                order_by=[asc(self.__table.c.attempt_number)],
            )
        ]

    def get_latest(self: Self, order_id: str) -> ExecutionAttempt | None:
        rows = self.__db.get_rows(
            self.__table,
            filters={"order_id": order_id},
            order_by=[desc(self.__table.c.attempt_number)],
            limit=1,
        )
        return ExecutionAttempt.model_validate(rows[0]) if rows else None

    def count(self: Self, order_id: str) -> int:
        return self.__db.count_rows(self.__table, filters={"order_id": order_id})

    def update(self: Self, attempt_id: str, **fields: Any) -> None:  # noqa: ANN401
        self.__db.update_row(
            self.__table,
            filters={"id": attempt_id},
            updates=fields,
        )


class IdempotencyKeyTable:
    """Table mapping idempotency keys to the orders they created."""

    def __init__(self: Self, db: DBConnect) -> None:
        LOG.debug("Initializing the 'idempotency_keys' table...")
        self.__db = db
        self.__table = Table(
            "idempotency_keys",
            self.__db.metadata,
            Column("key", String(255), primary_key=True),
            Column("user_id", String(64), nullable=False),
            Column("space_id", String(64), nullable=False),
            Column("request_hash", String(64), nullable=False),
            Column("order_id", String(36)),
            Column("expires_at", UTCDateTime, nullable=False),
            Column("created_at", UTCDateTime, nullable=False),
        )

    def create(self: Self, record: IdempotencyRecord) -> bool:
        """Atomically claim a key. Returns False if the key already exists."""
        return self.__db.add_unique_row(self.__table, **record.model_dump())

    def get(self: Self, key: str) -> IdempotencyRecord | None:
        if rows := self.__db.get_rows(self.__table, filters={"key": key}, limit=1):
            return IdempotencyRecord.model_validate(rows[0])
        return None

    def set_order(self: Self, key: str, order_id: str) -> None:
        """Attach the created order to a claimed key, only once."""
        self.__db.update_row(
            self.__table,
            filters={"key": key, "order_id": None},
            updates={"order_id": order_id},
        )

    def remove(self: Self, key: str) -> None:
        self.__db.delete_row(self.__table, filters={"key": key})


class OrderLimitTable:
    """Table containing the spending ceilings of the users."""

    def __init__(self: Self, db: DBConnect) -> None:
        LOG.debug("Initializing the 'order_limits' table...")
        self.__db = db
        self.__table = Table(
            "order_limits",
            self.__db.metadata,
            Column("id", String(36), primary_key=True),
            Column("user_id", String(64), nullable=False, index=True),
            Column("space_id", String(64)),
            Column("order_type", String(16)),
            Column("limit_type", String(16), nullable=False),
            Column("currency", String(3), nullable=False),
            Column("max_amount", AMOUNT, nullable=False),
            Column("used_amount", AMOUNT, nullable=False),
            Column("reset_at", UTCDateTime, nullable=False),
            Column("enforced", Boolean, nullable=False, default=True),
            Column("notes", Text),
        )

    def add(self: Self, limit: OrderLimit) -> None:
        self.__db.add_row(self.__table, **limit.model_dump())

    def get(self: Self, limit_id: str) -> OrderLimit | None:
        if rows := self.__db.get_rows(self.__table, filters={"id": limit_id}):
            return OrderLimit.model_validate(rows[0])
        return None

    def get_matching(
        self: Self,
        user_id: str,
        space_id: str,
        order_type: str,
        currency: str,
    ) -> list[OrderLimit]:
        """
        Return the enforced limits of a user in a currency that apply to the
        space and order type, either specifically or as a wildcard.
        """
        c = self.__table.c
        rows = self.__db.get_rows(
            self.__table,
            filters={"user_id": user_id, "currency": currency, "enforced": True},
            where=[
                or_(c.space_id.is_(None), c.space_id == space_id),
                or_(c.order_type.is_(None), c.order_type == order_type),
            ],
            order_by=[asc(c.limit_type), asc(c.id)],
        )
        return [OrderLimit.model_validate(row) for row in rows]

    def reset(self: Self, limit_id: str, reset_at: datetime) -> None:
        """Start a new window with nothing used."""
        self.__db.update_row(
            self.__table,
            filters={"id": limit_id},
            updates={"used_amount": Decimal(0), "reset_at": reset_at},
        )

    def add_usage(self: Self, limit_id: str, amount: Decimal) -> None:
        c = self.__table.c
        self.__db.update_row(
            self.__table,
            filters={"id": limit_id},
            updates={"used_amount": c.used_amount + amount},
        )


class AccountTable:
    """Table containing the accounts known to the engine."""

    def __init__(self: Self, db: DBConnect) -> None:
        LOG.debug("Initializing the 'accounts' table...")
        self.__db = db
        self.__table = Table(
            "accounts",
            self.__db.metadata,
            Column("id", String(64), primary_key=True),
            Column("space_id", String(64), nullable=False, index=True),
            Column("name", String(255)),
            Column("currency", String(3), nullable=False),
            Column("balance", AMOUNT, nullable=False),
        )

    def add(self: Self, account: Account) -> None:
        self.__db.add_row(self.__table, **account.model_dump())

    def get(self: Self, account_id: str) -> Account | None:
        if rows := self.__db.get_rows(self.__table, filters={"id": account_id}):
            return Account.model_validate(rows[0])
        return None

    def adjust_balance(self: Self, account_id: str, delta: Decimal) -> None:
        c = self.__table.c
        self.__db.update_row(
            self.__table,
            filters={"id": account_id},
            updates={"balance": c.balance + delta},
        )

    def move_balance(
        self: Self,
        account_id: str,
        amount: Decimal,
        to_account_id: str | None = None,
    ) -> bool:
        """
        Debit ``amount`` from an account and credit it to ``to_account_id``, if
        given, within one transaction. The debit only applies if the balance
        covers the amount, otherwise nothing changes and False is returned.
        """
        c = self.__table.c
        with self.__db.transaction() as session:
            if not session.execute(
                update(self.__table)
                .where(c.id == account_id, c.balance >= amount)
                .values(balance=c.balance - amount),
            ).rowcount:
                return False
            if (
                to_account_id is not None
                and not session.execute(
                    update(self.__table)
                    .where(c.id == to_account_id)
                    .values(balance=c.balance + amount),
                ).rowcount
            ):
                raise NotFoundError(f"Account {to_account_id} not found")
        return True


class UserProfileTable:
    """Table containing the step-up settings of the users."""

    def __init__(self: Self, db: DBConnect) -> None:
        LOG.debug("Initializing the 'user_profiles' table...")
        self.__db = db
        self.__table = Table(
            "user_profiles",
            self.__db.metadata,
            Column("user_id", String(64), primary_key=True),
            Column("step_up_enabled", Boolean, nullable=False, default=False),
            Column("totp_secret", String(64)),
        )

    def upsert(
        self: Self,
        user_id: str,
        *,
        step_up_enabled: bool = False,
        totp_secret: str | None = None,
    ) -> None:
        updates = {"step_up_enabled": step_up_enabled, "totp_secret": totp_secret}
        if not self.__db.update_row(
            self.__table,
            filters={"user_id": user_id},
            updates=updates,
        ):
            self.__db.add_row(self.__table, user_id=user_id, **updates)

    def get(self: Self, user_id: str) -> dict[str, Any] | None:
        rows = self.__db.get_rows(self.__table, filters={"user_id": user_id})
        return rows[0] if rows else None
