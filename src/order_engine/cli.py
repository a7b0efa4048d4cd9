#!/usr/bin/env python3
# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import json
import sys
import uuid
from contextlib import contextmanager
from decimal import Decimal
from logging import DEBUG, INFO, WARNING, basicConfig, getLogger
from typing import Any, Generator

from click import BOOL, FLOAT, INT, STRING, Context, DateTime, echo, pass_context
from cloup import Choice, HelpFormatter, HelpTheme, Style, group, option
from pydantic import BaseModel, ValidationError

from order_engine.models.order import (
    AdvancedOrderType,
    ExecutionProvider,
    OrderPriority,
    OrderStatus,
    OrderType,
    RecurrencePattern,
)

FORMATTER_SETTINGS = HelpFormatter.settings(
    theme=HelpTheme(
        invoked_command=Style(fg="bright_yellow"),
        heading=Style(fg="bright_white", bold=True),
        constraint=Style(fg="magenta"),
        col1=Style(fg="bright_yellow"),
    ),
)


def print_version(ctx: Context, param: Any, value: Any) -> None:  # noqa: ANN401, ARG001
    """Prints the version of the package"""
    if not value or ctx.resilient_parsing:
        return
    from importlib.metadata import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        version,
    )

    echo(version("order-engine"))
    ctx.exit()


def ensure_larger_than_zero(
    ctx: Context,
    param: Any,  # noqa: ANN401
    value: Any,  # noqa: ANN401
) -> Any:  # noqa: ANN401
    """Ensure the value is larger than 0"""
    if value is not None and value <= 0:
        ctx.fail(f"Value for option '{param.name}' must be larger than 0")
    return value


def to_decimal(ctx: Context, param: Any, value: Any) -> Decimal | None:  # noqa: ANN401, ARG001
    """Parse a monetary amount without going through float"""
    if value is None:
        return None
    try:
        return Decimal(value)
    except ArithmeticError:
        ctx.fail(f"Value for option '{param.name}' is not a number: {value}")
    return None


def _echo_json(model: BaseModel | list | dict) -> None:
    if isinstance(model, BaseModel):
        echo(model.model_dump_json(indent=2))
    else:
        echo(json.dumps(model, indent=2, default=str))


@contextmanager
def _engine(ctx: Context, **kwargs: Any) -> Generator[Any, None, None]:  # noqa: ANN401
    """
    Build the engine from the group's options, start its execution workers
    and map engine errors to a failing exit code.
    """
    from order_engine.core.engine import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        OrderEngine,
    )
    from order_engine.exceptions import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        OrderEngineError,
    )
    from order_engine.models.configuration import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        BitsoConfigDTO,
        DBConfigDTO,
        EngineConfigDTO,
    )

    engine = OrderEngine(
        engine_config=EngineConfigDTO(**ctx.obj["engine"], **kwargs),
        db_config=DBConfigDTO(**ctx.obj["db"]),
        bitso_config=BitsoConfigDTO(**ctx.obj["bitso"]),
    )
    engine.execution_queue.start()
    try:
        yield engine
    except OrderEngineError as exc:
        echo(f"Error: {exc}", err=True)
        ctx.exit(1)
    except ValidationError as exc:
        ctx.fail(str(exc))
    finally:
        engine.close()


@group(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
    no_args_is_help=True,
)
@option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
)
@option(
    "-v",
    "--verbose",
    count=True,
    help="Increase the verbosity of output. Use -vv for even more verbosity.",
)
@option(
    "--sqlite-file",
    type=STRING,
    help="SQLite file to use as database, e.g. ':memory:' for a transient one.",
)
@option("--db-user", type=STRING, help="PostgreSQL DB user")
@option("--db-password", type=STRING, help="PostgreSQL DB password")
@option("--db-host", type=STRING, help="PostgreSQL DB host")
@option("--db-port", type=STRING, help="PostgreSQL DB port")
@option(
    "--db-name",
    type=STRING,
    default="order_engine",
    show_default=True,
    help="PostgreSQL DB name",
)
@option("--bitso-api-key", type=STRING, help="The Bitso API key")
@option("--bitso-api-secret", type=STRING, help="The Bitso API secret")
@option(
    "--high-value-threshold",
    type=STRING,
    default="10000",
    show_default=True,
    callback=to_decimal,
    help="Orders with at least this amount require step-up verification.",
)
@option(
    "--order-ttl",
    type=INT,
    default=86_400,
    show_default=True,
    callback=ensure_larger_than_zero,
    help="Seconds an order stays executable after its first run.",
)
@pass_context
def cli(ctx: Context, **kwargs: dict) -> None:
    """
    Command-line interface entry point
    """
    ctx.ensure_object(dict)

    verbosity = kwargs.pop("verbose", 0)
    ctx.obj["db"] = {
        key: kwargs.pop(key)
        for key in ("sqlite_file", "db_user", "db_password", "db_host", "db_port", "db_name")
    }
    ctx.obj["bitso"] = {
        "api_key": kwargs.pop("bitso_api_key"),
        "api_secret": kwargs.pop("bitso_api_secret"),
    }
    ctx.obj["engine"] = {
        "high_value_threshold": kwargs.pop("high_value_threshold"),
        "order_ttl_seconds": kwargs.pop("order_ttl"),
    }

    basicConfig(
        format="%(asctime)s %(levelname)8s | %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S",
        level=INFO if verbosity == 0 else DEBUG,
    )

    getLogger("requests").setLevel(WARNING)
    getLogger("urllib3").setLevel(WARNING)

    if verbosity > 1:  # type: ignore[operator]
        getLogger("requests").setLevel(DEBUG)
        getLogger("sqlalchemy.engine").setLevel(INFO)
    else:
        getLogger("sqlalchemy").setLevel(WARNING)


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_RUN",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option(
    "--monitor-interval",
    type=FLOAT,
    default=300,
    show_default=True,
    callback=ensure_larger_than_zero,
    help="Seconds between two advanced order monitoring cycles.",
)
@option(
    "--scheduler-interval",
    type=FLOAT,
    default=3_600,
    show_default=True,
    callback=ensure_larger_than_zero,
    help="Seconds between two scheduler cycles.",
)
@option(
    "--price-cache-ttl",
    type=INT,
    default=300,
    show_default=True,
    callback=ensure_larger_than_zero,
    help="Seconds a fetched market price is reused.",
)
@option(
    "--execution-workers",
    type=INT,
    default=2,
    show_default=True,
    callback=ensure_larger_than_zero,
    help="Number of threads executing orders in the background.",
)
@option(
    "--telegram-token",
    required=False,
    type=STRING,
    help="The telegram token to use.",
)
@option(
    "--telegram-chat-id",
    required=False,
    type=STRING,
    help="The telegram chat ID to use.",
)
@pass_context
def run(ctx: Context, **kwargs: dict) -> None:
    """Run the advanced order monitor and the order scheduler"""
    # pylint: disable=import-outside-toplevel
    import asyncio  # noqa: PLC0415

    from order_engine.core.engine import OrderEngine  # noqa: PLC0415
    from order_engine.models.configuration import (  # noqa: PLC0415
        BitsoConfigDTO,
        DBConfigDTO,
        EngineConfigDTO,
        NotificationConfigDTO,
        TelegramConfigDTO,
    )

    try:
        notification_config = NotificationConfigDTO(
            telegram=TelegramConfigDTO(
                token=kwargs.pop("telegram_token"),
                chat_id=kwargs.pop("telegram_chat_id"),
            ),
        )
        engine_config = EngineConfigDTO(
            **ctx.obj["engine"],
            monitor_interval=kwargs["monitor_interval"],
            scheduler_interval=kwargs["scheduler_interval"],
            price_cache_ttl_seconds=kwargs["price_cache_ttl"],
            execution_workers=kwargs["execution_workers"],
        )
    except ValidationError as exc:
        ctx.fail(str(exc))

    async def main() -> None:
        engine = OrderEngine(
            engine_config=engine_config,
            db_config=DBConfigDTO(**ctx.obj["db"]),
            notification_config=notification_config,
            bitso_config=BitsoConfigDTO(**ctx.obj["bitso"]),
        )
        try:
            await engine.run()
        except KeyboardInterrupt as exc:
            engine.terminate(reason=f"Exception in top-run: {exc}")
            sys.exit(1)

    asyncio.run(main())


# ==============================================================================
# Order commands
##
@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_CREATE",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--space-id", required=True, type=STRING, help="The space owning the order.")
@option("--user-id", required=True, type=STRING, help="The user placing the order.")
@option(
    "--idempotency-key",
    type=STRING,
    help="Key identifying the request. A random one is used if omitted.",
)
@option("--account-id", required=True, type=STRING, help="The source account.")
@option("--to-account-id", type=STRING, help="The destination account of transfers.")
@option(
    "--type",
    "order_type",
    required=True,
    type=Choice([member.value for member in OrderType]),
    help="The kind of order.",
)
@option("--amount", required=True, type=STRING, callback=to_decimal, help="The amount.")
@option("--currency", required=True, type=STRING, help="ISO 4217 currency code.")
@option(
    "--provider",
    required=True,
    type=Choice([member.value for member in ExecutionProvider]),
    help="The execution provider.",
)
@option("--asset-symbol", type=STRING, help="The traded asset, e.g. BTC.")
@option("--target-price", type=STRING, callback=to_decimal, help="Limit price.")
@option(
    "--priority",
    type=Choice([member.value for member in OrderPriority]),
    default=OrderPriority.NORMAL.value,
    show_default=True,
)
@option("--dry-run", is_flag=True, type=BOOL, default=False, help="Simulate the execution.")
@option(
    "--auto-execute",
    is_flag=True,
    type=BOOL,
    default=False,
    help="Execute the order right away once it is executable.",
)
@option(
    "--advanced-type",
    type=Choice([member.value for member in AdvancedOrderType]),
    help="Make this a conditional order.",
)
@option("--stop-price", type=STRING, callback=to_decimal)
@option("--take-profit-price", type=STRING, callback=to_decimal)
@option("--trailing-amount", type=STRING, callback=to_decimal)
@option("--trailing-percent", type=STRING, callback=to_decimal)
@option("--scheduled-for", type=DateTime(), help="Run the order at this instant (UTC).")
@option(
    "--recurrence",
    type=Choice([member.value for member in RecurrencePattern]),
    help="Repeat the order.",
)
@option("--recurrence-day", type=INT, help="Day of the week (1-7) or of the month.")
@option("--max-executions", type=INT, callback=ensure_larger_than_zero)
@option("--notes", type=STRING)
@pass_context
def create(ctx: Context, **kwargs: Any) -> None:  # noqa: ANN401
    """Create an order"""
    from order_engine.models.order import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        CreateOrderDTO,
    )

    space_id = kwargs.pop("space_id")
    user_id = kwargs.pop("user_id")
    kwargs["type"] = kwargs.pop("order_type")
    kwargs["idempotency_key"] = kwargs["idempotency_key"] or str(uuid.uuid4())
    if kwargs["scheduled_for"] is not None:
        from datetime import UTC  # noqa: PLC0415 # pylint: disable=import-outside-toplevel

        kwargs["scheduled_for"] = kwargs["scheduled_for"].replace(tzinfo=UTC)

    with _engine(ctx) as engine:
        request = CreateOrderDTO(
            **{key: value for key, value in kwargs.items() if value is not None},
        )
        _echo_json(engine.orders.create_order(space_id, user_id, request))


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_VERIFY",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--user-id", required=True, type=STRING)
@option("--otp-code", required=True, type=STRING, help="The 6-digit one-time code.")
@option("--order-id", required=True, type=STRING)
@pass_context
def verify(ctx: Context, order_id: str, user_id: str, otp_code: str) -> None:
    """Confirm an order that is pending verification"""
    with _engine(ctx) as engine:
        _echo_json(engine.orders.verify_order(order_id, user_id, otp_code))


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_EXECUTE",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--user-id", required=True, type=STRING)
@option("--order-id", required=True, type=STRING)
@pass_context
def execute(ctx: Context, order_id: str, user_id: str) -> None:
    """Execute an order that is pending execution"""
    with _engine(ctx) as engine:
        _echo_json(engine.orders.execute_order(order_id, user_id))


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_CANCEL",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--user-id", required=True, type=STRING)
@option("--order-id", required=True, type=STRING)
@pass_context
def cancel(ctx: Context, order_id: str, user_id: str) -> None:
    """Cancel an order that is pending verification or execution"""
    with _engine(ctx) as engine:
        _echo_json(engine.orders.cancel_order(order_id, user_id))


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_SHOW",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--user-id", required=True, type=STRING)
@option("--order-id", required=True, type=STRING)
@pass_context
def show(ctx: Context, order_id: str, user_id: str) -> None:
    """Show an order with all of its execution attempts"""
    with _engine(ctx) as engine:
        _echo_json(engine.orders.find_order(order_id, user_id))


@cli.command(
    "list",
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_LIST",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--space-id", required=True, type=STRING)
@option("--account-id", type=STRING)
@option("--status", type=Choice([member.value for member in OrderStatus]))
@option(
    "--sort-by",
    type=Choice(["created_at", "amount", "priority", "status", "expires_at"]),
    default="created_at",
    show_default=True,
)
@option("--sort-order", type=Choice(["asc", "desc"]), default="desc", show_default=True)
@option("--page", type=INT, default=1, show_default=True, callback=ensure_larger_than_zero)
@option("--limit", type=INT, default=20, show_default=True, callback=ensure_larger_than_zero)
@pass_context
def list_orders(ctx: Context, space_id: str, **kwargs: Any) -> None:  # noqa: ANN401
    """List the orders of a space"""
    from order_engine.models.order import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        OrderFilterDTO,
    )

    with _engine(ctx) as engine:
        filters = OrderFilterDTO(
            **{key: value for key, value in kwargs.items() if value is not None},
        )
        _echo_json(engine.orders.list_orders(space_id, filters))


@cli.command(
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_PROVIDERS",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@pass_context
def providers(ctx: Context) -> None:
    """Show the execution providers, their capabilities and health"""
    with _engine(ctx) as engine:
        health = engine.registry.health()
        _echo_json(
            {
                provider.name: {
                    "healthy": health.get(provider.name, False),
                    "capabilities": provider.capabilities.model_dump(mode="json"),
                }
                for provider in engine.registry.adapters()
            },
        )


# ==============================================================================
# Account commands
##
@cli.command(
    "add-account",
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_ACCOUNT",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--space-id", required=True, type=STRING)
@option("--account-id", required=True, type=STRING)
@option("--currency", required=True, type=STRING)
@option("--balance", type=STRING, default="0", callback=to_decimal, show_default=True)
@option("--name", type=STRING)
@pass_context
def add_account(ctx: Context, **kwargs: Any) -> None:  # noqa: ANN401
    """Register an account orders can be placed on"""
    from order_engine.models.order import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
        Account,
    )

    with _engine(ctx) as engine:
        account = Account(
            id=kwargs["account_id"],
            space_id=kwargs["space_id"],
            name=kwargs["name"],
            currency=kwargs["currency"].upper(),
            balance=kwargs["balance"],
        )
        engine.accounts.add(account)
        _echo_json(account)


@cli.command(
    "step-up",
    context_settings={
        "auto_envvar_prefix": "ORDER_ENGINE_STEP_UP",
        "help_option_names": ["-h", "--help"],
    },
    formatter_settings=FORMATTER_SETTINGS,
)
@option("--user-id", required=True, type=STRING)
@option("--secret", required=True, type=STRING, help="Base32 TOTP secret of the user.")
@option(
    "--enable/--disable",
    default=False,
    show_default=True,
    help="Require step-up verification for all orders of the user.",
)
@pass_context
def step_up(ctx: Context, user_id: str, secret: str, enable: bool) -> None:  # noqa: FBT001
    """Configure the step-up verification of a user"""
    with _engine(ctx) as engine:
        engine.user_profiles.upsert(user_id, step_up_enabled=enable, totp_secret=secret)
        _echo_json({"user_id": user_id, "step_up_enabled": enable})
