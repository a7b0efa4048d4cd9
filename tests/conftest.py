# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import random
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable
from unittest.mock import Mock

import pytest

from order_engine.adapters.accounts import DatabaseAccountDirectory
from order_engine.adapters.price_feed import StaticPriceFeed
from order_engine.adapters.providers.ledger import LedgerTransferProvider
from order_engine.core.event_bus import EventBus
from order_engine.infrastructure.database import (
    AccountTable,
    DBConnect,
    ExecutionAttemptTable,
    IdempotencyKeyTable,
    OrderLimitTable,
    OrderTable,
    UserProfileTable,
)
from order_engine.interfaces import IAuditSink, IExecutionProvider, IStepUpOracle
from order_engine.models.configuration import DBConfigDTO, EngineConfigDTO
from order_engine.models.order import Account, CreateOrderDTO, ExecutionProvider
from order_engine.models.provider import (
    ExecutionResult,
    ProviderCapabilities,
    ValidationResult,
)
from order_engine.services.audit_service import AuditService
from order_engine.services.idempotency_service import IdempotencyService
from order_engine.services.limit_service import LimitService
from order_engine.services.order_service import OrderService
from order_engine.services.provider_registry import ProviderRegistry
from order_engine.services.step_up_service import StepUpService
from tests.helper import SPACE_ID, TOTP_SECRET, USER_ID, VALID_OTP, FakeClock


@pytest.fixture(scope="session")
def db_config() -> DBConfigDTO:
    return DBConfigDTO(sqlite_file=":memory:")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(db_config: DBConfigDTO) -> DBConnect:
    """Fresh in-memory database for every test."""
    db_connect = DBConnect(db_config)
    yield db_connect
    db_connect.close()


# ==============================================================================
# Tables
##
@pytest.fixture
def order_table(db: DBConnect, clock: FakeClock) -> OrderTable:
    table = OrderTable(db, clock)
    db.init_db()
    return table


@pytest.fixture
def attempt_table(db: DBConnect) -> ExecutionAttemptTable:
    table = ExecutionAttemptTable(db)
    db.init_db()
    return table


@pytest.fixture
def idempotency_table(db: DBConnect) -> IdempotencyKeyTable:
    table = IdempotencyKeyTable(db)
    db.init_db()
    return table


@pytest.fixture
def limit_table(db: DBConnect) -> OrderLimitTable:
    table = OrderLimitTable(db)
    db.init_db()
    return table


@pytest.fixture
def account_table(db: DBConnect) -> AccountTable:
    table = AccountTable(db)
    db.init_db()
    table.add(Account(id="acc-usd", space_id=SPACE_ID, currency="USD", balance=Decimal(50_000)))
    table.add(Account(id="acc-usd-2", space_id=SPACE_ID, currency="USD", balance=Decimal(0)))
    table.add(Account(id="acc-mxn", space_id=SPACE_ID, currency="MXN", balance=Decimal(100_000)))
    table.add(Account(id="acc-foreign", space_id="space-2", currency="USD", balance=Decimal(10)))
    return table


@pytest.fixture
def user_profile_table(db: DBConnect) -> UserProfileTable:
    table = UserProfileTable(db)
    db.init_db()
    table.upsert(USER_ID, step_up_enabled=False, totp_secret=TOTP_SECRET)
    return table


# ==============================================================================
# Collaborators
##
@pytest.fixture
def accounts(
    account_table: AccountTable,
    user_profile_table: UserProfileTable,
) -> DatabaseAccountDirectory:
    return DatabaseAccountDirectory(account_table, user_profile_table)


@pytest.fixture
def oracle() -> Mock:
    """Step-up oracle accepting exactly one code."""
    mock = Mock(spec=IStepUpOracle)
    mock.verify.side_effect = lambda secret, code: code == VALID_OTP  # noqa: ARG005
    return mock


@pytest.fixture
def audit_sink() -> Mock:
    return Mock(spec=IAuditSink)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def price_feed() -> StaticPriceFeed:
    return StaticPriceFeed()


@pytest.fixture
def bitso_provider() -> Mock:
    """Provider double filling every buy and sell order at 45000."""
    provider = Mock(spec=IExecutionProvider)
    provider.name = ExecutionProvider.BITSO
    provider.capabilities = ProviderCapabilities(
        supports_buy=True,
        supports_sell=True,
        supported_currencies=frozenset({"USD", "MXN"}),
        supported_assets=frozenset({"BTC", "ETH"}),
    )
    provider.validate_order.return_value = ValidationResult(valid=True)
    filled = ExecutionResult(
        success=True,
        provider_order_id="bitso-oid-1",
        executed_amount=Decimal(100),
        executed_price=Decimal(45_000),
        fees=Decimal("0.1"),
        fee_currency="USD",
        raw_response={"success": True},
    )
    provider.execute_buy.return_value = filled
    provider.execute_sell.return_value = filled
    return provider


@pytest.fixture
def registry(bitso_provider: Mock, accounts: DatabaseAccountDirectory) -> ProviderRegistry:
    return ProviderRegistry(
        {
            ExecutionProvider.BITSO: bitso_provider,
            ExecutionProvider.PLAID: LedgerTransferProvider(
                ExecutionProvider.PLAID,
                accounts,
                frozenset({"USD"}),
            ),
        },
    )


@pytest.fixture
def engine_config() -> EngineConfigDTO:
    return EngineConfigDTO()


@pytest.fixture
def limit_service(
    limit_table: OrderLimitTable,
    accounts: DatabaseAccountDirectory,
    clock: FakeClock,
) -> LimitService:
    return LimitService(limit_table, accounts, clock)


@pytest.fixture
def step_up_service(accounts: DatabaseAccountDirectory, oracle: Mock) -> StepUpService:
    return StepUpService(accounts, oracle, Decimal(10_000))


@pytest.fixture
def idempotency_service(
    idempotency_table: IdempotencyKeyTable,
    order_table: OrderTable,
    clock: FakeClock,
) -> IdempotencyService:
    return IdempotencyService(idempotency_table, order_table, timedelta(days=7), clock)


@pytest.fixture
def order_service(  # noqa: PLR0913
    order_table: OrderTable,
    attempt_table: ExecutionAttemptTable,
    idempotency_service: IdempotencyService,
    limit_service: LimitService,
    step_up_service: StepUpService,
    registry: ProviderRegistry,
    accounts: DatabaseAccountDirectory,
    audit_sink: Mock,
    event_bus: EventBus,
    engine_config: EngineConfigDTO,
    price_feed: StaticPriceFeed,
    clock: FakeClock,
) -> OrderService:
    return OrderService(
        order_table=order_table,
        attempt_table=attempt_table,
        idempotency=idempotency_service,
        limits=limit_service,
        step_up=step_up_service,
        registry=registry,
        accounts=accounts,
        audit=AuditService(audit_sink),
        event_bus=event_bus,
        config=engine_config,
        price_feed=price_feed,
        clock=clock,
        rng=random.Random(42),  # noqa: S311
    )


@pytest.fixture
def make_request() -> Callable[..., CreateOrderDTO]:
    """Factory for order requests, a 100 USD market buy of BTC by default."""

    def _make(**overrides: Any) -> CreateOrderDTO:  # noqa: ANN401
        fields: dict[str, Any] = {
            "idempotency_key": str(uuid.uuid4()),
            "account_id": "acc-usd",
            "type": "buy",
            "amount": Decimal(100),
            "currency": "USD",
            "provider": "bitso",
            "asset_symbol": "BTC",
        }
        return CreateOrderDTO(**(fields | overrides))

    return _make

