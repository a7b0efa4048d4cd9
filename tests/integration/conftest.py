# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from decimal import Decimal
from typing import Any
from unittest.mock import Mock, patch

import pytest
import requests

from order_engine.core.engine import OrderEngine
from order_engine.models.configuration import (
    DBConfigDTO,
    EngineConfigDTO,
    NotificationConfigDTO,
    TelegramConfigDTO,
)
from order_engine.models.order import Account
from tests.helper import SPACE_ID, TOTP_SECRET, USER_ID, FakeClock


@pytest.fixture(scope="session")
def notification_config() -> NotificationConfigDTO:
    return NotificationConfigDTO(telegram=TelegramConfigDTO(token=None, chat_id=None))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def market() -> dict[str, Decimal]:
    """Last prices served by the Bitso ticker, keyed by order book."""
    return {"btc_usd": Decimal(45_000)}


@pytest.fixture
def bitso_ticker(market: dict[str, Decimal]) -> Mock:
    """Replaces the HTTP GET of the Bitso session."""

    def ticker(url: str, params: dict | None = None, **kwargs: Any) -> Mock:  # noqa: ANN401, ARG001
        response = Mock(spec=requests.Response)
        response.status_code = 200
        book = (params or {}).get("book")
        if book in market:
            response.json.return_value = {
                "success": True,
                "payload": {"book": book, "last": str(market[book])},
            }
        else:
            response.json.return_value = {"success": False}
        return response

    with patch.object(requests.Session, "get", side_effect=ticker) as get:
        yield get


@pytest.fixture
def engine(
    clock: FakeClock,
    notification_config: NotificationConfigDTO,
    bitso_ticker: Mock,  # noqa: ARG001
) -> OrderEngine:
    """Fully wired engine on an in-memory database."""
    engine = OrderEngine(
        engine_config=EngineConfigDTO(execution_workers=1),
        db_config=DBConfigDTO(sqlite_file=":memory:"),
        notification_config=notification_config,
        clock=clock,
    )
    engine.accounts.add(
        Account(id="acc-usd", space_id=SPACE_ID, currency="USD", balance=Decimal(50_000)),
    )
    engine.user_profiles.upsert(USER_ID, step_up_enabled=False, totp_secret=TOTP_SECRET)
    yield engine
    engine.close()
