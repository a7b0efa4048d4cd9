# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""Unit tests for the Bitso execution provider."""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any
from unittest.mock import Mock, patch

import pytest
import requests

from order_engine.adapters.providers.bitso import BitsoAuth, BitsoExecutionProvider
from order_engine.exceptions import PriceUnavailableError
from order_engine.models.configuration import BitsoConfigDTO
from order_engine.models.order import ErrorCode
from order_engine.models.provider import ExecutionOrder

API_KEY = "bitso-key"
API_SECRET = "bitso-secret"  # noqa: S105


def _order(**fields: Any) -> ExecutionOrder:  # noqa: ANN401
    values: dict[str, Any] = {
        "id": "o-1",
        "type": "buy",
        "amount": Decimal("0.5"),
        "currency": "MXN",
        "provider": "bitso",
        "account_id": "acc-mxn",
        "asset_symbol": "BTC",
    }
    return ExecutionOrder(**(values | fields))


def _response(status_code: int = 200, data: Any = None) -> Mock:  # noqa: ANN401
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    if isinstance(data, Exception):
        response.json.side_effect = data
    else:
        response.json.return_value = data
    return response


@pytest.fixture
def session() -> Mock:
    return Mock(spec=requests.Session)


@pytest.fixture
def provider(session: Mock) -> BitsoExecutionProvider:
    return BitsoExecutionProvider(
        BitsoConfigDTO(api_key=API_KEY, api_secret=API_SECRET),
        session=session,
    )


class TestBitsoAuth:
    def test_signature(self) -> None:
        """The signature covers nonce, method, path and body"""
        body = json.dumps({"book": "btc_mxn"})
        request = requests.Request(
            "POST",
            "https://api.bitso.com/v3/orders",
            data=body,
        ).prepare()

        with patch("order_engine.adapters.providers.bitso.time.time", return_value=1_700_000_000):
            BitsoAuth(API_KEY, API_SECRET)(request)

        nonce = "1700000000000"
        signature = hmac.new(
            API_SECRET.encode(),
            f"{nonce}POST/v3/orders{body}".encode(),
            hashlib.sha256,
        ).hexdigest()
        assert request.headers["Authorization"] == f"Bitso {API_KEY}:{nonce}:{signature}"
        assert request.headers["Content-Type"] == "application/json"

    def test_attached_to_session(
        self,
        provider: BitsoExecutionProvider,  # noqa: ARG002
        session: Mock,
    ) -> None:
        assert isinstance(session.auth, BitsoAuth)


class TestPlaceOrder:
    def test_market_buy(self, provider: BitsoExecutionProvider, session: Mock) -> None:
        session.post.return_value = _response(
            data={
                "success": True,
                "payload": {"oid": "qlbga6b600n3xta7", "original_amount": "0.5", "price": "900000"},
            },
        )

        result = provider.execute_buy(_order())

        assert result.success
        assert result.provider_order_id == "qlbga6b600n3xta7"
        assert result.executed_amount == Decimal("0.5")
        assert result.executed_price == Decimal(900_000)
        assert result.fees == Decimal("450.0000")
        assert result.fee_currency == "MXN"

        url = session.post.call_args.args[0]
        payload = json.loads(session.post.call_args.kwargs["data"])
        assert url == "https://api.bitso.com/v3/orders"
        assert payload == {"book": "btc_mxn", "side": "buy", "type": "market", "major": "0.5"}

    def test_limit_sell_with_params(
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
    ) -> None:
        """Limit orders carry price, time in force and the client id"""
        session.post.return_value = _response(
            data={"success": True, "payload": {"oid": "oid-2"}},
        )

        result = provider.execute_sell(
            _order(
                target_price=Decimal(950_000),
                metadata={
                    "provider_params": {
                        "kind": "bitso",
                        "time_in_force": "fillorkill",
                        "client_id": "client-1",
                    },
                },
            ),
        )

        assert result.success
        assert result.executed_amount == Decimal("0.5")
        assert result.executed_price == Decimal(950_000)
        payload = json.loads(session.post.call_args.kwargs["data"])
        assert payload == {
            "book": "btc_mxn",
            "side": "sell",
            "type": "limit",
            "major": "0.5",
            "price": "950000",
            "time_in_force": "fillorkill",
            "client_id": "client-1",
        }

    def test_exchange_error(self, provider: BitsoExecutionProvider, session: Mock) -> None:
        data = {"success": False, "error": {"code": "0379", "message": "Insufficient funds"}}
        session.post.return_value = _response(400, data)

        result = provider.execute_buy(_order())

        assert not result.success
        assert result.error_code == ErrorCode.EXECUTION_ERROR
        assert result.error_message == "0379: Insufficient funds"
        assert result.raw_response == data

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_declined(
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
        status_code: int,
    ) -> None:
        session.post.return_value = _response(status_code, {})

        result = provider.execute_buy(_order())

        assert result.error_code == ErrorCode.AUTHORIZATION_DECLINED

    def test_invalid_json(self, provider: BitsoExecutionProvider, session: Mock) -> None:
        session.post.return_value = _response(502, ValueError("no json"))

        result = provider.execute_buy(_order())

        assert result.error_code == ErrorCode.EXECUTION_ERROR
        assert result.error_message == "Unexpected response from Bitso (502)"

    def test_connection_error(
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
    ) -> None:
        session.post.side_effect = requests.ConnectionError("unreachable")

        result = provider.execute_buy(_order())

        assert not result.success
        assert result.error_message == "unreachable"

    def test_without_credentials(self, session: Mock) -> None:
        provider = BitsoExecutionProvider(BitsoConfigDTO(), session=session)

        result = provider.execute_buy(_order())

        assert result.error_message == "Bitso credentials not configured"
        session.post.assert_not_called()

    @pytest.mark.parametrize("method", ["execute_transfer", "execute_deposit", "execute_withdraw"])
    def test_not_supported(self, provider: BitsoExecutionProvider, method: str) -> None:
        result = getattr(provider, method)(_order(type="transfer", to_account_id="acc-2"))
        assert result.error_code == ErrorCode.NOT_SUPPORTED


class TestMarketData:
    def test_get_market_price(
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
    ) -> None:
        session.get.return_value = _response(
            data={"success": True, "payload": {"book": "eth_usd", "last": "3012.5"}},
        )

        assert provider.get_market_price("ETH", "USD") == Decimal("3012.5")
        assert session.get.call_args.kwargs["params"] == {"book": "eth_usd"}

    @pytest.mark.parametrize(
        "data",
        [{"success": False}, {"success": True, "payload": {}}, ValueError("no json")],
    )
    def test_price_unavailable(
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
        data: Any,  # noqa: ANN401
    ) -> None:
        session.get.return_value = _response(data=data)

        with pytest.raises(PriceUnavailableError):
            provider.get_market_price("BTC", "MXN")

    @pytest.mark.parametrize(
        ("side_effect", "status_code", "healthy"),
        [(None, 200, True), (None, 503, False), (requests.Timeout("slow"), 200, False)],
    )
    def test_health_check(  # noqa: PLR0913
        self,
        provider: BitsoExecutionProvider,
        session: Mock,
        side_effect: Exception | None,
        status_code: int,
        healthy: bool,  # noqa: FBT001
    ) -> None:
        session.get.return_value = _response(status_code, {})
        session.get.side_effect = side_effect

        assert provider.health_check() is healthy


class TestValidateOrder:
    def test_valid(self, provider: BitsoExecutionProvider) -> None:
        assert provider.validate_order(_order()).valid

    def test_invalid(self, provider: BitsoExecutionProvider) -> None:
        result = provider.validate_order(
            _order(asset_symbol="DOGE", currency="EUR", amount=Decimal("0.0001")),
        )

        assert not result.valid
        assert result.errors == [
            "Asset DOGE is not supported by Bitso",
            "Currency EUR is not supported by Bitso",
            "Order amount below minimum: 0.001",
        ]

    def test_transfer(self, provider: BitsoExecutionProvider) -> None:
        result = provider.validate_order(_order(type="transfer", to_account_id="acc-2"))
        assert result.errors == ["Transfer orders not supported by Bitso"]

    def test_foreign_params(self, provider: BitsoExecutionProvider) -> None:
        result = provider.validate_order(
            _order(metadata={"provider_params": {"kind": "transfer", "memo": "rent"}}),
        )
        assert result.errors == ["Parameters of kind 'transfer' do not apply to Bitso"]

    def test_malformed_params(self, provider: BitsoExecutionProvider) -> None:
        result = provider.validate_order(
            _order(metadata={"provider_params": {"kind": "bitso", "time_in_force": "never"}}),
        )
        assert result.errors == ["Invalid provider parameters: 1 error(s)"]
