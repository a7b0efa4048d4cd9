# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Execution provider for the Bitso crypto exchange (https://bitso.com).

Only spot buy and sell orders are routed through Bitso. Transfers, deposits
and withdrawals are answered with ``NOT_SUPPORTED``.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal, InvalidOperation
from logging import getLogger
from typing import Any, Self

import requests
from pydantic import ValidationError
from requests.auth import AuthBase

from order_engine.exceptions import PriceUnavailableError
from order_engine.interfaces import IExecutionProvider
from order_engine.models.configuration import BitsoConfigDTO
from order_engine.models.order import ErrorCode, ExecutionProvider, OrderType
from order_engine.models.provider import (
    BitsoOrderParams,
    ExecutionOrder,
    ExecutionResult,
    ProviderCapabilities,
    ValidationResult,
)

LOG = getLogger(__name__)

BITSO_FEE_RATE = Decimal("0.001")


class BitsoAuth(AuthBase):
    """Signs requests as required by the private Bitso API v3."""

    def __init__(self: Self, api_key: str, api_secret: str) -> None:
        self.__api_key = api_key
        self.__api_secret = api_secret

    def __call__(self: Self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        nonce = str(int(time.time() * 1000))
        body = request.body or ""
        if isinstance(body, bytes):
            body = body.decode()
        message = f"{nonce}{request.method}{request.path_url}{body}"
        signature = hmac.new(
            self.__api_secret.encode(),
            message.encode(),
            hashlib.sha256,
        ).hexdigest()
        request.headers["Authorization"] = f"Bitso {self.__api_key}:{nonce}:{signature}"
        request.headers["Content-Type"] = "application/json"
        return request


class BitsoExecutionProvider(IExecutionProvider):
    """Routes buy and sell orders to the Bitso order book."""

    name = ExecutionProvider.BITSO
    capabilities = ProviderCapabilities(
        supports_buy=True,
        supports_sell=True,
        supports_limit_orders=True,
        supports_market_orders=True,
        min_order_amount=Decimal("0.001"),
        max_order_amount=Decimal(1_000_000),
        supported_currencies=frozenset({"MXN", "USD"}),
        supported_assets=frozenset(
            {"BTC", "ETH", "XRP", "LTC", "BCH", "TUSD", "DAI", "USDC", "MANA"},
        ),
    )

    def __init__(
        self: Self,
        config: BitsoConfigDTO,
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        self.__config = config
        self.__base_url = f"{config.base_url.rstrip('/')}/v3"
        self.__timeout = timeout
        self.__session = session or requests.Session()
        if config.enabled:
            self.__session.auth = BitsoAuth(config.api_key, config.api_secret)  # type: ignore[arg-type]
        else:
            LOG.warning("Bitso credentials not configured")

    # == Order execution =======================================================
    def execute_buy(self: Self, order: ExecutionOrder) -> ExecutionResult:
        return self.__place_order(order, side="buy")

    def execute_sell(self: Self, order: ExecutionOrder) -> ExecutionResult:
        return self.__place_order(order, side="sell")

    def execute_transfer(self: Self, order: ExecutionOrder) -> ExecutionResult:  # noqa: ARG002
        return ExecutionResult.failure(
            ErrorCode.NOT_SUPPORTED,
            "Bitso does not support transfers via API",
        )

    def execute_deposit(self: Self, order: ExecutionOrder) -> ExecutionResult:  # noqa: ARG002
        return ExecutionResult.failure(
            ErrorCode.NOT_SUPPORTED,
            "Bitso deposits must be initiated externally",
        )

    def execute_withdraw(self: Self, order: ExecutionOrder) -> ExecutionResult:  # noqa: ARG002
        return ExecutionResult.failure(
            ErrorCode.NOT_SUPPORTED,
            "Bitso withdrawals require additional KYC verification",
        )

    def __place_order(self: Self, order: ExecutionOrder, side: str) -> ExecutionResult:
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if not self.__config.enabled:
            return ExecutionResult.failure(
                ErrorCode.EXECUTION_ERROR,
                "Bitso credentials not configured",
            )

        params = order.provider_params()
        if not isinstance(params, BitsoOrderParams):
            params = BitsoOrderParams()

        payload: dict[str, Any] = {
            "book": params.book or self.book(order.asset_symbol or "", order.currency),
            "side": side,
            "type": "limit" if order.target_price else "market",
            "major": str(order.amount),
        }
        if order.target_price:
            payload["price"] = str(order.target_price)
            payload["time_in_force"] = params.time_in_force
        if params.client_id:
            payload["client_id"] = params.client_id

        LOG.info("Placing Bitso %s order: %s", side, payload)
        try:
            response = self.__session.post(
                f"{self.__base_url}/orders",
                data=json.dumps(payload),
                timeout=self.__timeout,
            )
        except requests.RequestException as exc:
            LOG.error("Bitso %s order failed: %s", side, exc)
            return ExecutionResult.failure(
                ErrorCode.EXECUTION_ERROR,
                str(exc),
                execution_time_ms=elapsed(),
            )

        if response.status_code in {401, 403}:
            return ExecutionResult.failure(
                ErrorCode.AUTHORIZATION_DECLINED,
                f"Bitso declined the request ({response.status_code})",
                execution_time_ms=elapsed(),
            )

        try:
            data = response.json()
        except ValueError:
            return ExecutionResult.failure(
                ErrorCode.EXECUTION_ERROR,
                f"Unexpected response from Bitso ({response.status_code})",
                execution_time_ms=elapsed(),
            )

        if not data.get("success") or not data.get("payload"):
            error = data.get("error") or {}
            return ExecutionResult.failure(
                ErrorCode.EXECUTION_ERROR,
                f"{error.get('code', 'UNKNOWN_ERROR')}: "
                f"{error.get('message', 'Unknown error')}",
                execution_time_ms=elapsed(),
                raw_response=data,
            )

        result = data["payload"]
        executed_amount = Decimal(result.get("original_amount") or order.amount)
        executed_price = Decimal(result.get("price") or order.target_price or 0)
        return ExecutionResult(
            success=True,
            provider_order_id=result["oid"],
            executed_amount=executed_amount,
            executed_price=executed_price,
            fees=executed_amount * executed_price * BITSO_FEE_RATE,
            fee_currency=order.currency,
            raw_response=data,
            execution_time_ms=elapsed(),
        )

    # == Market data and checks ================================================
    @staticmethod
    def book(asset_symbol: str, currency: str) -> str:
        """Return the order book name, e.g. ``btc_mxn``."""
        return f"{asset_symbol.lower()}_{currency.lower()}"

    def get_market_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        try:
            response = self.__session.get(
                f"{self.__base_url}/ticker",
                params={"book": self.book(asset_symbol, currency)},
                timeout=self.__timeout,
            )
            data = response.json()
            if data.get("success") and data.get("payload"):
                return Decimal(data["payload"]["last"])
        except (requests.RequestException, ValueError, KeyError, InvalidOperation) as exc:
            LOG.error(
                "Failed to get market price for %s/%s: %s",
                asset_symbol,
                currency,
                exc,
            )
            raise PriceUnavailableError(
                f"Bitso price for {asset_symbol}/{currency} unavailable",
            ) from exc
        raise PriceUnavailableError(
            f"Bitso price for {asset_symbol}/{currency} unavailable",
        )

    def validate_order(self: Self, order: ExecutionOrder) -> ValidationResult:
        errors: list[str] = []
        caps = self.capabilities

        if (
            order.asset_symbol
            and order.asset_symbol.upper() not in caps.supported_assets
        ):
            errors.append(f"Asset {order.asset_symbol} is not supported by Bitso")
        if order.currency.upper() not in caps.supported_currencies:
            errors.append(f"Currency {order.currency} is not supported by Bitso")
        if order.type in {OrderType.BUY, OrderType.SELL} and not order.asset_symbol:
            errors.append("Bitso orders require an asset symbol")
        if not caps.supports(order.type):
            errors.append(f"{order.type.capitalize()} orders not supported by Bitso")
        if caps.min_order_amount and order.amount < caps.min_order_amount:
            errors.append(f"Order amount below minimum: {caps.min_order_amount}")
        if caps.max_order_amount and order.amount > caps.max_order_amount:
            errors.append(f"Order amount exceeds maximum: {caps.max_order_amount}")
        if order.target_price and not caps.supports_limit_orders:
            errors.append("Limit orders not supported by Bitso")

        try:
            params = order.provider_params()
        except ValidationError as exc:
            errors.append(f"Invalid provider parameters: {exc.error_count()} error(s)")
        else:
            if params is not None and not isinstance(params, BitsoOrderParams):
                errors.append(f"Parameters of kind '{params.kind}' do not apply to Bitso")

        return ValidationResult(valid=not errors, errors=errors)

    def health_check(self: Self) -> bool:
        try:
            response = self.__session.get(
                f"{self.__base_url}/ticker",
                params={"book": "btc_mxn"},
                timeout=5,
            )
        except requests.RequestException as exc:
            LOG.error("Bitso health check failed: %s", exc)
            return False
        return response.status_code == 200
