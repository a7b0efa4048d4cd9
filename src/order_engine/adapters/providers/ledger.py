# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Transfer rails that move money between accounts of the account directory.

Plaid and Belvo connections are read-only aggregators upstream, which is why
the engine books their transfers, deposits and withdrawals against the
balances it manages itself. They never quote market prices.
"""

import time
import uuid
from decimal import Decimal
from logging import getLogger
from typing import Self

from pydantic import ValidationError

from order_engine.exceptions import PriceUnavailableError
from order_engine.interfaces import IAccountDirectory, IExecutionProvider
from order_engine.models.order import ErrorCode, ExecutionProvider, OrderType
from order_engine.models.provider import (
    ExecutionOrder,
    ExecutionResult,
    ProviderCapabilities,
    TransferOrderParams,
    ValidationResult,
)

LOG = getLogger(__name__)


class LedgerTransferProvider(IExecutionProvider):
    """Books transfers, deposits and withdrawals on the account directory."""

    def __init__(
        self: Self,
        name: ExecutionProvider,
        accounts: IAccountDirectory,
        currencies: frozenset[str],
        max_order_amount: Decimal | None = None,
    ) -> None:
        self.name = name
        self.capabilities = ProviderCapabilities(
            supports_transfer=True,
            supports_deposit=True,
            supports_withdraw=True,
            min_order_amount=Decimal("0.01"),
            max_order_amount=max_order_amount,
            supported_currencies=currencies,
        )
        self.__accounts = accounts

    # == Order execution =======================================================
    def execute_buy(self: Self, order: ExecutionOrder) -> ExecutionResult:  # noqa: ARG002
        return ExecutionResult.failure(
            ErrorCode.NOT_SUPPORTED,
            f"{self.name} does not support trading",
        )

    def execute_sell(self: Self, order: ExecutionOrder) -> ExecutionResult:  # noqa: ARG002
        return ExecutionResult.failure(
            ErrorCode.NOT_SUPPORTED,
            f"{self.name} does not support trading",
        )

    def execute_transfer(self: Self, order: ExecutionOrder) -> ExecutionResult:
        started = time.monotonic()
        if not self.__accounts.move_balance(
            order.account_id,
            order.amount,
            order.to_account_id,
        ):
            return self.__insufficient_funds(order, started)
        return self.__booked(order, started)

    def execute_deposit(self: Self, order: ExecutionOrder) -> ExecutionResult:
        started = time.monotonic()
        self.__accounts.adjust_balance(order.account_id, order.amount)
        return self.__booked(order, started)

    def execute_withdraw(self: Self, order: ExecutionOrder) -> ExecutionResult:
        started = time.monotonic()
        if not self.__accounts.move_balance(order.account_id, order.amount):
            return self.__insufficient_funds(order, started)
        return self.__booked(order, started)

    def __booked(self: Self, order: ExecutionOrder, started: float) -> ExecutionResult:
        reference = f"{self.name}_{uuid.uuid4().hex[:16]}"
        params = order.provider_params()
        LOG.info(
            "Booked %s of %s %s as %s",
            order.type,
            order.amount,
            order.currency,
            reference,
        )
        return ExecutionResult(
            success=True,
            provider_order_id=reference,
            executed_amount=order.amount,
            executed_price=Decimal(1),
            fees=Decimal(0),
            fee_currency=order.currency,
            raw_response={
                "reference": reference,
                "memo": params.memo if isinstance(params, TransferOrderParams) else None,
            },
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def __insufficient_funds(order: ExecutionOrder, started: float) -> ExecutionResult:
        return ExecutionResult.failure(
            ErrorCode.EXECUTION_ERROR,
            f"Insufficient funds in account {order.account_id}",
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

    # == Market data and checks ================================================
    def get_market_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        raise PriceUnavailableError(
            f"{self.name} does not quote prices for {asset_symbol}/{currency}",
        )

    def validate_order(self: Self, order: ExecutionOrder) -> ValidationResult:
        errors: list[str] = []
        caps = self.capabilities

        if not caps.supports(order.type):
            errors.append(f"{order.type.capitalize()} orders not supported by {self.name}")
        if order.currency.upper() not in caps.supported_currencies:
            errors.append(f"Currency {order.currency} is not supported by {self.name}")
        if order.type == OrderType.TRANSFER and not order.to_account_id:
            errors.append("Transfer orders require a destination account")
        if caps.min_order_amount and order.amount < caps.min_order_amount:
            errors.append(f"Order amount below minimum: {caps.min_order_amount}")
        if caps.max_order_amount and order.amount > caps.max_order_amount:
            errors.append(f"Order amount exceeds maximum: {caps.max_order_amount}")

        try:
            params = order.provider_params()
        except ValidationError as exc:
            errors.append(f"Invalid provider parameters: {exc.error_count()} error(s)")
        else:
            if params is not None and not isinstance(params, TransferOrderParams):
                errors.append(
                    f"Parameters of kind '{params.kind}' do not apply to {self.name}",
                )

        return ValidationResult(valid=not errors, errors=errors)

    def health_check(self: Self) -> bool:
        return True
