# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Interface of the execution venues.

Unsupported operations must return an :class:`ExecutionResult` carrying the
``NOT_SUPPORTED`` error code instead of raising. Only
:meth:`IExecutionProvider.get_market_price` may raise, using
:class:`order_engine.exceptions.PriceUnavailableError`.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Self

from order_engine.models.order import ExecutionProvider
from order_engine.models.provider import (
    ExecutionOrder,
    ExecutionResult,
    ProviderCapabilities,
    ValidationResult,
)


class IExecutionProvider(ABC):
    """Interface for the provider adapters."""

    name: ExecutionProvider
    capabilities: ProviderCapabilities

    # == Order execution =======================================================
    @abstractmethod
    def execute_buy(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Buy an asset."""

    @abstractmethod
    def execute_sell(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Sell an asset."""

    @abstractmethod
    def execute_transfer(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Move funds between two accounts."""

    @abstractmethod
    def execute_deposit(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Deposit funds into an account."""

    @abstractmethod
    def execute_withdraw(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Withdraw funds from an account."""

    # == Market data and checks ================================================
    @abstractmethod
    def get_market_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        """Return the latest price of ``asset_symbol`` in ``currency``."""

    @abstractmethod
    def validate_order(self: Self, order: ExecutionOrder) -> ValidationResult:
        """Run the provider specific pre-flight checks."""

    @abstractmethod
    def health_check(self: Self) -> bool:
        """Return True if the venue is reachable."""
