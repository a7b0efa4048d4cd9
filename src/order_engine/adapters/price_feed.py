# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from decimal import Decimal
from logging import getLogger
from typing import Self

from order_engine.exceptions import PriceUnavailableError
from order_engine.interfaces import IPriceFeed
from order_engine.services.provider_registry import ProviderRegistry

LOG = getLogger(__name__)

#: Development prices used when no provider quotes a pair.
DEFAULT_PRICES: dict[tuple[str, str], Decimal] = {
    ("BTC", "USD"): Decimal(45_000),
    ("BTC", "MXN"): Decimal(900_000),
    ("ETH", "USD"): Decimal(3_000),
    ("ETH", "MXN"): Decimal(60_000),
}


class StaticPriceFeed(IPriceFeed):
    """Price feed answering from a fixed table."""

    def __init__(self: Self, prices: dict[tuple[str, str], Decimal] | None = None) -> None:
        self.__prices = dict(DEFAULT_PRICES if prices is None else prices)

    def set_price(self: Self, asset_symbol: str, currency: str, price: Decimal) -> None:
        self.__prices[(asset_symbol.upper(), currency.upper())] = price

    def get_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        try:
            return self.__prices[(asset_symbol.upper(), currency.upper())]
        except KeyError as exc:
            raise PriceUnavailableError(
                f"No price for {asset_symbol}/{currency}",
            ) from exc


class ProviderPriceFeed(IPriceFeed):
    """
    Asks the registered providers that trade the asset for a quote and falls
    back to another feed if none of them answers.
    """

    def __init__(
        self: Self,
        registry: ProviderRegistry,
        fallback: IPriceFeed | None = None,
    ) -> None:
        self.__registry = registry
        self.__fallback = fallback

    def get_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        for provider in self.__registry.adapters():
            capabilities = provider.capabilities
            if asset_symbol.upper() not in capabilities.supported_assets:
                continue
            if currency.upper() not in capabilities.supported_currencies:
                continue
            try:
                return provider.get_market_price(asset_symbol, currency)
            except PriceUnavailableError as exc:
                LOG.warning("%s", exc)

        if self.__fallback is None:
            raise PriceUnavailableError(f"No price for {asset_symbol}/{currency}")
        LOG.debug("Using fallback price for %s/%s", asset_symbol, currency)
        return self.__fallback.get_price(asset_symbol, currency)
