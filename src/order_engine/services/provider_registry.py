# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from logging import getLogger
from typing import Self

from order_engine.exceptions import ProviderNotSupportedError
from order_engine.interfaces import IExecutionProvider
from order_engine.models.order import ExecutionProvider

LOG = getLogger(__name__)


class ProviderRegistry:
    """Resolves provider names to the adapters that execute orders."""

    def __init__(self: Self, providers: dict[ExecutionProvider, IExecutionProvider]) -> None:
        if ExecutionProvider.MANUAL in providers:
            raise ProviderNotSupportedError("Manual orders cannot be auto-executed")
        self.__providers = dict(providers)

    def get(self: Self, name: str) -> IExecutionProvider:
        """Return the adapter of ``name``, refusing unknown and manual names."""
        if name == ExecutionProvider.MANUAL:
            raise ProviderNotSupportedError(
                "Manual orders cannot be auto-executed",
            )
        try:
            return self.__providers[ExecutionProvider(name)]
        except (KeyError, ValueError) as exc:
            raise ProviderNotSupportedError(f"Unsupported provider: {name}") from exc

    def adapters(self: Self) -> list[IExecutionProvider]:
        return list(self.__providers.values())

    def health(self: Self) -> dict[str, bool]:
        """Run the health check of every registered adapter."""
        result = {}
        for name, provider in self.__providers.items():
            healthy = provider.health_check()
            if not healthy:
                LOG.warning("Provider %s is unhealthy", name)
            result[name.value] = healthy
        return result
