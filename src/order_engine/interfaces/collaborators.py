# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Interfaces of the collaborators the engine relies on but does not own.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Self

from order_engine.models.order import Account, AuditEvent


class IAuditSink(ABC):
    """Fire-and-forget destination of audit events."""

    @abstractmethod
    def log(self: Self, event: AuditEvent) -> None:
        """Record an audit event."""


class IStepUpOracle(ABC):
    """Boolean oracle deciding whether a one-time code is valid."""

    @abstractmethod
    def verify(self: Self, secret: str, code: str) -> bool:
        """Return True if ``code`` is valid for ``secret``."""


class IAccountDirectory(ABC):
    """Read access to accounts and user security settings."""

    @abstractmethod
    def get_account(self: Self, account_id: str, space_id: str) -> Account | None:
        """Return the account if it belongs to the space, None otherwise."""

    @abstractmethod
    def get_balance(self: Self, account_id: str) -> Decimal:
        """Return the current balance of an account."""

    @abstractmethod
    def adjust_balance(self: Self, account_id: str, delta: Decimal) -> Decimal:
        """Add ``delta`` to the balance and return the new balance."""

    @abstractmethod
    def move_balance(
        self: Self,
        account_id: str,
        amount: Decimal,
        to_account_id: str | None = None,
    ) -> bool:
        """Atomically debit an account, return False if its balance is too low."""

    @abstractmethod
    def is_step_up_enabled(self: Self, user_id: str) -> bool:
        """Return True if the user always requires a one-time code."""

    @abstractmethod
    def get_step_up_secret(self: Self, user_id: str) -> str | None:
        """Return the shared secret of the user's one-time codes."""


class IPriceFeed(ABC):
    """Source of market prices for the advanced order monitor."""

    @abstractmethod
    def get_price(self: Self, asset_symbol: str, currency: str) -> Decimal:
        """
        Return the latest price or raise
        :class:`order_engine.exceptions.PriceUnavailableError`.
        """
