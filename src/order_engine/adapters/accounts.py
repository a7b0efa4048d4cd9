# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from decimal import Decimal
from logging import getLogger
from typing import Self

from order_engine.exceptions import NotFoundError
from order_engine.infrastructure.database import AccountTable, UserProfileTable
from order_engine.interfaces import IAccountDirectory
from order_engine.models.order import Account

LOG = getLogger(__name__)


class DatabaseAccountDirectory(IAccountDirectory):
    """Account directory backed by the engine's own database."""

    def __init__(
        self: Self,
        account_table: AccountTable,
        user_profile_table: UserProfileTable,
    ) -> None:
        self.__accounts = account_table
        self.__profiles = user_profile_table

    def get_account(self: Self, account_id: str, space_id: str) -> Account | None:
        account = self.__accounts.get(account_id)
        if account is None or account.space_id != space_id:
            return None
        return account

    def get_balance(self: Self, account_id: str) -> Decimal:
        if (account := self.__accounts.get(account_id)) is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account.balance

    def adjust_balance(self: Self, account_id: str, delta: Decimal) -> Decimal:
        self.__accounts.adjust_balance(account_id, delta)
        balance = self.get_balance(account_id)
        LOG.debug("Balance of account %s is now %s", account_id, balance)
        return balance

    def move_balance(
        self: Self,
        account_id: str,
        amount: Decimal,
        to_account_id: str | None = None,
    ) -> bool:
        if not self.__accounts.move_balance(account_id, amount, to_account_id):
            if self.__accounts.get(account_id) is None:
                raise NotFoundError(f"Account {account_id} not found")
            return False
        LOG.debug(
            "Moved %s from account %s to %s",
            amount,
            account_id,
            to_account_id or "outside the engine",
        )
        return True

    def is_step_up_enabled(self: Self, user_id: str) -> bool:
        profile = self.__profiles.get(user_id)
        return bool(profile and profile["step_up_enabled"])

    def get_step_up_secret(self: Self, user_id: str) -> str | None:
        profile = self.__profiles.get(user_id)
        return profile["totp_secret"] if profile else None
