# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import re
from decimal import Decimal

from pydantic import BaseModel, Field, computed_field, field_validator


class EngineConfigDTO(BaseModel):
    """
    Data transfer object for the general engine configuration. These values
    are passed via CLI or environment variables.
    """

    # ==========================================================================
    # Order creation
    high_value_threshold: Decimal = Field(default=Decimal(10_000), gt=0)
    order_ttl_seconds: int = Field(default=86_400, gt=0)
    idempotency_ttl_seconds: int = Field(default=7 * 86_400, gt=0)

    # ==========================================================================
    # Periodic drivers
    monitor_interval: float = Field(default=300, gt=0)
    scheduler_interval: float = Field(default=3_600, gt=0)
    price_cache_ttl_seconds: int = Field(default=300, gt=0)

    # ==========================================================================
    # Simulated executions
    dry_run_fee_rate: Decimal = Field(default=Decimal("0.002"), ge=0, lt=1)
    dry_run_max_slippage: Decimal = Field(default=Decimal("0.03"), ge=0, lt=1)

    # ==========================================================================
    # Execution queue
    execution_workers: int = Field(default=2, ge=1)
    execution_queue_size: int = Field(default=100, ge=1)


class DBConfigDTO(BaseModel):
    sqlite_file: str | None = None
    db_user: str | None = None
    db_password: str | None = None
    db_host: str | None = None
    db_port: str | None = None
    db_name: str = "order_engine"


class BitsoConfigDTO(BaseModel):
    """Credentials of the Bitso execution provider."""

    api_key: str | None = None
    api_secret: str | None = None
    base_url: str = "https://api.bitso.com"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def enabled(self) -> bool:
        """Return True if both key and secret are truthy values."""
        return bool(self.api_key and self.api_secret)


class TelegramConfigDTO(BaseModel):
    """Pydantic model for Telegram notification configuration."""

    token: str | None = None
    chat_id: str | None = None

    @field_validator("token")
    @classmethod
    def validate_token(cls, value: str | None) -> str | None:
        if value and not re.fullmatch(r"\d+:[A-Za-z0-9_-]+", value):
            raise ValueError("Invalid Telegram bot token format")
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def enabled(self) -> bool:
        """Return True if both token and chat_id are truthy values."""
        return bool(self.token and self.chat_id)


class NotificationConfigDTO(BaseModel):
    """Pydantic model for notification service configuration."""

    telegram: TelegramConfigDTO = Field(default_factory=TelegramConfigDTO)
