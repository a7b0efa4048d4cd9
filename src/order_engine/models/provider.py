# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Models exchanged between the order orchestrator and the provider adapters.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, Field, TypeAdapter

from order_engine.models.order import ErrorCode, ExecutionProvider, OrderType


class ProviderCapabilities(BaseModel):
    """Static descriptor of what an execution venue is able to do."""

    supports_buy: bool = False
    supports_sell: bool = False
    supports_transfer: bool = False
    supports_deposit: bool = False
    supports_withdraw: bool = False
    supports_limit_orders: bool = False
    supports_market_orders: bool = False
    min_order_amount: Decimal | None = None
    max_order_amount: Decimal | None = None
    supported_currencies: frozenset[str] = frozenset()
    supported_assets: frozenset[str] = frozenset()

    def supports(self: Self, order_type: OrderType) -> bool:
        return bool(getattr(self, f"supports_{order_type.value}"))


# == Provider specific order parameters ========================================
##
class BitsoOrderParams(BaseModel):
    kind: Literal["bitso"] = "bitso"
    book: str | None = None
    time_in_force: Literal["goodtillcancelled", "fillorkill", "immediateorcancel"] = (
        "goodtillcancelled"
    )
    client_id: str | None = None


class TransferOrderParams(BaseModel):
    kind: Literal["transfer"] = "transfer"
    reference: str | None = None
    memo: str | None = Field(default=None, max_length=140)


ProviderOrderParams = Annotated[
    BitsoOrderParams | TransferOrderParams,
    Field(discriminator="kind"),
]
_PARAMS_ADAPTER: TypeAdapter = TypeAdapter(ProviderOrderParams)


class ExecutionOrder(BaseModel):
    """The view of an order that is handed to a provider adapter."""

    id: str
    type: OrderType
    amount: Decimal
    currency: str
    provider: ExecutionProvider
    account_id: str
    to_account_id: str | None = None
    asset_symbol: str | None = None
    target_price: Decimal | None = None
    max_slippage: Decimal | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def provider_params(self: Self) -> BitsoOrderParams | TransferOrderParams | None:
        """
        Parse the provider specific parameters stored under the
        ``provider_params`` key of the metadata.

        Raises a :class:`pydantic.ValidationError` for malformed parameters.
        """
        if (raw := self.metadata.get("provider_params")) is None:
            return None
        return _PARAMS_ADAPTER.validate_python(raw)


class ExecutionResult(BaseModel):
    """Outcome of a single provider call, never raised but returned."""

    success: bool
    executed_amount: Decimal | None = None
    executed_price: Decimal | None = None
    fees: Decimal | None = None
    fee_currency: str | None = None
    provider_order_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] | None = None
    execution_time_ms: int = 0

    @classmethod
    def failure(
        cls: type[Self],
        error_code: ErrorCode,
        error_message: str,
        execution_time_ms: int = 0,
        raw_response: dict[str, Any] | None = None,
    ) -> Self:
        return cls(
            success=False,
            error_code=error_code.value,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
            raw_response=raw_response,
        )


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
