# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#
# Domain models of the order engine

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OrderType(StrEnum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class OrderStatus(StrEnum):
    PENDING_VERIFICATION = "pending_verification"
    PENDING_EXECUTION = "pending_execution"
    PENDING_TRIGGER = "pending_trigger"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
        OrderStatus.REJECTED,
    },
)
MUTABLE_STATES = frozenset(
    {OrderStatus.PENDING_VERIFICATION, OrderStatus.PENDING_EXECUTION},
)


class OrderPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self: Self) -> int:
        """Numeric rank, higher values are processed first."""
        return {"low": 0, "normal": 1, "high": 2, "critical": 3}[self.value]


class ExecutionProvider(StrEnum):
    BITSO = "bitso"
    PLAID = "plaid"
    BELVO = "belvo"
    MANUAL = "manual"


class AdvancedOrderType(StrEnum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    OCO = "oco"


class RecurrencePattern(StrEnum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class AuditSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode(StrEnum):
    NOT_SUPPORTED = "NOT_SUPPORTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHORIZATION_DECLINED = "AUTHORIZATION_DECLINED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    TRIGGER_EXECUTION_FAILED = "TRIGGER_EXECUTION_FAILED"
    SCHEDULED_EXECUTION_FAILED = "SCHEDULED_EXECUTION_FAILED"


# ==============================================================================
# Requests


class CreateOrderDTO(BaseModel):
    """Request to create a new order, also the input of the fingerprint."""

    model_config = ConfigDict(extra="forbid")

    idempotency_key: str = Field(min_length=1, max_length=255)
    account_id: str
    type: OrderType
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    provider: ExecutionProvider
    asset_symbol: str | None = None
    target_price: Decimal | None = Field(default=None, gt=0)
    to_account_id: str | None = None
    max_slippage: Decimal | None = Field(default=None, ge=0, le=100)
    priority: OrderPriority = OrderPriority.NORMAL
    dry_run: bool = False
    auto_execute: bool = False
    goal_id: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] | None = None

    # Advanced (conditional) orders
    advanced_type: AdvancedOrderType | None = None
    stop_price: Decimal | None = Field(default=None, gt=0)
    take_profit_price: Decimal | None = Field(default=None, gt=0)
    trailing_amount: Decimal | None = Field(default=None, gt=0)
    trailing_percent: Decimal | None = Field(default=None, gt=0, lt=100)
    linked_order_id: str | None = None

    # Scheduled and recurring orders
    scheduled_for: datetime | None = None
    recurrence: RecurrencePattern | None = None
    recurrence_day: int | None = Field(default=None, ge=1, le=31)
    recurrence_end: datetime | None = None
    max_executions: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_consistency(self: Self) -> Self:
        """Validate the cross-field rules of an order request."""
        if self.type == OrderType.TRANSFER and not self.to_account_id:
            raise ValueError("Transfer orders require a destination account")

        if self.advanced_type is not None:
            if not self.asset_symbol:
                raise ValueError("Advanced orders require an asset symbol")
            if self.advanced_type == AdvancedOrderType.STOP_LOSS and not self.stop_price:
                raise ValueError("Stop-loss orders require a stop price")
            if (
                self.advanced_type == AdvancedOrderType.TAKE_PROFIT
                and not self.take_profit_price
            ):
                raise ValueError("Take-profit orders require a take-profit price")
            if self.advanced_type == AdvancedOrderType.TRAILING_STOP and not (
                self.trailing_amount or self.trailing_percent
            ):
                raise ValueError(
                    "Trailing-stop orders require a trailing amount or percent",
                )
            if self.advanced_type == AdvancedOrderType.OCO and not (
                self.stop_price or self.take_profit_price
            ):
                raise ValueError(
                    "OCO orders require a stop price or a take-profit price",
                )
            if self.recurrence not in {None, RecurrencePattern.ONCE}:
                raise ValueError("Advanced orders cannot be recurring")

        if self.recurrence == RecurrencePattern.WEEKLY and (
            self.recurrence_day is not None and self.recurrence_day > 7
        ):
            raise ValueError("Weekly recurrence day must be within 1 (Mon) to 7 (Sun)")
        return self


class UpdateOrderDTO(BaseModel):
    """Partial update of a pending order."""

    model_config = ConfigDict(extra="forbid")

    amount: Decimal | None = Field(default=None, gt=0)
    target_price: Decimal | None = Field(default=None, gt=0)
    max_slippage: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    metadata: dict[str, Any] | None = None

    def changes(self: Self) -> dict[str, Any]:
        """
        Fields the caller set explicitly. A None for the amount or the metadata
        means "unchanged", as an order cannot exist without them.
        """
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key not in {"amount", "metadata"}
        }


class OrderFilterDTO(BaseModel):
    account_id: str | None = None
    status: OrderStatus | None = None
    goal_id: str | None = None
    sort_by: Literal["created_at", "amount", "priority", "status", "expires_at"] = (
        "created_at"
    )
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


# ==============================================================================
# Entities


class Order(BaseModel):
    """The central aggregate: one user intent and its lifecycle."""

    id: str
    space_id: str
    user_id: str
    account_id: str
    to_account_id: str | None = None
    idempotency_key: str

    type: OrderType
    status: OrderStatus
    priority: OrderPriority = OrderPriority.NORMAL
    amount: Decimal
    currency: str
    asset_symbol: str | None = None
    target_price: Decimal | None = None
    max_slippage: Decimal | None = None
    provider: ExecutionProvider
    dry_run: bool = False
    auto_execute: bool = False
    goal_id: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None

    advanced_type: AdvancedOrderType | None = None
    stop_price: Decimal | None = None
    take_profit_price: Decimal | None = None
    trailing_amount: Decimal | None = None
    trailing_percent: Decimal | None = None
    highest_price: Decimal | None = None
    linked_order_id: str | None = None
    last_price_check: datetime | None = None
    trigger_price: Decimal | None = None
    triggered_at: datetime | None = None

    scheduled_for: datetime | None = None
    recurrence: RecurrencePattern | None = None
    recurrence_day: int | None = None
    recurrence_end: datetime | None = None
    max_executions: int | None = None
    execution_count: int = 0
    next_execution_at: datetime | None = None

    executed_amount: Decimal | None = None
    executed_price: Decimal | None = None
    fees: Decimal | None = None
    fee_currency: str | None = None
    provider_order_id: str | None = None
    provider_response: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None

    otp_verified: bool = False
    otp_verified_at: datetime | None = None
    submitted_at: datetime
    verified_at: datetime | None = None
    executed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_advanced(self: Self) -> bool:
        return self.advanced_type is not None

    @property
    def is_recurring(self: Self) -> bool:
        return self.recurrence not in {None, RecurrencePattern.ONCE}

    @property
    def is_terminal(self: Self) -> bool:
        return self.status in TERMINAL_STATES


class ExecutionAttempt(BaseModel):
    """One recorded try at fulfilling an order, append-only."""

    id: str
    order_id: str
    attempt_number: int = Field(ge=1)
    status: OrderStatus
    provider: ExecutionProvider
    provider_order_id: str | None = None
    executed_amount: Decimal | None = None
    executed_price: Decimal | None = None
    fees: Decimal | None = None
    fee_currency: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    provider_request: dict[str, Any] | None = None
    provider_response: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class IdempotencyRecord(BaseModel):
    key: str
    user_id: str
    space_id: str
    request_hash: str
    order_id: str | None = None
    expires_at: datetime
    created_at: datetime


class OrderLimit(BaseModel):
    """Spending ceiling of a user, optionally narrowed to a space and type."""

    id: str
    user_id: str
    space_id: str | None = None
    order_type: OrderType | None = None
    limit_type: str  # e.g. "daily", "weekly", "monthly"
    currency: str
    max_amount: Decimal
    used_amount: Decimal = Decimal(0)
    reset_at: datetime
    enforced: bool = True
    notes: str | None = None

    @property
    def available(self: Self) -> Decimal:
        return self.max_amount - self.used_amount


class Account(BaseModel):
    """Source or destination account as seen by the engine."""

    id: str
    space_id: str
    name: str | None = None
    currency: str
    balance: Decimal = Decimal(0)


class OrderDetails(BaseModel):
    order: Order
    executions: list[ExecutionAttempt] = Field(default_factory=list)


class OrderPage(BaseModel):
    data: list[OrderDetails]
    total: int
    page: int
    limit: int


class AuditEvent(BaseModel):
    action: str
    resource: str = "transaction_order"
    resource_id: str
    user_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    severity: AuditSeverity = AuditSeverity.MEDIUM
    ip_address: str | None = None
    user_agent: str | None = None
