# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
The order orchestrator.

:class:`OrderService` is the only component writing order state transitions.
It creates, verifies, executes, updates and cancels orders and records every
execution attempt. The advanced order monitor and the scheduler only call
into it.
"""

import random
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from logging import getLogger
from typing import Any, Self

from order_engine.core.clock import Clock, utc_now
from order_engine.core.event_bus import EventBus
from order_engine.core.execution_queue import ExecutionQueue
from order_engine.core.recurrence import next_occurrence
from order_engine.core.state_machine import can_transition
from order_engine.exceptions import (
    BadRequestError,
    ConflictError,
    ExecutionFailedError,
    ForbiddenError,
    InvalidOrderStateError,
    InvalidOtpError,
    NotFoundError,
    OrderEngineError,
    OrderExpiredError,
    PriceUnavailableError,
    ProviderNotSupportedError,
)
from order_engine.infrastructure.database import ExecutionAttemptTable, OrderTable
from order_engine.interfaces import IAccountDirectory, IPriceFeed
from order_engine.models.configuration import EngineConfigDTO
from order_engine.models.order import (
    MUTABLE_STATES,
    AdvancedOrderType,
    AuditSeverity,
    CreateOrderDTO,
    ErrorCode,
    ExecutionAttempt,
    Order,
    OrderDetails,
    OrderFilterDTO,
    OrderPage,
    OrderStatus,
    OrderType,
    UpdateOrderDTO,
)
from order_engine.models.provider import ExecutionOrder, ExecutionResult
from order_engine.services.audit_service import AuditService
from order_engine.services.idempotency_service import IdempotencyService
from order_engine.services.limit_service import LimitService
from order_engine.services.provider_registry import ProviderRegistry
from order_engine.services.step_up_service import StepUpService

LOG = getLogger(__name__)


class OrderService:
    """Owns the order state machine and the execution of orders."""

    def __init__(  # noqa: PLR0913
        self: Self,
        *,
        order_table: OrderTable,
        attempt_table: ExecutionAttemptTable,
        idempotency: IdempotencyService,
        limits: LimitService,
        step_up: StepUpService,
        registry: ProviderRegistry,
        accounts: IAccountDirectory,
        audit: AuditService,
        event_bus: EventBus,
        config: EngineConfigDTO,
        execution_queue: ExecutionQueue | None = None,
        price_feed: IPriceFeed | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.__orders = order_table
        self.__attempts = attempt_table
        self.__idempotency = idempotency
        self.__limits = limits
        self.__step_up = step_up
        self.__registry = registry
        self.__accounts = accounts
        self.__audit = audit
        self.__event_bus = event_bus
        self.__config = config
        self.__queue = execution_queue
        self.__price_feed = price_feed
        self.__clock = clock
        self.__rng = rng or random.Random()  # noqa: S311

    # == Creation ==============================================================
    def create_order(  # noqa: PLR0913
        self: Self,
        space_id: str,
        user_id: str,
        request: CreateOrderDTO,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Order:
        """
        Create an order after passing the idempotency gate, the ownership
        checks, the limit and balance validation and the step-up decision.

        A repeated request with a known idempotency key returns the order of
        the first request without side effects.
        """
        if (existing := self.__idempotency.check(request, user_id)) is not None:
            LOG.info("Returning order %s for a repeated request", existing.id)
            return existing

        self.__check_accounts(space_id, request)
        self.__limits.check_limits(
            user_id,
            space_id,
            request.type,
            request.amount,
            request.currency,
        )
        self.__limits.validate_balance(request.account_id, request.type, request.amount)
        requires_step_up = self.__step_up.requires_step_up(
            user_id,
            request.type,
            request.amount,
        )

        if not self.__idempotency.claim(request, user_id, space_id):
            # Another request with the same key won the race.
            if (existing := self.__idempotency.check(request, user_id)) is not None:
                return existing
            raise ConflictError("Idempotency key could not be claimed")

        order = self.__build_order(
            space_id,
            user_id,
            request,
            requires_step_up=requires_step_up,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.__orders.add(order)
        except Exception:
            self.__idempotency.release(request.idempotency_key)
            raise
        self.__idempotency.store(request.idempotency_key, order.id)

        LOG.info("Created %s order %s in %s", order.type, order.id, order.status)
        self.__audit.log(
            "order_created",
            order.id,
            user_id,
            severity=(
                AuditSeverity.HIGH
                if order.amount >= self.__step_up.high_value_threshold
                else AuditSeverity.MEDIUM
            ),
            metadata={
                "type": order.type,
                "amount": str(order.amount),
                "currency": order.currency,
                "provider": order.provider,
                "requires_otp": requires_step_up,
                "dry_run": order.dry_run,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.__publish("order_created", order)

        if order.status == OrderStatus.PENDING_EXECUTION and order.auto_execute:
            self.__dispatch(order)
        return order

    def create_oco_pair(  # noqa: PLR0913
        self: Self,
        space_id: str,
        user_id: str,
        first: CreateOrderDTO,
        second: CreateOrderDTO,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[Order, Order]:
        """Create two OCO orders that cancel each other when one triggers."""
        for leg in (first, second):
            if leg.advanced_type != AdvancedOrderType.OCO:
                raise BadRequestError("Both legs of an OCO pair must be OCO orders")
        if first.idempotency_key == second.idempotency_key:
            raise BadRequestError("Both legs of an OCO pair need their own key")

        orders = [
            self.create_order(
                space_id,
                user_id,
                leg,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            for leg in (first, second)
        ]
        self.__orders.update(orders[0].id, linked_order_id=orders[1].id)
        self.__orders.update(orders[1].id, linked_order_id=orders[0].id)
        LOG.info("Linked OCO orders %s and %s", orders[0].id, orders[1].id)
        return self.__get(orders[0].id), self.__get(orders[1].id)

    def __check_accounts(self: Self, space_id: str, request: CreateOrderDTO) -> None:
        if self.__accounts.get_account(request.account_id, space_id) is None:
            raise ForbiddenError("Account not found or access denied")
        if request.to_account_id and (
            self.__accounts.get_account(request.to_account_id, space_id) is None
        ):
            raise ForbiddenError("Destination account not found or access denied")

    def __build_order(  # noqa: PLR0913
        self: Self,
        space_id: str,
        user_id: str,
        request: CreateOrderDTO,
        *,
        requires_step_up: bool,
        ip_address: str | None,
        user_agent: str | None,
    ) -> Order:
        now = self.__clock()
        fields = request.model_dump(exclude={"metadata"})

        if requires_step_up:
            status = OrderStatus.PENDING_VERIFICATION
        elif request.advanced_type is not None:
            status = OrderStatus.PENDING_TRIGGER
        else:
            status = OrderStatus.PENDING_EXECUTION

        order = Order(
            **fields,
            id=str(uuid.uuid4()),
            space_id=space_id,
            user_id=user_id,
            status=status,
            metadata=request.metadata or {},
            ip_address=ip_address,
            user_agent=user_agent,
            submitted_at=now,
            created_at=now,
            updated_at=now,
        )
        if order.is_recurring:
            order.next_execution_at = request.scheduled_for or (
                next_occurrence(order.recurrence, now, order.recurrence_day)  # type: ignore[arg-type]
                if order.recurrence_day
                else now
            )

        first_run = order.next_execution_at or order.scheduled_for or now
        order.expires_at = max(first_run, now) + timedelta(
            seconds=self.__config.order_ttl_seconds,
        )
        return order

    # == Verification ==========================================================
    def verify_order(  # noqa: PLR0913
        self: Self,
        order_id: str,
        user_id: str,
        otp_code: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Order:
        """
        Confirm an order with a one-time code. A rejected code leaves the order
        unchanged and is audited with high severity.
        """
        order = self.__get(order_id, user_id)
        if order.status != OrderStatus.PENDING_VERIFICATION:
            raise InvalidOrderStateError("Order is not pending verification")

        if not self.__step_up.is_well_formed(otp_code):
            self.__audit_failed_verification(order, "malformed", ip_address, user_agent)
            raise InvalidOtpError("Invalid OTP code format")
        if not self.__step_up.verify(user_id, otp_code):
            self.__audit_failed_verification(order, "rejected", ip_address, user_agent)
            raise InvalidOtpError("Invalid OTP code")

        now = self.__clock()
        new_status = (
            OrderStatus.PENDING_TRIGGER
            if order.is_advanced
            else OrderStatus.PENDING_EXECUTION
        )
        if not self.__orders.transition(
            order.id,
            OrderStatus.PENDING_VERIFICATION,
            new_status,
            otp_verified=True,
            otp_verified_at=now,
            verified_at=now,
        ):
            raise InvalidOrderStateError("Order is not pending verification")

        self.__audit.log(
            "order_verified",
            order.id,
            user_id,
            severity=AuditSeverity.HIGH,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        order = self.__get(order.id)
        if order.status == OrderStatus.PENDING_EXECUTION and order.auto_execute:
            self.__dispatch(order)
        return order

    def __audit_failed_verification(
        self: Self,
        order: Order,
        reason: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        LOG.warning("Verification of order %s failed (%s)", order.id, reason)
        self.__audit.log(
            "order_verification_failed",
            order.id,
            order.user_id,
            severity=AuditSeverity.HIGH,
            metadata={"reason": reason},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # == Execution =============================================================
    def execute_order(  # noqa: PLR0913
        self: Self,
        order_id: str,
        user_id: str,
        *,
        rearm_at: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Order:
        """
        Execute an order that is pending execution.

        The move to ``executing`` is a conditional update, so concurrent calls
        for the same order execute it at most once. A successful run completes
        the order, or re-arms it for ``rearm_at`` if given. A failed run is
        persisted before :class:`ExecutionFailedError` is raised.
        """
        order = self.__get(order_id, user_id)
        if order.status == OrderStatus.PENDING_TRIGGER:
            raise InvalidOrderStateError(
                "Advanced orders must be triggered before execution",
            )
        if order.status != OrderStatus.PENDING_EXECUTION:
            raise InvalidOrderStateError(
                f"Order cannot be executed in status {order.status}",
            )

        now = self.__clock()
        if order.expires_at is not None and order.expires_at <= now:
            if self.__orders.transition(
                order.id,
                OrderStatus.PENDING_EXECUTION,
                OrderStatus.REJECTED,
                error_message="Order expired before execution",
            ):
                self.__audit.log(
                    "order_expired",
                    order.id,
                    order.user_id,
                    metadata={"expires_at": order.expires_at.isoformat()},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            raise OrderExpiredError("Order has expired")

        if not self.__orders.transition(
            order.id,
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.EXECUTING,
            executed_at=now,
        ):
            raise InvalidOrderStateError("Order is already being executed")

        execution_order = self.__to_execution_order(order)
        attempt = self.__attempts.add(
            ExecutionAttempt(
                id=str(uuid.uuid4()),
                order_id=order.id,
                attempt_number=1,
                status=OrderStatus.EXECUTING,
                provider=order.provider,
                provider_request=execution_order.model_dump(mode="json"),
                started_at=now,
            ),
        )
        LOG.info(
            "Executing order %s (attempt %d, %s)",
            order.id,
            attempt.attempt_number,
            "dry run" if order.dry_run else order.provider,
        )

        try:
            if order.dry_run:
                result = self.__simulate(order)
            else:
                result = self.__run_provider(execution_order)

            if result.success:
                return self.__record_success(
                    order,
                    attempt,
                    result,
                    rearm_at,
                    ip_address,
                    user_agent,
                )
            self.__record_failure(order, attempt, result, ip_address, user_agent)
        except Exception as exc:
            self.__record_unexpected(order, attempt, exc)
            raise

        raise ExecutionFailedError(
            result.error_message or "Order execution failed",
            error_code=result.error_code,
        )

    def __to_execution_order(self: Self, order: Order) -> ExecutionOrder:
        return ExecutionOrder(
            id=order.id,
            type=order.type,
            amount=order.amount,
            currency=order.currency,
            provider=order.provider,
            account_id=order.account_id,
            to_account_id=order.to_account_id,
            asset_symbol=order.asset_symbol,
            target_price=order.target_price,
            max_slippage=order.max_slippage,
            metadata=order.metadata,
        )

    def __simulate(self: Self, order: Order) -> ExecutionResult:
        """Simulate a fill without calling any provider."""
        LOG.info("Simulating execution of order %s", order.id)
        now = self.__clock()
        slippage = Decimal(
            str(round(self.__rng.uniform(0, float(self.__config.dry_run_max_slippage)), 6)),
        )

        if order.target_price is not None:
            price = order.target_price
        else:
            price = (self.__market_price(order) or order.amount) * (1 + slippage)

        return ExecutionResult(
            success=True,
            executed_amount=order.amount,
            executed_price=price,
            fees=order.amount * self.__config.dry_run_fee_rate,
            fee_currency=order.currency,
            provider_order_id=f"dryrun_{int(now.timestamp() * 1000)}",
            raw_response={
                "mode": "dry_run",
                "simulated_at": now.isoformat(),
                "slippage": str(slippage),
            },
        )

    def __market_price(self: Self, order: Order) -> Decimal | None:
        if self.__price_feed is None or not order.asset_symbol:
            return None
        try:
            return self.__price_feed.get_price(order.asset_symbol, order.currency)
        except PriceUnavailableError:
            return None

    def __run_provider(self: Self, order: ExecutionOrder) -> ExecutionResult:
        """Route an order to its provider, normalizing every failure."""
        try:
            provider = self.__registry.get(order.provider)
        except ProviderNotSupportedError as exc:
            return ExecutionResult.failure(ErrorCode.NOT_SUPPORTED, str(exc))

        validation = provider.validate_order(order)
        if not validation.valid:
            return ExecutionResult.failure(
                ErrorCode.VALIDATION_ERROR,
                ", ".join(validation.errors),
            )

        execute = {
            OrderType.BUY: provider.execute_buy,
            OrderType.SELL: provider.execute_sell,
            OrderType.TRANSFER: provider.execute_transfer,
            OrderType.DEPOSIT: provider.execute_deposit,
            OrderType.WITHDRAW: provider.execute_withdraw,
        }[order.type]
        try:
            return execute(order)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOG.exception("Provider %s raised while executing %s", order.provider, order.id)
            return ExecutionResult.failure(ErrorCode.PROVIDER_ERROR, str(exc))

    def __record_success(  # noqa: PLR0913
        self: Self,
        order: Order,
        attempt: ExecutionAttempt,
        result: ExecutionResult,
        rearm_at: datetime | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> Order:
        now = self.__clock()
        outcome = {
            "executed_amount": result.executed_amount,
            "executed_price": result.executed_price,
            "fees": result.fees,
            "fee_currency": result.fee_currency,
            "provider_order_id": result.provider_order_id,
            "provider_response": result.raw_response,
        }
        fields: dict[str, Any] = outcome | {
            "execution_count": order.execution_count + 1,
            "error_code": None,
            "error_message": None,
        }
        if rearm_at is None:
            target = OrderStatus.COMPLETED
            fields["completed_at"] = now
        else:
            target = OrderStatus.PENDING_EXECUTION
            fields["next_execution_at"] = rearm_at
            fields["expires_at"] = rearm_at + timedelta(
                seconds=self.__config.order_ttl_seconds,
            )

        if not self.__orders.transition(order.id, OrderStatus.EXECUTING, target, **fields):
            raise InvalidOrderStateError(f"Order {order.id} left the executing state")
        self.__attempts.update(
            attempt.id,
            status=OrderStatus.COMPLETED,
            completed_at=now,
            duration_ms=self.__duration_ms(attempt, now),
            **outcome,
        )
        self.__limits.record_usage(order, result.executed_amount or order.amount)

        LOG.info("Order %s executed successfully", order.id)
        self.__audit.log(
            "order_executed",
            order.id,
            order.user_id,
            severity=AuditSeverity.HIGH,
            metadata={
                "type": order.type,
                "amount": str(result.executed_amount),
                "price": str(result.executed_price),
                "fees": str(result.fees),
                "provider": order.provider,
                "dry_run": order.dry_run,
                "attempt": attempt.attempt_number,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        order = self.__get(order.id)
        self.__publish("order_executed", order)
        return order

    def __record_failure(  # noqa: PLR0913
        self: Self,
        order: Order,
        attempt: ExecutionAttempt,
        result: ExecutionResult,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        now = self.__clock()
        if not self.__orders.transition(
            order.id,
            OrderStatus.EXECUTING,
            OrderStatus.FAILED,
            error_code=result.error_code,
            error_message=result.error_message,
            provider_response=result.raw_response,
        ):
            raise InvalidOrderStateError(f"Order {order.id} left the executing state")
        self.__attempts.update(
            attempt.id,
            status=OrderStatus.FAILED,
            error_code=result.error_code,
            error_message=result.error_message,
            provider_response=result.raw_response,
            completed_at=now,
            duration_ms=self.__duration_ms(attempt, now),
        )

        LOG.error(
            "Order %s failed: %s %s",
            order.id,
            result.error_code,
            result.error_message,
        )
        self.__audit.log(
            "order_execution_failed",
            order.id,
            order.user_id,
            severity=AuditSeverity.HIGH,
            metadata={
                "error_code": result.error_code,
                "error_message": result.error_message,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.__publish("order_failed", self.__get(order.id))

    def __record_unexpected(
        self: Self,
        order: Order,
        attempt: ExecutionAttempt,
        exc: Exception,
    ) -> None:
        """Persist an unexpected failure so that no order stays executing."""
        LOG.error("Order %s execution failed unexpectedly", order.id, exc_info=exc)
        now = self.__clock()
        if self.__orders.transition(
            order.id,
            OrderStatus.EXECUTING,
            OrderStatus.FAILED,
            error_code=ErrorCode.UNEXPECTED_ERROR,
            error_message=str(exc),
        ):
            self.__attempts.update(
                attempt.id,
                status=OrderStatus.FAILED,
                error_code=ErrorCode.UNEXPECTED_ERROR,
                error_message=str(exc),
                completed_at=now,
                duration_ms=self.__duration_ms(attempt, now),
            )
            self.__publish("order_failed", self.__get(order.id))

    @staticmethod
    def __duration_ms(attempt: ExecutionAttempt, now: datetime) -> int:
        return max(int((now - attempt.started_at).total_seconds() * 1000), 0)

    def __dispatch(self: Self, order: Order) -> None:
        """Hand an order to the background workers without blocking."""
        if order.scheduled_for is not None or order.is_recurring:
            LOG.debug("Order %s is left to the scheduler", order.id)
            return
        if self.__queue is None:
            LOG.warning("No execution queue configured, order %s stays pending", order.id)
            return
        if not self.__queue.submit(self.execute_in_background, order.id, order.user_id):
            LOG.warning("Order %s is left to the scheduler", order.id)
            self.__orders.update(
                order.id,
                expected=order.status,
                scheduled_for=self.__clock(),
            )

    def execute_in_background(self: Self, order_id: str, user_id: str) -> None:
        """Execute an order, logging instead of raising engine errors."""
        try:
            self.execute_order(order_id, user_id)
        except OrderEngineError as exc:
            LOG.warning("Background execution of order %s: %s", order_id, exc)

    # == Monitor and scheduler hooks ===========================================
    def trigger_order(
        self: Self,
        order_id: str,
        price: Decimal,
        reason: str,
    ) -> Order | None:
        """
        Convert a resting advanced order into an executable one. Returns None
        if the order is not pending a trigger anymore.
        """
        order = self.__get(order_id)
        note = f"Triggered: {reason} at price {price}"
        now = self.__clock()
        if not self.__orders.transition(
            order.id,
            OrderStatus.PENDING_TRIGGER,
            OrderStatus.PENDING_EXECUTION,
            trigger_price=price,
            triggered_at=now,
            notes=f"{order.notes}\n\n{note}" if order.notes else note,
        ):
            return None

        LOG.info("Order %s triggered: %s", order.id, reason)
        self.__audit.log(
            "order_triggered",
            order.id,
            order.user_id,
            severity=AuditSeverity.HIGH,
            metadata={"reason": reason, "price": str(price)},
        )
        self.__event_bus.publish(
            "order_triggered",
            {"order_id": order.id, "reason": reason, "price": str(price)},
        )

        if order.advanced_type == AdvancedOrderType.OCO and order.linked_order_id:
            self.cancel_linked_order(order.linked_order_id, order.id)
        return self.__get(order.id)

    def cancel_linked_order(self: Self, order_id: str, cancelled_by: str) -> None:
        """Cancel the sibling of a triggered OCO order."""
        sibling = self.__orders.get(order_id)
        if sibling is None or not can_transition(sibling.status, OrderStatus.CANCELLED):
            LOG.warning("Linked order %s cannot be cancelled", order_id)
            return
        if self.__orders.transition(
            sibling.id,
            sibling.status,
            OrderStatus.CANCELLED,
            cancelled_at=self.__clock(),
            notes=f"Cancelled by OCO order {cancelled_by}",
        ):
            self.__audit.log(
                "order_cancelled",
                sibling.id,
                sibling.user_id,
                metadata={"cancelled_by": cancelled_by},
            )
            self.__publish("order_cancelled", self.__get(sibling.id))

    def fail_order(self: Self, order_id: str, error_code: ErrorCode, message: str) -> None:
        """
        Mark an order failed on behalf of a periodic driver. An order that
        already failed keeps its state and receives the driver's error code.
        Orders in any other state than pending are left untouched.
        """
        if (order := self.__orders.get(order_id)) is None:
            return
        if order.status == OrderStatus.FAILED:
            self.__orders.update(order.id, error_code=error_code, error_message=message)
            return
        if order.status not in {
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.PENDING_TRIGGER,
        }:
            LOG.warning(
                "Order %s in status %s cannot be marked as failed",
                order.id,
                order.status,
            )
            return
        if self.__orders.transition(
            order.id,
            order.status,
            OrderStatus.FAILED,
            error_code=error_code,
            error_message=message,
        ):
            self.__audit.log(
                "order_execution_failed",
                order.id,
                order.user_id,
                severity=AuditSeverity.HIGH,
                metadata={"error_code": error_code, "error_message": message},
            )
            self.__publish("order_failed", self.__get(order.id))

    # == Cancellation and updates ==============================================
    def cancel_order(
        self: Self,
        order_id: str,
        user_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        recurrence_end: datetime | None = None,
    ) -> Order:
        """Cancel an order that is pending verification or execution."""
        order = self.__get(order_id, user_id)
        if order.status not in MUTABLE_STATES:
            raise InvalidOrderStateError(f"Cannot cancel order in status {order.status}")

        fields: dict[str, Any] = {"cancelled_at": self.__clock()}
        if recurrence_end is not None:
            fields["recurrence_end"] = recurrence_end
        if not self.__orders.transition(
            order.id,
            order.status,
            OrderStatus.CANCELLED,
            **fields,
        ):
            raise InvalidOrderStateError("Order changed its status, cannot cancel")

        self.__audit.log(
            "order_cancelled",
            order.id,
            user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        order = self.__get(order.id)
        self.__publish("order_cancelled", order)
        return order

    def update_order(  # noqa: PLR0913
        self: Self,
        order_id: str,
        user_id: str,
        changes: UpdateOrderDTO,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Order:
        """Change an order that is pending verification or execution."""
        order = self.__get(order_id, user_id)
        if order.status not in MUTABLE_STATES:
            raise InvalidOrderStateError(f"Cannot update order in status {order.status}")

        if not (updates := changes.changes()):
            return order

        if (amount := updates.get("amount")) is not None and amount > order.amount:
            self.__limits.check_limits(
                user_id,
                order.space_id,
                order.type,
                amount,
                order.currency,
            )
            self.__limits.validate_balance(order.account_id, order.type, amount)
            if (
                order.status == OrderStatus.PENDING_EXECUTION
                and not order.otp_verified
                and self.__step_up.requires_step_up(user_id, order.type, amount)
            ):
                raise BadRequestError(
                    "The new amount requires step-up verification, create a new order",
                )

        if not self.__orders.update(order.id, expected=order.status, **updates):
            raise InvalidOrderStateError("Order changed its status, cannot update")

        self.__audit.log(
            "order_updated",
            order.id,
            user_id,
            metadata={"changes": {key: str(value) for key, value in updates.items()}},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return self.__get(order.id)

    # == Reads =================================================================
    def find_order(self: Self, order_id: str, user_id: str) -> OrderDetails:
        """Return an order with all of its execution attempts."""
        order = self.__get(order_id, user_id)
        return OrderDetails(order=order, executions=self.__attempts.get_for_order(order.id))

    def list_orders(self: Self, space_id: str, filters: OrderFilterDTO) -> OrderPage:
        """Return one page of the orders of a space with their latest attempt."""
        query: dict[str, Any] = {"space_id": space_id}
        for key in ("account_id", "status", "goal_id"):
            if (value := getattr(filters, key)) is not None:
                query[key] = value

        orders = self.__orders.get_orders(
            filters=query,
            order_by=(filters.sort_by, filters.sort_order),
            limit=filters.limit,
            offset=(filters.page - 1) * filters.limit,
        )
        data = []
        for order in orders:
            latest = self.__attempts.get_latest(order.id)
            data.append(OrderDetails(order=order, executions=[latest] if latest else []))
        return OrderPage(
            data=data,
            total=self.__orders.count(query),
            page=filters.page,
            limit=filters.limit,
        )

    def get_order(self: Self, order_id: str) -> Order:
        return self.__get(order_id)

    def __get(self: Self, order_id: str, user_id: str | None = None) -> Order:
        if (order := self.__orders.get(order_id, user_id)) is None:
            raise NotFoundError("Order not found")
        return order

    def __publish(self: Self, event_type: str, order: Order) -> None:
        self.__event_bus.publish(
            event_type,
            {
                "order_id": order.id,
                "status": order.status,
                "type": order.type,
                "amount": str(order.amount),
                "currency": order.currency,
                "executed_amount": order.executed_amount,
                "error_code": order.error_code,
                "error_message": order.error_message,
            },
        )
