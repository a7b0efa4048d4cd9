# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import asyncio
import signal
import sys
from datetime import timedelta
from importlib.metadata import version
from logging import getLogger
from typing import Self

from order_engine.adapters.accounts import DatabaseAccountDirectory
from order_engine.adapters.audit import LoggingAuditSink
from order_engine.adapters.price_feed import ProviderPriceFeed, StaticPriceFeed
from order_engine.adapters.providers.bitso import BitsoExecutionProvider
from order_engine.adapters.providers.ledger import LedgerTransferProvider
from order_engine.adapters.step_up import TOTPStepUpOracle
from order_engine.core.clock import Clock, utc_now
from order_engine.core.event_bus import EventBus
from order_engine.core.execution_queue import ExecutionQueue
from order_engine.core.state_machine import StateMachine, States
from order_engine.core.ticker import run_periodically
from order_engine.exceptions import EngineStateError
from order_engine.infrastructure.database import (
    AccountTable,
    DBConnect,
    ExecutionAttemptTable,
    IdempotencyKeyTable,
    OrderLimitTable,
    OrderTable,
    UserProfileTable,
)
from order_engine.models.configuration import (
    BitsoConfigDTO,
    DBConfigDTO,
    EngineConfigDTO,
    NotificationConfigDTO,
)
from order_engine.models.order import ExecutionProvider
from order_engine.services.audit_service import AuditService
from order_engine.services.idempotency_service import IdempotencyService
from order_engine.services.limit_service import LimitService
from order_engine.services.notification_service import NotificationService
from order_engine.services.order_service import OrderService
from order_engine.services.price_monitor_service import PriceMonitorService
from order_engine.services.provider_registry import ProviderRegistry
from order_engine.services.scheduling_service import SchedulingService
from order_engine.services.step_up_service import StepUpService

LOG = getLogger(__name__)


class OrderEngine:
    """
    Wires the order engine's components and runs the advanced order monitor
    and the order scheduler until a shutdown is requested.
    """

    def __init__(  # noqa: PLR0913
        self: Self,
        engine_config: EngineConfigDTO,
        db_config: DBConfigDTO,
        notification_config: NotificationConfigDTO | None = None,
        bitso_config: BitsoConfigDTO | None = None,
        clock: Clock = utc_now,
    ) -> None:
        LOG.info("Initiate the order engine (v%s)", version("order-engine"))
        LOG.debug("Config: %s", engine_config)

        self.__config = engine_config
        self.__event_bus = EventBus()
        self.__state_machine = StateMachine()

        # == Infrastructure components =========================================
        ##
        self.__db = DBConnect(db_config)
        self.__order_table = OrderTable(self.__db, clock)
        self.__attempt_table = ExecutionAttemptTable(self.__db)
        self.__idempotency_table = IdempotencyKeyTable(self.__db)
        self.__limit_table = OrderLimitTable(self.__db)
        self.__account_table = AccountTable(self.__db)
        self.__user_profile_table = UserProfileTable(self.__db)
        self.__db.init_db()

        self.__accounts = DatabaseAccountDirectory(
            self.__account_table,
            self.__user_profile_table,
        )
        self.__registry = ProviderRegistry(
            {
                ExecutionProvider.BITSO: BitsoExecutionProvider(
                    bitso_config or BitsoConfigDTO(),
                ),
                ExecutionProvider.PLAID: LedgerTransferProvider(
                    ExecutionProvider.PLAID,
                    self.__accounts,
                    frozenset({"USD"}),
                ),
                ExecutionProvider.BELVO: LedgerTransferProvider(
                    ExecutionProvider.BELVO,
                    self.__accounts,
                    frozenset({"MXN", "COP", "BRL"}),
                ),
            },
        )
        self.__price_feed = ProviderPriceFeed(self.__registry, StaticPriceFeed())
        self.__execution_queue = ExecutionQueue(
            workers=engine_config.execution_workers,
            maxsize=engine_config.execution_queue_size,
        )

        # == Application services ==============================================
        ##
        self.__notification_service = NotificationService(
            notification_config or NotificationConfigDTO(),
        )
        self.__notification_service.subscribe(self.__event_bus)

        self.__order_service = OrderService(
            order_table=self.__order_table,
            attempt_table=self.__attempt_table,
            idempotency=IdempotencyService(
                self.__idempotency_table,
                self.__order_table,
                ttl=timedelta(seconds=engine_config.idempotency_ttl_seconds),
                clock=clock,
            ),
            limits=LimitService(self.__limit_table, self.__accounts, clock),
            step_up=StepUpService(
                self.__accounts,
                TOTPStepUpOracle(),
                engine_config.high_value_threshold,
            ),
            registry=self.__registry,
            accounts=self.__accounts,
            audit=AuditService(LoggingAuditSink()),
            event_bus=self.__event_bus,
            config=engine_config,
            execution_queue=self.__execution_queue,
            price_feed=self.__price_feed,
            clock=clock,
        )
        self.__monitor = PriceMonitorService(
            self.__order_table,
            self.__order_service,
            self.__price_feed,
            cache_ttl=timedelta(seconds=engine_config.price_cache_ttl_seconds),
            clock=clock,
        )
        self.__scheduler = SchedulingService(
            self.__order_table,
            self.__order_service,
            clock,
        )

    # == Components ============================================================
    @property
    def orders(self: Self) -> OrderService:
        return self.__order_service

    @property
    def monitor(self: Self) -> PriceMonitorService:
        return self.__monitor

    @property
    def scheduler(self: Self) -> SchedulingService:
        return self.__scheduler

    @property
    def registry(self: Self) -> ProviderRegistry:
        return self.__registry

    @property
    def accounts(self: Self) -> AccountTable:
        return self.__account_table

    @property
    def limits(self: Self) -> OrderLimitTable:
        return self.__limit_table

    @property
    def user_profiles(self: Self) -> UserProfileTable:
        return self.__user_profile_table

    @property
    def event_bus(self: Self) -> EventBus:
        return self.__event_bus

    @property
    def state_machine(self: Self) -> StateMachine:
        return self.__state_machine

    @property
    def execution_queue(self: Self) -> ExecutionQueue:
        return self.__execution_queue

    # == Daemon ================================================================
    async def run(self: Self) -> None:
        """Start the periodic drivers and wait for a shutdown"""
        if self.__state_machine.state != States.INITIALIZING:
            raise EngineStateError(
                f"The order engine cannot be started in state {self.__state_machine.state}",
            )
        LOG.info("Starting the order engine...")

        # ======================================================================
        # Handle the shutdown signals
        #
        # A controlled shutdown is initiated by sending a SIGINT or SIGTERM
        # signal to the process. Running cycles finish their current order
        # before the drivers stop.
        ##
        def _signal_handler() -> None:
            LOG.warning("Initiate a controlled shutdown of the order engine...")
            self.__state_machine.transition_to(States.SHUTDOWN_REQUESTED)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        for name, healthy in self.__registry.health().items():
            LOG.info("Provider %s is %s", name, "healthy" if healthy else "unavailable")

        self.__execution_queue.start()
        self.__state_machine.transition_to(States.RUNNING)

        tasks = [
            asyncio.create_task(
                run_periodically(
                    "advanced order monitor",
                    self.__config.monitor_interval,
                    self.__monitor.monitor_prices,
                    self.__state_machine,
                ),
            ),
            asyncio.create_task(
                run_periodically(
                    "order scheduler",
                    self.__config.scheduler_interval,
                    self.__scheduler.process_scheduled_orders,
                    self.__state_machine,
                ),
            ),
        ]
        try:
            # Wait for shutdown
            await asyncio.wait(
                [
                    *tasks,
                    asyncio.create_task(self.__state_machine.wait_for_shutdown()),
                ],
                return_when=asyncio.FIRST_COMPLETED,
            )
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOG.error("The order engine was interrupted.", exc_info=exc)
            self.__state_machine.transition_to(States.ERROR)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.__state_machine.state == States.SHUTDOWN_REQUESTED:
            # The engine was interrupted by a signal.
            self.terminate("The order engine was shut down successfully!", exception=False)
        else:
            self.terminate("The order engine was shut down due to an error!")

    def terminate(self: Self, reason: str = "", *, exception: bool = True) -> None:
        """
        Handle the termination of the order engine.

        1. Drains the execution queue.
        2. Stops the connection to the database.
        3. Notifies the user about the termination.
        4. Exits the process.
        """
        self.__execution_queue.stop()
        self.__db.close()

        self.__event_bus.publish(
            "notification",
            {"message": f"Order engine terminated.\nReason: {reason}"},
        )
        sys.exit(exception)

    def close(self: Self) -> None:
        """Release the resources without exiting the process."""
        self.__execution_queue.stop()
        self.__db.close()
