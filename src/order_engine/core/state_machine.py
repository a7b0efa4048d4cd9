# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
State machines of the order engine.

:class:`StateMachine` tracks the lifecycle of the engine daemon itself while
``ORDER_TRANSITIONS`` describes the only permitted moves of an order between
its :class:`~order_engine.models.order.OrderStatus` values.
"""

import asyncio
from enum import Enum, auto
from typing import Any, Callable, Self

from order_engine.exceptions import InvalidOrderStateError
from order_engine.models.order import OrderStatus


class States(Enum):
    """Represents the lifecycle states of the engine"""

    INITIALIZING = auto()
    RUNNING = auto()
    SHUTDOWN_REQUESTED = auto()
    ERROR = auto()


class StateMachine:
    """Manages the lifecycle state of the engine daemon"""

    def __init__(self: Self, initial_state: States = States.INITIALIZING) -> None:
        self._state: States = initial_state
        self._facts: dict[str, Any] = {}
        self._transitions = self._define_transitions()
        self._callbacks: dict[States, list[Callable]] = {}

    def _define_transitions(self: Self) -> dict[States, list[States]]:
        return {
            States.INITIALIZING: [
                States.RUNNING,
                States.SHUTDOWN_REQUESTED,
                States.ERROR,
            ],
            States.RUNNING: [States.ERROR, States.SHUTDOWN_REQUESTED],
            States.ERROR: [States.RUNNING, States.SHUTDOWN_REQUESTED],
            States.SHUTDOWN_REQUESTED: [],
        }

    def transition_to(self: Self, new_state: States) -> None:
        """Attempt to transition to a new state"""
        if new_state == self._state:
            return

        if new_state not in self._transitions.get(self._state, []):
            raise ValueError(
                f"Invalid state transition from {self._state} to {new_state}",
            )

        self._state = new_state

        if new_state in (States.SHUTDOWN_REQUESTED, States.ERROR) and hasattr(
            self,
            "_shutdown_event",
        ):
            self._shutdown_event.set()

        for callback in self._callbacks.get(new_state, []):
            callback()

    @property
    def state(self: Self) -> States:
        return self._state

    @property
    def facts(self: Self) -> dict[str, Any]:
        return self._facts

    @facts.setter
    def facts(self: Self, new_facts: dict[str, Any]) -> None:
        self._facts |= new_facts

    def register_callback(
        self: Self,
        state: States,
        callback: Callable,
    ) -> None:
        """Register a callback to be called when entering a state"""
        if state not in self._callbacks:
            self._callbacks[state] = []
        self._callbacks[state].append(callback)

    async def wait_for_shutdown(self: Self) -> None:
        """Wait until the engine is requested to shut down or failed"""
        if not hasattr(self, "_shutdown_event"):
            self._shutdown_event = asyncio.Event()

        if self._state in (States.SHUTDOWN_REQUESTED, States.ERROR):
            return

        await self._shutdown_event.wait()


# ==============================================================================
# Order lifecycle

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_VERIFICATION: frozenset(
        {
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.PENDING_TRIGGER,
            OrderStatus.CANCELLED,
        },
    ),
    OrderStatus.PENDING_EXECUTION: frozenset(
        {
            OrderStatus.EXECUTING,
            OrderStatus.REJECTED,
            OrderStatus.CANCELLED,
            OrderStatus.FAILED,
        },
    ),
    OrderStatus.PENDING_TRIGGER: frozenset(
        {
            OrderStatus.PENDING_EXECUTION,
            OrderStatus.CANCELLED,
            OrderStatus.FAILED,
        },
    ),
    # Recurring orders are re-armed from executing to pending_execution.
    OrderStatus.EXECUTING: frozenset(
        {
            OrderStatus.COMPLETED,
            OrderStatus.FAILED,
            OrderStatus.PENDING_EXECUTION,
        },
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Return True if an order may move from ``current`` to ``new``."""
    return new in ORDER_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, new: OrderStatus) -> None:
    """Raise :class:`InvalidOrderStateError` for a move outside the graph."""
    if not can_transition(current, new):
        raise InvalidOrderStateError(
            f"Invalid order state transition from {current} to {new}",
        )
