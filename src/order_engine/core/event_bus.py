# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from threading import Lock
from typing import Any, Callable, Self


class EventBus:
    """Central event bus for communication between components"""

    def __init__(self: Self) -> None:
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {}
        self._lock = Lock()

    def subscribe(
        self: Self,
        event_type: str,
        callback: Callable[[Any], None],
    ) -> None:
        """Subscribe to an event type"""
        with self._lock:
            if event_type not in self._subscribers:
                self._subscribers[event_type] = []
            self._subscribers[event_type].append(callback)

    def publish(self: Self, event_type: str, data: dict[Any, Any]) -> None:
        """Publish an event to all subscribers"""
        with self._lock:
            if event_type not in self._subscribers:
                return
            callbacks = list(self._subscribers[event_type])

        for callback in callbacks:
            callback(data)
