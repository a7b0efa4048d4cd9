# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Bounded hand-off of fire-and-forget work, used to execute orders in the
background after they were created or verified.
"""

import queue
from logging import getLogger
from threading import Thread
from typing import Any, Callable, Self

LOG = getLogger(__name__)

_STOP = object()


class ExecutionQueue:
    """A bounded work queue drained by a fixed number of worker threads."""

    def __init__(self: Self, workers: int = 2, maxsize: int = 100) -> None:
        self.__queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.__n_workers = workers
        self.__threads: list[Thread] = []

    @property
    def running(self: Self) -> bool:
        return bool(self.__threads)

    def start(self: Self) -> None:
        if self.__threads:
            return
        LOG.debug("Starting %d execution workers...", self.__n_workers)
        for number in range(self.__n_workers):
            thread = Thread(
                target=self.__work,
                name=f"order-execution-{number}",
                daemon=True,
            )
            thread.start()
            self.__threads.append(thread)

    def submit(self: Self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:  # noqa: ANN401
        """
        Enqueue a unit of work without blocking. Returns False if the queue is
        full, in which case the work is dropped.
        """
        try:
            self.__queue.put_nowait((func, args, kwargs))
        except queue.Full:
            LOG.warning("Execution queue is full, dropping %s%s", func.__name__, args)
            return False
        return True

    def join(self: Self) -> None:
        """Block until all submitted work was processed."""
        self.__queue.join()

    def stop(self: Self) -> None:
        """Process the remaining work and stop the workers."""
        if not self.__threads:
            return
        LOG.info("Draining the execution queue...")
        for _ in self.__threads:
            self.__queue.put(_STOP)
        for thread in self.__threads:
            thread.join()
        self.__threads.clear()

    def __work(self: Self) -> None:
        while True:
            item = self.__queue.get()
            try:
                if item is _STOP:
                    return
                func, args, kwargs = item
                func(*args, **kwargs)
            except Exception:  # pylint: disable=broad-exception-caught
                LOG.exception("Background execution failed")
            finally:
                self.__queue.task_done()
