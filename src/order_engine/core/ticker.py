# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import asyncio
from logging import getLogger
from typing import Callable

from order_engine.core.state_machine import StateMachine, States

LOG = getLogger(__name__)


async def run_periodically(
    name: str,
    interval: float,
    func: Callable[[], object],
    state_machine: StateMachine,
) -> None:
    """
    Run the blocking ``func`` in a worker thread every ``interval`` seconds
    while the engine is running. A failing cycle is logged and the next one
    is run as usual.
    """
    LOG.info("Starting the %s every %s seconds", name, interval)
    while state_machine.state == States.RUNNING:
        try:
            result = await asyncio.to_thread(func)
            LOG.debug("%s cycle finished: %s", name, result)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOG.error("Exception in the %s cycle.", name, exc_info=exc)

        await asyncio.sleep(interval)
    LOG.info("Stopped the %s", name)
