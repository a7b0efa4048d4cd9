# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from order_engine.interfaces.collaborators import (
    IAccountDirectory,
    IAuditSink,
    IPriceFeed,
    IStepUpOracle,
)
from order_engine.interfaces.notification import INotificationChannel
from order_engine.interfaces.provider import IExecutionProvider

__all__ = [
    "IAccountDirectory",
    "IAuditSink",
    "IExecutionProvider",
    "INotificationChannel",
    "IPriceFeed",
    "IStepUpOracle",
]
