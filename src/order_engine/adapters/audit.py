# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

import json
from logging import getLogger
from typing import Self

from order_engine.interfaces import IAuditSink
from order_engine.models.order import AuditEvent

LOG = getLogger("order_engine.audit")


class LoggingAuditSink(IAuditSink):
    """Writes one structured log line per audit event."""

    def log(self: Self, event: AuditEvent) -> None:
        LOG.info(
            "%s %s/%s by %s [%s] %s",
            event.action,
            event.resource,
            event.resource_id,
            event.user_id,
            event.severity,
            json.dumps(
                event.model_dump(
                    mode="json",
                    include={"metadata", "ip_address", "user_agent"},
                    exclude_none=True,
                ),
                sort_keys=True,
            ),
        )
