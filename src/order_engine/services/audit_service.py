# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from logging import getLogger
from typing import Any, Self

from order_engine.interfaces import IAuditSink
from order_engine.models.order import AuditEvent, AuditSeverity

LOG = getLogger(__name__)


class AuditService:
    """Forwards audit events to a sink without ever failing the caller."""

    def __init__(self: Self, sink: IAuditSink) -> None:
        self.__sink = sink

    def log(  # noqa: PLR0913
        self: Self,
        action: str,
        resource_id: str,
        user_id: str,
        severity: AuditSeverity = AuditSeverity.MEDIUM,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        event = AuditEvent(
            action=action,
            resource_id=resource_id,
            user_id=user_id,
            severity=severity,
            metadata=metadata or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.__sink.log(event)
        except Exception:  # pylint: disable=broad-exception-caught
            LOG.exception("Failed to write audit event '%s'", action)
