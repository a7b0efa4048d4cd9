# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Deduplication of order creation requests.

A key is claimed with an atomic insert before the order is persisted. Any
later request with the same key either receives the order created for the
first request (same fingerprint) or is rejected as a conflict.
"""

import hashlib
import json
from datetime import datetime, timedelta
from decimal import Decimal
from logging import getLogger
from typing import Any, Self

from order_engine.core.clock import Clock, utc_now
from order_engine.exceptions import ConflictError
from order_engine.infrastructure.database import IdempotencyKeyTable, OrderTable
from order_engine.models.order import CreateOrderDTO, IdempotencyRecord, Order

LOG = getLogger(__name__)


def _normalize(value: Any) -> str:  # noqa: ANN401
    """JSON fallback that renders numerically equal amounts the same way."""
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def fingerprint(request: CreateOrderDTO) -> str:
    """Deterministic SHA-256 hash of the normalized request payload."""
    payload = request.model_dump(exclude_none=True)
    return hashlib.sha256(
        json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            default=_normalize,
        ).encode(),
    ).hexdigest()


class IdempotencyService:
    def __init__(
        self: Self,
        idempotency_table: IdempotencyKeyTable,
        order_table: OrderTable,
        ttl: timedelta = timedelta(days=7),
        clock: Clock = utc_now,
    ) -> None:
        self.__keys = idempotency_table
        self.__orders = order_table
        self.__ttl = ttl
        self.__clock = clock

    def check(self: Self, request: CreateOrderDTO, user_id: str) -> Order | None:
        """
        Look up the key of a request.

        Returns the previously created order for a repeated request, None if
        the key is unknown or expired, and raises :class:`ConflictError` if
        the key was used for a different request or by another user.
        """
        if (record := self.__keys.get(request.idempotency_key)) is None:
            return None

        if record.expires_at <= self.__clock():
            LOG.debug("Idempotency key %s expired", record.key)
            self.__keys.remove(record.key)
            return None

        if record.user_id != user_id or record.request_hash != fingerprint(request):
            raise ConflictError(
                "Idempotency key already used with different request data",
            )

        if record.order_id is None:
            raise ConflictError(
                "A request with this idempotency key is still in progress",
            )
        return self.__orders.get(record.order_id)

    def claim(self: Self, request: CreateOrderDTO, user_id: str, space_id: str) -> bool:
        """Atomically store the key. Returns False if another request won."""
        now = self.__clock()
        return self.__keys.create(
            IdempotencyRecord(
                key=request.idempotency_key,
                user_id=user_id,
                space_id=space_id,
                request_hash=fingerprint(request),
                expires_at=now + self.__ttl,
                created_at=now,
            ),
        )

    def store(self: Self, key: str, order_id: str) -> None:
        """Attach the created order to a claimed key."""
        self.__keys.set_order(key, order_id)

    def release(self: Self, key: str) -> None:
        """Drop a claimed key whose order could not be created."""
        self.__keys.remove(key)
