# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Exceptions raised by the order engine.

Errors that are surfaced to a caller synchronously derive from
:class:`OrderEngineError`. Provider-level failures are not raised but
returned as :class:`order_engine.models.provider.ExecutionResult` values.
"""

from typing import Self


class OrderEngineError(Exception):
    """Base class of all errors raised by the order engine."""


class EngineStateError(OrderEngineError):
    """Raised when the engine daemon enters an unrecoverable state."""


class ConflictError(OrderEngineError):
    """An idempotency key was reused with a different request."""


class ForbiddenError(OrderEngineError):
    """An account does not belong to the requesting space."""


class NotFoundError(OrderEngineError):
    """The requested resource does not exist for the requesting user."""


class BadRequestError(OrderEngineError):
    """The request cannot be fulfilled in the current situation."""


class LimitExceededError(BadRequestError):
    """The order amount exceeds the availability of an order limit."""


class InsufficientBalanceError(BadRequestError):
    """The source account does not hold enough funds."""


class InvalidOrderStateError(BadRequestError):
    """The operation is not permitted in the order's current state."""


class OrderExpiredError(BadRequestError):
    """The order expired before it could be executed."""


class InvalidOtpError(BadRequestError):
    """The one-time code is malformed or was rejected."""


class ExecutionFailedError(BadRequestError):
    """The execution attempt failed and was persisted as such."""

    def __init__(self: Self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class ProviderNotSupportedError(OrderEngineError):
    """The provider name is unknown or may not be executed automatically."""


class PriceUnavailableError(OrderEngineError):
    """The provider does not quote market prices for the requested pair."""
