# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

from logging import getLogger
from typing import Any, Self

from order_engine.core.event_bus import EventBus
from order_engine.interfaces import INotificationChannel
from order_engine.models.configuration import NotificationConfigDTO

LOG = getLogger(__name__)

ORDER_EVENTS: dict[str, str] = {
    "order_created": "Order {order_id} created ({status})",
    "order_executed": "Order {order_id} executed: {executed_amount} {currency}",
    "order_failed": "Order {order_id} failed: {error_code} {error_message}",
    "order_triggered": "Order {order_id} triggered: {reason} at {price}",
    "order_cancelled": "Order {order_id} cancelled",
}


class NotificationService:
    """Service for sending notifications through configured channels."""

    def __init__(self: Self, config: NotificationConfigDTO) -> None:
        self.__channels: list[INotificationChannel] = []
        self.__config = config
        self._setup_channels_from_config()

    def _setup_channels_from_config(self: Self) -> None:
        """Set up notification channels from the loaded config."""
        if self.__config.telegram.enabled:
            self.add_telegram_channel(
                bot_token=self.__config.telegram.token,  # type: ignore[arg-type]
                chat_id=self.__config.telegram.chat_id,  # type: ignore[arg-type]
            )

    def add_channel(self: Self, channel: INotificationChannel) -> None:
        """Add a notification channel to the service."""
        self.__channels.append(channel)

    def add_telegram_channel(self: Self, bot_token: str, chat_id: str) -> None:
        """Convenience method to add a Telegram notification channel."""
        from order_engine.adapters.notification import (  # noqa: PLC0415 # pylint: disable=import-outside-toplevel
            TelegramNotificationChannelAdapter,
        )

        self.add_channel(TelegramNotificationChannelAdapter(bot_token, chat_id))

    def notify(self: Self, message: str) -> bool:
        """Send a notification through all configured channels.

        Args:
            message: The message to send

        Returns:
            bool: True if the message was sent through at least one channel
        """
        LOG.info("Sending notification: %s", message)
        if not self.__channels:
            return False

        success = False
        for channel in self.__channels:
            if channel.send(message):
                success = True

        return success

    def on_notification(self: Self, data: dict[str, Any]) -> None:
        """Handle a notification event."""
        self.notify(data["message"])

    def subscribe(self: Self, event_bus: EventBus) -> None:
        """Forward the order events of the event bus to the channels."""
        event_bus.subscribe("notification", self.on_notification)
        for event_type, template in ORDER_EVENTS.items():
            event_bus.subscribe(
                event_type,
                lambda data, template=template: self.notify(
                    template.format_map(_Defaults(data)),
                ),
            )


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "-"
