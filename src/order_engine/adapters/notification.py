# -*- mode: python; coding: utf-8 -*-
#
# Copyright (C) 2025 Benjamin Thomas Schwertfeger
# All rights reserved.
# https://github.com/btschwertfeger
#

"""
Delivery of order notifications to a Telegram chat.

Order ids, provider references and error codes are full of underscores
(``dryrun_1736942400000``, ``INSUFFICIENT_FUNDS``). Telegram's legacy
Markdown treats them as formatting and rejects the whole message, so the
order text is escaped before it is posted.
"""

import re
from logging import getLogger
from typing import Self

import requests

from order_engine.interfaces import INotificationChannel

LOG = getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096

_MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


def escape_markdown(text: str) -> str:
    """Escape the characters Telegram's legacy Markdown would interpret."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


class TelegramNotificationChannelAdapter(INotificationChannel):
    """Posts order notifications to one chat through a Telegram bot."""

    def __init__(
        self: Self,
        bot_token: str,
        chat_id: str,
        timeout: float = 10,
    ) -> None:
        self.__chat_id = chat_id
        self.__url = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
        self.__timeout = timeout

    def send(self: Self, message: str) -> bool:
        text = escape_markdown(message)
        if len(text) > MAX_MESSAGE_LENGTH:
            text = f"{text[: MAX_MESSAGE_LENGTH - 3]}..."

        LOG.debug("Sending Telegram notification: %s", text)
        try:
            response = requests.post(
                self.__url,
                data={
                    "chat_id": self.__chat_id,
                    "text": text,
                    "parse_mode": "markdown",
                    "disable_web_page_preview": True,
                },
                timeout=self.__timeout,
            )
        except requests.RequestException as exc:
            LOG.error("Failed to send Telegram notification: %s", exc)
            return False

        if response.status_code != 200:  # noqa: PLR2004
            LOG.warning(
                "Telegram rejected the notification (%s): %s",
                response.status_code,
                response.text,
            )
            return False
        return True
