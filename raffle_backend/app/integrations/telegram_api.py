# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/telegram_api.py
# =============================================================================
# Block Raffle: канал сообщений операторам/победителю через Telegram Bot API
# -----------------------------------------------------------------------------
# Назначение:
#   • send_message(recipient, text) → bool через Bot из aiogram.
#   • Список получателей собирает NotificationService; канал только доставляет.
#
# Канон/инварианты:
#   • Сбой доставки не бросает исключение: пишется в лог, ответ False.
#   • Без токена бота канал выключен (warning + False).
#   • Каждый вызов ограничен TELEGRAM_TIMEOUT_SEC.
#   • Сообщения в HTML; динамические значения экранируют сборщики текстов.
# =============================================================================
from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Union

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError
from aiogram.utils.token import TokenValidationError

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)


class MessageChannel(Protocol):
    async def send_message(self, recipient: str, text: str) -> bool: ...


def _chat_id(recipient: str) -> Union[int, str]:
    value = str(recipient).strip()
    if value.lstrip("-").isdigit():
        return int(value)
    return value


class TelegramChannel:
    """Ленивая обёртка над Bot из aiogram; одна HTTP-сессия на экземпляр канала."""

    def __init__(self, *, token: Optional[str] = None, timeout_seconds: Optional[int] = None) -> None:
        settings = get_settings()
        self._token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.TELEGRAM_TIMEOUT_SEC
        self._bot: Optional[Bot] = None

    @property
    def enabled(self) -> bool:
        return bool(self._token)

    def _get_bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(
                token=str(self._token),
                default=DefaultBotProperties(parse_mode=ParseMode.HTML, link_preview_is_disabled=True),
            )
        return self._bot

    async def send_message(self, recipient: str, text: str) -> bool:
        if not self.enabled:
            logger.warning("[TG] bot token not configured, message dropped", extra={"recipient": recipient})
            return False
        try:
            await self._get_bot().send_message(
                chat_id=_chat_id(recipient),
                text=text,
                request_timeout=self._timeout,
            )
        except (TelegramAPIError, TokenValidationError, asyncio.TimeoutError) as exc:
            logger.warning(
                "[TG] send_message failed",
                extra={"recipient": recipient, "error": str(exc)},
            )
            return False
        return True

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None


__all__ = ["MessageChannel", "TelegramChannel"]
