# -*- coding: utf-8 -*-
# raffle_backend/app/services/notification_service.py
# =============================================================================
# Block Raffle: планировщик уведомлений (тихие часы, отложенный слот, счётчик)
# -----------------------------------------------------------------------------
# Назначение:
#   • Маршрутизация сообщений операторам с учётом тихих часов:
#       - новые заявки в тихие часы только увеличивают счётчик;
#       - результаты, предупреждения, алерты о пропуске и отказы платежей
#         ждут в едином отложенном слоте (побеждает первый);
#       - срочные алерты (сбой коммита, неясный исход платежа) уходят сразу.
#   • flush(): вне тихих часов доставить отложенное сообщение и одну сводку
#     подавленных заявок, обнулив счётчик.
#   • Список получателей: ADMIN_CHAT_IDS плюс чаты, добавленные оператором.
#
# Канон/инварианты:
#   • Тихое окно [QUIET_START_HOUR, QUIET_END_HOUR) по местному времени
#     QUIET_HOURS_TZ; при start > end окно переходит через полночь.
#   • В отложенном слоте не более одного сообщения; более поздний писатель
#     отбрасывается с записью в лог и ничего не перезаписывает.
#   • Сводку шлёт только тот, кто обнулил ненулевой счётчик.
# =============================================================================
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.errors_core import ValidationError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import utcnow
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.integrations.telegram_api import MessageChannel
from raffle_backend.app.services import message_templates as tpl
from raffle_backend.app.services.state_service import (
    KEY_ADMIN_CHATS,
    Counter,
    PendingMessage,
    PendingSlot,
)

logger = get_logger(__name__)

KIND_RESULT = "result"
KIND_WARNING = "warning"
KIND_SKIPPED = "skipped"
KIND_PAYMENT_FAILED = "payment_failed"

_GATED_KINDS = frozenset({KIND_RESULT, KIND_WARNING, KIND_SKIPPED, KIND_PAYMENT_FAILED})


def is_quiet_hours(
    now: datetime,
    *,
    zone: Optional[ZoneInfo] = None,
    start_hour: Optional[int] = None,
    end_hour: Optional[int] = None,
) -> bool:
    """
    True, если местный час `now` попадает в тихое окно.

    Naive datetime считается UTC.
    """
    settings = get_settings()
    zone = zone or settings.quiet_hours_zone
    start = settings.QUIET_START_HOUR if start_hour is None else start_hour
    end = settings.QUIET_END_HOUR if end_hour is None else end_hour
    if start == end:
        return False

    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo("UTC"))
    hour = now.astimezone(zone).hour
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


@dataclass
class FlushResult:
    quiet: bool = False
    pending_kind: Optional[str] = None
    pending_delivered: int = 0
    entries_summarized: int = 0


class NotificationService:
    def __init__(
        self,
        session: AsyncSession,
        channel: MessageChannel,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.channel = channel
        self.settings = settings or get_settings()
        self.crud = SettingsCRUD(session)
        self.pending = PendingSlot(session)
        self.entries = Counter(session)

    def _quiet(self, now: Optional[datetime]) -> bool:
        return is_quiet_hours(
            now or utcnow(),
            zone=self.settings.quiet_hours_zone,
            start_hour=self.settings.QUIET_START_HOUR,
            end_hour=self.settings.QUIET_END_HOUR,
        )

    # ------------------------------------------------------------------
    # Получатели
    # ------------------------------------------------------------------
    async def stored_admin_chats(self) -> List[str]:
        raw = await self.crud.get(KEY_ADMIN_CHATS)
        if not raw:
            return []
        return [str(chat) for chat in json.loads(raw)]

    async def admin_recipients(self) -> List[str]:
        recipients: List[str] = []
        for chat in [*self.settings.ADMIN_CHAT_IDS, *await self.stored_admin_chats()]:
            if chat and chat not in recipients:
                recipients.append(chat)
        return recipients

    async def _update_admin_chats(self, *, add: Optional[str] = None, remove: Optional[str] = None) -> List[str]:
        for _ in range(8):
            raw = await self.crud.get(KEY_ADMIN_CHATS)
            chats = [str(c) for c in json.loads(raw)] if raw else []
            if add is not None and add not in chats:
                chats.append(add)
            if remove is not None and remove in chats:
                chats.remove(remove)
            if await self.crud.compare_and_set(KEY_ADMIN_CHATS, raw, json.dumps(chats)):
                await self.session.commit()
                return chats
            await self.session.rollback()
        raise RuntimeError("admin chat list: too much contention")

    async def add_admin_chat(self, chat_id: str) -> List[str]:
        chat = str(chat_id).strip()
        if not chat:
            raise ValidationError("chat_id must not be empty.")
        chats = await self._update_admin_chats(add=chat)
        logger.info("[NOTIFY] admin chat added", extra={"chat_id": chat})
        return chats

    async def remove_admin_chat(self, chat_id: str) -> List[str]:
        chats = await self._update_admin_chats(remove=str(chat_id).strip())
        logger.info("[NOTIFY] admin chat removed", extra={"chat_id": chat_id})
        return chats

    # ------------------------------------------------------------------
    # Отправка
    # ------------------------------------------------------------------
    async def _send_all(self, recipients: Sequence[str], text: str) -> int:
        delivered = 0
        for recipient in recipients:
            if await self.channel.send_message(recipient, text):
                delivered += 1
        return delivered

    async def notify_new_entry(self, text: str, *, now: Optional[datetime] = None) -> str:
        """В тихие часы только счёт. Иначе сразу отправка админам."""

        if self._quiet(now):
            total = await self.entries.increment()
            logger.info("[NOTIFY] new entry counted during quiet hours", extra={"pending_entries": total})
            return "counted"
        await self._send_all(await self.admin_recipients(), text)
        return "sent"

    async def deliver(
        self,
        kind: str,
        text: str,
        *,
        recipients: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Доставка с учётом тихих часов. Возвращает "sent", "queued" или
        "dropped" (слот уже занят в этом тихом окне).
        """
        if kind not in _GATED_KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        targets = list(recipients) if recipients is not None else await self.admin_recipients()

        if self._quiet(now):
            queued = await self.pending.put_if_empty(PendingMessage(recipients=targets, text=text, kind=kind))
            if queued:
                logger.info("[NOTIFY] message queued for after quiet hours", extra={"kind": kind})
                return "queued"
            logger.warning("[NOTIFY] pending slot occupied, message dropped", extra={"kind": kind})
            return "dropped"

        delivered = await self._send_all(targets, text)
        logger.info("[NOTIFY] message sent", extra={"kind": kind, "delivered": delivered, "recipients": len(targets)})
        return "sent"

    async def alert_urgent(self, text: str) -> int:
        """В обход тихих часов и отложенного слота."""

        recipients = await self.admin_recipients()
        delivered = await self._send_all(recipients, text)
        if delivered == 0:
            logger.error("[NOTIFY] urgent alert not delivered", extra={"recipients": len(recipients)})
        return delivered

    async def send_direct(self, recipient: str, text: str) -> bool:
        return await self.channel.send_message(recipient, text)

    # ------------------------------------------------------------------
    # Тик сброса
    # ------------------------------------------------------------------
    async def flush(self, *, now: Optional[datetime] = None) -> FlushResult:
        if self._quiet(now):
            return FlushResult(quiet=True)

        result = FlushResult()
        message = await self.pending.take()
        if message is not None:
            targets = message.recipients or await self.admin_recipients()
            result.pending_kind = message.kind
            result.pending_delivered = await self._send_all(targets, message.text)
            logger.info(
                "[NOTIFY] pending message flushed",
                extra={"kind": message.kind, "delivered": result.pending_delivered},
            )

        entries = await self.entries.swap_to_zero()
        if entries > 0:
            await self._send_all(await self.admin_recipients(), tpl.entries_summary(entries))
            result.entries_summarized = entries
            logger.info("[NOTIFY] entries summary sent", extra={"entries": entries})
        return result


__all__ = [
    "KIND_RESULT",
    "KIND_WARNING",
    "KIND_SKIPPED",
    "KIND_PAYMENT_FAILED",
    "FlushResult",
    "NotificationService",
    "is_quiet_hours",
]
