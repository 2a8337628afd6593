# ============================================================================
# Block Raffle: scheduler.notifications_flush
# -----------------------------------------------------------------------------
# Назначение: каждые NOTIFY_FLUSH_SECONDS вне тихих часов отправить отложенное
# сообщение и сводку "N new entries" (NotificationService.flush).
#
# Канон/инварианты:
#   • Изъятие из отложенного слота и обнуление счётчика это операции
#     compare-and-set: два наложившихся сброса отправят каждое сообщение один раз.
#   • В тихие часы сброс ничего не меняет.
# ============================================================================
from __future__ import annotations

import asyncio
from random import randint
from typing import Awaitable, Callable, Optional

from ..core.config_core import get_settings
from ..core.database_core import lifespan_session
from ..core.logging_core import get_logger
from ..integrations.telegram_api import MessageChannel, TelegramChannel
from ..services.notification_service import FlushResult, NotificationService

logger = get_logger(__name__)


async def run_flush(channel: MessageChannel) -> FlushResult:
    async with lifespan_session() as session:
        result = await NotificationService(session, channel).flush()
    if result.pending_delivered or result.entries_summarized:
        logger.info(
            "[NOTIFY] flush delivered",
            extra={
                "pending_kind": result.pending_kind,
                "entries": result.entries_summarized,
            },
        )
    return result


async def _run_once_guarded(channel: MessageChannel) -> None:
    try:
        await run_flush(channel)
    except Exception as exc:  # noqa: BLE001
        logger.exception("[NOTIFY] flush failed", extra={"error": str(exc)})


async def _run_forever(
    sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    *,
    channel: Optional[MessageChannel] = None,
) -> None:
    base_sleep = get_settings().NOTIFY_FLUSH_SECONDS
    channel = channel or TelegramChannel()
    while True:
        await _run_once_guarded(channel)
        await sleeper(max(1, base_sleep + randint(-10, 10)))


def run_forever() -> None:
    asyncio.run(_run_forever())


if __name__ == "__main__":
    run_forever()
