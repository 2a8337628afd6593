# ============================================================================
# Block Raffle: scheduler.raffle_watcher
# -----------------------------------------------------------------------------
# Назначение: цикл таймера вотчера. Каждые WATCHER_TICK_SECONDS (с джиттером)
# один тик WatcherService (предупреждение + коммит) и массовое истечение
# просроченных claim.
#
# Канон/инварианты:
#   • На PostgreSQL advisory lock уровня сессии на отдельном соединении
#     пускает тикать только один воркер; прочие диалекты полагаются лишь на
#     CAS/UNIQUE-гарантии базы.
#   • Упавший тик логируется, цикл продолжается; "ровно один раз" держат
#     watermark-и, а не этот цикл.
# ============================================================================
from __future__ import annotations

import asyncio
from random import randint
from typing import Awaitable, Callable, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.config_core import get_settings
from ..core.database_core import get_engine, lifespan_session
from ..core.logging_core import clear_request_context, get_logger, set_request_context
from ..core.utils_core import utcnow
from ..integrations.mempool_api import ChainOracle, MempoolAPIClient
from ..integrations.telegram_api import MessageChannel, TelegramChannel
from ..services.claim_service import ClaimService
from ..services.notification_service import NotificationService
from ..services.payment_service import LndPaymentService
from ..services.watcher_service import WatcherService

logger = get_logger(__name__)

_LOCK_KEY = 20_160_144


async def _try_lock(conn: AsyncConnection) -> bool:
    """Advisory lock, чтобы тикал один воркер; вне PostgreSQL всегда True."""

    if conn.dialect.name != "postgresql":
        return True
    result = await conn.execute(text("SELECT pg_try_advisory_lock(:k)").bindparams(k=_LOCK_KEY))
    return bool(result.scalar_one())


async def _unlock(conn: AsyncConnection) -> None:
    if conn.dialect.name == "postgresql":
        await conn.execute(text("SELECT pg_advisory_unlock(:k)").bindparams(k=_LOCK_KEY))


async def run_tick(oracle: ChainOracle, channel: MessageChannel) -> None:
    """Один тик вотчера плюс истечение claim в новой сессии."""

    set_request_context(request_id=f"tick-{utcnow():%Y%m%dT%H%M%S}")
    try:
        async with lifespan_session() as session:
            notifications = NotificationService(session, channel)
            result = await WatcherService(session, oracle, notifications).tick()
            await ClaimService(session, LndPaymentService(), notifications).expire_stale()
            logger.info(
                "[WATCHER] tick done",
                extra={
                    "status": result.status,
                    "height": result.height,
                    "warning": result.warning_sent,
                    "commit": result.commit.status if result.commit else None,
                },
            )
    finally:
        clear_request_context()


async def _run_once_guarded(oracle: ChainOracle, channel: MessageChannel) -> None:
    async with get_engine().connect() as conn:
        if not await _try_lock(conn):
            logger.info("[WATCHER] tick skipped: lock held by another worker")
            return
        try:
            await run_tick(oracle, channel)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[WATCHER] tick failed", extra={"error": str(exc)})
        finally:
            await _unlock(conn)
            await conn.commit()


async def _run_forever(
    sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    *,
    oracle: Optional[ChainOracle] = None,
    channel: Optional[MessageChannel] = None,
) -> None:
    base_sleep = get_settings().WATCHER_TICK_SECONDS
    oracle = oracle or MempoolAPIClient()
    channel = channel or TelegramChannel()
    logger.info("[WATCHER] loop started", extra={"interval": base_sleep})
    while True:
        await _run_once_guarded(oracle, channel)
        jitter = randint(-15, 15)
        await sleeper(max(1, base_sleep + jitter))


def run_forever() -> None:
    asyncio.run(_run_forever())


if __name__ == "__main__":
    run_forever()
