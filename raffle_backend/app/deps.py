# -*- coding: utf-8 -*-
# raffle_backend/app/deps.py
# =============================================================================
# Block Raffle: общие зависимости FastAPI
# -----------------------------------------------------------------------------
#   • get_db: одна AsyncSession на запрос (коммитят роуты/сервисы).
#   • get_oracle / get_payments / get_channel: клиенты интеграций на процесс;
#     тесты подменяют их через app.dependency_overrides.
#   • Фабрики сервисов связывают сессию запроса с этими клиентами.
#   • require_admin: проверка X-Admin-Api-Key для /api/admin.
#
# Здесь нет бизнес-логики, только связывание.
# =============================================================================
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.database_core import get_db
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.security_core import get_admin_api_key_guard
from raffle_backend.app.integrations.mempool_api import ChainOracle, MempoolAPIClient
from raffle_backend.app.integrations.telegram_api import MessageChannel, TelegramChannel
from raffle_backend.app.services.claim_service import ClaimService
from raffle_backend.app.services.notification_service import NotificationService
from raffle_backend.app.services.payment_service import LndPaymentService
from raffle_backend.app.services.raffle_info_service import RaffleInfoService
from raffle_backend.app.services.watcher_service import WatcherService

logger = get_logger(__name__)

require_admin = get_admin_api_key_guard


def get_app_settings() -> Settings:
    return get_settings()


# -----------------------------------------------------------------------------
# Клиенты интеграций (один на процесс)
# -----------------------------------------------------------------------------
@lru_cache(maxsize=1)
def _oracle() -> MempoolAPIClient:
    return MempoolAPIClient()


@lru_cache(maxsize=1)
def _payments() -> LndPaymentService:
    return LndPaymentService()


@lru_cache(maxsize=1)
def _channel() -> TelegramChannel:
    return TelegramChannel()


def get_oracle() -> ChainOracle:
    return _oracle()


def get_payments() -> LndPaymentService:
    return _payments()


def get_channel() -> MessageChannel:
    return _channel()


async def close_clients() -> None:
    """Закрывает сессию бота при остановке (только если она создавалась)."""
    if _channel.cache_info().currsize:
        await _channel().close()


# -----------------------------------------------------------------------------
# Сервисы на запрос
# -----------------------------------------------------------------------------
def get_notification_service(
    db: AsyncSession = Depends(get_db),
    channel: MessageChannel = Depends(get_channel),
    settings: Settings = Depends(get_app_settings),
) -> NotificationService:
    return NotificationService(db, channel, settings=settings)


def get_claim_service(
    db: AsyncSession = Depends(get_db),
    payments: LndPaymentService = Depends(get_payments),
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> ClaimService:
    return ClaimService(db, payments, notifications, settings=settings)


def get_watcher_service(
    db: AsyncSession = Depends(get_db),
    oracle: ChainOracle = Depends(get_oracle),
    notifications: NotificationService = Depends(get_notification_service),
    settings: Settings = Depends(get_app_settings),
) -> WatcherService:
    return WatcherService(db, oracle, notifications, settings=settings)


def get_raffle_info_service(
    db: AsyncSession = Depends(get_db),
    oracle: ChainOracle = Depends(get_oracle),
    settings: Settings = Depends(get_app_settings),
) -> RaffleInfoService:
    return RaffleInfoService(db, oracle, settings=settings)


__all__ = [
    "get_db",
    "get_app_settings",
    "get_oracle",
    "get_payments",
    "get_channel",
    "close_clients",
    "get_notification_service",
    "get_claim_service",
    "get_watcher_service",
    "get_raffle_info_service",
    "require_admin",
]
