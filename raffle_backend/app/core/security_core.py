# -*- coding: utf-8 -*-
# raffle_backend/app/core/security_core.py
# =============================================================================
# Назначение:
#   Слой безопасности бэкенда розыгрыша:
#   • серверная проверка X-Admin-Api-Key для операторских роутов;
#   • генерация claim-токенов и сравнение за постоянное время.
#
# Канон/инварианты:
#   • Никаких движений денег. Только "кто ты" и "верен ли секрет".
#   • Секреты сравниваются только через hmac.compare_digest.
#   • Claim-токен несёт 256 бит энтропии (token_urlsafe(32)).
#
# Защиты:
#   • Без ADMIN_API_KEY любой админ-вызов получает 401; API не может
#     случайно остаться "открытым".
# =============================================================================

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)

CLAIM_TOKEN_BYTES = 32


def secrets_equal(expected: Optional[str], provided: Optional[str]) -> bool:
    """Сравнение за постоянное время; False, если одна из сторон пуста."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def new_claim_token() -> str:
    """Непрозрачный URL-safe секрет claim (k1 в потоке LNURL-withdraw)."""
    return secrets.token_urlsafe(CLAIM_TOKEN_BYTES)


async def get_admin_api_key_guard(
    x_admin_api_key: Optional[str] = Header(
        default=None,
        convert_underscores=False,
        alias="X-Admin-Api-Key",
    ),
) -> str:
    """
    Доступ оператора: корректный заголовок X-Admin-Api-Key.

    Нет ключа или ключ неверен → 401.
    """
    admin_key = get_settings().ADMIN_API_KEY
    if secrets_equal(admin_key, x_admin_api_key):
        return x_admin_api_key  # type: ignore[return-value]

    logger.warning("Admin API key rejected", extra={"key_present": bool(x_admin_api_key)})
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Admin API key required",
    )


__all__ = [
    "CLAIM_TOKEN_BYTES",
    "secrets_equal",
    "new_claim_token",
    "get_admin_api_key_guard",
]
