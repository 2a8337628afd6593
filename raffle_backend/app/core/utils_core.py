# -*- coding: utf-8 -*-
# raffle_backend/app/core/utils_core.py
# =============================================================================
# Назначение:
#   • Утилиты ядра без зависимостей от FastAPI/SQLAlchemy.
#   • Время (UTC, aware datetime), разбор ISO.
#   • Кодировки для Lightning-данных (base64 ↔ hex).
#   • Маскирование владельцев билетов для публичного вывода.
#
# Канон/инварианты:
#   • Чистые функции: без сети и побочных эффектов.
#   • Любой datetime на выходе модуля aware (UTC).
# =============================================================================

from __future__ import annotations

import base64
import binascii
import hashlib
from datetime import datetime, timezone
from typing import Optional, Union


# -----------------------------------------------------------------------------
# Время
# -----------------------------------------------------------------------------
def utcnow() -> datetime:
    """Текущее время в UTC с tzinfo=UTC."""
    return datetime.now(tz=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Проставляет UTC naive-значениям.

    Некоторые драйверы (SQLite) возвращают naive даже для колонок
    timezone=True; всё, что пишет сервис, хранится в UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    aware = as_utc(value)
    return aware.isoformat() if aware is not None else None


def parse_iso_datetime(raw: Optional[str]) -> Optional[datetime]:
    """
    Мягкий разбор ISO даты/времени.

    Возвращает aware datetime или None для пустого и битого ввода.
    Принимает "2026-01-10", "2026-01-10T12:30:00", "2026-01-10T12:30:00Z".
    """
    if not raw:
        return None
    candidate = raw.strip()
    if "T" not in candidate and ":" not in candidate and " " not in candidate:
        candidate = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


# -----------------------------------------------------------------------------
# Хэши / кодировки
# -----------------------------------------------------------------------------
def sha256_hex(data: Union[str, bytes]) -> str:
    """SHA-256 в hex; строки предварительно кодируются в UTF-8."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def b64_to_hex(value: Optional[str]) -> Optional[str]:
    """
    LND REST отдаёт bytes-поля (payment_hash, payment_preimage) в base64.
    Переводит их в hex нижнего регистра; значения, уже похожие на hex,
    возвращаются как есть.
    """
    if not value:
        return None
    if len(value) == 64 and all(ch in "0123456789abcdefABCDEF" for ch in value):
        return value.lower()
    try:
        raw = base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError):
        return value
    return raw.hex()


# -----------------------------------------------------------------------------
# Представление
# -----------------------------------------------------------------------------
def mask_owner(owner: Optional[str]) -> Optional[str]:
    """
    Маскирует e-mail или lightning address для публичных страниц:
    "satoshi@example.com" → "sa***@example.com".
    """
    if not owner:
        return None
    if "@" not in owner:
        return owner[:2] + "***"
    local, domain = owner.split("@", 1)
    return f"{local[:2]}***@{domain}"


def format_sats(amount: int) -> str:
    """12345 → "12,345 sats"."""
    return f"{amount:,} sats"


__all__ = [
    "utcnow",
    "as_utc",
    "isoformat_or_none",
    "parse_iso_datetime",
    "sha256_hex",
    "b64_to_hex",
    "mask_owner",
    "format_sats",
]
