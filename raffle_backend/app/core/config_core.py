# -*- coding: utf-8 -*-
# raffle_backend/app/core/config_core.py
# =============================================================================
# Назначение:
#   • Единый модуль конфигурации бэкенда розыгрыша (FastAPI + SQLAlchemy
#     async + процесс планировщика).
#   • Канонический источник всех параметров: цикл розыгрыша, срок жизни
#     claim-токена, тихие часы, эндпоинты chain-оракула, LND-нода и
#     Telegram-канал админов.
#
# Канон/инварианты:
#   1) Один розыгрыш на период сложности: RAFFLE_CYCLE_BLOCKS = 2016 по умолчанию.
#   2) Приз всегда floor(fund / 2); отдельной настройки для него нет.
#   3) Тихие часы: локальное окно [start, end), может переходить через полночь.
#   4) Секреты берутся только из окружения / .env, никогда из кода.
#
# Самодиагностика:
#   • initialize_runtime() нормализует DSN и печатает предупреждения об
#     отсутствующих секретах вместо падения на импорте.
#   • debug_dump() отдаёт снимок без секретов для /health и логов.
# =============================================================================

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# =============================================================================
# Локальные помощники (без сети)
# =============================================================================


def _parse_csv(value: object) -> List[str]:
    """Превращает 'a,b,c' в ['a', 'b', 'c'] (пробелы обрезаются)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if str(x).strip()]
    s = str(value).strip()
    if not s:
        return []
    return [item.strip() for item in s.split(",") if item.strip()]


def _unique(items: List[str]) -> List[str]:
    """Убирает дубликаты, сохраняя порядок первого появления."""
    out: List[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


# =============================================================================
# Описания полей (видны в Swagger и в отладочном выводе)
# =============================================================================


class _Doc:
    # Приложение
    PROJECT_NAME = "Имя проекта (заголовок Swagger, поле service в логах)."
    ENV = "Окружение: production/dev/local (нормализуется в prod/dev/local)."
    DEBUG = "Подробные логи и SQL echo (только dev/local)."
    APP_VERSION = "Версия приложения (попадает в /health)."
    APP_HOST = "Адрес для uvicorn (обычно 0.0.0.0)."
    APP_PORT = "Порт для uvicorn."
    BASE_URL = "Публичный базовый URL для LNURL-колбэков и ссылок на приз."

    # База данных
    DATABASE_URL = (
        "DSN базы. postgres:// и postgresql:// переписываются в "
        "postgresql+asyncpg://."
    )
    DB_POOL_SIZE = "Размер пула соединений SQLAlchemy."
    DB_MAX_OVERFLOW = "Дополнительные соединения в пике."

    # Chain-оракул
    MEMPOOL_API_URLS = "Базовые URL Esplora-совместимых API, опрашиваются по порядку (CSV)."
    ORACLE_TIMEOUT_SEC = "Таймаут одного запроса к chain-оракулу (сек)."

    # Lightning
    LND_REST_URL = "REST-эндпоинт LND, например https://node.example:8080."
    LND_MACAROON = "Admin macaroon в hex для LND REST API."
    LND_TLS_VERIFY = "Проверять TLS-сертификат ноды."
    LND_TIMEOUT_SEC = "Таймаут одного запроса к LND (сек)."
    LN_FEE_LIMIT_SATS = "Фиксированный лимит комиссии маршрутизации на платёж (sats)."
    LNURL_TIMEOUT_SEC = "Таймаут внешних LNURL-pay эндпоинтов (сек)."

    # Telegram
    TELEGRAM_BOT_TOKEN = "Токен бота для сообщений админам и победителю (env: BOT_TOKEN)."
    ADMIN_CHAT_IDS = "Telegram chat id, получающие алерты оператора (CSV)."
    TELEGRAM_TIMEOUT_SEC = "Таймаут одного вызова Telegram API (сек)."

    # Админ-API
    ADMIN_API_KEY = "Общий секрет для заголовка X-Admin-Api-Key."

    # Розыгрыш
    RAFFLE_CYCLE_BLOCKS = "Блоков в цикле розыгрыша (период сложности)."
    RAFFLE_WARNING_BLOCKS = "Предупреждение отправляется, когда осталось столько блоков."
    CLAIM_TTL_DAYS = "Срок жизни claim-токена (дни)."
    RAFFLE_INFO_CACHE_SEC = "TTL кэша публичной информации о розыгрыше (сек)."

    # Планировщик
    WATCHER_TICK_SECONDS = "Интервал тика вотчера розыгрыша (сек)."
    NOTIFY_FLUSH_SECONDS = "Интервал тика сброса отложенных уведомлений (сек)."

    # Тихие часы
    QUIET_HOURS_TZ = "IANA-зона окна тихих часов."
    QUIET_START_HOUR = "Локальный час начала тихих часов (включительно)."
    QUIET_END_HOUR = "Локальный час окончания тихих часов (не включительно)."

    # Логирование
    LOG_LEVEL = "Корневой уровень логов (INFO/DEBUG/WARNING/ERROR)."
    LOG_JSON = "JSON-логи независимо от ENV."


# =============================================================================
# Settings (единый источник правды)
# =============================================================================


class Settings(BaseSettings):
    """
    Контейнер окружения бэкенда розыгрыша.

    Примечания:
      • Секреты (macaroon, токен бота, админ-ключ) читаются только из ENV.
      • Таймеры: простые интервалы, без cron-расписаний.
      • У каждой внешней интеграции свой ограниченный таймаут.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # ------------------------------ ПРИЛОЖЕНИЕ -------------------------------
    PROJECT_NAME: str = Field("Block Raffle", description=_Doc.PROJECT_NAME)
    ENV: str = Field("production", description=_Doc.ENV)
    DEBUG: bool = Field(False, description=_Doc.DEBUG)
    APP_VERSION: str = Field("1.0.0", description=_Doc.APP_VERSION)

    APP_HOST: str = Field("0.0.0.0", description=_Doc.APP_HOST)
    APP_PORT: int = Field(8000, description=_Doc.APP_PORT)
    BASE_URL: str = Field("http://localhost:8000", description=_Doc.BASE_URL)

    # --------------------------------- БАЗА ----------------------------------
    DATABASE_URL: Optional[str] = Field(None, description=_Doc.DATABASE_URL)
    DB_POOL_SIZE: int = Field(10, description=_Doc.DB_POOL_SIZE)
    DB_MAX_OVERFLOW: int = Field(10, description=_Doc.DB_MAX_OVERFLOW)

    # ------------------------------ CHAIN-ОРАКУЛ -----------------------------
    MEMPOOL_API_URLS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "https://mempool.space/api",
            "https://blockstream.info/api",
        ],
        description=_Doc.MEMPOOL_API_URLS,
    )
    ORACLE_TIMEOUT_SEC: float = Field(5.0, description=_Doc.ORACLE_TIMEOUT_SEC)

    # -------------------------------- LIGHTNING ------------------------------
    LND_REST_URL: Optional[str] = Field(None, description=_Doc.LND_REST_URL)
    LND_MACAROON: Optional[str] = Field(None, description=_Doc.LND_MACAROON)
    LND_TLS_VERIFY: bool = Field(False, description=_Doc.LND_TLS_VERIFY)
    LND_TIMEOUT_SEC: float = Field(60.0, description=_Doc.LND_TIMEOUT_SEC)
    LN_FEE_LIMIT_SATS: int = Field(100, ge=0, description=_Doc.LN_FEE_LIMIT_SATS)
    LNURL_TIMEOUT_SEC: float = Field(10.0, description=_Doc.LNURL_TIMEOUT_SEC)

    # -------------------------------- TELEGRAM -------------------------------
    TELEGRAM_BOT_TOKEN: Optional[str] = Field(
        None,
        validation_alias="BOT_TOKEN",
        description=_Doc.TELEGRAM_BOT_TOKEN,
    )
    ADMIN_CHAT_IDS: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description=_Doc.ADMIN_CHAT_IDS,
    )
    TELEGRAM_TIMEOUT_SEC: int = Field(10, description=_Doc.TELEGRAM_TIMEOUT_SEC)

    # ------------------------------- АДМИН-API -------------------------------
    ADMIN_API_KEY: Optional[str] = Field(None, description=_Doc.ADMIN_API_KEY)

    # -------------------------------- РОЗЫГРЫШ -------------------------------
    RAFFLE_CYCLE_BLOCKS: int = Field(2016, gt=0, description=_Doc.RAFFLE_CYCLE_BLOCKS)
    RAFFLE_WARNING_BLOCKS: int = Field(144, ge=0, description=_Doc.RAFFLE_WARNING_BLOCKS)
    CLAIM_TTL_DAYS: int = Field(30, gt=0, description=_Doc.CLAIM_TTL_DAYS)
    RAFFLE_INFO_CACHE_SEC: int = Field(120, ge=0, description=_Doc.RAFFLE_INFO_CACHE_SEC)

    # ------------------------------- ПЛАНИРОВЩИК -----------------------------
    WATCHER_TICK_SECONDS: int = Field(300, gt=0, description=_Doc.WATCHER_TICK_SECONDS)
    NOTIFY_FLUSH_SECONDS: int = Field(300, gt=0, description=_Doc.NOTIFY_FLUSH_SECONDS)

    # ------------------------------ ТИХИЕ ЧАСЫ -------------------------------
    QUIET_HOURS_TZ: str = Field("Europe/London", description=_Doc.QUIET_HOURS_TZ)
    QUIET_START_HOUR: int = Field(18, ge=0, le=23, description=_Doc.QUIET_START_HOUR)
    QUIET_END_HOUR: int = Field(9, ge=0, le=23, description=_Doc.QUIET_END_HOUR)

    # ------------------------------- ЛОГИРОВАНИЕ -----------------------------
    LOG_LEVEL: str = Field("INFO", description=_Doc.LOG_LEVEL)
    LOG_JSON: bool = Field(False, description=_Doc.LOG_JSON)

    # =============================== ВАЛИДАТОРЫ ==============================

    @field_validator("MEMPOOL_API_URLS", mode="before")
    @classmethod
    def _v_mempool_urls(cls, value: object) -> List[str]:
        urls = [u.rstrip("/") for u in _parse_csv(value)]
        if not urls:
            raise ValueError("MEMPOOL_API_URLS needs at least one base URL")
        return _unique(urls)

    @field_validator("ADMIN_CHAT_IDS", mode="before")
    @classmethod
    def _v_admin_chats(cls, value: object) -> List[str]:
        return _unique(_parse_csv(value))

    @field_validator("BASE_URL", "LND_REST_URL")
    @classmethod
    def _v_strip_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    @field_validator("QUIET_HOURS_TZ")
    @classmethod
    def _v_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown time zone: {value}") from None
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _v_log_level(cls, value: str) -> str:
        level = (value or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {value}")
        return level

    # =========================== Свойства / помощники =======================

    # ---- Флаги ENV ----
    @property
    def env_normalized(self) -> str:
        """Нормализует ENV к одному из prod/dev/local."""
        value = (self.ENV or "").strip().lower()
        if value.startswith("prod"):
            return "prod"
        if value.startswith("dev"):
            return "dev"
        if value.startswith("loc"):
            return "local"
        return "prod"

    @property
    def is_prod(self) -> bool:
        return self.env_normalized == "prod"

    # ---- Тихие часы ----
    @property
    def quiet_hours_zone(self) -> ZoneInfo:
        return ZoneInfo(self.QUIET_HOURS_TZ)

    # ---- Lightning ----
    @property
    def lightning_configured(self) -> bool:
        return bool(self.LND_REST_URL and self.LND_MACAROON)

    # ---- URLs ----
    def lnurl_withdraw_url(self, token: str) -> str:
        """URL первого шага LNURL-withdraw для claim-токена."""
        return f"{self.BASE_URL}/lnurl/withdraw/{token}"

    def lnurl_callback_url(self, token: str) -> str:
        """URL второго шага (сюда кошелёк присылает инвойс)."""
        return f"{self.BASE_URL}/lnurl/withdraw/{token}/callback"

    def claim_page_url(self, token: str) -> str:
        return f"{self.BASE_URL}/claim/{token}"

    # ---- База данных / DSN ----
    def database_url_async(self) -> str:
        """
        Возвращает DSN для SQLAlchemy async:
          postgres://   → postgresql+asyncpg://
          postgresql:// → postgresql+asyncpg://, если драйвер не указан.
        Прочие async DSN (sqlite+aiosqlite://) возвращаются без изменений.
        """
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set.")
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    # ---- Диагностика ----
    def assert_required_secrets(self) -> None:
        """
        Мягкая самопроверка критичных секретов. Печатает предупреждения и не
        падает: публичные эндпоинты для чтения работают и без них.
        """
        if not self.DATABASE_URL:
            print("[WARN] DATABASE_URL не задан: база недоступна.")
        if not self.lightning_configured:
            print("[WARN] LND_REST_URL/LND_MACAROON не заданы: призы не выплачиваются.")
        if not self.TELEGRAM_BOT_TOKEN:
            print("[WARN] BOT_TOKEN не задан: алерты оператору отключены.")
        if not self.ADMIN_API_KEY:
            print("[WARN] ADMIN_API_KEY не задан: админ-роуты отклоняют все вызовы.")

    def debug_dump(self) -> Dict[str, str]:
        """Снимок ключевых настроек без секретов для /health и логов."""
        return {
            "env": self.env_normalized,
            "projectName": self.PROJECT_NAME,
            "version": self.APP_VERSION,
            "baseUrl": self.BASE_URL,
            "dbUrlSet": "yes" if self.DATABASE_URL else "no",
            "lightningConfigured": str(self.lightning_configured),
            "telegramConfigured": str(bool(self.TELEGRAM_BOT_TOKEN)),
            "adminChats": str(len(self.ADMIN_CHAT_IDS)),
            "oracles": ",".join(self.MEMPOOL_API_URLS),
            "cycleBlocks": str(self.RAFFLE_CYCLE_BLOCKS),
            "warningBlocks": str(self.RAFFLE_WARNING_BLOCKS),
            "quietHours": (
                f"{self.QUIET_START_HOUR:02d}:00-{self.QUIET_END_HOUR:02d}:00 "
                f"{self.QUIET_HOURS_TZ}"
            ),
        }

    def initialize_runtime(self) -> None:
        """
        Единый хук старта:
          • ранняя проверка формы DSN;
          • предупреждения об отсутствующих секретах.
        """
        if self.DATABASE_URL:
            _ = self.database_url_async()
        self.assert_required_secrets()


# =============================================================================
# Синглтон настроек
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """Создаёт и кэширует Settings, initialize_runtime() вызывается один раз."""
    settings_obj = Settings()
    settings_obj.initialize_runtime()
    return settings_obj


settings: Settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
