# -*- coding: utf-8 -*-
# raffle_backend/app/core/logging_core.py
# =============================================================================
# Назначение:
#   Централизованная настройка логирования бэкенда розыгрыша:
#   • формат и обработчики;
#   • корреляционный контекст (request id, ключ цикла);
#   • маскирование секретов;
#   • небольшие помощники для модулей.
#
# Канон/инварианты:
#   • Единый стиль логов для API и планировщика:
#       - prod: JSON (структурно, для агрегаторов),
#       - dev/local: читаемые строки.
#   • Каждая запись несёт env, svc, rid, blk.
#
# Защиты:
#   • RedactingFilter скрывает секреты из настроек (macaroon, токен бота,
#     админ-ключ, DSN) в сообщениях и аргументах.
#   • Контекст живёт в contextvars, параллельные запросы не смешиваются.
# =============================================================================

from __future__ import annotations

import contextvars
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, MutableMapping, Optional, Tuple

from pythonjsonlogger.json import JsonFormatter

from raffle_backend.app.core.config_core import get_settings

ASGIApp = Callable[
    [Mapping[str, Any], Callable[..., Awaitable[Any]], Callable[..., Awaitable[Any]]],
    Awaitable[Any],
]


# -----------------------------------------------------------------------------
# Корреляционный контекст (contextvars), безопасен для async-кода
# -----------------------------------------------------------------------------
_rid_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "rid",
    default=None,
)  # request id
_blk_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "blk",
    default=None,
)  # ключ обрабатываемого цикла розыгрыша


def set_request_context(
    *,
    request_id: Optional[str] = None,
    block_height: Optional[int] = None,
) -> None:
    """
    Привязывает корреляционные поля к текущему async-потоку.

    Используется HTTP-middleware (request id) и вотчером (ключ цикла), чтобы
    строки лога одного запроса или одного коммита группировались.
    """
    if request_id is not None:
        _rid_var.set(str(request_id))
    if block_height is not None:
        _blk_var.set(str(block_height))


def clear_request_context() -> None:
    """Сбрасывает корреляционный контекст после запроса или тика."""
    _rid_var.set(None)
    _blk_var.set(None)


# -----------------------------------------------------------------------------
# Фильтры
# -----------------------------------------------------------------------------
class ContextFilter(logging.Filter):
    """
    Добавляет структурные поля из contextvars и настроек:
      • env: нормализованное окружение (local/dev/prod);
      • svc: имя сервиса (PROJECT_NAME);
      • rid: request id;
      • blk: ключ цикла розыгрыша.
    """

    def __init__(self, env: str, service: str) -> None:
        super().__init__()
        self._env = env
        self._svc = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "env"):
            record.env = self._env
        if not hasattr(record, "svc"):
            record.svc = self._svc
        if not hasattr(record, "rid"):
            record.rid = _rid_var.get() or "-"
        if not hasattr(record, "blk"):
            record.blk = _blk_var.get() or "-"
        return True


class RedactingFilter(logging.Filter):
    """
    Маскирует значения секретов из настроек в message и args.

    Сверяются сами значения, а не имена ключей: macaroon, попавший в текст
    ошибки удалённой ноды, тоже будет скрыт.
    """

    MASK = "****"
    SECRET_KEYS: Tuple[str, ...] = (
        "TELEGRAM_BOT_TOKEN",
        "LND_MACAROON",
        "ADMIN_API_KEY",
        "DATABASE_URL",
    )

    def __init__(self, settings_obj: object) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for key in self.SECRET_KEYS:
            val = getattr(settings_obj, key, None)
            if val and isinstance(val, str):
                self._secrets.append(val)

    def _redact_text(self, text: str) -> str:
        if not text:
            return text
        redacted = text
        for secret in self._secrets:
            if secret in redacted:
                redacted = redacted.replace(secret, self.MASK)
        return redacted

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        if isinstance(record.msg, str):
            record.msg = self._redact_text(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                self._redact_text(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


# -----------------------------------------------------------------------------
# Форматтеры
# -----------------------------------------------------------------------------
class DevFormatter(logging.Formatter):
    """
    Читаемый формат для local/dev.

    2026-01-10 12:00:00 | INFO     | Block Raffle | raffle_backend... | rid=... blk=... | msg
    """

    def __init__(self) -> None:
        super().__init__(
            fmt=(
                "%(asctime)s | %(levelname)-8s | %(svc)s | %(name)s | "
                "rid=%(rid)s blk=%(blk)s | %(message)s"
            ),
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class _RaffleJsonFormatter(JsonFormatter):
    """Переименовывает стандартные атрибуты в короткие стабильные ключи."""

    _RENAMES: Dict[str, str] = {
        "asctime": "time",
        "levelname": "level",
        "svc": "service",
        "name": "logger",
        "message": "msg",
    }

    def process_log_record(self, log_data: Dict[str, Any]) -> Dict[str, Any]:
        base = super().process_log_record(log_data)
        return {self._RENAMES.get(key, key): value for key, value in base.items()}


def _make_json_formatter() -> logging.Formatter:
    """
    JSON-форматтер для продакшена. Поля из `extra=` остаются ключами верхнего
    уровня рядом с time/level/service/logger/env/rid/blk/msg.
    """
    fmt = "%(asctime)s %(levelname)s %(svc)s %(name)s %(env)s %(rid)s %(blk)s %(message)s"
    return _RaffleJsonFormatter(fmt=fmt)


# -----------------------------------------------------------------------------
# Настройка
# -----------------------------------------------------------------------------
def setup_logging() -> None:
    """
    Полная настройка логирования:

      • root-логгер, уровень, обработчик stdout;
      • файловый обработчик в .local_artifacts/logs в режиме local;
      • фильтры контекста и маскирования;
      • логгеры uvicorn/fastapi направлены в root (один формат);
      • логи движка SQLAlchemy в DEBUG.
    """
    settings = get_settings()
    env = settings.env_normalized
    debug = bool(settings.DEBUG)
    service = settings.PROJECT_NAME

    root = logging.getLogger()
    root.handlers.clear()
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL, logging.INFO)
    root.setLevel(level)

    ctx_filter = ContextFilter(env=env, service=service)
    redact_filter = RedactingFilter(settings_obj=settings)

    console_handler = logging.StreamHandler(sys.stdout)
    if env in ("local", "dev") and not settings.LOG_JSON:
        formatter: logging.Formatter = DevFormatter()
    else:
        formatter = _make_json_formatter()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ctx_filter)
    console_handler.addFilter(redact_filter)
    root.addHandler(console_handler)

    if env == "local":
        logs_dir = Path(".local_artifacts") / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "app.log", encoding="utf-8")
        file_handler.setFormatter(DevFormatter())
        file_handler.addFilter(ctx_filter)
        file_handler.addFilter(redact_filter)
        root.addHandler(file_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.setLevel(level)
        logger.propagate = True

    # httpx пишет каждую строку запроса в INFO; оставляем только для отладки
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
    # aiogram.event слишком болтлив в INFO
    logging.getLogger("aiogram").setLevel(logging.DEBUG if debug else logging.WARNING)

    if debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={"details": {"env": env, "debug": debug, "level": logging.getLevelName(level)}},
    )


def get_logger(name: Optional[str] = None, **extra: Any) -> logging.Logger:
    """
    Возвращает логгер, при необходимости обёрнутый в LoggerAdapter с фиксированными полями.

        log = get_logger(__name__, component="watcher")
        log.info("tick started", extra={"height": 840000})
    """
    base = logging.getLogger(name)
    if not extra:
        return base
    return logging.LoggerAdapter(base, extra)  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# ASGI-middleware корреляционных идентификаторов
# -----------------------------------------------------------------------------
class CorrelationIdMiddleware:
    """
    Читает X-Request-ID (или генерирует UUID4 hex), кладёт его в contextvars
    на время запроса и возвращает в заголовках ответа.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(
        self,
        scope: Mapping[str, Any],
        receive: Callable[..., Awaitable[Any]],
        send: Callable[..., Awaitable[Any]],
    ) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        raw_headers: MutableMapping[bytes, bytes] = dict(scope.get("headers") or [])
        headers: Dict[str, str] = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in raw_headers.items()
        }
        rid = headers.get("x-request-id") or uuid.uuid4().hex
        set_request_context(request_id=rid)

        async def send_wrapper(message: Mapping[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers_list: list[Tuple[bytes, bytes]] = list(message.get("headers") or [])
                headers_list.append((b"x-request-id", rid.encode("latin-1")))
                new_message: Dict[str, Any] = dict(message)
                new_message["headers"] = headers_list
                await send(new_message)
                return
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_request_context()


setup_logging()

__all__ = [
    "setup_logging",
    "get_logger",
    "set_request_context",
    "clear_request_context",
    "CorrelationIdMiddleware",
]
