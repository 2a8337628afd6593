# -*- coding: utf-8 -*-
# raffle_backend/app/core/errors_core.py
# =============================================================================
# Назначение:
#   • Единый слой ошибок бэкенда розыгрыша.
#   • Стабильные коды ошибок для клиентов и логов.
#   • Единообразные JSON-ответы FastAPI.
#   • Ошибки протокола LNURL в том виде, который ждут кошельки.
#
# Канон/инварианты:
#   • Сервисы бросают только доменные исключения этого модуля (или
#     InvariantViolation из system_locks).
#   • Клиент не видит технических деталей (stack trace, DSN, macaroon).
#   • PaymentError хранит текст ноды дословно.
#   • На LnurlError отвечаем HTTP 200 и {"status": "ERROR", "reason"}.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, cast

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.system_locks import InvariantViolation

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Базовая доменная ошибка
# -----------------------------------------------------------------------------
@dataclass(eq=False)
class RaffleError(Exception):
    """
    Базовое доменное исключение.

    Поля:
      • code: стабильный машинный код (snake_case).
      • message: короткое сообщение, безопасное для клиента.
      • http_status: HTTP-статус по умолчанию.
      • details: необязательные безопасные детали (без секретов).
    """

    code: str
    message: str
    http_status: int = status.HTTP_400_BAD_REQUEST
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# -----------------------------------------------------------------------------
# Типовые доменные ошибки
# -----------------------------------------------------------------------------
class NotFoundError(RaffleError):
    """Розыгрыш, билет или claim не найден."""

    def __init__(
        self,
        message: str = "Resource not found.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="not_found",
            message=message,
            http_status=status.HTTP_404_NOT_FOUND,
            details=details or {},
        )


class ValidationError(RaffleError):
    """Некорректные входные данные или состояние."""

    def __init__(
        self,
        message: str = "Invalid data.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="validation_error",
            message=message,
            http_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details or {},
        )


class ConflictError(RaffleError):
    """Цикл уже рассчитан (или пропущен), а запрос повторил бы его."""

    def __init__(
        self,
        message: str = "Conflict.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="conflict",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class OracleUnavailableError(RaffleError):
    """Все эндпоинты chain-оракула недоступны. Временно: повтор на следующем тике."""

    def __init__(
        self,
        message: str = "Chain oracle unavailable.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="oracle_unavailable",
            message=message,
            http_status=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details or {},
        )


class LightningUnavailableError(RaffleError):
    """Lightning-нода не настроена или недоступна."""

    def __init__(
        self,
        message: str = "Lightning node unavailable.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="lightning_unavailable",
            message=message,
            http_status=status.HTTP_502_BAD_GATEWAY,
            details=details or {},
        )


class PaymentError(RaffleError):
    """
    Попытка платежа не удалась. `message` это текст ноды без изменений:
    кошелёк и оператор видят ровно то, что ответила нода.
    """

    def __init__(
        self,
        message: str = "Payment failed.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="payment_failed",
            message=message,
            http_status=status.HTTP_502_BAD_GATEWAY,
            details=details or {},
        )


class PaymentOutcomeUnknownError(PaymentError):
    """
    Запрос на отправку ушёл, но ответа не было (таймаут, обрыв соединения).
    Нода ещё может провести платёж, поэтому claim остаётся зарезервированным
    до сверки оператором.
    """

    def __init__(
        self,
        message: str = "Payment outcome unknown.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.code = "payment_outcome_unknown"


class LnurlError(Exception):
    """
    Ошибка протокола LUD-03. Отдаётся как HTTP 200 с
    {"status": "ERROR", "reason": ...}.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_payload(self) -> Dict[str, Any]:
        return {"status": "ERROR", "reason": self.reason}


# -----------------------------------------------------------------------------
# Нормализация исключений → (status_code, payload)
# -----------------------------------------------------------------------------
def normalize_exception(
    exc: BaseException,
) -> Tuple[int, Dict[str, Any]]:
    """
    Приводит любое исключение к каноническому HTTP-ответу.

      • RaffleError        → свой http_status + to_payload().
      • LnurlError         → 200 + тело ошибки LUD.
      • InvariantViolation → 500 + {"error": "invariant_violation"}.
      • HTTPException      → status_code + {"error": "http_error", ...}.
      • всё остальное      → 500 + {"error": "internal_error"}.
    """
    if isinstance(exc, RaffleError):
        return exc.http_status, exc.to_payload()

    if isinstance(exc, LnurlError):
        return status.HTTP_200_OK, exc.to_payload()

    if isinstance(exc, InvariantViolation):
        logger.error("InvariantViolation occurred: %s", str(exc))
        return (
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            {
                "error": "invariant_violation",
                "message": str(exc),
            },
        )

    if isinstance(exc, HTTPException):
        msg: str
        if isinstance(exc.detail, str):
            msg = exc.detail
            details: Dict[str, Any] = {}
        elif isinstance(exc.detail, dict):
            details = cast(Dict[str, Any], exc.detail)
            msg = details.get("message") or details.get("detail") or "HTTP error."
        else:
            msg = "HTTP error."
            details = {}

        payload: Dict[str, Any] = {
            "error": "http_error",
            "message": msg,
        }
        if details:
            payload["details"] = details
        return exc.status_code, payload

    logger.error(
        "Unhandled exception",
        extra={"error_type": type(exc).__name__},
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {
            "error": "internal_error",
            "message": "Internal server error.",
        },
    )


# -----------------------------------------------------------------------------
# Обработчики FastAPI
# -----------------------------------------------------------------------------
async def raffle_error_handler(request: Request, exc: RaffleError) -> JSONResponse:
    status_code, payload = normalize_exception(exc)
    logger.warning(
        "RaffleError handled",
        extra={
            "path": request.url.path,
            "error": exc.code,
            "status": status_code,
        },
    )
    return JSONResponse(status_code=status_code, content=payload)


async def lnurl_error_handler(request: Request, exc: LnurlError) -> JSONResponse:
    """Кошельки читают тело, а не статус: всегда 200."""
    status_code, payload = normalize_exception(exc)
    logger.info(
        "[LNURL] request rejected",
        extra={"path": request.url.path, "reason": exc.reason},
    )
    return JSONResponse(status_code=status_code, content=payload)


async def invariant_violation_handler(
    request: Request, exc: InvariantViolation
) -> JSONResponse:
    status_code, payload = normalize_exception(exc)
    logger.error(
        "InvariantViolation handled",
        extra={
            "path": request.url.path,
            "status": status_code,
        },
    )
    return JSONResponse(status_code=status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Логирует stack trace и тип; клиент получает только internal_error."""
    status_code, payload = normalize_exception(exc)
    logger.error(
        "Unhandled exception handled by generic handler",
        extra={
            "path": request.url.path,
            "status": status_code,
            "exc_type": type(exc).__name__,
        },
    )
    return JSONResponse(status_code=status_code, content=payload)


def setup_exception_handlers(app: FastAPI) -> None:
    """Вызывать один раз сразу после создания FastAPI(...)."""
    app.add_exception_handler(RaffleError, raffle_error_handler)
    app.add_exception_handler(LnurlError, lnurl_error_handler)
    app.add_exception_handler(InvariantViolation, invariant_violation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Exception handlers registered for RaffleError/LnurlError/InvariantViolation/Exception")


__all__ = [
    "RaffleError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "OracleUnavailableError",
    "LightningUnavailableError",
    "PaymentError",
    "PaymentOutcomeUnknownError",
    "LnurlError",
    "normalize_exception",
    "setup_exception_handlers",
]
