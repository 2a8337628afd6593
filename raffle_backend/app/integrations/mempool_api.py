# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/mempool_api.py
# =============================================================================
# Block Raffle: chain-оракул поверх Esplora-совместимых REST API
# -----------------------------------------------------------------------------
# Назначение:
#   • Текущая высота вершины и хэш блока на заданной высоте.
#   • Fallback по списку базовых URL (сначала mempool.space, затем
#     blockstream.info), каждый запрос ограничен таймаутом.
#
# Канон/инварианты:
#   • Только чтение: оракул не меняет состояние розыгрыша.
#   • Хэши это 64 hex-символа нижнего регистра; высоты целые ≥ 0.
#   • Если отказали все эндпоинты, вызывающий получает OracleUnavailableError,
#     временную ошибку: вотчер просто повторит на следующем тике.
# =============================================================================
from __future__ import annotations

import re
from typing import List, Optional, Protocol, Sequence

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import OracleUnavailableError
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


class ChainOracle(Protocol):
    async def get_height(self) -> int: ...

    async def get_hash_at(self, height: int) -> str: ...


class MempoolAPIError(RuntimeError):
    """Отказ одного эндпоинта (плохой статус или битое тело)."""


class MempoolAPIClient:
    """Клиент Esplora с fallback по эндпоинтам и таймаутами."""

    def __init__(
        self,
        *,
        base_urls: Sequence[str] | None = None,
        timeout_seconds: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_urls: List[str] = [
            url.rstrip("/") for url in (base_urls or settings.MEMPOOL_API_URLS) if url
        ]
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.ORACLE_TIMEOUT_SEC
        self._transport = transport

    async def _request_text(self, url: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(url, headers={"Accept": "text/plain"})
            if response.status_code != 200:
                raise MempoolAPIError(f"HTTP {response.status_code}: {response.text[:200]}")
            return response.text.strip()

    async def _first_success(self, path: str, op: str) -> str:
        errors: list[str] = []
        for base in self.base_urls:
            url = f"{base}{path}"
            try:
                return await self._request_text(url)
            except (httpx.HTTPError, MempoolAPIError) as exc:
                errors.append(f"{base}: {exc}")
                logger.warning(
                    "[Oracle] endpoint failed",
                    extra={"base": base, "op": op, "error": str(exc)},
                )
        raise OracleUnavailableError(
            f"All chain oracle endpoints failed ({op}).",
            details={"errors": errors},
        )

    async def get_height(self) -> int:
        """Высота вершины: GET /blocks/tip/height."""

        raw = await self._first_success("/blocks/tip/height", "get_height")
        try:
            height = int(raw)
        except ValueError as exc:
            raise OracleUnavailableError(
                "Chain oracle returned a malformed height.",
                details={"body": raw[:64]},
            ) from exc
        if height < 0:
            raise OracleUnavailableError("Chain oracle returned a negative height.")
        return height

    async def get_hash_at(self, height: int) -> str:
        """Хэш блока на `height`: GET /block-height/{height}."""

        raw = (await self._first_success(f"/block-height/{int(height)}", "get_hash_at")).lower()
        if not _HASH_RE.match(raw):
            raise OracleUnavailableError(
                "Chain oracle returned a malformed block hash.",
                details={"height": height, "body": raw[:80]},
            )
        return raw


__all__ = ["ChainOracle", "MempoolAPIClient", "MempoolAPIError"]
