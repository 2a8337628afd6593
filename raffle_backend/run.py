"""Точка входа бэкенда блочного розыгрыша."""

from __future__ import annotations

import uvicorn

from raffle_backend.app import create_app
from raffle_backend.app.core.config_core import get_settings


def main() -> None:
    """Запуск HTTP API (циклы вотчера и сброса уведомлений идут отдельными процессами)."""

    settings = get_settings()
    uvicorn.run(create_app(), host=settings.APP_HOST, port=settings.APP_PORT, log_config=None)


if __name__ == "__main__":
    main()
