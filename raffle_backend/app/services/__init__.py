# -*- coding: utf-8 -*-
# raffle_backend/app/services/__init__.py
# =============================================================================
# Block Raffle: слой сервисов
# -----------------------------------------------------------------------------
# Назначение:
#   • Доменные сервисы движка розыгрыша: книга фонда, выбор победителя,
#     вотчер, claim/LNURL, платежи, уведомления, персистентное состояние.
#   • Модули импортируются напрямую (services.watcher_service, ...); пакет
#     не выполняет импортов с побочными эффектами.
# =============================================================================
