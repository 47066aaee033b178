"""Выбор бэкенда хранилища по настройкам."""

from __future__ import annotations

import logging

from qaboard.config import Settings
from qaboard.exceptions import ConfigurationError
from qaboard.storage.base import TestRunStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> TestRunStore:
    """Создать хранилище согласно ``QABOARD_STORAGE_BACKEND``.

    Raises:
        ConfigurationError: postgres выбран, но DSN не задан.
    """
    if settings.storage_backend == "postgres":
        if not settings.postgres_dsn:
            raise ConfigurationError(
                "QABOARD_STORAGE_BACKEND=postgres требует QABOARD_POSTGRES_DSN"
            )
        from qaboard.storage.postgres import PostgresStore

        logger.info("Хранилище: PostgreSQL")
        return PostgresStore(settings.postgres_dsn)

    from qaboard.storage.memory import InMemoryStore

    logger.info("Хранилище: in-memory (данные не сохраняются между перезапусками)")
    return InMemoryStore()
