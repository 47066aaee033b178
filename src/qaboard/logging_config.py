"""Настройка логирования для приложения qaboard."""

import logging
import sys

# Сторонние логгеры, которые на INFO пишут по строке на запрос/соединение
_NOISY_LOGGERS = ("httpx", "httpcore", "psycopg", "uvicorn.access")


def setup_logging(level: str = "INFO") -> None:
    """Настроить корневой логгер: один stderr-обработчик, формат с именем модуля.

    Повторный вызов (CLI, затем lifespan сервера в тестах) заменяет
    обработчик, а не добавляет второй.

    Args:
        level: Имя уровня логирования (DEBUG, INFO, WARNING, ERROR).
            Неизвестное имя трактуется как INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
