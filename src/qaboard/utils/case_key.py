"""Вычисление стабильного ключа тест-кейса внутри запуска."""

from __future__ import annotations

import hashlib

CASE_KEY_VERSION = 1
"""Версия алгоритма ключа.

Включается в хэш: ``sha256(f"v{VERSION}:{payload}")``. При изменении
состава полей инкрементировать — старые ключи перестанут совпадать, и
повторная загрузка старого пакета создаст новые кейсы.
"""


def compute_case_key(
    class_name: str | None,
    name: str,
    *,
    scope: str = "",
    ordinal: int = 0,
) -> str:
    """SHA-256 hex ключ кейса: идентичность для create-if-absent.

    Args:
        class_name: Класс/модуль кейса.
        name: Имя кейса.
        scope: Контекст появления кейса (например, позиция и имя сюита).
            Один и тот же документ всегда даёт одинаковый scope.
        ordinal: Номер повторения одинаковой пары (class_name, name) в scope.

    Returns:
        64-символьная hex-строка.
    """
    payload = "\x1f".join([scope, class_name or "", name, str(ordinal)])
    return hashlib.sha256(
        f"v{CASE_KEY_VERSION}:{payload}".encode("utf-8")
    ).hexdigest()
