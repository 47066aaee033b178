"""Абстрактный интерфейс хранилища записей дашборда."""

from __future__ import annotations

import itertools
import threading
from typing import Any, Protocol, runtime_checkable

from qaboard.models.common import RunStatus, RunType
from qaboard.models.manual import (
    ManualTestCase,
    ManualTestExecution,
    ManualTestRun,
    TestSuite,
)
from qaboard.models.records import FailureAnalysis, TestCase, TestRun


@runtime_checkable
class IdGenerator(Protocol):
    """Стратегия выдачи идентификаторов для новых записей."""

    def next_id(self, entity: str) -> int:
        """Следующий ID для сущности (``test_run``, ``test_case``, ``test_suite`` и т.д.)."""
        ...


class SequentialIdGenerator:
    """Автоинкремент с 1, отдельный счётчик на каждую сущность."""

    def __init__(self) -> None:
        self._counters: dict[str, itertools.count] = {}
        self._lock = threading.Lock()

    def next_id(self, entity: str) -> int:
        with self._lock:
            counter = self._counters.setdefault(entity, itertools.count(1))
            return next(counter)


@runtime_checkable
class TestRunStore(Protocol):
    """Протокол хранилища TestRun / TestCase / FailureAnalysis.

    Логика сверки зависит только от этого контракта, не от конкретного
    бэкенда.

    Реализации:
    - InMemoryStore: словари в памяти процесса (разработка, тесты)
    - PostgresStore: таблицы qaboard.* в PostgreSQL
    """

    # --- TestRun ---

    def create_test_run(
        self,
        *,
        name: str,
        run_type: RunType,
        status: RunStatus,
        xml_content: str | None = None,
    ) -> TestRun:
        """Создать запуск с нулевыми счётчиками."""
        ...

    def get_test_run(self, run_id: int) -> TestRun | None:
        ...

    def list_test_runs(self) -> list[TestRun]:
        """Все запуски, новые первыми."""
        ...

    def update_test_run(self, run_id: int, **changes: Any) -> TestRun | None:
        """Обновить поля запуска. None, если запуск не найден."""
        ...

    # --- TestCase ---

    def add_test_case(self, case: TestCase) -> tuple[TestCase, bool]:
        """Create-if-absent по ``(test_run_id, case_key)``.

        ``case.id`` игнорируется, ID выдаёт хранилище.

        Returns:
            (сохранённый кейс, True если создан / False если уже был).
        """
        ...

    def get_test_case(self, case_id: int) -> TestCase | None:
        ...

    def list_test_cases(self, run_id: int | None = None) -> list[TestCase]:
        """Кейсы запуска (или все) в порядке создания."""
        ...

    def update_test_case_attachments(
        self, case_id: int, attachments: list[str],
    ) -> TestCase | None:
        """Дозаполнить аттачменты — единственное допустимое изменение кейса."""
        ...

    # --- FailureAnalysis ---

    def create_failure_analysis_if_absent(
        self, test_case_id: int,
    ) -> tuple[FailureAnalysis, bool]:
        """Create-if-absent по ``test_case_id`` в статусе ``new``.

        Returns:
            (запись, True если создана / False если уже была).
        """
        ...

    def get_failure_analysis(self, analysis_id: int) -> FailureAnalysis | None:
        ...

    def get_failure_analysis_by_case(
        self, test_case_id: int,
    ) -> FailureAnalysis | None:
        ...

    def list_failure_analyses(self) -> list[FailureAnalysis]:
        """Все записи, новые первыми."""
        ...

    def update_failure_analysis(
        self, analysis_id: int, **changes: Any,
    ) -> FailureAnalysis | None:
        """Обновить поля записи и ``updated_at``. None, если не найдена."""
        ...


@runtime_checkable
class ManualTestStore(Protocol):
    """Протокол хранилища ручного тестирования.

    ``create_*`` игнорируют ``id`` переданной модели: ID выдаёт хранилище.
    Ссылочную целостность (существование родителя, прогона, кейса)
    проверяет сервис, хранилище лишь поддерживает её при удалении.
    """

    # --- TestSuite ---

    def create_test_suite(self, suite: TestSuite) -> TestSuite:
        ...

    def get_test_suite(self, suite_id: int) -> TestSuite | None:
        ...

    def list_test_suites(self) -> list[TestSuite]:
        """Все сюиты в порядке создания."""
        ...

    def update_test_suite(self, suite_id: int, **changes: Any) -> TestSuite | None:
        ...

    def delete_test_suite(self, suite_id: int) -> bool:
        """Удалить сюит. Дочерние сюиты и кейсы поднимаются в корень
        (``parent_id`` / ``test_suite_id`` → None)."""
        ...

    # --- ManualTestCase ---

    def create_manual_case(self, case: ManualTestCase) -> ManualTestCase:
        ...

    def get_manual_case(self, case_id: int) -> ManualTestCase | None:
        ...

    def list_manual_cases(self, suite_id: int | None = None) -> list[ManualTestCase]:
        """Кейсы сюита (или все) в порядке создания."""
        ...

    def update_manual_case(self, case_id: int, **changes: Any) -> ManualTestCase | None:
        ...

    def delete_manual_case(self, case_id: int) -> bool:
        """Удалить кейс вместе с его выполнениями во всех прогонах."""
        ...

    # --- ManualTestRun ---

    def create_manual_run(self, run: ManualTestRun) -> ManualTestRun:
        ...

    def get_manual_run(self, run_id: int) -> ManualTestRun | None:
        ...

    def list_manual_runs(self) -> list[ManualTestRun]:
        """Все ручные прогоны, новые первыми."""
        ...

    def update_manual_run(self, run_id: int, **changes: Any) -> ManualTestRun | None:
        ...

    # --- ManualTestExecution ---

    def create_manual_execution(
        self, execution: ManualTestExecution,
    ) -> ManualTestExecution:
        ...

    def get_manual_execution(self, execution_id: int) -> ManualTestExecution | None:
        ...

    def list_manual_executions(self, run_id: int) -> list[ManualTestExecution]:
        """Выполнения прогона в порядке создания."""
        ...

    def update_manual_execution(
        self, execution_id: int, **changes: Any,
    ) -> ManualTestExecution | None:
        ...
