"""Сервис ручного тестирования: дерево сюитов, ручные кейсы, прогоны и выполнения.

Ссылочная целостность проверяется здесь, до записи в хранилище:
родитель сюита, сюит кейса, прогон и кейс выполнения должны существовать.
"""

from __future__ import annotations

import logging
from collections import Counter

from qaboard.exceptions import InvalidReferenceError, RunClosedError, UnknownEntityError
from qaboard.models.common import ExecutionStatus, ManualRunStatus
from qaboard.models.manual import (
    ExecutionCreate,
    ExecutionUpdate,
    ManualCaseCreate,
    ManualCaseUpdate,
    ManualRunCreate,
    ManualRunProgress,
    ManualRunUpdate,
    ManualTestCase,
    ManualTestExecution,
    ManualTestRun,
    SuiteCreate,
    SuiteNode,
    SuiteUpdate,
    TestSuite,
)
from qaboard.models.records import utcnow
from qaboard.services.aggregation import pass_rate
from qaboard.storage.base import ManualTestStore

logger = logging.getLogger(__name__)

SUITE = "Test suite"
MANUAL_CASE = "Manual test case"
MANUAL_RUN = "Manual test run"
EXECUTION = "Manual test execution"

# Поля, которые у записи обязательны: null в PATCH означает «не менять»
_REQUIRED_FIELDS = frozenset({"name", "title", "content", "priority", "tags", "status"})


def _changes(update) -> dict:
    changes = update.model_dump(exclude_unset=True)
    for field_name in _REQUIRED_FIELDS & set(changes):
        if changes[field_name] is None:
            changes.pop(field_name)
    return changes


class ManualTestingService:
    """CRUD ручного тестирования поверх ``ManualTestStore``.

    Прогон сам переходит not_started → in_progress, как только первое
    выполнение получает результат. completed выставляется только явно;
    выполнения завершённого прогона не меняются.
    """

    def __init__(self, store: ManualTestStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Сюиты
    # ------------------------------------------------------------------

    def create_suite(self, data: SuiteCreate) -> TestSuite:
        """Создать сюит в корне или внутри ``parent_id``.

        Raises:
            InvalidReferenceError: Родительский сюит не существует.
        """
        if data.parent_id is not None:
            self._require_reference(
                self._store.get_test_suite(data.parent_id), SUITE, data.parent_id,
            )
        suite = self._store.create_test_suite(
            TestSuite(id=0, **data.model_dump()),
        )
        logger.info("Создан сюит #%d (%s)", suite.id, suite.name)
        return suite

    def get_suite(self, suite_id: int) -> TestSuite:
        suite = self._store.get_test_suite(suite_id)
        if suite is None:
            raise UnknownEntityError(SUITE, suite_id)
        return suite

    def list_suites(self) -> list[TestSuite]:
        return self._store.list_test_suites()

    def suite_tree(self) -> list[SuiteNode]:
        """Корни дерева сюитов с вложенными детьми.

        Сюит с несуществующим родителем показывается в корне.
        """
        suites = self._store.list_test_suites()
        case_counts = Counter(
            c.test_suite_id for c in self._store.list_manual_cases()
            if c.test_suite_id is not None
        )
        nodes = {s.id: SuiteNode(suite=s, case_count=case_counts[s.id]) for s in suites}

        roots: list[SuiteNode] = []
        for suite in suites:
            parent = nodes.get(suite.parent_id) if suite.parent_id is not None else None
            if parent is None:
                roots.append(nodes[suite.id])
            else:
                parent.children.append(nodes[suite.id])
        return roots

    def update_suite(self, suite_id: int, update: SuiteUpdate) -> TestSuite:
        """Переименовать или перенести сюит.

        Raises:
            UnknownEntityError: Сюит не найден.
            InvalidReferenceError: Новый родитель не существует, либо
                перенос замкнул бы дерево в цикл.
        """
        self.get_suite(suite_id)
        changes = _changes(update)
        parent_id = changes.get("parent_id")
        if parent_id is not None:
            self._require_reference(self._store.get_test_suite(parent_id), SUITE, parent_id)
            self._check_no_cycle(suite_id, parent_id)

        updated = self._store.update_test_suite(suite_id, **changes)
        if updated is None:
            raise UnknownEntityError(SUITE, suite_id)
        return updated

    def delete_suite(self, suite_id: int) -> None:
        """Удалить сюит; дочерние сюиты и его кейсы поднимаются в корень."""
        if not self._store.delete_test_suite(suite_id):
            raise UnknownEntityError(SUITE, suite_id)
        logger.info("Сюит #%d удалён", suite_id)

    # ------------------------------------------------------------------
    # Ручные кейсы
    # ------------------------------------------------------------------

    def create_case(self, data: ManualCaseCreate) -> ManualTestCase:
        if data.test_suite_id is not None:
            self._require_reference(
                self._store.get_test_suite(data.test_suite_id), SUITE, data.test_suite_id,
            )
        case = self._store.create_manual_case(ManualTestCase(id=0, **data.model_dump()))
        logger.info("Создан ручной кейс #%d (%s)", case.id, case.title)
        return case

    def get_case(self, case_id: int) -> ManualTestCase:
        case = self._store.get_manual_case(case_id)
        if case is None:
            raise UnknownEntityError(MANUAL_CASE, case_id)
        return case

    def list_cases(self, suite_id: int | None = None) -> list[ManualTestCase]:
        return self._store.list_manual_cases(suite_id)

    def update_case(self, case_id: int, update: ManualCaseUpdate) -> ManualTestCase:
        self.get_case(case_id)
        changes = _changes(update)
        suite_id = changes.get("test_suite_id")
        if suite_id is not None:
            self._require_reference(self._store.get_test_suite(suite_id), SUITE, suite_id)

        updated = self._store.update_manual_case(case_id, **changes)
        if updated is None:
            raise UnknownEntityError(MANUAL_CASE, case_id)
        return updated

    def delete_case(self, case_id: int) -> None:
        """Удалить кейс вместе с его выполнениями."""
        if not self._store.delete_manual_case(case_id):
            raise UnknownEntityError(MANUAL_CASE, case_id)
        logger.info("Ручной кейс #%d удалён", case_id)

    # ------------------------------------------------------------------
    # Прогоны
    # ------------------------------------------------------------------

    def create_run(self, data: ManualRunCreate) -> ManualTestRun:
        run = self._store.create_manual_run(
            ManualTestRun(id=0, name=data.name, assigned_to=data.assigned_to),
        )
        logger.info("Создан ручной прогон #%d (%s)", run.id, run.name)
        return run

    def get_run(self, run_id: int) -> ManualTestRun:
        run = self._store.get_manual_run(run_id)
        if run is None:
            raise UnknownEntityError(MANUAL_RUN, run_id)
        return run

    def list_runs(self) -> list[ManualTestRun]:
        return self._store.list_manual_runs()

    def update_run(self, run_id: int, update: ManualRunUpdate) -> ManualTestRun:
        current = self.get_run(run_id)
        updated = self._store.update_manual_run(run_id, **_changes(update))
        if updated is None:
            raise UnknownEntityError(MANUAL_RUN, run_id)
        if updated.status is not current.status:
            logger.info(
                "Ручной прогон #%d: %s → %s",
                run_id,
                current.status.value,
                updated.status.value,
            )
        return updated

    def run_progress(self, run_id: int) -> ManualRunProgress:
        """Счётчики выполнений прогона по статусам.

        pass_rate считается от всех выполнений прогона, включая pending.
        """
        run = self.get_run(run_id)
        counts = Counter(e.status for e in self._store.list_manual_executions(run_id))
        total = sum(counts.values())
        passed = counts.get(ExecutionStatus.PASSED, 0)
        return ManualRunProgress(
            run=run,
            total=total,
            pending=counts.get(ExecutionStatus.PENDING, 0),
            passed=passed,
            failed=counts.get(ExecutionStatus.FAILED, 0),
            blocked=counts.get(ExecutionStatus.BLOCKED, 0),
            pass_rate=pass_rate(passed, total),
        )

    # ------------------------------------------------------------------
    # Выполнения
    # ------------------------------------------------------------------

    def create_execution(self, data: ExecutionCreate) -> ManualTestExecution:
        """Добавить ручной кейс в прогон (сразу с результатом или pending).

        Raises:
            InvalidReferenceError: Прогон или кейс не существует.
            RunClosedError: Прогон уже completed.
        """
        run = self._require_reference(
            self._store.get_manual_run(data.test_run_id), MANUAL_RUN, data.test_run_id,
        )
        self._require_reference(
            self._store.get_manual_case(data.test_case_id), MANUAL_CASE, data.test_case_id,
        )
        self._check_run_open(run)

        execution = self._store.create_manual_execution(
            ManualTestExecution(
                id=0,
                test_run_id=data.test_run_id,
                test_case_id=data.test_case_id,
                status=data.status,
                notes=data.notes,
                executed_at=None if data.status is ExecutionStatus.PENDING else utcnow(),
            )
        )
        self._mark_run_started(run, execution.status)
        return execution

    def list_executions(self, run_id: int) -> list[ManualTestExecution]:
        self.get_run(run_id)
        return self._store.list_manual_executions(run_id)

    def update_execution(
        self, execution_id: int, update: ExecutionUpdate,
    ) -> ManualTestExecution:
        """Записать результат выполнения.

        Raises:
            UnknownEntityError: Выполнение не найдено.
            RunClosedError: Прогон уже completed.
        """
        current = self._store.get_manual_execution(execution_id)
        if current is None:
            raise UnknownEntityError(EXECUTION, execution_id)
        run = self.get_run(current.test_run_id)
        self._check_run_open(run)

        changes = _changes(update)
        status = changes.get("status")
        if status is not None and status is not current.status:
            changes["executed_at"] = None if status is ExecutionStatus.PENDING else utcnow()

        updated = self._store.update_manual_execution(execution_id, **changes)
        if updated is None:
            raise UnknownEntityError(EXECUTION, execution_id)
        self._mark_run_started(run, updated.status)
        return updated

    # ------------------------------------------------------------------
    # Внутренние вспомогательные методы
    # ------------------------------------------------------------------

    @staticmethod
    def _require_reference(record, entity: str, record_id: int):
        if record is None:
            raise InvalidReferenceError(f"{entity} #{record_id} does not exist")
        return record

    @staticmethod
    def _check_run_open(run: ManualTestRun) -> None:
        if run.status is ManualRunStatus.COMPLETED:
            raise RunClosedError(run.id, run.status.value)

    def _check_no_cycle(self, suite_id: int, parent_id: int) -> None:
        """Новый родитель не может быть самим сюитом или его потомком."""
        parents = {s.id: s.parent_id for s in self._store.list_test_suites()}
        seen: set[int] = set()
        current: int | None = parent_id
        while current is not None and current not in seen:
            if current == suite_id:
                raise InvalidReferenceError(
                    f"{SUITE} #{parent_id} is inside #{suite_id} and cannot be its parent"
                )
            seen.add(current)
            current = parents.get(current)

    def _mark_run_started(self, run: ManualTestRun, status: ExecutionStatus) -> None:
        if run.status is ManualRunStatus.NOT_STARTED and status is not ExecutionStatus.PENDING:
            self._store.update_manual_run(run.id, status=ManualRunStatus.IN_PROGRESS)
            logger.info(
                "Ручной прогон #%d: %s → %s",
                run.id,
                ManualRunStatus.NOT_STARTED.value,
                ManualRunStatus.IN_PROGRESS.value,
            )
