"""Хранилище в памяти процесса.

Данные теряются при перезапуске. Подходит для разработки, тестов и
одноразового анализа отчёта из CLI.
"""

from __future__ import annotations

import threading
from typing import Any

from qaboard.models.common import AnalysisStatus, RunStatus, RunType
from qaboard.models.manual import (
    ManualTestCase,
    ManualTestExecution,
    ManualTestRun,
    TestSuite,
)
from qaboard.models.records import FailureAnalysis, TestCase, TestRun, utcnow
from qaboard.storage.base import IdGenerator, SequentialIdGenerator


class InMemoryStore:
    """Реализация TestRunStore и ManualTestStore на словарях.

    Все операции выполняются под одним RLock, поэтому create-if-absent
    атомарен и при обращении из пула потоков FastAPI. Наружу отдаются
    копии моделей: изменить запись можно только через методы хранилища.
    """

    def __init__(self, id_generator: IdGenerator | None = None) -> None:
        self._ids = id_generator or SequentialIdGenerator()
        self._lock = threading.RLock()
        self._runs: dict[int, TestRun] = {}
        self._cases: dict[int, TestCase] = {}
        self._case_index: dict[tuple[int | None, str], int] = {}
        self._analyses: dict[int, FailureAnalysis] = {}
        self._analysis_by_case: dict[int, int] = {}
        self._suites: dict[int, TestSuite] = {}
        self._manual_cases: dict[int, ManualTestCase] = {}
        self._manual_runs: dict[int, ManualTestRun] = {}
        self._executions: dict[int, ManualTestExecution] = {}

    # ------------------------------------------------------------------
    # TestRun
    # ------------------------------------------------------------------

    def create_test_run(
        self,
        *,
        name: str,
        run_type: RunType,
        status: RunStatus,
        xml_content: str | None = None,
    ) -> TestRun:
        with self._lock:
            run = TestRun(
                id=self._ids.next_id("test_run"),
                name=name,
                type=run_type,
                status=status,
                xml_content=xml_content,
            )
            self._runs[run.id] = run
            return run.model_copy(deep=True)

    def get_test_run(self, run_id: int) -> TestRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_test_runs(self) -> list[TestRun]:
        with self._lock:
            runs = [r.model_copy(deep=True) for r in self._runs.values()]
        return sorted(runs, key=lambda r: (r.created_at, r.id), reverse=True)

    def update_test_run(self, run_id: int, **changes: Any) -> TestRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            updated = run.model_copy(update=changes)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # TestCase
    # ------------------------------------------------------------------

    def add_test_case(self, case: TestCase) -> tuple[TestCase, bool]:
        key = (case.test_run_id, case.case_key)
        with self._lock:
            existing_id = self._case_index.get(key)
            if existing_id is not None:
                return self._cases[existing_id].model_copy(deep=True), False

            stored = case.model_copy(update={"id": self._ids.next_id("test_case")})
            self._cases[stored.id] = stored
            self._case_index[key] = stored.id
            return stored.model_copy(deep=True), True

    def get_test_case(self, case_id: int) -> TestCase | None:
        with self._lock:
            case = self._cases.get(case_id)
            return case.model_copy(deep=True) if case else None

    def list_test_cases(self, run_id: int | None = None) -> list[TestCase]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._cases.values()
                if run_id is None or c.test_run_id == run_id
            ]

    def update_test_case_attachments(
        self, case_id: int, attachments: list[str],
    ) -> TestCase | None:
        with self._lock:
            case = self._cases.get(case_id)
            if case is None:
                return None
            updated = case.model_copy(update={"attachments": list(attachments)})
            self._cases[case_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # FailureAnalysis
    # ------------------------------------------------------------------

    def create_failure_analysis_if_absent(
        self, test_case_id: int,
    ) -> tuple[FailureAnalysis, bool]:
        with self._lock:
            existing_id = self._analysis_by_case.get(test_case_id)
            if existing_id is not None:
                return self._analyses[existing_id].model_copy(deep=True), False

            analysis = FailureAnalysis(
                id=self._ids.next_id("failure_analysis"),
                test_case_id=test_case_id,
                status=AnalysisStatus.NEW,
            )
            self._analyses[analysis.id] = analysis
            self._analysis_by_case[test_case_id] = analysis.id
            return analysis.model_copy(deep=True), True

    def get_failure_analysis(self, analysis_id: int) -> FailureAnalysis | None:
        with self._lock:
            analysis = self._analyses.get(analysis_id)
            return analysis.model_copy(deep=True) if analysis else None

    def get_failure_analysis_by_case(
        self, test_case_id: int,
    ) -> FailureAnalysis | None:
        with self._lock:
            analysis_id = self._analysis_by_case.get(test_case_id)
            if analysis_id is None:
                return None
            return self._analyses[analysis_id].model_copy(deep=True)

    def list_failure_analyses(self) -> list[FailureAnalysis]:
        with self._lock:
            analyses = [a.model_copy(deep=True) for a in self._analyses.values()]
        return sorted(analyses, key=lambda a: (a.created_at, a.id), reverse=True)

    def update_failure_analysis(
        self, analysis_id: int, **changes: Any,
    ) -> FailureAnalysis | None:
        with self._lock:
            analysis = self._analyses.get(analysis_id)
            if analysis is None:
                return None
            updated = analysis.model_copy(
                update={**changes, "updated_at": utcnow()},
            )
            self._analyses[analysis_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # TestSuite
    # ------------------------------------------------------------------

    def create_test_suite(self, suite: TestSuite) -> TestSuite:
        with self._lock:
            stored = suite.model_copy(update={"id": self._ids.next_id("test_suite")})
            self._suites[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_test_suite(self, suite_id: int) -> TestSuite | None:
        with self._lock:
            suite = self._suites.get(suite_id)
            return suite.model_copy(deep=True) if suite else None

    def list_test_suites(self) -> list[TestSuite]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._suites.values()]

    def update_test_suite(self, suite_id: int, **changes: Any) -> TestSuite | None:
        with self._lock:
            return self._update(self._suites, suite_id, changes)

    def delete_test_suite(self, suite_id: int) -> bool:
        with self._lock:
            if self._suites.pop(suite_id, None) is None:
                return False
            for child_id, child in list(self._suites.items()):
                if child.parent_id == suite_id:
                    self._suites[child_id] = child.model_copy(update={"parent_id": None})
            for case_id, case in list(self._manual_cases.items()):
                if case.test_suite_id == suite_id:
                    self._manual_cases[case_id] = case.model_copy(
                        update={"test_suite_id": None},
                    )
            return True

    # ------------------------------------------------------------------
    # ManualTestCase
    # ------------------------------------------------------------------

    def create_manual_case(self, case: ManualTestCase) -> ManualTestCase:
        with self._lock:
            stored = case.model_copy(update={"id": self._ids.next_id("manual_test_case")})
            self._manual_cases[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_manual_case(self, case_id: int) -> ManualTestCase | None:
        with self._lock:
            case = self._manual_cases.get(case_id)
            return case.model_copy(deep=True) if case else None

    def list_manual_cases(self, suite_id: int | None = None) -> list[ManualTestCase]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._manual_cases.values()
                if suite_id is None or c.test_suite_id == suite_id
            ]

    def update_manual_case(self, case_id: int, **changes: Any) -> ManualTestCase | None:
        with self._lock:
            return self._update(self._manual_cases, case_id, changes)

    def delete_manual_case(self, case_id: int) -> bool:
        with self._lock:
            if self._manual_cases.pop(case_id, None) is None:
                return False
            for execution_id, execution in list(self._executions.items()):
                if execution.test_case_id == case_id:
                    del self._executions[execution_id]
            return True

    # ------------------------------------------------------------------
    # ManualTestRun
    # ------------------------------------------------------------------

    def create_manual_run(self, run: ManualTestRun) -> ManualTestRun:
        with self._lock:
            stored = run.model_copy(update={"id": self._ids.next_id("manual_test_run")})
            self._manual_runs[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_manual_run(self, run_id: int) -> ManualTestRun | None:
        with self._lock:
            run = self._manual_runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_manual_runs(self) -> list[ManualTestRun]:
        with self._lock:
            runs = [r.model_copy(deep=True) for r in self._manual_runs.values()]
        return sorted(runs, key=lambda r: (r.created_at, r.id), reverse=True)

    def update_manual_run(self, run_id: int, **changes: Any) -> ManualTestRun | None:
        with self._lock:
            return self._update(self._manual_runs, run_id, changes)

    # ------------------------------------------------------------------
    # ManualTestExecution
    # ------------------------------------------------------------------

    def create_manual_execution(
        self, execution: ManualTestExecution,
    ) -> ManualTestExecution:
        with self._lock:
            stored = execution.model_copy(
                update={"id": self._ids.next_id("manual_test_execution")},
            )
            self._executions[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_manual_execution(self, execution_id: int) -> ManualTestExecution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    def list_manual_executions(self, run_id: int) -> list[ManualTestExecution]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.test_run_id == run_id
            ]

    def update_manual_execution(
        self, execution_id: int, **changes: Any,
    ) -> ManualTestExecution | None:
        with self._lock:
            return self._update(self._executions, execution_id, changes)

    @staticmethod
    def _update(table: dict[int, Any], record_id: int, changes: dict[str, Any]) -> Any:
        record = table.get(record_id)
        if record is None:
            return None
        updated = record.model_copy(update=changes)
        table[record_id] = updated
        return updated.model_copy(deep=True)
