"""PostgreSQL-реализация хранилища записей дашборда.

Схема создаётся скриптом ``sql/setup_db.py``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from qaboard.exceptions import StorageError
from qaboard.models.common import RunStatus, RunType
from qaboard.models.manual import (
    ManualTestCase,
    ManualTestExecution,
    ManualTestRun,
    TestSuite,
)
from qaboard.models.records import FailureAnalysis, TestCase, TestRun

logger = logging.getLogger(__name__)

_RUN_COLUMNS = frozenset({
    "name", "type", "status", "total_tests", "passed_tests", "failed_tests",
    "skipped_tests", "duration", "xml_content",
})
_ANALYSIS_COLUMNS = frozenset({"status", "assigned_to", "resolution"})
_SUITE_COLUMNS = frozenset({"name", "description", "parent_id"})
_MANUAL_CASE_COLUMNS = frozenset({
    "title", "description", "content", "priority", "category", "tags", "test_suite_id",
})
_MANUAL_RUN_COLUMNS = frozenset({"name", "status", "assigned_to"})
_EXECUTION_COLUMNS = frozenset({"status", "notes", "executed_at"})


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return Jsonb(value)
    return value


class PostgresStore:
    """Реализация TestRunStore и ManualTestStore для PostgreSQL.

    Использует синхронный psycopg3. Каждый метод открывает и закрывает
    соединение (short-lived connections). Идентификаторы выдаёт БД
    (BIGSERIAL), create-if-absent реализован через ``ON CONFLICT DO NOTHING``
    на уникальных индексах ``(test_run_id, case_key)`` и ``test_case_id``.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _fetch_one(self, query: Any, params: tuple) -> dict | None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    row = cur.fetchone()
                    conn.commit()
                    return row
        except psycopg.Error as exc:
            raise StorageError(f"Ошибка запроса к PostgreSQL: {exc}") from exc

    def _fetch_all(self, query: Any, params: tuple = ()) -> list[dict]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
        except psycopg.Error as exc:
            raise StorageError(f"Ошибка чтения из PostgreSQL: {exc}") from exc

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
        query = """
            INSERT INTO qaboard.test_runs (name, type, status, xml_content)
            VALUES (%s, %s, %s, %s)
            RETURNING *
        """
        row = self._fetch_one(
            query, (name, run_type.value, status.value, xml_content),
        )
        if row is None:
            raise StorageError("INSERT test_runs не вернул строку")
        return TestRun.model_validate(row)

    def get_test_run(self, run_id: int) -> TestRun | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.test_runs WHERE id = %s", (run_id,),
        )
        return TestRun.model_validate(row) if row else None

    def list_test_runs(self) -> list[TestRun]:
        rows = self._fetch_all(
            "SELECT * FROM qaboard.test_runs ORDER BY created_at DESC, id DESC",
        )
        return [TestRun.model_validate(r) for r in rows]

    def update_test_run(self, run_id: int, **changes: Any) -> TestRun | None:
        unknown = set(changes) - _RUN_COLUMNS
        if unknown:
            raise ValueError(f"Недопустимые поля test_runs: {sorted(unknown)}")
        if not changes:
            return self.get_test_run(run_id)

        query = sql.SQL(
            "UPDATE qaboard.test_runs SET {} WHERE id = %s RETURNING *"
        ).format(
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column))
                for column in changes
            )
        )
        params = (*(_db_value(v) for v in changes.values()), run_id)
        row = self._fetch_one(query, params)
        return TestRun.model_validate(row) if row else None

    # ------------------------------------------------------------------
    # TestCase
    # ------------------------------------------------------------------

    def add_test_case(self, case: TestCase) -> tuple[TestCase, bool]:
        insert = """
            INSERT INTO qaboard.test_cases
                (test_run_id, case_key, name, class_name, status, duration,
                 error_message, stack_trace, attachments)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (test_run_id, case_key) DO NOTHING
            RETURNING *
        """
        row = self._fetch_one(
            insert,
            (
                case.test_run_id,
                case.case_key,
                case.name,
                case.class_name,
                case.status.value,
                case.duration,
                case.error_message,
                case.stack_trace,
                Jsonb(case.attachments) if case.attachments is not None else None,
            ),
        )
        if row is not None:
            return TestCase.model_validate(row), True

        existing = self._fetch_one(
            "SELECT * FROM qaboard.test_cases WHERE test_run_id = %s AND case_key = %s",
            (case.test_run_id, case.case_key),
        )
        if existing is None:
            raise StorageError(
                f"Кейс {case.case_key} не создан и не найден в запуске #{case.test_run_id}"
            )
        logger.debug(
            "Кейс %s уже есть в запуске #%s, повторная запись пропущена",
            case.case_key[:12],
            case.test_run_id,
        )
        return TestCase.model_validate(existing), False

    def get_test_case(self, case_id: int) -> TestCase | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.test_cases WHERE id = %s", (case_id,),
        )
        return TestCase.model_validate(row) if row else None

    def list_test_cases(self, run_id: int | None = None) -> list[TestCase]:
        if run_id is None:
            rows = self._fetch_all("SELECT * FROM qaboard.test_cases ORDER BY id")
        else:
            rows = self._fetch_all(
                "SELECT * FROM qaboard.test_cases WHERE test_run_id = %s ORDER BY id",
                (run_id,),
            )
        return [TestCase.model_validate(r) for r in rows]

    def update_test_case_attachments(
        self, case_id: int, attachments: list[str],
    ) -> TestCase | None:
        row = self._fetch_one(
            "UPDATE qaboard.test_cases SET attachments = %s WHERE id = %s RETURNING *",
            (Jsonb(list(attachments)), case_id),
        )
        return TestCase.model_validate(row) if row else None

    # ------------------------------------------------------------------
    # FailureAnalysis
    # ------------------------------------------------------------------

    def create_failure_analysis_if_absent(
        self, test_case_id: int,
    ) -> tuple[FailureAnalysis, bool]:
        insert = """
            INSERT INTO qaboard.failure_analysis (test_case_id)
            VALUES (%s)
            ON CONFLICT (test_case_id) DO NOTHING
            RETURNING *
        """
        row = self._fetch_one(insert, (test_case_id,))
        if row is not None:
            return FailureAnalysis.model_validate(row), True

        existing = self.get_failure_analysis_by_case(test_case_id)
        if existing is None:
            raise StorageError(
                f"FailureAnalysis для кейса #{test_case_id} не создан и не найден"
            )
        return existing, False

    def get_failure_analysis(self, analysis_id: int) -> FailureAnalysis | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.failure_analysis WHERE id = %s", (analysis_id,),
        )
        return FailureAnalysis.model_validate(row) if row else None

    def get_failure_analysis_by_case(
        self, test_case_id: int,
    ) -> FailureAnalysis | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.failure_analysis WHERE test_case_id = %s",
            (test_case_id,),
        )
        return FailureAnalysis.model_validate(row) if row else None

    def list_failure_analyses(self) -> list[FailureAnalysis]:
        rows = self._fetch_all(
            "SELECT * FROM qaboard.failure_analysis ORDER BY created_at DESC, id DESC",
        )
        return [FailureAnalysis.model_validate(r) for r in rows]

    def update_failure_analysis(
        self, analysis_id: int, **changes: Any,
    ) -> FailureAnalysis | None:
        unknown = set(changes) - _ANALYSIS_COLUMNS
        if unknown:
            raise ValueError(f"Недопустимые поля failure_analysis: {sorted(unknown)}")

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE qaboard.failure_analysis SET {} WHERE id = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        params = (*(_db_value(v) for v in changes.values()), analysis_id)
        row = self._fetch_one(query, params)
        return FailureAnalysis.model_validate(row) if row else None

    # ------------------------------------------------------------------
    # Ручное тестирование
    # ------------------------------------------------------------------

    def _update_row(
        self,
        table: str,
        allowed: frozenset[str],
        record_id: int,
        changes: dict[str, Any],
    ) -> dict | None:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Недопустимые поля {table}: {sorted(unknown)}")
        if not changes:
            return self._fetch_one(
                sql.SQL("SELECT * FROM qaboard.{} WHERE id = %s").format(
                    sql.Identifier(table),
                ),
                (record_id,),
            )

        query = sql.SQL("UPDATE qaboard.{} SET {} WHERE id = %s RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column))
                for column in changes
            ),
        )
        params = (*(_db_value(v) for v in changes.values()), record_id)
        return self._fetch_one(query, params)

    def _delete_row(self, table: str, record_id: int) -> bool:
        row = self._fetch_one(
            sql.SQL("DELETE FROM qaboard.{} WHERE id = %s RETURNING id").format(
                sql.Identifier(table),
            ),
            (record_id,),
        )
        return row is not None

    # --- TestSuite ---

    def create_test_suite(self, suite: TestSuite) -> TestSuite:
        row = self._fetch_one(
            """
            INSERT INTO qaboard.test_suites (name, description, parent_id)
            VALUES (%s, %s, %s)
            RETURNING *
            """,
            (suite.name, suite.description, suite.parent_id),
        )
        if row is None:
            raise StorageError("INSERT test_suites не вернул строку")
        return TestSuite.model_validate(row)

    def get_test_suite(self, suite_id: int) -> TestSuite | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.test_suites WHERE id = %s", (suite_id,),
        )
        return TestSuite.model_validate(row) if row else None

    def list_test_suites(self) -> list[TestSuite]:
        rows = self._fetch_all("SELECT * FROM qaboard.test_suites ORDER BY id")
        return [TestSuite.model_validate(r) for r in rows]

    def update_test_suite(self, suite_id: int, **changes: Any) -> TestSuite | None:
        row = self._update_row("test_suites", _SUITE_COLUMNS, suite_id, changes)
        return TestSuite.model_validate(row) if row else None

    def delete_test_suite(self, suite_id: int) -> bool:
        # Дети и кейсы отвязываются внешними ключами ON DELETE SET NULL
        return self._delete_row("test_suites", suite_id)

    # --- ManualTestCase ---

    def create_manual_case(self, case: ManualTestCase) -> ManualTestCase:
        row = self._fetch_one(
            """
            INSERT INTO qaboard.manual_test_cases
                (title, description, content, priority, category, tags, test_suite_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                case.title,
                case.description,
                case.content,
                case.priority.value,
                case.category,
                Jsonb(case.tags),
                case.test_suite_id,
            ),
        )
        if row is None:
            raise StorageError("INSERT manual_test_cases не вернул строку")
        return ManualTestCase.model_validate(row)

    def get_manual_case(self, case_id: int) -> ManualTestCase | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.manual_test_cases WHERE id = %s", (case_id,),
        )
        return ManualTestCase.model_validate(row) if row else None

    def list_manual_cases(self, suite_id: int | None = None) -> list[ManualTestCase]:
        if suite_id is None:
            rows = self._fetch_all("SELECT * FROM qaboard.manual_test_cases ORDER BY id")
        else:
            rows = self._fetch_all(
                "SELECT * FROM qaboard.manual_test_cases WHERE test_suite_id = %s ORDER BY id",
                (suite_id,),
            )
        return [ManualTestCase.model_validate(r) for r in rows]

    def update_manual_case(self, case_id: int, **changes: Any) -> ManualTestCase | None:
        row = self._update_row("manual_test_cases", _MANUAL_CASE_COLUMNS, case_id, changes)
        return ManualTestCase.model_validate(row) if row else None

    def delete_manual_case(self, case_id: int) -> bool:
        # Выполнения удаляются каскадно (ON DELETE CASCADE)
        return self._delete_row("manual_test_cases", case_id)

    # --- ManualTestRun ---

    def create_manual_run(self, run: ManualTestRun) -> ManualTestRun:
        row = self._fetch_one(
            """
            INSERT INTO qaboard.manual_test_runs (name, status, assigned_to)
            VALUES (%s, %s, %s)
            RETURNING *
            """,
            (run.name, run.status.value, run.assigned_to),
        )
        if row is None:
            raise StorageError("INSERT manual_test_runs не вернул строку")
        return ManualTestRun.model_validate(row)

    def get_manual_run(self, run_id: int) -> ManualTestRun | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.manual_test_runs WHERE id = %s", (run_id,),
        )
        return ManualTestRun.model_validate(row) if row else None

    def list_manual_runs(self) -> list[ManualTestRun]:
        rows = self._fetch_all(
            "SELECT * FROM qaboard.manual_test_runs ORDER BY created_at DESC, id DESC",
        )
        return [ManualTestRun.model_validate(r) for r in rows]

    def update_manual_run(self, run_id: int, **changes: Any) -> ManualTestRun | None:
        row = self._update_row("manual_test_runs", _MANUAL_RUN_COLUMNS, run_id, changes)
        return ManualTestRun.model_validate(row) if row else None

    # --- ManualTestExecution ---

    def create_manual_execution(
        self, execution: ManualTestExecution,
    ) -> ManualTestExecution:
        row = self._fetch_one(
            """
            INSERT INTO qaboard.manual_test_executions
                (test_run_id, test_case_id, status, notes, executed_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                execution.test_run_id,
                execution.test_case_id,
                execution.status.value,
                execution.notes,
                execution.executed_at,
            ),
        )
        if row is None:
            raise StorageError("INSERT manual_test_executions не вернул строку")
        return ManualTestExecution.model_validate(row)

    def get_manual_execution(self, execution_id: int) -> ManualTestExecution | None:
        row = self._fetch_one(
            "SELECT * FROM qaboard.manual_test_executions WHERE id = %s",
            (execution_id,),
        )
        return ManualTestExecution.model_validate(row) if row else None

    def list_manual_executions(self, run_id: int) -> list[ManualTestExecution]:
        rows = self._fetch_all(
            "SELECT * FROM qaboard.manual_test_executions WHERE test_run_id = %s ORDER BY id",
            (run_id,),
        )
        return [ManualTestExecution.model_validate(r) for r in rows]

    def update_manual_execution(
        self, execution_id: int, **changes: Any,
    ) -> ManualTestExecution | None:
        row = self._update_row(
            "manual_test_executions", _EXECUTION_COLUMNS, execution_id, changes,
        )
        return ManualTestExecution.model_validate(row) if row else None
