"""Pydantic-модели промежуточного дерева JUnit-отчёта.

Модели эфемерны: существуют только между разбором XML и записью
результатов в хранилище.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from qaboard.models.common import CaseOutcome, CaseStatus


class CaseRecord(BaseModel):
    """Нормализованный результат одного ``<testcase>``."""

    name: str
    class_name: str
    outcome: CaseOutcome
    duration_ms: int = 0
    error_message: str | None = None
    stack_trace: str | None = None
    system_out: str | None = None
    system_err: str | None = None
    attachments: list[str] | None = None
    case_key: str | None = None

    @property
    def stored_status(self) -> CaseStatus:
        return CaseStatus.from_outcome(self.outcome)

    @property
    def is_failure(self) -> bool:
        return self.outcome in CaseOutcome.failure_outcomes()


class SuiteRecord(BaseModel):
    """Один ``<testsuite>``.

    ``declared_*`` — значения атрибутов из отчёта, используются только для
    сверки. Счётчики ``failures``/``errors``/``skipped`` пересчитываются из
    фактических исходов кейсов.
    """

    name: str
    declared_tests: int = 0
    declared_failures: int = 0
    declared_errors: int = 0
    declared_skipped: int = 0
    time: float = 0.0
    timestamp: str | None = None
    cases: list[CaseRecord] = Field(default_factory=list)

    def _count(self, outcome: CaseOutcome) -> int:
        return sum(1 for c in self.cases if c.outcome is outcome)

    @property
    def tests(self) -> int:
        return len(self.cases)

    @property
    def failures(self) -> int:
        return self._count(CaseOutcome.FAILED)

    @property
    def errors(self) -> int:
        return self._count(CaseOutcome.ERROR)

    @property
    def skipped(self) -> int:
        return self._count(CaseOutcome.SKIPPED)

    @property
    def passed(self) -> int:
        return self.tests - self.failures - self.errors - self.skipped


class ReportSummary(BaseModel):
    """Сводка по всему документу."""

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    error_tests: int = 0
    skipped_tests: int = 0
    total_time: float = 0.0
    total_duration_ms: int = 0
    pass_rate: float = 0.0
    average_duration_ms: float = 0.0
    suite_count: int = 0

    @property
    def failure_count(self) -> int:
        return self.failed_tests + self.error_tests
