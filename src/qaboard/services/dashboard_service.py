"""Метрики главной страницы дашборда."""

from __future__ import annotations

from pydantic import BaseModel

from qaboard.models.common import AnalysisStatus, CaseStatus
from qaboard.services.aggregation import pass_rate
from qaboard.storage.base import TestRunStore


class DashboardMetrics(BaseModel):
    """Сводка по всем сохранённым запускам."""

    total_runs: int
    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int
    pass_rate: float
    average_run_duration_ms: float
    open_analyses: int


def dashboard_metrics(store: TestRunStore) -> DashboardMetrics:
    """Посчитать метрики по всем кейсам и запускам хранилища.

    flaky учитывается в failed_tests, как и в счётчиках запусков.
    """
    runs = store.list_test_runs()
    cases = store.list_test_cases()

    passed = sum(1 for c in cases if c.status is CaseStatus.PASSED)
    failed = sum(
        1 for c in cases if c.status in (CaseStatus.FAILED, CaseStatus.FLAKY)
    )
    skipped = sum(1 for c in cases if c.status is CaseStatus.SKIPPED)

    average_duration = (
        round(sum(r.duration or 0 for r in runs) / len(runs), 1) if runs else 0.0
    )
    closed = AnalysisStatus.closed_statuses()
    open_analyses = sum(
        1 for a in store.list_failure_analyses() if a.status not in closed
    )

    return DashboardMetrics(
        total_runs=len(runs),
        total_tests=len(cases),
        passed_tests=passed,
        failed_tests=failed,
        skipped_tests=skipped,
        pass_rate=pass_rate(passed, len(cases)),
        average_run_duration_ms=average_duration,
        open_analyses=open_analyses,
    )
