"""Агрегация: свёртка сюитов в итоговую сводку документа."""

from __future__ import annotations

import math

from qaboard.models.junit import CaseRecord, ReportSummary, SuiteRecord


def summarize(suites: list[SuiteRecord]) -> ReportSummary:
    """Посчитать итоги по документу.

    Счётчики по статусам берутся из фактических исходов кейсов, время —
    из объявленного времени сюитов (кейсы внутри сюита могут выполняться
    параллельно, поэтому сумма длительностей кейсов не равна времени сюита).
    ``passed`` выводится, а не хранится: ``total - failed - error - skipped``.
    """
    total = sum(s.tests for s in suites)
    failed = sum(s.failures for s in suites)
    errors = sum(s.errors for s in suites)
    skipped = sum(s.skipped for s in suites)
    total_time = sum(s.time for s in suites)
    if not math.isfinite(total_time):
        # Каждое время сюита конечно, но сумма может уйти в inf
        total_time = 0.0
    passed = total - failed - errors - skipped

    durations = [c.duration_ms for s in suites for c in s.cases]
    average_duration_ms = (
        round(sum(durations) / len(durations), 1) if durations else 0.0
    )

    return ReportSummary(
        total_tests=total,
        passed_tests=passed,
        failed_tests=failed,
        error_tests=errors,
        skipped_tests=skipped,
        total_time=total_time,
        total_duration_ms=_seconds_to_ms(total_time),
        pass_rate=pass_rate(passed, total),
        average_duration_ms=average_duration_ms,
        suite_count=len(suites),
    )


def pass_rate(passed: int, total: int) -> float:
    """Процент успешных с одним знаком после запятой; 0.0 при total == 0."""
    if total <= 0:
        return 0.0
    return round(passed / total * 100, 1)


def _seconds_to_ms(seconds: float) -> int:
    ms = seconds * 1000
    if not math.isfinite(ms):
        return 0
    return round(ms)


def flatten_cases(suites: list[SuiteRecord]) -> list[CaseRecord]:
    """Все кейсы документа в порядке следования."""
    return [case for suite in suites for case in suite.cases]
