"""Общие перечисления статусов."""

from __future__ import annotations

from enum import Enum

# Верхняя граница длительности в мс: колонка duration хранится как BIGINT
MAX_DURATION_MS = 2**63 - 1


class CaseOutcome(str, Enum):
    """Исход тест-кейса, как его видит парсер JUnit XML."""

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"

    @classmethod
    def failure_outcomes(cls) -> set[CaseOutcome]:
        """Исходы, считающиеся падениями."""
        return {cls.FAILED, cls.ERROR}


class CaseStatus(str, Enum):
    """Статус тест-кейса в хранилище и на дашборде.

    ``FLAKY`` парсером не выставляется никогда — только отдельной
    пост-обработкой (сравнение повторных запусков).
    """

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    FLAKY = "flaky"

    @classmethod
    def from_outcome(cls, outcome: CaseOutcome) -> CaseStatus:
        """error и failed в хранилище сливаются в failed."""
        if outcome in CaseOutcome.failure_outcomes():
            return cls.FAILED
        return cls(outcome.value)

    @classmethod
    def analysis_statuses(cls) -> set[CaseStatus]:
        """Статусы, для которых заводится запись FailureAnalysis."""
        return {cls.FAILED, cls.FLAKY}


class RunType(str, Enum):
    AUTOMATED = "automated"
    MANUAL = "manual"


class RunStatus(str, Enum):
    """Жизненный цикл TestRun при загрузке."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class AnalysisStatus(str, Enum):
    """Колонки канбан-доски расследования падений."""

    NEW = "new"
    INVESTIGATING = "investigating"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    WONT_FIX = "wont_fix"
    DUPLICATE = "duplicate"

    @classmethod
    def closed_statuses(cls) -> set[AnalysisStatus]:
        """Статусы, при которых расследование считается закрытым."""
        return {cls.RESOLVED, cls.WONT_FIX, cls.DUPLICATE}


class CasePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ManualRunStatus(str, Enum):
    """Ручной прогон: not_started → in_progress → completed."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ExecutionStatus(str, Enum):
    """Результат выполнения ручного кейса в прогоне."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
