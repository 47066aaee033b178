"""Модели ручного тестирования: сюиты, ручные кейсы, прогоны и выполнения."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from qaboard.models.common import CasePriority, ExecutionStatus, ManualRunStatus
from qaboard.models.records import utcnow


class TestSuite(BaseModel):
    """Папка дерева ручных кейсов. ``parent_id`` задаёт вложенность."""

    id: int
    name: str
    description: str | None = None
    parent_id: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ManualTestCase(BaseModel):
    id: int
    title: str
    description: str | None = None
    content: str
    priority: CasePriority = CasePriority.MEDIUM
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    test_suite_id: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ManualTestRun(BaseModel):
    """Ручной прогон: набор выполнений кейсов одним исполнителем."""

    id: int
    name: str
    status: ManualRunStatus = ManualRunStatus.NOT_STARTED
    assigned_to: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ManualTestExecution(BaseModel):
    """Результат одного ручного кейса в прогоне.

    ``executed_at`` заполняется, когда статус уходит из ``pending``, и
    сбрасывается при возврате в ``pending``.
    """

    id: int
    test_run_id: int
    test_case_id: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    notes: str | None = None
    executed_at: datetime | None = None


class SuiteNode(BaseModel):
    """Узел дерева сюитов с числом ручных кейсов непосредственно в нём."""

    suite: TestSuite
    case_count: int = 0
    children: list[SuiteNode] = Field(default_factory=list)


class ManualRunProgress(BaseModel):
    """Сводка ручного прогона для отчёта."""

    run: ManualTestRun
    total: int = 0
    pending: int = 0
    passed: int = 0
    failed: int = 0
    blocked: int = 0
    pass_rate: float = 0.0


# --- Входные данные API (camelCase-алиасы как у веб-клиента) ---


class SuiteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str | None = None
    parent_id: int | None = Field(None, alias="parentId")


class SuiteUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1)
    description: str | None = None
    parent_id: int | None = Field(None, alias="parentId")


class ManualCaseCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    description: str | None = None
    content: str
    priority: CasePriority = CasePriority.MEDIUM
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    test_suite_id: int | None = Field(None, alias="testSuiteId")


class ManualCaseUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = Field(None, min_length=1)
    description: str | None = None
    content: str | None = None
    priority: CasePriority | None = None
    category: str | None = None
    tags: list[str] | None = None
    test_suite_id: int | None = Field(None, alias="testSuiteId")


class ManualRunCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    assigned_to: str | None = Field(None, alias="assignedTo")


class ManualRunUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1)
    status: ManualRunStatus | None = None
    assigned_to: str | None = Field(None, alias="assignedTo")


class ExecutionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_run_id: int = Field(alias="testRunId")
    test_case_id: int = Field(alias="testCaseId")
    status: ExecutionStatus = ExecutionStatus.PENDING
    notes: str | None = None


class ExecutionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: ExecutionStatus | None = None
    notes: str | None = None
