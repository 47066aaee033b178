"""Pydantic-модели сохраняемых сущностей и входных данных пакетной загрузки."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from qaboard.models.common import AnalysisStatus, CaseStatus, RunStatus, RunType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestRun(BaseModel):
    """Сессия загрузки (automated) или ручного прогона (manual).

    Инвариант: ``total_tests == passed_tests + failed_tests + skipped_tests``
    после каждого шага сверки. ``flaky``-кейсы учитываются в failed_tests.
    """

    id: int
    name: str
    type: RunType
    status: RunStatus = RunStatus.PENDING
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    duration: int | None = None
    xml_content: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TestCase(BaseModel):
    """Сохранённый результат одного тест-кейса. Неизменяем после создания,
    кроме дозаполнения аттачментов."""

    id: int
    test_run_id: int | None = None
    case_key: str
    name: str
    class_name: str | None = None
    status: CaseStatus
    duration: int | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    attachments: list[str] | None = None


class FailureAnalysis(BaseModel):
    """Запись расследования падения — не более одной на тест-кейс."""

    id: int
    test_case_id: int
    status: AnalysisStatus = AnalysisStatus.NEW
    assigned_to: str | None = None
    resolution: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CaseSubmission(BaseModel):
    """Один кейс в пакете ``submit_batch``.

    Поля намеренно Optional: кейс без ``name`` или ``status`` отклоняется
    поштучно сервисом загрузки, а не валидацией всего тела запроса.
    camelCase-алиасы совместимы с форматом веб-клиента.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    class_name: str | None = Field(None, alias="className")
    status: str | None = None
    duration: int | None = None
    error_message: str | None = Field(None, alias="errorMessage")
    stack_trace: str | None = Field(None, alias="stackTrace")
    attachments: list[str] | None = None
    case_key: str | None = Field(None, alias="caseKey")


class RejectedCase(BaseModel):
    """Кейс пакета, не прошедший валидацию."""

    index: int
    name: str | None = None
    reason: str


class ConflictingDuplicate(BaseModel):
    """Кейс без ``case_key``, совпавший по (class_name, name) с уже
    сохранённым, но с другим статусом или сообщением. Не записывается:
    ключ без явного caseKey различает повторы только внутри одного пакета."""

    index: int
    name: str
    test_case_id: int
    stored_status: CaseStatus
    submitted_status: CaseStatus


class BatchResult(BaseModel):
    """Результат ``submit_batch``."""

    run_id: int
    accepted: int = 0
    duplicates: int = 0
    rejected: list[RejectedCase] = Field(default_factory=list)
    conflicts: list[ConflictingDuplicate] = Field(default_factory=list)
    total_processed: int = 0
    run_status: RunStatus


class FailureAnalysisUpdate(BaseModel):
    """Явный переход статуса расследования (PATCH)."""

    model_config = ConfigDict(populate_by_name=True)

    status: AnalysisStatus | None = None
    assigned_to: str | None = Field(None, alias="assignedTo")
    resolution: str | None = None
