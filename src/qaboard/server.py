"""HTTP-сервер qaboard — REST API дашборда тестирования."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from qaboard import __version__
from qaboard.models.common import AnalysisStatus, RunType
from qaboard.models.manual import (
    ExecutionCreate,
    ExecutionUpdate,
    ManualCaseCreate,
    ManualCaseUpdate,
    ManualRunCreate,
    ManualRunUpdate,
    SuiteCreate,
    SuiteUpdate,
)
from qaboard.models.records import CaseSubmission, FailureAnalysisUpdate

logger = logging.getLogger(__name__)


# --- Модели запросов и ответов ---


class UploadRequest(BaseModel):
    """Тело POST /api/v1/junit/upload и /api/v1/junit/parse."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    xml_content: str = Field(alias="xmlContent")
    batch_size: int | None = Field(default=None, ge=1, alias="batchSize")


class CreateRunRequest(BaseModel):
    """Тело POST /api/v1/runs."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    type: RunType = RunType.AUTOMATED
    xml_content: str | None = Field(default=None, alias="xmlContent")


class BatchRequest(BaseModel):
    """Тело POST /api/v1/runs/{run_id}/batches."""

    model_config = ConfigDict(populate_by_name=True)

    test_cases: list[CaseSubmission] = Field(default_factory=list, alias="testCases")
    is_final_batch: bool = Field(default=False, alias="isFinalBatch")


class FailRunRequest(BaseModel):
    """Тело POST /api/v1/runs/{run_id}/fail."""

    reason: str | None = None


class HealthResponse(BaseModel):
    """JSON-ответ GET /health."""

    status: str
    version: str
    storage: str


class ErrorResponse(BaseModel):
    """Стандартный ответ при ошибке."""

    detail: str


# --- Состояние приложения ---


class _AppState:
    """Долгоживущие объекты, разделяемые между запросами."""

    def __init__(self) -> None:
        self.settings: Any = None
        self.store: Any = None
        self.ingestion: Any = None
        self.analyses: Any = None
        self.manual: Any = None


_state = _AppState()


def _init_state(settings: Any, store: Any) -> None:
    """Собрать сервисы поверх хранилища."""
    from qaboard.services.failure_analysis_service import FailureAnalysisService
    from qaboard.services.ingestion_service import IngestionService
    from qaboard.services.manual_testing_service import ManualTestingService

    _state.settings = settings
    _state.store = store
    _state.ingestion = IngestionService(store, batch_size=settings.batch_size)
    _state.analyses = FailureAnalysisService(store)
    _state.manual = ManualTestingService(store)


# --- Lifespan ---


@asynccontextmanager
async def _lifespan(app: FastAPI):  # noqa: ARG001
    """Инициализация при старте, очистка при остановке."""
    from qaboard.config import Settings
    from qaboard.logging_config import setup_logging
    from qaboard.storage.factory import create_store

    settings = Settings()
    setup_logging(settings.log_level)

    logger.info("qaboard server v%s запускается", __version__)
    _init_state(settings, create_store(settings))

    yield

    logger.info("qaboard server останавливается")


# --- FastAPI ---


app = FastAPI(
    title="qaboard",
    description=(
        "QA-дашборд: загрузка JUnit XML, запуски, расследование падений, "
        "ручное тестирование"
    ),
    version=__version__,
    lifespan=_lifespan,
)


def _storage_unavailable(exc: Exception) -> HTTPException:
    logger.error("Ошибка хранилища: %s", exc)
    return HTTPException(status_code=503, detail=str(exc))


def _run_or_404(run_id: int):
    from qaboard.exceptions import StorageError

    try:
        run = _state.store.get_test_run(run_id)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Test run #{run_id} not found")
    return run


# --- Маршруты ---


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Проверка работоспособности сервера."""
    backend = getattr(_state.settings, "storage_backend", "unknown")
    return HealthResponse(status="ok", version=__version__, storage=backend)


@app.post(
    "/api/v1/junit/parse",
    responses={400: {"model": ErrorResponse, "description": "Некорректный XML"}},
)
def parse_junit(request: UploadRequest) -> dict[str, Any]:
    """Предпросмотр отчёта: разбор и сводка без записи в хранилище."""
    from qaboard.exceptions import MalformedDocumentError
    from qaboard.services.aggregation import summarize
    from qaboard.services.junit_parser import parse_report

    _check_upload_size(request.xml_content)
    try:
        suites = parse_report(request.xml_content)
    except MalformedDocumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {
        "summary": summarize(suites).model_dump(),
        "suites": [
            {
                "name": s.name,
                "tests": s.tests,
                "failures": s.failures,
                "errors": s.errors,
                "skipped": s.skipped,
                "time": s.time,
                "timestamp": s.timestamp,
            }
            for s in suites
        ],
    }


@app.post(
    "/api/v1/junit/upload",
    status_code=201,
    responses={
        400: {"model": ErrorResponse, "description": "Некорректный XML"},
        413: {"model": ErrorResponse, "description": "Слишком большой отчёт"},
        503: {"model": ErrorResponse, "description": "Хранилище недоступно"},
    },
)
def upload_junit(request: UploadRequest) -> dict[str, Any]:
    """Загрузить JUnit XML: создать запуск, записать кейсы пакетами, завершить."""
    from qaboard.exceptions import MalformedDocumentError, StorageError

    _check_upload_size(request.xml_content)
    try:
        result = _state.ingestion.ingest_report(
            request.xml_content,
            name=request.name,
            batch_size=request.batch_size,
        )
    except MalformedDocumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)

    return {
        "run": result.run.model_dump(mode="json", exclude={"xml_content"}),
        "summary": result.summary.model_dump(),
        "batches": len(result.batches),
        "rejected": sum(len(b.rejected) for b in result.batches),
    }


@app.post("/api/v1/runs", status_code=201)
def create_run(request: CreateRunRequest) -> dict[str, Any]:
    """Создать пустой запуск (automated или manual) в статусе running."""
    from qaboard.exceptions import StorageError

    try:
        run = _state.ingestion.create_run(
            request.name, request.type, xml_content=request.xml_content,
        )
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return run.model_dump(mode="json")


@app.get("/api/v1/runs")
def list_runs() -> list[dict[str, Any]]:
    """Все запуски, новые первыми (без сырого XML)."""
    from qaboard.exceptions import StorageError

    try:
        runs = _state.store.list_test_runs()
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return [r.model_dump(mode="json", exclude={"xml_content"}) for r in runs]


@app.get(
    "/api/v1/runs/{run_id}",
    responses={404: {"model": ErrorResponse, "description": "Запуск не найден"}},
)
def get_run(run_id: int) -> dict[str, Any]:
    return _run_or_404(run_id).model_dump(mode="json")


@app.get(
    "/api/v1/runs/{run_id}/cases",
    responses={404: {"model": ErrorResponse, "description": "Запуск не найден"}},
)
def list_run_cases(run_id: int) -> list[dict[str, Any]]:
    """Кейсы запуска в порядке записи."""
    from qaboard.exceptions import StorageError

    _run_or_404(run_id)
    try:
        cases = _state.store.list_test_cases(run_id)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return [c.model_dump(mode="json") for c in cases]


@app.post(
    "/api/v1/runs/{run_id}/batches",
    responses={
        404: {"model": ErrorResponse, "description": "Запуск не найден"},
        409: {"model": ErrorResponse, "description": "Запуск уже завершён"},
        503: {"model": ErrorResponse, "description": "Хранилище недоступно"},
    },
)
def submit_batch(run_id: int, request: BatchRequest) -> dict[str, Any]:
    """Записать пакет кейсов; ``isFinalBatch=true`` завершает запуск."""
    from qaboard.exceptions import RunClosedError, StorageError, UnknownRunError

    try:
        result = _state.ingestion.submit_batch(
            run_id, request.test_cases, is_final_batch=request.is_final_batch,
        )
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunClosedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return result.model_dump(mode="json")


@app.post(
    "/api/v1/runs/{run_id}/fail",
    responses={
        404: {"model": ErrorResponse, "description": "Запуск не найден"},
        409: {"model": ErrorResponse, "description": "Запуск уже завершён"},
    },
)
def fail_run(run_id: int, request: FailRunRequest) -> dict[str, Any]:
    """Пометить незавершённую загрузку как failed."""
    from qaboard.exceptions import RunClosedError, StorageError, UnknownRunError

    try:
        run = _state.ingestion.fail_run(run_id, request.reason)
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunClosedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return run.model_dump(mode="json", exclude={"xml_content"})


@app.get("/api/v1/failure-analysis")
def list_failure_analyses(status: AnalysisStatus | None = None) -> list[dict[str, Any]]:
    """Расследования падений с кейсами, опционально по статусу."""
    from qaboard.exceptions import StorageError

    try:
        items = _state.analyses.list_analyses(status)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return [item.model_dump(mode="json") for item in items]


@app.get("/api/v1/failure-analysis/board")
def failure_analysis_board() -> dict[str, list[dict[str, Any]]]:
    """Колонки канбан-доски по статусам."""
    from qaboard.exceptions import StorageError

    try:
        columns = _state.analyses.board()
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return {
        status.value: [item.model_dump(mode="json") for item in items]
        for status, items in columns.items()
    }


@app.patch(
    "/api/v1/failure-analysis/{analysis_id}",
    responses={404: {"model": ErrorResponse, "description": "Запись не найдена"}},
)
def update_failure_analysis(
    analysis_id: int, update: FailureAnalysisUpdate,
) -> dict[str, Any]:
    """Сменить статус / исполнителя / резолюцию расследования."""
    from qaboard.exceptions import StorageError, UnknownAnalysisError

    try:
        analysis = _state.analyses.update_analysis(analysis_id, update)
    except UnknownAnalysisError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return analysis.model_dump(mode="json")


@app.get("/api/v1/test-cases")
def list_test_cases(
    run_id: int | None = Query(default=None, alias="runId"),
) -> list[dict[str, Any]]:
    """Кейсы всех запусков или одного запуска (``?runId=``)."""
    from qaboard.exceptions import StorageError

    if run_id is not None:
        _run_or_404(run_id)
    try:
        cases = _state.store.list_test_cases(run_id)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return [c.model_dump(mode="json") for c in cases]


# --- Ручное тестирование ---


_MANUAL_ERRORS = {
    404: {"model": ErrorResponse, "description": "Запись не найдена"},
    409: {"model": ErrorResponse, "description": "Прогон уже завершён"},
    422: {"model": ErrorResponse, "description": "Ссылка на несуществующую запись"},
}


def _manual_call(operation: Callable[..., Any], *args: Any) -> Any:
    """Вызвать операцию ManualTestingService с маппингом ошибок в HTTP."""
    from qaboard.exceptions import (
        InvalidReferenceError,
        RunClosedError,
        StorageError,
        UnknownEntityError,
    )

    try:
        return operation(*args)
    except UnknownEntityError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidReferenceError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except RunClosedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)


@app.get("/api/v1/test-suites")
def list_test_suites() -> list[dict[str, Any]]:
    suites = _manual_call(_state.manual.list_suites)
    return [s.model_dump(mode="json") for s in suites]


@app.get("/api/v1/test-suites/tree")
def test_suite_tree() -> list[dict[str, Any]]:
    """Дерево сюитов с числом кейсов в каждом узле."""
    nodes = _manual_call(_state.manual.suite_tree)
    return [n.model_dump(mode="json") for n in nodes]


@app.post("/api/v1/test-suites", status_code=201, responses=_MANUAL_ERRORS)
def create_test_suite(request: SuiteCreate) -> dict[str, Any]:
    return _manual_call(_state.manual.create_suite, request).model_dump(mode="json")


@app.get("/api/v1/test-suites/{suite_id}", responses=_MANUAL_ERRORS)
def get_test_suite(suite_id: int) -> dict[str, Any]:
    return _manual_call(_state.manual.get_suite, suite_id).model_dump(mode="json")


@app.patch("/api/v1/test-suites/{suite_id}", responses=_MANUAL_ERRORS)
def update_test_suite(suite_id: int, update: SuiteUpdate) -> dict[str, Any]:
    """Переименовать сюит или перенести его (``parentId: null`` — в корень)."""
    suite = _manual_call(_state.manual.update_suite, suite_id, update)
    return suite.model_dump(mode="json")


@app.delete("/api/v1/test-suites/{suite_id}", responses=_MANUAL_ERRORS)
def delete_test_suite(suite_id: int) -> dict[str, str]:
    _manual_call(_state.manual.delete_suite, suite_id)
    return {"message": "Test suite deleted successfully"}


@app.get("/api/v1/manual-test-cases")
def list_manual_test_cases(
    suite_id: int | None = Query(default=None, alias="suiteId"),
) -> list[dict[str, Any]]:
    cases = _manual_call(_state.manual.list_cases, suite_id)
    return [c.model_dump(mode="json") for c in cases]


@app.post("/api/v1/manual-test-cases", status_code=201, responses=_MANUAL_ERRORS)
def create_manual_test_case(request: ManualCaseCreate) -> dict[str, Any]:
    return _manual_call(_state.manual.create_case, request).model_dump(mode="json")


@app.get("/api/v1/manual-test-cases/{case_id}", responses=_MANUAL_ERRORS)
def get_manual_test_case(case_id: int) -> dict[str, Any]:
    return _manual_call(_state.manual.get_case, case_id).model_dump(mode="json")


@app.api_route(
    "/api/v1/manual-test-cases/{case_id}",
    methods=["PUT", "PATCH"],
    responses=_MANUAL_ERRORS,
)
def update_manual_test_case(case_id: int, update: ManualCaseUpdate) -> dict[str, Any]:
    """Частичное изменение кейса: непереданные поля не меняются."""
    case = _manual_call(_state.manual.update_case, case_id, update)
    return case.model_dump(mode="json")


@app.delete("/api/v1/manual-test-cases/{case_id}", responses=_MANUAL_ERRORS)
def delete_manual_test_case(case_id: int) -> dict[str, str]:
    _manual_call(_state.manual.delete_case, case_id)
    return {"message": "Manual test case deleted successfully"}


@app.get("/api/v1/manual-test-runs")
def list_manual_test_runs() -> list[dict[str, Any]]:
    runs = _manual_call(_state.manual.list_runs)
    return [r.model_dump(mode="json") for r in runs]


@app.post("/api/v1/manual-test-runs", status_code=201)
def create_manual_test_run(request: ManualRunCreate) -> dict[str, Any]:
    return _manual_call(_state.manual.create_run, request).model_dump(mode="json")


@app.get("/api/v1/manual-test-runs/{run_id}", responses=_MANUAL_ERRORS)
def get_manual_test_run(run_id: int) -> dict[str, Any]:
    return _manual_call(_state.manual.get_run, run_id).model_dump(mode="json")


@app.patch("/api/v1/manual-test-runs/{run_id}", responses=_MANUAL_ERRORS)
def update_manual_test_run(run_id: int, update: ManualRunUpdate) -> dict[str, Any]:
    run = _manual_call(_state.manual.update_run, run_id, update)
    return run.model_dump(mode="json")


@app.get("/api/v1/manual-test-runs/{run_id}/progress", responses=_MANUAL_ERRORS)
def manual_test_run_progress(run_id: int) -> dict[str, Any]:
    """Счётчики выполнений прогона по статусам."""
    return _manual_call(_state.manual.run_progress, run_id).model_dump(mode="json")


@app.get("/api/v1/manual-test-executions", responses=_MANUAL_ERRORS)
def list_manual_test_executions(
    run_id: int = Query(alias="runId"),
) -> list[dict[str, Any]]:
    """Выполнения одного ручного прогона; ``runId`` обязателен."""
    executions = _manual_call(_state.manual.list_executions, run_id)
    return [e.model_dump(mode="json") for e in executions]


@app.post("/api/v1/manual-test-executions", status_code=201, responses=_MANUAL_ERRORS)
def create_manual_test_execution(request: ExecutionCreate) -> dict[str, Any]:
    execution = _manual_call(_state.manual.create_execution, request)
    return execution.model_dump(mode="json")


@app.patch("/api/v1/manual-test-executions/{execution_id}", responses=_MANUAL_ERRORS)
def update_manual_test_execution(
    execution_id: int, update: ExecutionUpdate,
) -> dict[str, Any]:
    """Записать результат выполнения (статус, заметки)."""
    execution = _manual_call(_state.manual.update_execution, execution_id, update)
    return execution.model_dump(mode="json")


@app.get("/api/v1/dashboard/metrics")
def get_dashboard_metrics() -> dict[str, Any]:
    """Метрики главной страницы."""
    from qaboard.exceptions import StorageError
    from qaboard.services.dashboard_service import dashboard_metrics

    try:
        metrics = dashboard_metrics(_state.store)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return metrics.model_dump()


def _check_upload_size(xml_content: str) -> None:
    limit_kb = getattr(_state.settings, "max_upload_size_kb", None)
    if limit_kb is None:
        return
    size_kb = len(xml_content.encode("utf-8")) / 1024
    if size_kb > limit_kb:
        raise HTTPException(
            status_code=413,
            detail=f"Report is {size_kb:.0f} KB, limit is {limit_kb} KB",
        )


def main() -> None:
    """Точка входа консольного скрипта qaboard-server."""
    import sys

    from qaboard.config import Settings

    try:
        settings = Settings()
    except Exception as exc:
        print(
            f"Ошибка конфигурации: {exc}\n\n"
            f"Переменные окружения: QABOARD_STORAGE_BACKEND, QABOARD_POSTGRES_DSN\n"
            f"Подробности см. в .env.example.",
            file=sys.stderr,
        )
        sys.exit(2)

    import uvicorn

    uvicorn.run(
        "qaboard.server:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
