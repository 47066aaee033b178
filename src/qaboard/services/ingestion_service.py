"""Сервис загрузки: создание запуска, пакетная запись кейсов, сверка счётчиков."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from qaboard.exceptions import (
    CaseValidationError,
    QaboardError,
    RunClosedError,
    UnknownRunError,
)
from qaboard.models.common import MAX_DURATION_MS, CaseStatus, RunStatus, RunType
from qaboard.models.junit import CaseRecord, ReportSummary
from qaboard.models.records import (
    BatchResult,
    CaseSubmission,
    ConflictingDuplicate,
    RejectedCase,
    TestCase,
    TestRun,
)
from qaboard.services.aggregation import flatten_cases, summarize
from qaboard.services.junit_parser import parse_report
from qaboard.storage.base import TestRunStore
from qaboard.utils.case_key import compute_case_key

logger = logging.getLogger(__name__)

_SUBMISSION_SCOPE = "batch"


@dataclass
class IngestionResult:
    """Результат полной загрузки JUnit-отчёта."""

    run: TestRun
    summary: ReportSummary
    batches: list[BatchResult] = field(default_factory=list)


def cases_to_submissions(cases: Sequence[CaseRecord]) -> list[CaseSubmission]:
    """CaseRecord парсера → CaseSubmission для ``submit_batch``."""
    return [_as_submission(case) for case in cases]


def _as_submission(case: CaseSubmission | CaseRecord) -> CaseSubmission:
    if isinstance(case, CaseSubmission):
        return case
    return CaseSubmission(
        name=case.name,
        class_name=case.class_name,
        status=case.outcome.value,
        duration=case.duration_ms,
        error_message=case.error_message,
        stack_trace=case.stack_trace,
        attachments=case.attachments,
        case_key=case.case_key,
    )


def _payload_differs(stored: TestCase, submitted: TestCase) -> bool:
    return (
        stored.status is not submitted.status
        or stored.error_message != submitted.error_message
    )


class IngestionService:
    """Контроллер сверки: приводит пакетную загрузку к одному TestRun.

    Жизненный цикл запуска: pending → running → completed | failed.

    Счётчики запуска после каждого пакета пересчитываются по ВСЕМ
    сохранённым кейсам запуска, а не инкрементируются по пакету, поэтому
    повторная, неупорядоченная или частично упавшая отправка не ломает
    инвариант ``total == passed + failed + skipped``.

    Пакеты одного запуска сериализуются per-run локом; пакеты разных
    запусков независимы.
    """

    def __init__(self, store: TestRunStore, *, batch_size: int = 100) -> None:
        self._store = store
        self._batch_size = batch_size
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Операции
    # ------------------------------------------------------------------

    def create_run(
        self,
        name: str,
        run_type: RunType = RunType.AUTOMATED,
        *,
        xml_content: str | None = None,
    ) -> TestRun:
        """Создать запуск в статусе running с нулевыми счётчиками.

        Сырой XML сохраняется как есть (аудит/повторная обработка).
        """
        run = self._store.create_test_run(
            name=name,
            run_type=run_type,
            status=RunStatus.RUNNING,
            xml_content=xml_content if run_type is RunType.AUTOMATED else None,
        )
        logger.info("Создан запуск #%d (%s, %s)", run.id, run.name, run.type.value)
        return run

    def submit_batch(
        self,
        run_id: int,
        cases: Sequence[CaseSubmission | CaseRecord],
        *,
        is_final_batch: bool,
    ) -> BatchResult:
        """Записать пакет кейсов и пересчитать счётчики запуска.

        Шаги:
            1. Проверить, что запуск существует и не закрыт.
            2. Для каждого кейса: валидация → create-if-absent по case_key →
               для failed/flaky create-if-absent FailureAnalysis.
            3. Пересчитать счётчики по всем кейсам запуска.
            4. completed только по явному ``is_final_batch``.

        Невалидные кейсы отклоняются поштучно и возвращаются в
        ``BatchResult.rejected``; валидные кейсы того же пакета сохраняются.

        Raises:
            UnknownRunError: Запуск не найден. Состояние не меняется.
            RunClosedError: Запуск завершён (failed, либо completed и пакет
                содержит новые кейсы). Состояние не меняется.
        """
        submissions = [_as_submission(c) for c in cases]
        self._require_run(run_id)

        with self._run_lock(run_id):
            run = self._store.get_test_run(run_id)
            if run is None:
                raise UnknownRunError(run_id)

            prepared: list[tuple[int, TestCase]] = []
            implicit_keys: set[int] = set()
            rejected: list[RejectedCase] = []
            occurrences: Counter[tuple[str | None, str]] = Counter()
            for index, submission in enumerate(submissions):
                try:
                    prepared.append(
                        (index, self._prepare_case(run_id, submission, occurrences))
                    )
                    if not submission.case_key:
                        implicit_keys.add(index)
                except CaseValidationError as exc:
                    rejected.append(
                        RejectedCase(index=index, name=submission.name, reason=str(exc))
                    )

            if run.status.is_terminal:
                self._check_retry_of_closed_run(run, [c for _, c in prepared])
                existing = self._store.list_test_cases(run_id)
                logger.info(
                    "Запуск #%d уже %s: повторный пакет из %d кейсов, изменений нет",
                    run_id,
                    run.status.value,
                    len(prepared),
                )
                return BatchResult(
                    run_id=run_id,
                    duplicates=len(prepared),
                    rejected=rejected,
                    total_processed=len(existing),
                    run_status=run.status,
                )

            accepted = 0
            duplicates = 0
            conflicts: list[ConflictingDuplicate] = []
            for index, case in prepared:
                stored, created = self._store.add_test_case(case)
                if created:
                    accepted += 1
                else:
                    duplicates += 1
                    if index in implicit_keys and _payload_differs(stored, case):
                        conflicts.append(
                            ConflictingDuplicate(
                                index=index,
                                name=case.name,
                                test_case_id=stored.id,
                                stored_status=stored.status,
                                submitted_status=case.status,
                            )
                        )
                    if case.attachments and not stored.attachments:
                        self._store.update_test_case_attachments(
                            stored.id, case.attachments,
                        )
                if stored.status in CaseStatus.analysis_statuses():
                    self._store.create_failure_analysis_if_absent(stored.id)

            run = self._reconcile(run_id, is_final_batch=is_final_batch)

        for item in rejected:
            logger.warning(
                "Запуск #%d: кейс #%d (%s) отклонён: %s",
                run_id,
                item.index,
                item.name or "без имени",
                item.reason,
            )
        for conflict in conflicts:
            logger.warning(
                "Запуск #%d: кейс #%d (%s) без caseKey совпал с сохранённым кейсом "
                "#%d, но данные отличаются (%s → %s); кейс не записан",
                run_id,
                conflict.index,
                conflict.name,
                conflict.test_case_id,
                conflict.stored_status.value,
                conflict.submitted_status.value,
            )
        logger.info(
            "Запуск #%d: пакет %d кейсов (новых=%d, повторов=%d, отклонено=%d) → "
            "total=%d passed=%d failed=%d skipped=%d [%s]",
            run_id,
            len(submissions),
            accepted,
            duplicates,
            len(rejected),
            run.total_tests,
            run.passed_tests,
            run.failed_tests,
            run.skipped_tests,
            run.status.value,
        )

        return BatchResult(
            run_id=run_id,
            accepted=accepted,
            duplicates=duplicates,
            rejected=rejected,
            conflicts=conflicts,
            total_processed=run.total_tests,
            run_status=run.status,
        )

    def fail_run(self, run_id: int, reason: str | None = None) -> TestRun:
        """Пометить незавершённый запуск как failed (загрузка прервана).

        Raises:
            UnknownRunError: Запуск не найден.
            RunClosedError: Запуск уже completed.
        """
        self._require_run(run_id)
        with self._run_lock(run_id):
            run = self._store.get_test_run(run_id)
            if run is None:
                raise UnknownRunError(run_id)
            if run.status is RunStatus.FAILED:
                return run
            if run.status is RunStatus.COMPLETED:
                raise RunClosedError(run_id, run.status.value)

            updated = self._store.update_test_run(run_id, status=RunStatus.FAILED)
        if updated is None:
            raise UnknownRunError(run_id)
        logger.warning(
            "Запуск #%d помечен как failed: %s", run_id, reason or "причина не указана",
        )
        return updated

    def ingest_report(
        self,
        xml_text: str,
        *,
        name: str | None = None,
        batch_size: int | None = None,
    ) -> IngestionResult:
        """Полный цикл загрузки JUnit-отчёта.

        Документ разбирается ДО создания запуска: некорректный XML не
        оставляет в хранилище ни запуска, ни кейсов. Кейсы отправляются
        пакетами, последний помечается финальным.

        Raises:
            MalformedDocumentError: XML не well-formed.
        """
        suites = parse_report(xml_text)
        summary = summarize(suites)
        cases = flatten_cases(suites)

        run_name = name or f"Test Run {datetime.now(timezone.utc).isoformat()}"
        run = self.create_run(run_name, RunType.AUTOMATED, xml_content=xml_text)

        size = batch_size or self._batch_size
        batches = [cases[i:i + size] for i in range(0, len(cases), size)] or [[]]

        results: list[BatchResult] = []
        try:
            for number, batch in enumerate(batches, 1):
                results.append(
                    self.submit_batch(
                        run.id, batch, is_final_batch=number == len(batches),
                    )
                )
        except Exception as exc:
            logger.error("Загрузка отчёта в запуск #%d прервана: %s", run.id, exc)
            try:
                self.fail_run(run.id, str(exc))
            except QaboardError:
                logger.exception("Не удалось пометить запуск #%d как failed", run.id)
            raise

        final_run = self._store.get_test_run(run.id) or run
        return IngestionResult(run=final_run, summary=summary, batches=results)

    # ------------------------------------------------------------------
    # Внутренние вспомогательные методы
    # ------------------------------------------------------------------

    def _require_run(self, run_id: int) -> None:
        """Проверка существования до взятия лока: лок заводится только для
        реальных запусков. Запуски не удаляются, поэтому повторная проверка
        под локом лишь читает актуальный статус."""
        if self._store.get_test_run(run_id) is None:
            raise UnknownRunError(run_id)

    def _run_lock(self, run_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(run_id, threading.Lock())

    @staticmethod
    def _parse_status(raw: str | None) -> CaseStatus:
        """Строка статуса → CaseStatus; ``error`` сливается в failed."""
        if not raw or not raw.strip():
            raise CaseValidationError("missing required field 'status'")
        value = raw.strip().lower()
        if value == "error":
            return CaseStatus.FAILED
        try:
            return CaseStatus(value)
        except ValueError:
            raise CaseValidationError(f"unknown status '{raw}'") from None

    def _prepare_case(
        self,
        run_id: int,
        submission: CaseSubmission,
        occurrences: Counter[tuple[str | None, str]],
    ) -> TestCase:
        """Проверить обязательные поля и собрать TestCase для записи.

        Без явного ``case_key`` ключ выводится из (class_name, name) и
        номера повторения внутри пакета.
        """
        name = (submission.name or "").strip()
        if not name:
            raise CaseValidationError("missing required field 'name'")
        status = self._parse_status(submission.status)
        duration = submission.duration
        if duration is not None and not 0 <= duration <= MAX_DURATION_MS:
            raise CaseValidationError(f"duration {duration} is out of range")

        case_key = submission.case_key
        if not case_key:
            identity = (submission.class_name, name)
            case_key = compute_case_key(
                submission.class_name,
                name,
                scope=_SUBMISSION_SCOPE,
                ordinal=occurrences[identity],
            )
            occurrences[identity] += 1

        return TestCase(
            id=0,
            test_run_id=run_id,
            case_key=case_key,
            name=name,
            class_name=submission.class_name,
            status=status,
            duration=duration,
            error_message=submission.error_message,
            stack_trace=submission.stack_trace,
            attachments=submission.attachments,
        )

    def _check_retry_of_closed_run(self, run: TestRun, cases: list[TestCase]) -> None:
        """В закрытый запуск допустим только повтор уже записанных кейсов."""
        if run.status is RunStatus.FAILED:
            raise RunClosedError(run.id, run.status.value)
        known_keys = {c.case_key for c in self._store.list_test_cases(run.id)}
        if any(c.case_key not in known_keys for c in cases):
            raise RunClosedError(run.id, run.status.value)

    def _reconcile(self, run_id: int, *, is_final_batch: bool) -> TestRun:
        """Пересчитать счётчики запуска по полному набору его кейсов.

        flaky учитывается в failed_tests: в хранилище четыре статуса, а
        счётчиков три.
        """
        cases = self._store.list_test_cases(run_id)
        counts = Counter(c.status for c in cases)

        total = len(cases)
        passed = counts.get(CaseStatus.PASSED, 0)
        failed = counts.get(CaseStatus.FAILED, 0) + counts.get(CaseStatus.FLAKY, 0)
        skipped = counts.get(CaseStatus.SKIPPED, 0)

        run = self._store.update_test_run(
            run_id,
            total_tests=total,
            passed_tests=passed,
            failed_tests=failed,
            skipped_tests=skipped,
            duration=min(sum(c.duration or 0 for c in cases), MAX_DURATION_MS),
            status=RunStatus.COMPLETED if is_final_batch else RunStatus.RUNNING,
        )
        if run is None:
            raise UnknownRunError(run_id)
        return run
