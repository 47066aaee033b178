"""Сервис расследования падений: канбан-доска и переходы статусов."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from qaboard.exceptions import UnknownAnalysisError
from qaboard.models.common import AnalysisStatus
from qaboard.models.records import FailureAnalysis, FailureAnalysisUpdate, TestCase
from qaboard.storage.base import TestRunStore

logger = logging.getLogger(__name__)


class AnalysisItem(BaseModel):
    """Карточка доски: запись расследования + упавший кейс."""

    analysis: FailureAnalysis
    test_case: TestCase | None = None


class FailureAnalysisService:
    """Чтение и явное изменение записей FailureAnalysis.

    Записи создаются только сервисом загрузки (create-if-absent), здесь
    лишь переходы статуса, назначение и резолюция.
    """

    def __init__(self, store: TestRunStore) -> None:
        self._store = store

    def list_analyses(
        self,
        status: AnalysisStatus | None = None,
    ) -> list[AnalysisItem]:
        """Все расследования (новые первыми), опционально по статусу."""
        return [
            AnalysisItem(
                analysis=analysis,
                test_case=self._store.get_test_case(analysis.test_case_id),
            )
            for analysis in self._store.list_failure_analyses()
            if status is None or analysis.status is status
        ]

    def board(self) -> dict[AnalysisStatus, list[AnalysisItem]]:
        """Колонки доски: все статусы присутствуют, даже пустые."""
        columns: dict[AnalysisStatus, list[AnalysisItem]] = {
            status: [] for status in AnalysisStatus
        }
        for item in self.list_analyses():
            columns[item.analysis.status].append(item)
        return columns

    def get_for_case(self, test_case_id: int) -> FailureAnalysis | None:
        return self._store.get_failure_analysis_by_case(test_case_id)

    def update_analysis(
        self,
        analysis_id: int,
        update: FailureAnalysisUpdate,
    ) -> FailureAnalysis:
        """Применить явное изменение записи.

        Переход допустим между любыми статусами доски; поля, не переданные
        в запросе, не меняются. ``updated_at`` обновляется всегда.

        Raises:
            UnknownAnalysisError: Запись не найдена.
        """
        current = self._store.get_failure_analysis(analysis_id)
        if current is None:
            raise UnknownAnalysisError(analysis_id)

        changes = update.model_dump(exclude_unset=True)
        if changes.get("status") is None:
            # Статус обязателен у записи: null в PATCH означает «не менять»
            changes.pop("status", None)
        updated = self._store.update_failure_analysis(analysis_id, **changes)
        if updated is None:
            raise UnknownAnalysisError(analysis_id)

        if updated.status is not current.status:
            logger.info(
                "FailureAnalysis #%d (кейс #%d): %s → %s",
                analysis_id,
                updated.test_case_id,
                current.status.value,
                updated.status.value,
            )
        return updated
