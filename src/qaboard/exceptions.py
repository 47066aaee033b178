"""Custom exception hierarchy for the qaboard package."""


class QaboardError(Exception):
    """Base exception for all qaboard errors."""


class ConfigurationError(QaboardError):
    """Missing or invalid configuration."""


class MalformedDocumentError(QaboardError):
    """Uploaded report is not well-formed XML."""


class UnknownRunError(QaboardError):
    """A batch or update references a test run that does not exist."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        super().__init__(f"Test run #{run_id} not found")


class RunClosedError(QaboardError):
    """Batch submitted to a run that already reached a terminal status."""

    def __init__(self, run_id: int, status: str) -> None:
        self.run_id = run_id
        self.status = status
        super().__init__(f"Test run #{run_id} is {status} and accepts no more cases")


class CaseValidationError(QaboardError):
    """A submitted case is missing a required field."""


class UnknownAnalysisError(QaboardError):
    """Failure analysis record not found."""

    def __init__(self, analysis_id: int) -> None:
        self.analysis_id = analysis_id
        super().__init__(f"Failure analysis #{analysis_id} not found")


class StorageError(QaboardError):
    """Storage backend failed to read or write records."""


class UnknownEntityError(QaboardError):
    """Manual test-management record not found."""

    def __init__(self, entity: str, entity_id: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} #{entity_id} not found")


class InvalidReferenceError(QaboardError):
    """Request body points to a missing record or would create a cycle."""
