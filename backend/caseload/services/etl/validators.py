from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    # row level: recorded, row skipped, batch continues
    validation = "validation_error"
    mapping = "mapping_error"
    persistence = "persistence_error"
    constraint = "constraint_violation"
    ambiguous = "lookup_ambiguity"
    # job level: unwind the row loop
    file = "file_error"
    persistence_fatal = "persistence_fatal"
    timeout = "timeout"
    cancelled = "cancelled"
    worker_lost = "worker_lost"
    consistency = "consistency_error"


@dataclass
class ValidationError:
    """One failing row (or one job-level condition when row_num is None)."""

    message: str
    error_type: ErrorType = ErrorType.validation
    row_num: int | None = None
    column: str | None = None
    raw: dict[str, Any] | None = field(default=None, repr=False)

    def as_log(self) -> dict[str, Any]:
        return {
            "row": self.row_num,
            "type": self.error_type.value,
            "field": self.column,
            "message": self.message,
        }


class ImportPipelineError(Exception):
    error_type = ErrorType.validation


class FileFatalError(ImportPipelineError):
    """File missing, unreadable, undecodable or without a usable header."""

    error_type = ErrorType.file


class PersistenceFatalError(ImportPipelineError):
    error_type = ErrorType.persistence_fatal


class MappingError(ImportPipelineError):
    error_type = ErrorType.mapping

    def __init__(self, message: str, column: str | None = None):
        super().__init__(message)
        self.column = column


class UpsertError(ImportPipelineError):
    def __init__(self, error_type: ErrorType, message: str):
        super().__init__(message)
        self.error_type = error_type


class DuplicateSubmissionError(ImportPipelineError):
    def __init__(self, checksum: str, existing_batch_id: str | None = None):
        super().__init__(f"An import for checksum {checksum[:16]}... is already pending or processing")
        self.checksum = checksum
        self.existing_batch_id = existing_batch_id


class QueueUnavailableError(ImportPipelineError):
    """Broker could not be reached within the bounded retry budget."""
