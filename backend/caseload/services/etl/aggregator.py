from caseload.services.etl.parsers.case_returns import RowFailure
from caseload.services.etl.validators import ValidationError


def error_from_failure(failure: RowFailure) -> ValidationError:
    return ValidationError(
        message=failure.message,
        error_type=failure.error_type,
        row_num=failure.row_number,
        column=failure.column,
        raw=failure.raw,
    )


class ErrorAggregator:
    """Collects one error per failing row, in row order, without aborting the batch.

    ``drain()`` returns what has not been stored yet so the tracker can persist
    it together with the failure counter; ``snapshot()`` keeps everything seen.
    """

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        self._errors: list[ValidationError] = []
        self._stored = 0

    def __len__(self) -> int:
        return len(self.row_errors())

    def add(self, error: ValidationError) -> ValidationError:
        self._errors.append(error)
        return error

    def drain(self) -> list[ValidationError]:
        return self._errors[self._stored:]

    def mark_stored(self, n: int) -> None:
        self._stored += n

    def discard_pending(self) -> None:
        del self._errors[self._stored:]

    def snapshot(self) -> list[ValidationError]:
        return list(self._errors)

    def row_errors(self) -> list[ValidationError]:
        return [e for e in self._errors if e.row_num is not None]

    def summary(self, limit: int = 20) -> list[dict]:
        return [e.as_log() for e in self._errors[:limit]]
