import datetime as dt
from pydantic import BaseModel, ConfigDict, Field


class ImportJobIn(BaseModel):
    """Job descriptor handed to the queue. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(..., alias="filePath", min_length=1)
    filename: str = Field(..., min_length=1, max_length=512)
    file_size: int = Field(..., alias="fileSize", ge=0)
    checksum: str = Field(..., min_length=1, max_length=128)
    user_id: str | None = Field(default=None, alias="userId")
    batch_id: str | None = Field(default=None, alias="batchId", max_length=64)
    # live writes need this to be false AND IMPORT_LIVE_WRITES to be on
    dry_run: bool = Field(default=True, alias="dryRun")


class SubmitOut(BaseModel):
    accepted: bool
    batch_id: str | None
    dry_run: bool | None = None
    reason: str | None = None


class ImportStatusOut(BaseModel):
    batch_id: str
    status: str
    total_records: int
    successful_records: int
    failed_records: int
    empty_rows_skipped: int
    dry_run: bool
    error_summary: list[dict]
    # job-level failures (file, cancel, lost worker) from error_logs; row errors are in error_summary
    job_errors: list[dict] = []
    started_at: dt.datetime | None
    completed_at: dt.datetime | None


class ImportBatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    filename: str
    file_size: int
    checksum: str
    status: str
    dry_run: bool
    total_records: int
    successful_records: int
    failed_records: int
    empty_rows_skipped: int
    created_by: int
    created_at: dt.datetime | None
    started_at: dt.datetime | None
    completed_at: dt.datetime | None


class ImportErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    row_number: int | None
    error_type: str
    error_message: str
    field: str | None
    raw_row_data: dict | None


class ErrorPageOut(BaseModel):
    batch_id: str
    page: int
    page_size: int
    total: int
    items: list[ImportErrorOut]


class QueueStatsOut(BaseModel):
    queue_depth: int | None
    active_workers: int | None
    broker_connected: bool
    broker_state: str
    retry_attempts: int
    last_error: str | None


class RepairOut(BaseModel):
    repaired: list[str]


class VerifyOut(BaseModel):
    batch_id: str
    status: str
    dry_run: bool
    # VERIFIED | MISMATCH | NOT_FINISHED | NOT_APPLICABLE
    verdict: str
    successful_records: int
    activities_expected: int
    activities_found: int
    cases_touched: int
    message: str
