# import all models for Alembic
from caseload.db.models.user import User
from caseload.db.models.import_batch import ImportBatch, BatchStatus
from caseload.db.models.import_error_detail import ImportErrorDetail
from caseload.db.models.case import Case
from caseload.db.models.case_activity import CaseActivity
