"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    ]

def upgrade():
    op.create_table(
        "app_user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("login", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_app_user_login", "app_user", ["login"], unique=True)

    op.create_table(
        "import_batch",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("checksum", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("total_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("empty_rows_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activities_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_logs", sa.JSON(), nullable=True),
        sa.Column("worker_id", sa.String(length=128), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("app_user.id"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_import_batch_checksum", "import_batch", ["checksum"])
    op.create_index("ix_import_batch_status", "import_batch", ["status"])
    op.create_index("ix_import_batch_created_by", "import_batch", ["created_by"])

    op.create_table(
        "import_error_detail",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.String(length=64), sa.ForeignKey("import_batch.id", ondelete="CASCADE"), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=True),
        sa.Column("raw_row_data", sa.JSON(), nullable=True),
        sa.Column("error_type", sa.String(length=64), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("field", sa.String(length=128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_import_error_detail_batch_id", "import_error_detail", ["batch_id"])

    op.create_table(
        "case_record",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_number", sa.String(length=128), nullable=False),
        sa.Column("court_name", sa.String(length=255), nullable=False),
        sa.Column("filed_year", sa.Integer(), nullable=False),
        sa.Column("caseid_type", sa.String(length=20), nullable=False),
        sa.Column("caseid_no", sa.String(length=50), nullable=False),
        sa.Column("case_type_code", sa.String(length=32), nullable=False),
        sa.Column("case_type_name", sa.String(length=100), nullable=False),
        sa.Column("court_type", sa.String(length=8), nullable=False),
        sa.Column("filed_date", sa.Date(), nullable=False),
        sa.Column("original_court", sa.String(length=255), nullable=True),
        sa.Column("original_code", sa.String(length=50), nullable=True),
        sa.Column("original_case_number", sa.String(length=50), nullable=True),
        sa.Column("original_year", sa.Integer(), nullable=True),
        sa.Column("male_applicant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("female_applicant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("organization_applicant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("male_defendant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("female_defendant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("organization_defendant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("has_legal_representation", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_activity_date", sa.Date(), nullable=True),
        sa.Column("total_activities", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ACTIVE"),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("case_number", "court_name", "filed_year", name="uq_case_natural_key"),
    )
    op.create_index("ix_case_record_case_number", "case_record", ["case_number"])
    op.create_index("ix_case_record_case_type_code", "case_record", ["case_type_code"])
    # lookups compare the court case-insensitively
    op.create_index(
        "ix_case_record_natural_key_ci",
        "case_record",
        ["case_number", sa.text("upper(court_name)"), "filed_year"],
    )

    op.create_table(
        "case_activity",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_id", sa.Integer(), sa.ForeignKey("case_record.id", ondelete="CASCADE"), nullable=False),
        sa.Column("import_batch_id", sa.String(length=64), sa.ForeignKey("import_batch.id", ondelete="SET NULL"), nullable=True),
        sa.Column("activity_date", sa.Date(), nullable=False),
        sa.Column("activity_type", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=100), nullable=False),
        sa.Column("reason_for_adjournment", sa.Text(), nullable=True),
        sa.Column("next_hearing_date", sa.Date(), nullable=True),
        sa.Column("primary_judge", sa.String(length=255), nullable=False),
        sa.Column("judges", sa.JSON(), nullable=True),
        sa.Column("has_legal_representation", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("applicant_witnesses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("defendant_witnesses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("custody_status", sa.String(length=32), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("row_fingerprint", sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("case_id", "row_fingerprint", name="uq_case_activity_fingerprint"),
    )
    op.create_index("ix_case_activity_case_id", "case_activity", ["case_id"])
    op.create_index("ix_case_activity_import_batch_id", "case_activity", ["import_batch_id"])
    op.create_index("ix_case_activity_activity_date", "case_activity", ["activity_date"])

def downgrade():
    op.drop_table("case_activity")
    op.drop_table("case_record")
    op.drop_table("import_error_detail")
    op.drop_table("import_batch")
    op.drop_index("ix_app_user_login", table_name="app_user")
    op.drop_table("app_user")
