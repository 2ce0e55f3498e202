"""Initial database schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the DentaRad tables:
- clinics, profiles: tenants and user accounts
- cases, reports, report_images, signature_audit: the reporting workflow
- cbct_report_templates, template_usage: report templates
- pricing_rules, invoices, email_templates: billing
- notifications, login_attempts, upload_rate_limits, audit_logs: security and messaging

and the database functions the API calls.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CASE_STATUS = postgresql.ENUM(
    "uploaded", "in_progress", "report_ready", "awaiting_payment",
    name="case_status",
    create_type=False,
)
URGENCY_LEVEL = postgresql.ENUM("standard", "urgent", name="urgency_level", create_type=False)
FIELD_OF_VIEW = postgresql.ENUM(
    "up_to_5x5", "up_to_8x5", "up_to_8x8", "over_8x8",
    name="field_of_view",
    create_type=False,
)
USER_ROLE = postgresql.ENUM("admin", "clinic", "reporter", name="user_role", create_type=False)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    for enum in (CASE_STATUS, URGENCY_LEVEL, FIELD_OF_VIEW, USER_ROLE):
        enum.create(op.get_bind(), checkfirst=True)

    op.execute("CREATE SEQUENCE IF NOT EXISTS case_simple_id_seq START 1")

    # =========================
    # Clinics and Profiles
    # =========================
    op.create_table(
        "clinics",
        _id_column(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address", sa.Text, nullable=True),
        sa.Column("stripe_customer_id", sa.String(100), nullable=True, unique=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, comment="Auth user id"),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=True),
        sa.Column("role", USER_ROLE, nullable=False, server_default="clinic"),
        sa.Column(
            "clinic_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clinics.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "notification_preferences",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("csrf_token", sa.String(64), nullable=True),
        sa.Column("csrf_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "backup_codes",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
            comment="bcrypt hashes of unused MFA backup codes",
        ),
        _created_at(),
        _updated_at(),
    )
    op.create_index("idx_profiles_clinic", "profiles", ["clinic_id"])

    # =========================
    # Cases
    # =========================
    op.create_table(
        "cases",
        _id_column(),
        sa.Column(
            "simple_id",
            sa.Integer,
            nullable=False,
            unique=True,
            server_default=sa.text("nextval('case_simple_id_seq')"),
        ),
        sa.Column(
            "clinic_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clinics.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("patient_name", sa.String(200), nullable=False),
        sa.Column("patient_first_name", sa.String(100), nullable=True),
        sa.Column("patient_last_name", sa.String(100), nullable=True),
        sa.Column("patient_dob", sa.Date, nullable=True),
        sa.Column("patient_internal_id", sa.String(50), nullable=True),
        sa.Column("clinical_question", sa.Text, nullable=False),
        sa.Column("special_instructions", sa.Text, nullable=True),
        sa.Column("reporter_notes", sa.Text, nullable=True),
        sa.Column("status", CASE_STATUS, nullable=False, server_default="uploaded"),
        sa.Column("urgency", URGENCY_LEVEL, nullable=False, server_default="standard"),
        sa.Column("field_of_view", FIELD_OF_VIEW, nullable=False),
        sa.Column("folder_name", sa.String(200), nullable=True, unique=True),
        sa.Column("estimated_cost", sa.Numeric(10, 2), nullable=True),
        sa.Column("file_path", sa.Text, nullable=True, comment="Object key in the scans bucket"),
        sa.Column("dropbox_scan_path", sa.Text, nullable=True),
        sa.Column("dropbox_report_path", sa.Text, nullable=True),
        sa.Column("synced_to_dropbox", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "zip_generation_status",
            sa.String(20),
            nullable=True,
            comment="processing, completed, failed",
        ),
        sa.Column("pregenerated_zip_path", sa.Text, nullable=True),
        sa.Column("orthanc_study_id", sa.String(100), nullable=True),
        sa.Column("study_instance_uid", sa.String(128), nullable=True),
        sa.Column("billed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_received", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(100), nullable=True),
        sa.Column("upload_date", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("NOW()")),
        _created_at(),
        _updated_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_cases_clinic", "cases", ["clinic_id"])
    op.create_index("idx_cases_status", "cases", ["status"])
    op.create_index("idx_cases_upload_date", "cases", [sa.text("upload_date DESC")])
    op.create_index("idx_cases_clinic_created", "cases", ["clinic_id", "created_at"])

    # =========================
    # Reports
    # =========================
    op.create_table(
        "reports",
        _id_column(),
        sa.Column(
            "case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("clinical_history", sa.Text, nullable=True),
        sa.Column("report_content", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_superseded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_latest", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("can_reopen", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "supersedes",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reports.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("reopen_reason", sa.Text, nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("signatory_name", sa.String(200), nullable=True),
        sa.Column("signatory_credentials", sa.String(200), nullable=True),
        sa.Column("signature_hash", sa.String(64), nullable=True, comment="SHA-256"),
        sa.Column("verification_token", sa.String(64), nullable=True, unique=True),
        sa.Column("pdf_generated", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("pdf_storage_path", sa.Text, nullable=True),
        sa.Column("last_saved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("case_id", "version", name="uq_reports_case_version"),
    )
    op.create_index("idx_reports_case", "reports", ["case_id"])

    op.create_table(
        "report_images",
        _id_column(),
        sa.Column(
            "report_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("storage_path", sa.Text, nullable=False),
        sa.Column("image_url", sa.Text, nullable=True),
        sa.Column("caption", sa.Text, nullable=True),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("idx_report_images_report", "report_images", ["report_id", "position"])

    op.create_table(
        "signature_audit",
        _id_column(),
        sa.Column(
            "report_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("signer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("signature_hash", sa.String(64), nullable=False),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )

    # =========================
    # Templates
    # =========================
    op.create_table(
        "cbct_report_templates",
        _id_column(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("indication_category", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("clinical_history_template", sa.Text, nullable=True),
        sa.Column("imaging_technique_template", sa.Text, nullable=True),
        sa.Column("findings_template", sa.Text, nullable=False, server_default=""),
        sa.Column("impression_template", sa.Text, nullable=False, server_default=""),
        sa.Column("recommendations_template", sa.Text, nullable=True),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
        _updated_at(),
    )
    op.create_index("idx_templates_category", "cbct_report_templates", ["indication_category"])

    op.create_table(
        "template_usage",
        _id_column(),
        sa.Column(
            "template_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cbct_report_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )

    # =========================
    # Billing
    # =========================
    op.create_table(
        "pricing_rules",
        _id_column(),
        sa.Column("field_of_view", FIELD_OF_VIEW, nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("effective_from", sa.Date, nullable=False, server_default=sa.text("CURRENT_DATE")),
        sa.Column("effective_to", sa.Date, nullable=True, comment="NULL for the current price"),
        _created_at(),
    )
    op.create_index("idx_pricing_rules_fov", "pricing_rules", ["field_of_view", "effective_from"])

    op.create_table(
        "invoices",
        _id_column(),
        sa.Column("invoice_number", sa.String(50), nullable=False, unique=True),
        sa.Column(
            "clinic_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clinics.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "case_ids",
            postgresql.ARRAY(postgresql.UUID(as_uuid=True)),
            nullable=False,
            server_default=sa.text("'{}'::uuid[]"),
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("line_items", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="draft",
            comment="draft, sent, paid, overdue",
        ),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("pdf_storage_path", sa.Text, nullable=True),
        sa.Column("stripe_invoice_id", sa.String(100), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_updated_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("idx_invoices_clinic", "invoices", ["clinic_id"])
    op.create_index("idx_invoices_status_due", "invoices", ["status", "due_date"])

    op.create_table(
        "email_templates",
        _id_column(),
        sa.Column("template_key", sa.String(100), nullable=False, unique=True),
        sa.Column("subject", sa.String(300), nullable=False),
        sa.Column("html_content", sa.Text, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )

    # =========================
    # Notifications and Security
    # =========================
    op.create_table(
        "notifications",
        _id_column(),
        sa.Column(
            "recipient_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("email_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("idx_notifications_recipient", "notifications", ["recipient_id", "created_at"])

    op.create_table(
        "login_attempts",
        _id_column(),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("successful", sa.Boolean, nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("attempt_time", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_login_attempts_email_time", "login_attempts", ["email", "attempt_time"])

    op.create_table(
        "upload_rate_limits",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("file_size", sa.BigInteger, nullable=False),
        sa.Column("file_type", sa.String(100), nullable=True),
        sa.Column(
            "upload_timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index("idx_upload_rate_limits_user_time", "upload_rate_limits", ["user_id", "upload_timestamp"])

    op.create_table(
        "audit_logs",
        _id_column(),
        _created_at(),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", sa.Text, nullable=True),
        sa.Column("details", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
    )
    op.create_index("idx_audit_logs_created", "audit_logs", [sa.text("created_at DESC")])
    op.create_index("idx_audit_logs_user", "audit_logs", ["user_id"])
    op.create_index("idx_audit_logs_action", "audit_logs", ["action"])

    # =========================
    # Functions
    # =========================
    op.execute("""
        CREATE OR REPLACE FUNCTION get_weekly_income_stats()
        RETURNS TABLE (
            projected_income NUMERIC,
            income_so_far NUMERIC,
            total_cases INTEGER,
            reported_cases INTEGER
        ) LANGUAGE sql STABLE AS $$
            SELECT
                COALESCE(SUM(estimated_cost), 0),
                COALESCE(SUM(estimated_cost) FILTER (
                    WHERE status IN ('report_ready', 'awaiting_payment')
                ), 0),
                COUNT(*)::INTEGER,
                COUNT(*) FILTER (WHERE status IN ('report_ready', 'awaiting_payment'))::INTEGER
            FROM cases
            WHERE created_at >= date_trunc('week', NOW())
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION get_monthly_income_stats()
        RETURNS TABLE (
            projected_income NUMERIC,
            income_so_far NUMERIC,
            total_cases INTEGER,
            reported_cases INTEGER
        ) LANGUAGE sql STABLE AS $$
            SELECT
                COALESCE(SUM(estimated_cost), 0),
                COALESCE(SUM(estimated_cost) FILTER (
                    WHERE status IN ('report_ready', 'awaiting_payment')
                ), 0),
                COUNT(*)::INTEGER,
                COUNT(*) FILTER (WHERE status IN ('report_ready', 'awaiting_payment'))::INTEGER
            FROM cases
            WHERE created_at >= date_trunc('month', NOW())
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION create_report_version(
            p_original_report_id UUID,
            p_new_version_number INTEGER
        ) RETURNS UUID LANGUAGE plpgsql AS $$
        DECLARE
            v_new_id UUID;
        BEGIN
            UPDATE reports
            SET is_superseded = TRUE, is_latest = FALSE
            WHERE id = p_original_report_id;

            INSERT INTO reports (
                case_id, clinical_history, report_content, version,
                is_superseded, is_latest, can_reopen, supersedes
            )
            SELECT case_id, clinical_history, report_content, p_new_version_number,
                   FALSE, TRUE, TRUE, id
            FROM reports
            WHERE id = p_original_report_id
            RETURNING id INTO v_new_id;

            RETURN v_new_id;
        END;
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION get_unbilled_reports(
            p_start_date DATE DEFAULT NULL,
            p_end_date DATE DEFAULT NULL
        )
        RETURNS TABLE (
            clinic_id UUID,
            clinic_name TEXT,
            clinic_email TEXT,
            report_count INTEGER,
            total_amount NUMERIC,
            cases JSONB
        ) LANGUAGE sql STABLE AS $$
            SELECT
                cl.id,
                cl.name::TEXT,
                cl.contact_email::TEXT,
                COUNT(c.id)::INTEGER,
                COALESCE(SUM(c.estimated_cost), 0),
                jsonb_agg(jsonb_build_object(
                    'case_id', c.id,
                    'patient_name', c.patient_name,
                    'patient_id', c.patient_internal_id,
                    'report_date', c.completed_at,
                    'amount', c.estimated_cost,
                    'field_of_view', c.field_of_view
                ) ORDER BY c.completed_at)
            FROM cases c
            JOIN clinics cl ON cl.id = c.clinic_id
            WHERE c.status = 'report_ready'
              AND c.billed = FALSE
              AND (p_start_date IS NULL OR c.completed_at::DATE >= p_start_date)
              AND (p_end_date IS NULL OR c.completed_at::DATE <= p_end_date)
            GROUP BY cl.id, cl.name, cl.contact_email
            ORDER BY cl.name
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION increment_template_usage(template_id UUID)
        RETURNS VOID LANGUAGE sql AS $$
            UPDATE cbct_report_templates
            SET usage_count = usage_count + 1, updated_at = NOW()
            WHERE id = increment_template_usage.template_id
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION is_account_locked(p_email TEXT)
        RETURNS TABLE (locked BOOLEAN, unlock_at TIMESTAMPTZ, attempts INTEGER)
        LANGUAGE sql STABLE AS $$
            SELECT
                COUNT(*) >= 5,
                MAX(attempt_time) + INTERVAL '15 minutes',
                COUNT(*)::INTEGER
            FROM login_attempts
            WHERE email = lower(p_email)
              AND successful = FALSE
              AND attempt_time > NOW() - INTERVAL '15 minutes'
              AND attempt_time > COALESCE((
                  SELECT MAX(attempt_time) FROM login_attempts
                  WHERE email = lower(p_email) AND successful = TRUE
              ), '-infinity'::TIMESTAMPTZ)
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION record_login_attempt(
            p_email TEXT,
            p_successful BOOLEAN,
            p_ip_address TEXT DEFAULT NULL,
            p_user_agent TEXT DEFAULT NULL
        ) RETURNS VOID LANGUAGE sql AS $$
            INSERT INTO login_attempts (email, successful, ip_address, user_agent)
            VALUES (lower(p_email), p_successful, p_ip_address, p_user_agent)
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION log_audit_event_secure(
            p_action TEXT,
            p_resource_type TEXT DEFAULT NULL,
            p_resource_id TEXT DEFAULT NULL,
            p_details JSONB DEFAULT '{}'::JSONB,
            p_ip_address TEXT DEFAULT NULL,
            p_user_agent TEXT DEFAULT NULL,
            p_user_id UUID DEFAULT NULL
        ) RETURNS UUID LANGUAGE plpgsql AS $$
        DECLARE
            v_id UUID;
        BEGIN
            INSERT INTO audit_logs (
                action, user_id, resource_type, resource_id, details, ip_address, user_agent
            ) VALUES (
                p_action, p_user_id, p_resource_type, p_resource_id,
                COALESCE(p_details, '{}'::JSONB), p_ip_address, p_user_agent
            )
            RETURNING id INTO v_id;
            RETURN v_id;
        END;
        $$
    """)


def downgrade() -> None:
    for function in (
        "log_audit_event_secure(TEXT, TEXT, TEXT, JSONB, TEXT, TEXT, UUID)",
        "record_login_attempt(TEXT, BOOLEAN, TEXT, TEXT)",
        "is_account_locked(TEXT)",
        "increment_template_usage(UUID)",
        "get_unbilled_reports(DATE, DATE)",
        "create_report_version(UUID, INTEGER)",
        "get_monthly_income_stats()",
        "get_weekly_income_stats()",
    ):
        op.execute(f"DROP FUNCTION IF EXISTS {function}")

    for table in (
        "audit_logs",
        "upload_rate_limits",
        "login_attempts",
        "notifications",
        "email_templates",
        "invoices",
        "pricing_rules",
        "template_usage",
        "cbct_report_templates",
        "signature_audit",
        "report_images",
        "reports",
        "cases",
        "profiles",
        "clinics",
    ):
        op.drop_table(table)

    op.execute("DROP SEQUENCE IF EXISTS case_simple_id_seq")
    for enum in (USER_ROLE, FIELD_OF_VIEW, URGENCY_LEVEL, CASE_STATUS):
        enum.drop(op.get_bind(), checkfirst=True)
