"""Create certificate pipeline tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


# Shared by three tables: created once, never implicitly per table
course_kind = postgresql.ENUM("cpd", "qualification", name="course_kind", create_type=False)
template_kind = sa.Enum("certificate", "transcript", name="template_kind")


def upgrade() -> None:
    bind = op.get_bind()
    course_kind.create(bind, checkfirst=True)

    # Claims are owned by the claims subsystem; created here for standalone deployments
    op.create_table(
        "certificate_claims",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("student_id", sa.Integer, nullable=False, index=True),
        sa.Column("course_id", sa.Integer, nullable=False, index=True),
        sa.Column("course_kind", course_kind, nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("course_title", sa.String(255), nullable=False),
        sa.Column("certificate_name", sa.String(255), nullable=True),
        sa.Column("course_level", sa.String(100), nullable=True),
        sa.Column("units", sa.JSON, nullable=False),
        sa.Column(
            "payment_state",
            sa.Enum("pending", "paid", "refunded", name="payment_state"),
            nullable=False,
            server_default="pending",
            index=True,
        ),
        sa.Column(
            "claimed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "certificate_templates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("kind", template_kind, nullable=False),
        sa.Column("course_kind", course_kind, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("source_path", sa.String(1024), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_certificate_templates_kind_active",
        "certificate_templates",
        ["kind", "course_kind", "is_active"],
    )
    op.create_index(
        "uq_certificate_templates_one_active",
        "certificate_templates",
        ["kind", "course_kind"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "generated_certificates",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("claim_id", sa.Integer, nullable=False),
        sa.Column("student_id", sa.Integer, nullable=False, index=True),
        sa.Column("course_id", sa.Integer, nullable=False),
        sa.Column("course_kind", course_kind, nullable=False),
        sa.Column("registration_number", sa.String(32), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "generating",
                "ready",
                "failed",
                "delivered",
                name="certificate_status",
            ),
            nullable=False,
            server_default="pending",
            index=True,
        ),
        sa.Column("certificate_source_path", sa.String(1024), nullable=True),
        sa.Column("certificate_distributable_path", sa.String(1024), nullable=True),
        sa.Column("transcript_source_path", sa.String(1024), nullable=True),
        sa.Column("transcript_distributable_path", sa.String(1024), nullable=True),
        sa.Column("rendered_fields", sa.JSON, nullable=True),
        sa.Column("certificate_template_id", sa.Integer, nullable=True),
        sa.Column("transcript_template_id", sa.Integer, nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("document_errors", sa.JSON, nullable=False),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_by", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("claim_id", name="uq_generated_certificates_claim_id"),
        sa.UniqueConstraint(
            "registration_number", name="uq_generated_certificates_registration_number"
        ),
    )
    op.create_index(
        "ix_generated_certificates_status_updated",
        "generated_certificates",
        ["status", "updated_at"],
    )

    op.create_table(
        "registration_sequences",
        sa.Column("authority", sa.String(16), primary_key=True),
        sa.Column("value", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "entity_kind",
            sa.Enum("GeneratedCertificate", "Template", name="audit_entity_kind"),
            nullable=False,
        ),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created",
                "updated",
                "status_changed",
                "number_allocated",
                name="audit_action",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=100), nullable=False),
        sa.Column(
            "actor_kind",
            sa.Enum("human", "system", name="audit_actor_kind"),
            nullable=False,
        ),
        sa.Column("before", sa.JSON, nullable=True),
        sa.Column("after", sa.JSON, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column(
            "ts",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_kind", "entity_id"])
    op.create_index("ix_audit_log_entity_ts", "audit_log", ["entity_kind", "entity_id", "ts"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("registration_sequences")
    op.drop_index("ix_generated_certificates_status_updated", table_name="generated_certificates")
    op.drop_table("generated_certificates")
    op.drop_index("uq_certificate_templates_one_active", table_name="certificate_templates")
    op.drop_index("ix_certificate_templates_kind_active", table_name="certificate_templates")
    op.drop_table("certificate_templates")
    op.drop_table("certificate_claims")

    bind = op.get_bind()
    for enum_name in (
        "audit_action",
        "audit_entity_kind",
        "audit_actor_kind",
        "certificate_status",
        "payment_state",
        "template_kind",
        "course_kind",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
