"""create shared security tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Tenant registry; each row owns exactly one schema.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("schema_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("schema_name"),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    # Signed audit trail; patient identifiers are stored as keyed hashes only.
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("user_role", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("patient_id_hash", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("device_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_anomaly", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("integrity_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_severity", "audit_logs", ["severity"], unique=False)
    op.create_index("ix_audit_logs_patient_id_hash", "audit_logs", ["patient_id_hash"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)
    op.create_index("ix_audit_logs_is_anomaly", "audit_logs", ["is_anomaly"], unique=False)
    op.create_index(
        "ix_audit_logs_user_action_created",
        "audit_logs",
        ["user_id", "action", "created_at"],
        unique=False,
    )

    op.create_table(
        "security_incidents",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("incident_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("affected_systems", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("affected_patient_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("phi_involved", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("reported_by", sa.String(), nullable=False),
        sa.Column("assigned_to", sa.String(), nullable=True),
        sa.Column("root_cause", sa.Text(), nullable=True),
        sa.Column("remediation_steps", sa.Text(), nullable=True),
        sa.Column("timeline_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("contained_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remediated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_security_incidents_tenant_id", "security_incidents", ["tenant_id"], unique=False)
    op.create_index("ix_security_incidents_severity", "security_incidents", ["severity"], unique=False)
    op.create_index("ix_security_incidents_status", "security_incidents", ["status"], unique=False)

    # Deadline is fixed at incident creation plus the regulatory window.
    op.create_table(
        "breach_notifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("incident_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["incident_id"], ["security_incidents.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_breach_notifications_incident_id", "breach_notifications", ["incident_id"], unique=False)
    op.create_index("ix_breach_notifications_tenant_id", "breach_notifications", ["tenant_id"], unique=False)
    op.create_index("ix_breach_notifications_status", "breach_notifications", ["status"], unique=False)
    op.create_index("ix_breach_notifications_scheduled_at", "breach_notifications", ["scheduled_at"], unique=False)

    op.create_table(
        "medical_devices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("serial_number", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("device_type", sa.String(), nullable=False),
        sa.Column("manufacturer", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("firmware_version", sa.String(), nullable=True),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column("registered_by", sa.String(), nullable=True),
        sa.Column("api_key_hash", sa.String(), nullable=False),
        sa.Column("public_key_pem", sa.Text(), nullable=True),
        sa.Column("certificate_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trust_level", sa.String(), nullable=False),
        sa.Column("failed_auth_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("suspended_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ip", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("serial_number"),
    )
    op.create_index("ix_medical_devices_tenant_id", "medical_devices", ["tenant_id"], unique=False)
    op.create_index("ix_medical_devices_status", "medical_devices", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_medical_devices_status", table_name="medical_devices")
    op.drop_index("ix_medical_devices_tenant_id", table_name="medical_devices")
    op.drop_table("medical_devices")
    op.drop_index("ix_breach_notifications_scheduled_at", table_name="breach_notifications")
    op.drop_index("ix_breach_notifications_status", table_name="breach_notifications")
    op.drop_index("ix_breach_notifications_tenant_id", table_name="breach_notifications")
    op.drop_index("ix_breach_notifications_incident_id", table_name="breach_notifications")
    op.drop_table("breach_notifications")
    op.drop_index("ix_security_incidents_status", table_name="security_incidents")
    op.drop_index("ix_security_incidents_severity", table_name="security_incidents")
    op.drop_index("ix_security_incidents_tenant_id", table_name="security_incidents")
    op.drop_table("security_incidents")
    op.drop_index("ix_audit_logs_user_action_created", table_name="audit_logs")
    op.drop_index("ix_audit_logs_is_anomaly", table_name="audit_logs")
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_patient_id_hash", table_name="audit_logs")
    op.drop_index("ix_audit_logs_severity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_tenant_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")
