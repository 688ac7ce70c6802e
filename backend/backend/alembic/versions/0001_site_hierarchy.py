"""site hierarchy, principals and audit log

Revision ID: 0001_site_hierarchy
Revises:
Create Date: 2026-10-17T09:00:00Z
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_site_hierarchy"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "hier_region",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
    )

    op.create_table(
        "hier_site",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("region_id", sa.String(length=64), sa.ForeignKey("hier_region.id"), nullable=False),
        sa.Column("manager_principal_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="NotCarried"),
        sa.Column("purpose", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("client_phone_number", sa.String(length=64), nullable=False, server_default=""),
    )
    op.create_index("ix_hier_site_region_id", "hier_site", ["region_id"])
    op.create_index("ix_hier_site_manager_principal_id", "hier_site", ["manager_principal_id"])
    op.create_index("ix_hier_site_region_name", "hier_site", ["region_id", "name"])

    op.create_table(
        "hier_worker",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("hier_site.id"), nullable=False),
    )
    op.create_index("ix_hier_worker_site_id", "hier_worker", ["site_id"])

    op.create_table(
        "hier_state",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "auth_principal",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("external_ref", sa.String(length=256), nullable=False),
    )
    op.create_index("ix_auth_principal_external_ref", "auth_principal", ["external_ref"], unique=True)

    op.create_table(
        "auth_role_grant",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("principal_id", sa.String(length=64), sa.ForeignKey("auth_principal.id"), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("scope_type", sa.String(length=16), nullable=False),
        sa.Column("scope_id", sa.String(length=64), nullable=False),
        sa.Column("granted_by", sa.String(length=64), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_auth_role_grant_principal_id", "auth_role_grant", ["principal_id"])
    op.create_index("ix_auth_role_grant_role", "auth_role_grant", ["role"])
    op.create_index("ix_auth_role_grant_scope_type", "auth_role_grant", ["scope_type"])
    op.create_index("ix_auth_role_grant_scope_id", "auth_role_grant", ["scope_id"])
    op.create_index("uq_auth_role_grant_scope", "auth_role_grant", ["principal_id", "role", "scope_id"], unique=True)

    op.create_table(
        "sys_audit_log",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(length=256), nullable=False),
        sa.Column("principal_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=256), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.String(length=256), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    for col in ("actor", "principal_id", "action", "entity_type", "entity_id", "outcome", "request_id"):
        op.create_index(f"ix_sys_audit_log_{col}", "sys_audit_log", [col])
    op.create_index("ix_audit_entity_time", "sys_audit_log", ["entity_type", "entity_id", "created_at"])


def downgrade():
    op.drop_table("sys_audit_log")
    op.drop_table("auth_role_grant")
    op.drop_table("auth_principal")
    op.drop_table("hier_state")
    op.drop_table("hier_worker")
    op.drop_table("hier_site")
    op.drop_table("hier_region")
