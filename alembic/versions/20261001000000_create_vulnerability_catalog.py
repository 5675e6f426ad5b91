"""Unified vulnerability catalog: scans, vulnerabilities_unified, vulnerability_instances.

Revision ID: 20261001000000
Revises:
Create Date: 2026-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261001000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "scans",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("repository_id", sa.String(length=255), nullable=False),
        sa.Column("workspace_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="queued"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scans_repository_id"), "scans", ["repository_id"], unique=False)
    op.create_index(op.f("ix_scans_status"), "scans", ["status"], unique=False)

    op.create_table(
        "vulnerabilities_unified",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("scanner_type", sa.String(length=32), nullable=False),
        sa.Column("repository_id", sa.String(length=255), nullable=False),
        sa.Column("workspace_id", sa.String(length=255), nullable=False),
        sa.Column("rule_id", sa.String(length=512), nullable=False),
        sa.Column("cwe", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("file_path", sa.String(length=2048), nullable=True),
        sa.Column("line_start", sa.Integer(), nullable=True),
        sa.Column("line_end", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("scanner_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("first_detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "status IN ('open', 'fixed')",
            name="vulnerabilities_unified_status_check",
        ),
        sa.CheckConstraint(
            "severity IN ('critical', 'high', 'medium', 'low', 'info')",
            name="vulnerabilities_unified_severity_check",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_vulnerabilities_unified_fingerprint"),
        "vulnerabilities_unified",
        ["fingerprint"],
        unique=True,
    )
    for column in ("severity", "repository_id", "workspace_id", "status"):
        op.create_index(
            op.f(f"ix_vulnerabilities_unified_{column}"),
            "vulnerabilities_unified",
            [column],
            unique=False,
        )

    op.create_table(
        "vulnerability_instances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instance_key", sa.String(length=64), nullable=False),
        sa.Column("scan_id", sa.String(length=64), nullable=False),
        sa.Column("vulnerability_id", sa.Integer(), nullable=False),
        sa.Column("scanner_type", sa.String(length=32), nullable=False),
        sa.Column("scanner", sa.String(length=255), nullable=True),
        sa.Column("file_path", sa.String(length=2048), nullable=True),
        sa.Column("line_start", sa.Integer(), nullable=True),
        sa.Column("line_end", sa.Integer(), nullable=True),
        sa.Column("package_name", sa.String(length=1024), nullable=True),
        sa.Column("package_version", sa.String(length=255), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw_finding", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["vulnerability_id"], ["vulnerabilities_unified.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("instance_key"),
    )
    op.create_index(op.f("ix_vulnerability_instances_scan_id"), "vulnerability_instances", ["scan_id"], unique=False)
    op.create_index(
        op.f("ix_vulnerability_instances_vulnerability_id"),
        "vulnerability_instances",
        ["vulnerability_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_vulnerability_instances_vulnerability_id"), table_name="vulnerability_instances")
    op.drop_index(op.f("ix_vulnerability_instances_scan_id"), table_name="vulnerability_instances")
    op.drop_table("vulnerability_instances")
    for column in ("status", "workspace_id", "repository_id", "severity", "fingerprint"):
        op.drop_index(op.f(f"ix_vulnerabilities_unified_{column}"), table_name="vulnerabilities_unified")
    op.drop_table("vulnerabilities_unified")
    op.drop_index(op.f("ix_scans_status"), table_name="scans")
    op.drop_index(op.f("ix_scans_repository_id"), table_name="scans")
    op.drop_table("scans")
