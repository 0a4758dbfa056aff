"""
Optimization jobs table

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "optimization_jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("sku", sa.String(255), nullable=False),
        sa.Column("model_id", sa.String(100), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="1"),
        sa.Column("reason", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("data_hash", sa.String(100), nullable=False),
        sa.Column("optimization_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("method IN ('ai', 'grid')", name="ck_optimization_job_method"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_optimization_job_status",
        ),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_optimization_job_progress"),
    )
    op.create_index("ix_optimization_jobs_status", "optimization_jobs", ["status", "priority", "created_at"])
    op.create_index("ix_optimization_jobs_hash", "optimization_jobs", ["optimization_hash"])
    op.create_index(
        "uq_optimization_jobs_inflight",
        "optimization_jobs",
        ["sku", "model_id", "method"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
    )


def downgrade() -> None:
    op.drop_index("uq_optimization_jobs_inflight", table_name="optimization_jobs")
    op.drop_index("ix_optimization_jobs_hash", table_name="optimization_jobs")
    op.drop_index("ix_optimization_jobs_status", table_name="optimization_jobs")
    op.drop_table("optimization_jobs")
