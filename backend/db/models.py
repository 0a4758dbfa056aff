"""
SkuCast Database Models

Tables:
  1. optimization_jobs  - Durable optimization work handed to the Celery worker

The optimization cache itself lives in the key-value store (see
optimization.storage); only jobs are relational.
"""

from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, Integer, String, Text, text

from db.session import Base

JOB_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
ACTIVE_JOB_STATUSES = ("pending", "running")
TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled")

_ACTIVE_WHERE = text("status IN ('pending', 'running')")

# ─── 1. Optimization Jobs ──────────────────────────────────────────────────


class OptimizationJob(Base):
    __tablename__ = "optimization_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku = Column(String(255), nullable=False)
    model_id = Column(String(100), nullable=False)
    method = Column(String(10), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=1)
    reason = Column(String(50), nullable=False, default="manual")
    data_hash = Column(String(100), nullable=False)
    optimization_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("method IN ('ai', 'grid')", name="ck_optimization_job_method"),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_optimization_job_status",
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_optimization_job_progress"),
        Index("ix_optimization_jobs_status", "status", "priority", "created_at"),
        Index("ix_optimization_jobs_hash", "optimization_hash"),
        # At most one in-flight job per (sku, model, method)
        Index(
            "uq_optimization_jobs_inflight",
            "sku",
            "model_id",
            "method",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
    )

    def __repr__(self) -> str:
        return f"<OptimizationJob {self.id} {self.sku}/{self.model_id}/{self.method} {self.status}>"
