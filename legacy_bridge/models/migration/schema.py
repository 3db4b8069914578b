"""
Run-tracking tables for the migrator.

They live in the application's own database (``SQLALCHEMY_DATABASE_URI``),
never in the source or destination of a migration.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class MigrationRunStatus(str, enum.Enum):
    """Lifecycle states for a migration run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MigrationStepStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class MigrationRun(BaseModel):
    """One pass over the ordered steps for a tenant scope."""

    __tablename__ = "migration_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    scope: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    tenant_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    status: Mapped[MigrationRunStatus] = mapped_column(
        Enum(MigrationRunStatus, name="migration_run_status_enum"),
        nullable=False,
        default=MigrationRunStatus.PENDING,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_completed_step: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    enum_tables_checksum: Mapped[str | None] = mapped_column(
        db.String(64),
        nullable=True,
        comment="Checksum of the lookup tables file the run was started with.",
    )

    steps = relationship(
        "MigrationStepRun",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MigrationStepRun.position",
    )

    __table_args__ = (Index("ix_migration_runs_scope_status", "scope", "status"),)

    def __repr__(self) -> str:
        return f"<MigrationRun id={self.id} scope={self.scope} status={self.status}>"


class MigrationStepRun(BaseModel):
    __tablename__ = "migration_step_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False)
    step: Mapped[str] = mapped_column(db.String(64), nullable=False)
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[MigrationStepStatus] = mapped_column(
        Enum(MigrationStepStatus, name="migration_step_status_enum"),
        nullable=False,
        default=MigrationStepStatus.PENDING,
    )
    engine_state: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    run = relationship("MigrationRun", back_populates="steps")

    __table_args__ = (UniqueConstraint("run_id", "step", name="uq_migration_step_runs_run_step"),)
