"""Database models."""
from sqlalchemy import Column, String, Integer, Boolean, Text, DateTime, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func
from reporag.database.connection import Base


class IngestionRunRecord(Base):
    """One ingestion run and its current lifecycle status."""
    __tablename__ = "ingestion_runs"

    run_id = Column(String(255), primary_key=True, index=True)

    # Repository descriptor
    repo_url = Column(String(1000), nullable=False)
    repo_branch = Column(String(255), nullable=False)
    repo_path = Column(String(1000), nullable=False, default="")
    file_extensions = Column(JSON, nullable=False, default=list)

    status = Column(String(50), nullable=False, default="created")
    error_message = Column(Text, nullable=True)
    failed_step = Column(String(100), nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    # Metadata
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RunLedgerEntry(Base):
    """
    Append-only ledger of run status changes.

    created_at carries the run's creation timestamp so that the latest
    completed run can be resolved with a single ordered query.
    """
    __tablename__ = "run_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(255), ForeignKey("ingestion_runs.run_id"), nullable=False, index=True)
    status = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())
    detail = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_run_ledger_status_created_at", "status", "created_at"),
    )


class SagaStepRecord(Base):
    """Progress of one saga step for one run."""
    __tablename__ = "saga_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(255), ForeignKey("ingestion_runs.run_id"), nullable=False, index=True)
    step = Column(String(100), nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    output = Column(JSON, nullable=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("run_id", "step", name="uq_saga_steps_run_step"),
    )
