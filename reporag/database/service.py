"""Database services for the run registry and saga step ledger."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from reporag.database.connection import Database
from reporag.database.models import IngestionRunRecord, RunLedgerEntry, SagaStepRecord
from reporag.errors import InvalidTransitionError, NoCompletedRunError, RunNotFoundError
from reporag.graph.state import (
    IngestionRun,
    RepositoryDescriptor,
    RunStatus,
    StepStatus,
    TERMINAL_STATUSES,
    can_transition,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_run(record: IngestionRunRecord) -> IngestionRun:
    return IngestionRun(
        run_id=record.run_id,
        repository=RepositoryDescriptor(
            url=record.repo_url,
            branch=record.repo_branch,
            path=record.repo_path or "",
            file_extensions=list(record.file_extensions or []),
        ),
        status=RunStatus(record.status),
        created_at=record.created_at,
        updated_at=record.updated_at,
        error_message=record.error_message,
        failed_step=record.failed_step,
        cancel_requested=bool(record.cancel_requested),
    )


class RunRegistry:
    """
    Durable record of ingestion runs.

    Every status change is appended to the run ledger; the run row mirrors the
    latest status. The orchestrator is the only writer of statuses.
    """

    def __init__(self, database: Database):
        self.database = database

    def create_run(
        self,
        run_id: str,
        repository: RepositoryDescriptor,
        created_at: Optional[datetime] = None,
    ) -> IngestionRun:
        """Create a run in the created state. Re-creating an existing run returns it unchanged."""
        created_at = created_at or utcnow()
        with self.database.session() as db:
            existing = db.get(IngestionRunRecord, run_id)
            if existing is not None:
                return _to_run(existing)

            record = IngestionRunRecord(
                run_id=run_id,
                repo_url=repository.url,
                repo_branch=repository.branch,
                repo_path=repository.path,
                file_extensions=list(repository.file_extensions),
                status=RunStatus.CREATED.value,
                cancel_requested=False,
                created_at=created_at,
            )
            db.add(record)
            db.add(RunLedgerEntry(
                workflow_id=run_id,
                status=RunStatus.CREATED.value,
                created_at=created_at,
            ))
            db.flush()
            return _to_run(record)

    def record(
        self,
        run_id: str,
        status: RunStatus,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
        failed_step: Optional[str] = None,
    ) -> IngestionRun:
        """
        Append a status change for a run.

        Args:
            run_id: The run identifier
            status: Target status, must be reachable from the current one
            timestamp: Creation timestamp recorded with the entry
                (defaults to the run's own creation timestamp)
            error: Optional error description stored on the run
            failed_step: Optional name of the step that failed

        Returns:
            The updated run
        """
        status = RunStatus(status)
        with self.database.session() as db:
            record = db.get(IngestionRunRecord, run_id)
            if record is None:
                raise RunNotFoundError(f"Ingestion run '{run_id}' not found")

            current = RunStatus(record.status)
            if current is not status and not can_transition(current, status):
                raise InvalidTransitionError(
                    f"Run '{run_id}' cannot move from '{current.value}' to '{status.value}'"
                )

            record.status = status.value
            if error is not None:
                record.error_message = error
            if failed_step is not None:
                record.failed_step = failed_step

            db.add(RunLedgerEntry(
                workflow_id=run_id,
                status=status.value,
                created_at=timestamp or record.created_at,
                detail=error,
            ))
            db.flush()
            return _to_run(record)

    def latest_completed(self) -> str:
        """Return the id of the most recently created run that completed."""
        with self.database.session() as db:
            entry = db.execute(
                select(RunLedgerEntry)
                .where(RunLedgerEntry.status == RunStatus.COMPLETED.value)
                .order_by(RunLedgerEntry.created_at.desc(), RunLedgerEntry.id.desc())
                .limit(1)
            ).scalar_one_or_none()

            if entry is None:
                raise NoCompletedRunError()
            return entry.workflow_id

    def get_run(self, run_id: str) -> IngestionRun:
        """Get run by ID."""
        with self.database.session() as db:
            record = db.get(IngestionRunRecord, run_id)
            if record is None:
                raise RunNotFoundError(f"Ingestion run '{run_id}' not found")
            return _to_run(record)

    def list_runs(self, limit: int = 100, offset: int = 0) -> List[IngestionRun]:
        """List runs, newest first."""
        with self.database.session() as db:
            records = db.execute(
                select(IngestionRunRecord)
                .order_by(IngestionRunRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [_to_run(record) for record in records]

    def history(self, run_id: str) -> List[Dict[str, Any]]:
        """Ledger entries for a run, oldest first."""
        with self.database.session() as db:
            entries = db.execute(
                select(RunLedgerEntry)
                .where(RunLedgerEntry.workflow_id == run_id)
                .order_by(RunLedgerEntry.id)
            ).scalars().all()
            return [
                {
                    "status": entry.status,
                    "recorded_at": entry.recorded_at,
                    "detail": entry.detail,
                }
                for entry in entries
            ]

    def request_cancel(self, run_id: str) -> IngestionRun:
        """Flag a run for cancellation at its next step boundary."""
        with self.database.session() as db:
            record = db.get(IngestionRunRecord, run_id)
            if record is None:
                raise RunNotFoundError(f"Ingestion run '{run_id}' not found")
            if RunStatus(record.status) in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Run '{run_id}' already finished with status '{record.status}'"
                )
            record.cancel_requested = True
            db.flush()
            return _to_run(record)

    def is_cancel_requested(self, run_id: str) -> bool:
        with self.database.session() as db:
            record = db.get(IngestionRunRecord, run_id)
            return bool(record and record.cancel_requested)

    def incomplete_runs(self) -> List[IngestionRun]:
        """Runs that have not reached a terminal status, oldest first."""
        terminal = [status.value for status in TERMINAL_STATUSES]
        with self.database.session() as db:
            records = db.execute(
                select(IngestionRunRecord)
                .where(IngestionRunRecord.status.not_in(terminal))
                .order_by(IngestionRunRecord.created_at)
            ).scalars().all()
            return [_to_run(record) for record in records]


class SagaStepLedger:
    """Per-run step records that make re-entry into a partially executed run idempotent."""

    def __init__(self, database: Database):
        self.database = database

    def get(self, run_id: str, step: str) -> Optional[Dict[str, Any]]:
        with self.database.session() as db:
            record = self._find(db, run_id, step)
            return self._to_dict(record) if record else None

    def begin(self, run_id: str, step: str, position: int) -> Dict[str, Any]:
        """Mark a step as started (pending) and count the attempt."""
        with self.database.session() as db:
            record = self._find(db, run_id, step)
            if record is None:
                record = SagaStepRecord(
                    run_id=run_id,
                    step=step,
                    position=position,
                    status=StepStatus.PENDING.value,
                    attempts=0,
                )
                db.add(record)
            record.attempts = (record.attempts or 0) + 1
            db.flush()
            return self._to_dict(record)

    def complete(self, run_id: str, step: str, output: Optional[Dict[str, Any]] = None):
        self._set_status(run_id, step, StepStatus.COMPLETED, output=output)

    def mark_compensated(self, run_id: str, step: str):
        self._set_status(run_id, step, StepStatus.COMPENSATED)

    def pending_step(self, run_id: str) -> Optional[str]:
        """The step that was started but never completed, if any."""
        with self.database.session() as db:
            record = db.execute(
                select(SagaStepRecord)
                .where(
                    SagaStepRecord.run_id == run_id,
                    SagaStepRecord.status == StepStatus.PENDING.value,
                )
                .order_by(SagaStepRecord.position.desc())
                .limit(1)
            ).scalar_one_or_none()
            return record.step if record else None

    def steps(self, run_id: str) -> List[Dict[str, Any]]:
        """All step records for a run, in saga order."""
        with self.database.session() as db:
            records = db.execute(
                select(SagaStepRecord)
                .where(SagaStepRecord.run_id == run_id)
                .order_by(SagaStepRecord.position)
            ).scalars().all()
            return [self._to_dict(record) for record in records]

    def _set_status(self, run_id: str, step: str, status: StepStatus, output=None):
        with self.database.session() as db:
            record = self._find(db, run_id, step)
            if record is None:
                raise RunNotFoundError(f"No step '{step}' recorded for run '{run_id}'")
            record.status = status.value
            if output is not None:
                record.output = output

    @staticmethod
    def _find(db, run_id: str, step: str) -> Optional[SagaStepRecord]:
        return db.execute(
            select(SagaStepRecord).where(
                SagaStepRecord.run_id == run_id,
                SagaStepRecord.step == step,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _to_dict(record: SagaStepRecord) -> Dict[str, Any]:
        return {
            "run_id": record.run_id,
            "step": record.step,
            "position": record.position,
            "status": StepStatus(record.status),
            "attempts": record.attempts,
            "output": record.output or {},
            "started_at": record.started_at,
            "updated_at": record.updated_at,
        }
