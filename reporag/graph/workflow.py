"""
LangGraph Workflow Construction.

Builds the stateful graph that drives one ingestion run through the saga:

    provision_scratch_storage → collect_source_files → embed_and_store
        → release_scratch_storage → mark_completed → End

Each step node carries a retry policy (transient errors only) and runs its
activity under a timeout. When an error escapes the graph, IngestionRunner
compensates every recorded step in reverse order and marks the run failed.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from langgraph.graph import StateGraph, END
from langgraph.types import RetryPolicy

from reporag.database.service import RunRegistry, SagaStepLedger
from reporag.errors import (
    CompensationFailedError,
    IngestionFailedError,
    InvalidTransitionError,
    PermanentError,
    RepoRAGError,
    RunCancelledError,
    StepTimeoutError,
    TransientError,
    classify_exception,
)
from reporag.graph.activities import ARCHIVE_KEY, IngestionActivities
from reporag.graph.state import (
    IngestionRun,
    IngestionState,
    RepositoryDescriptor,
    RunStatus,
    StepStatus,
    can_transition,
    create_initial_state,
)

logger = logging.getLogger(__name__)

# State keys a step output may update
_STATE_OUTPUTS = ("archive_key", "content_unit_count")


@dataclass(frozen=True)
class SagaStep:
    """One forward step of the saga and how to undo it."""
    name: str
    reached: RunStatus
    timeout_setting: str
    action: Callable[[IngestionActivities, IngestionState, threading.Event], Dict[str, Any]]
    compensation: Optional[Callable[[IngestionActivities, str], Any]] = None


def _provision(activities: IngestionActivities, state: IngestionState, stop: threading.Event) -> Dict[str, Any]:
    return {"bucket": activities.provision_scratch_storage(state["run_id"])}


def _collect(activities: IngestionActivities, state: IngestionState, stop: threading.Event) -> Dict[str, Any]:
    repository = RepositoryDescriptor.from_dict(state["repository"])
    return {"archive_key": activities.collect_source_files(state["run_id"], repository)}


def _embed(activities: IngestionActivities, state: IngestionState, stop: threading.Event) -> Dict[str, Any]:
    archive_key = state.get("archive_key") or ARCHIVE_KEY
    return {"content_unit_count": activities.embed_and_store(state["run_id"], archive_key, stop)}


def _release(activities: IngestionActivities, state: IngestionState, stop: threading.Event) -> Dict[str, Any]:
    activities.release_scratch_storage(state["run_id"])
    return {}


STEPS: List[SagaStep] = [
    SagaStep(
        name="provision_scratch_storage",
        reached=RunStatus.BUCKET_PROVISIONED,
        timeout_setting="short_timeout",
        action=_provision,
        compensation=lambda activities, run_id: activities.discard_bucket(run_id),
    ),
    SagaStep(
        name="collect_source_files",
        reached=RunStatus.DOCUMENTS_COLLECTED,
        timeout_setting="medium_timeout",
        action=_collect,
        compensation=lambda activities, run_id: activities.delete_archive(run_id),
    ),
    SagaStep(
        name="embed_and_store",
        reached=RunStatus.DOCUMENTS_PROCESSED,
        timeout_setting="long_timeout",
        action=_embed,
        compensation=lambda activities, run_id: activities.delete_content_units(run_id),
    ),
    SagaStep(
        name="release_scratch_storage",
        reached=RunStatus.SCRATCH_RELEASED,
        timeout_setting="short_timeout",
        action=_release,
    ),
]


def new_run_id() -> str:
    return f"ingestion-{uuid.uuid4()}"


def run_with_timeout(
    name: str,
    timeout: float,
    fn: Callable[[], Any],
    stop: Optional[threading.Event] = None,
    on_abandon: Optional[Callable[[Future], Any]] = None,
) -> Any:
    """
    Run fn in a worker thread, giving up after timeout seconds.

    A timed-out call cannot be killed. On timeout, stop is set so fn can
    bail out at its next check, and the still-running future is handed to
    on_abandon so the caller can wait for it before undoing its work.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        if future.done():
            # raised by fn itself
            raise
        if stop is not None:
            stop.set()
        if not future.cancel() and on_abandon is not None:
            on_abandon(future)
        raise StepTimeoutError(name, timeout) from e
    finally:
        executor.shutdown(wait=False)


class AbandonedAttempts:
    """Timed-out step attempts that may still be running, per run."""

    def __init__(self):
        self._futures: Dict[str, List[Future]] = {}
        self._lock = threading.Lock()

    def add(self, run_id: str, future: Future):
        with self._lock:
            self._futures.setdefault(run_id, []).append(future)

    def wait(self, run_id: str, timeout: float) -> bool:
        """Block until every abandoned attempt of the run has finished. False if some are still running."""
        with self._lock:
            futures = self._futures.pop(run_id, [])
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        if not_done:
            with self._lock:
                self._futures.setdefault(run_id, []).extend(not_done)
        return not not_done


def build_retry_policy(settings) -> RetryPolicy:
    """Exponential backoff over transient errors, bounded by retry_max_attempts."""
    return RetryPolicy(
        initial_interval=settings.retry_initial_interval,
        backoff_factor=settings.retry_backoff_factor,
        max_interval=settings.retry_max_interval,
        max_attempts=settings.retry_max_attempts,
        jitter=settings.retry_jitter,
        retry_on=TransientError,
    )


def _make_step_node(
    step: SagaStep,
    position: int,
    settings,
    registry: RunRegistry,
    ledger: SagaStepLedger,
    activities: IngestionActivities,
    abandoned: AbandonedAttempts,
):
    timeout = getattr(settings, step.timeout_setting)

    def node(state: IngestionState) -> Dict[str, Any]:
        run_id = state["run_id"]
        if registry.is_cancel_requested(run_id):
            raise RunCancelledError(f"Run {run_id} was cancelled before step '{step.name}'")

        record = ledger.get(run_id, step.name)
        if record and record["status"] is StepStatus.COMPLETED:
            logger.info(f"[{run_id}] Skipping {step.name}: already completed")
            output = record["output"]
        else:
            attempt = ledger.begin(run_id, step.name, position)["attempts"]
            if attempt > 1:
                logger.warning(f"[{run_id}] Retrying {step.name} (attempt {attempt})")
            else:
                logger.info(f"[{run_id}] Running {step.name}")

            stop = threading.Event()
            try:
                output = run_with_timeout(
                    step.name,
                    timeout,
                    lambda: step.action(activities, state, stop),
                    stop=stop,
                    on_abandon=lambda future: abandoned.add(run_id, future),
                )
            except RepoRAGError:
                raise
            except Exception as e:
                raise classify_exception(e, step.name) from e

            output = output or {}
            ledger.complete(run_id, step.name, output)

        current = registry.get_run(run_id).status
        if can_transition(current, step.reached):
            registry.record(run_id, step.reached)

        updates: Dict[str, Any] = {
            "status": step.reached,
            "completed_steps": [step.name],
        }
        updates.update({key: output[key] for key in _STATE_OUTPUTS if key in output})
        return updates

    node.__name__ = step.name
    return node


def create_ingestion_workflow(
    settings,
    registry: RunRegistry,
    ledger: SagaStepLedger,
    activities: IngestionActivities,
    abandoned: Optional[AbandonedAttempts] = None,
):
    """
    Create the LangGraph workflow for one ingestion run.

    Args:
        settings: Application settings (timeouts and retry policy)
        registry: Run registry receiving status changes
        ledger: Step ledger making re-entry idempotent
        activities: The saga's activities
        abandoned: Receives step attempts that timed out while still running

    Returns:
        Compiled StateGraph ready for execution
    """
    workflow = StateGraph(IngestionState)
    retry_policy = build_retry_policy(settings)
    abandoned = abandoned if abandoned is not None else AbandonedAttempts()

    for position, step in enumerate(STEPS):
        workflow.add_node(
            step.name,
            _make_step_node(step, position, settings, registry, ledger, activities, abandoned),
            retry_policy=retry_policy,
        )

    def mark_completed(state: IngestionState) -> Dict[str, Any]:
        run_id = state["run_id"]
        if registry.is_cancel_requested(run_id):
            raise RunCancelledError(f"Run {run_id} was cancelled before completion")
        registry.record(run_id, RunStatus.COMPLETED)
        logger.info(f"[{run_id}] Ingestion completed ({state.get('content_unit_count') or 0} content units)")
        return {"status": RunStatus.COMPLETED}

    workflow.add_node("mark_completed", mark_completed)

    # Set the entry point
    workflow.set_entry_point(STEPS[0].name)

    # Add linear edges (sequential flow)
    for current, following in zip(STEPS, STEPS[1:]):
        workflow.add_edge(current.name, following.name)
    workflow.add_edge(STEPS[-1].name, "mark_completed")
    workflow.add_edge("mark_completed", END)

    return workflow.compile()


class IngestionRunner:
    """
    High-level interface for running ingestion sagas.

    Provides convenient methods for:
    - Starting new runs
    - Resuming interrupted runs
    - Cancelling runs
    - Compensating failed runs
    """

    def __init__(
        self,
        settings,
        registry: RunRegistry,
        ledger: SagaStepLedger,
        activities: IngestionActivities,
    ):
        self.settings = settings
        self.registry = registry
        self.ledger = ledger
        self.activities = activities
        self.abandoned = AbandonedAttempts()
        self.workflow = create_ingestion_workflow(settings, registry, ledger, activities, self.abandoned)
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def create_run(self, repository: RepositoryDescriptor, run_id: Optional[str] = None) -> str:
        """Register a new run in the created state without executing it."""
        run_id = run_id or new_run_id()
        self.registry.create_run(run_id, repository)
        logger.info(f"[{run_id}] Created ingestion run for {repository.url} ({repository.branch})")
        return run_id

    def start_ingestion(self, repository: RepositoryDescriptor, run_id: Optional[str] = None) -> str:
        """
        Create and execute a run to completion.

        Returns:
            The run id

        Raises:
            IngestionFailedError: the run failed and was compensated
            CompensationFailedError: the run failed and compensation failed too
        """
        run_id = self.create_run(repository, run_id)
        self.execute(run_id)
        return run_id

    def execute(self, run_id: str) -> IngestionRun:
        """Drive a run from its current status. Completed steps are not repeated."""
        run = self.registry.get_run(run_id)
        if run.status is RunStatus.COMPLETED:
            return run
        if run.status is RunStatus.FAILED:
            raise InvalidTransitionError(f"Run {run_id} already failed")

        if not self._claim(run_id):
            raise InvalidTransitionError(f"Run {run_id} is already executing")

        try:
            if run.status is RunStatus.COMPENSATING:
                cause = PermanentError(run.error_message or "interrupted during compensation")
                self._compensate(run_id, run.failed_step, cause)

            try:
                self.workflow.invoke(create_initial_state(run_id, run.repository))
            except Exception as e:
                self._compensate(run_id, self.ledger.pending_step(run_id), e)

            return self.registry.get_run(run_id)
        finally:
            self._release(run_id)

    def resume(self, run_id: str) -> IngestionRun:
        """Re-drive a run that has not reached a terminal status."""
        run = self.registry.get_run(run_id)
        if run.status.is_terminal:
            raise InvalidTransitionError(
                f"Run {run_id} already finished with status '{run.status.value}'"
            )
        logger.info(f"[{run_id}] Resuming from '{run.status.value}'")
        return self.execute(run_id)

    def recover_incomplete_runs(self) -> List[str]:
        """Resume every non-terminal run not already executing here."""
        recovered = []
        for run in self.registry.incomplete_runs():
            if self.is_active(run.run_id):
                continue
            try:
                self.execute(run.run_id)
            except RepoRAGError as e:
                logger.error(f"[{run.run_id}] Recovery ended in failure: {e}")
            recovered.append(run.run_id)
        return recovered

    def cancel(self, run_id: str) -> IngestionRun:
        """
        Request cancellation of a run.

        A run executing in this process stops at its next step boundary and
        is compensated there. Any other non-terminal run is compensated now.
        """
        self.registry.request_cancel(run_id)

        if self._claim(run_id):
            try:
                cause = RunCancelledError(f"Run {run_id} was cancelled")
                self._compensate(run_id, self.ledger.pending_step(run_id), cause)
            except CompensationFailedError:
                raise
            except IngestionFailedError:
                logger.info(f"[{run_id}] Cancelled and compensated")
            finally:
                self._release(run_id)
        else:
            logger.info(f"[{run_id}] Cancellation requested; stopping at the next step")

        return self.registry.get_run(run_id)

    def get_run(self, run_id: str) -> IngestionRun:
        return self.registry.get_run(run_id)

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._active

    def _claim(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._active:
                return False
            self._active.add(run_id)
            return True

    def _release(self, run_id: str):
        with self._lock:
            self._active.discard(run_id)

    def _compensate(self, run_id: str, failed_step: Optional[str], cause: BaseException):
        """
        Undo every recorded step in reverse order, then mark the run failed.

        Always raises: IngestionFailedError, or CompensationFailedError when a
        compensation itself failed.
        """
        logger.warning(f"[{run_id}] Compensating after failure in {failed_step or 'run'}: {cause}")

        if self.registry.get_run(run_id).status is not RunStatus.COMPENSATING:
            self.registry.record(
                run_id, RunStatus.COMPENSATING, error=str(cause), failed_step=failed_step
            )

        compensation_error: Optional[BaseException] = None

        # Timed-out attempts must finish before their artifacts are deleted
        if not self.abandoned.wait(run_id, timeout=self.settings.long_timeout):
            logger.warning(f"[{run_id}] Timed-out attempts still running; they stop at their next write check")

        records = {record["step"]: record for record in self.ledger.steps(run_id)}

        for step in reversed(STEPS):
            record = records.get(step.name)
            if record is None or step.compensation is None:
                continue
            if record["status"] is StepStatus.COMPENSATED:
                continue

            try:
                run_with_timeout(
                    f"compensate-{step.name}",
                    getattr(self.settings, step.timeout_setting),
                    lambda: step.compensation(self.activities, run_id),
                )
            except Exception as e:
                logger.error(f"[{run_id}] Compensation of {step.name} failed: {e}")
                if compensation_error is None:
                    compensation_error = e
                continue

            self.ledger.mark_compensated(run_id, step.name)
            logger.info(f"[{run_id}] Compensated {step.name}")

        message = str(cause)
        if compensation_error is not None:
            message += f" (compensation failed: {compensation_error})"
        self.registry.record(run_id, RunStatus.FAILED, error=message, failed_step=failed_step)
        logger.error(f"[{run_id}] Ingestion failed: {message}")

        if compensation_error is not None:
            raise CompensationFailedError(
                run_id, failed_step, cause, compensation_error
            ) from compensation_error
        raise IngestionFailedError(run_id, failed_step, cause) from cause
