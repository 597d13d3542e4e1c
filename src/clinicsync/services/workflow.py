"""SHA claim workflow engine.

Drives a claim through a validated step graph (see workflow_graph):

- Mutations of one workflow are serialized by a per-workflow asyncio lock;
  different workflows proceed in parallel.
- A step may only start or complete once every prerequisite is completed or
  skipped.
- The workflow is completed exactly when every required step is completed or
  skipped; optional steps still open at that point are skipped.
- Automated steps run through injected executors, in step order, fail-fast:
  the first executor error marks the step and the workflow failed and raises
  ExecutorFailure.
- Every mutation writes activity rows in the same transaction. Rejected
  operations are rolled back and logged in a separate transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from clinicsync.db.models import (
    StepStatus,
    WorkflowAction,
    WorkflowActivity,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
)
from clinicsync.db.models.workflow import SHA_WORKFLOW_TYPE
from clinicsync.errors import (
    BrokerUnavailable,
    ExecutorFailure,
    InvalidStepError,
    PrerequisiteNotMetError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from clinicsync.services.workflow_graph import STANDARD_GRAPH, WorkflowGraph

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class StepExecutor(Protocol):
    """Runs an automated step inside the workflow's transaction."""

    async def __call__(self, session: AsyncSession, workflow: WorkflowInstance) -> None: ...


class KeyedLock:
    """One asyncio.Lock per key, dropped when no task holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Any, asyncio.Lock] = {}
        self._users: defaultdict[Any, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True, slots=True)
class WorkflowFilters:
    """Filters for get_workflows(); None means no constraint."""

    status: WorkflowStatus | None = None
    claim_id: str | None = None
    assigned_to: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 50
    offset: int = 0


def _now() -> datetime:
    return datetime.now(UTC)


def unmet_prerequisites(workflow: WorkflowInstance, step: WorkflowStep) -> list[str]:
    """Prerequisites of step that are neither completed nor skipped."""
    unmet = []
    for name in step.prerequisites:
        prerequisite = workflow.get_step(name)
        if prerequisite is None or not prerequisite.status.satisfies_prerequisite:
            unmet.append(name)
    return unmet


def required_steps_done(workflow: WorkflowInstance) -> bool:
    return all(step.status.satisfies_prerequisite for step in workflow.steps if step.required)


class SHAWorkflowService:
    """Create, advance and query SHA claim workflows.

    Example:
        service = SHAWorkflowService(session_factory, executors=executors.as_mapping())
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.process_automated_steps(workflow.workflow_id, "user-1")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        graph: WorkflowGraph = STANDARD_GRAPH,
        executors: Mapping[str, StepExecutor] | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._graph = graph
        self._executors = dict(executors or {})
        self._locks = locks or KeyedLock()

    @property
    def graph(self) -> WorkflowGraph:
        return self._graph

    # -- mutations -----------------------------------------------------------

    async def initialize_sha_workflow(self, claim_id: str, initiated_by: str) -> WorkflowInstance:
        """Create a workflow for a claim and start its first eligible step."""
        now = _now()
        workflow = WorkflowInstance(
            claim_id=claim_id,
            workflow_type=SHA_WORKFLOW_TYPE,
            overall_status=WorkflowStatus.IN_PROGRESS,
            initiated_by=initiated_by,
            created_at=now,
            updated_at=now,
        )
        workflow.steps = [
            WorkflowStep(
                step_name=definition.name,
                step_order=definition.order,
                status=StepStatus.PENDING,
                required=definition.required,
                automated=definition.automated,
                estimated_duration_minutes=definition.estimated_duration_minutes,
                prerequisites=list(definition.prerequisites),
                next_steps=self._graph.next_steps(definition.name),
            )
            for definition in self._graph
        ]

        try:
            async with self._session_factory() as session:
                session.add(workflow)
                await session.flush()
                first = self._graph.roots[0].name
                self._start_step(session, workflow, workflow.get_step(first), initiated_by, now)
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to initialize workflow for claim %s", claim_id)
            raise BrokerUnavailable("Workflow store unavailable") from e

        logger.info(
            "Initialized SHA workflow: workflow_id=%s, claim_id=%s, first_step=%s",
            workflow.workflow_id,
            claim_id,
            workflow.current_step,
        )
        return workflow

    async def complete_workflow_step(
        self,
        workflow_id: uuid.UUID,
        step_name: str,
        completed_by: str,
        notes: str | None = None,
        *,
        auto_advance: bool = True,
    ) -> WorkflowInstance:
        """Mark a step completed and advance the workflow.

        Args:
            workflow_id: Workflow to mutate.
            step_name: Step to complete; must be pending or in progress.
            completed_by: Acting user id.
            notes: Optional completion notes.
            auto_advance: Start the next eligible step afterwards.

        Returns:
            The updated workflow instance.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowStateError: If the workflow is already terminal.
            InvalidStepError: If the step does not exist or is not open.
            PrerequisiteNotMetError: If a prerequisite is not completed or skipped.
        """
        async with self._locks.hold(workflow_id), self._session_factory() as session:
            workflow = await self._load(session, workflow_id)
            claim_id = workflow.claim_id
            try:
                step = self._open_step(workflow, step_name)
                self._complete_step(session, workflow, step, completed_by, notes, _now())
                self._advance(session, workflow, step, completed_by, auto_advance=auto_advance)
                await session.commit()
            except WorkflowError as e:
                await session.rollback()
                await self._log_rejection(workflow_id, claim_id, step_name, completed_by, e)
                raise
            return workflow

    async def skip_workflow_step(
        self,
        workflow_id: uuid.UUID,
        step_name: str,
        skipped_by: str,
        reason: str | None = None,
        *,
        auto_advance: bool = True,
    ) -> WorkflowInstance:
        """Skip an optional step.

        Raises:
            InvalidStepError: If the step is required or not open.
        """
        async with self._locks.hold(workflow_id), self._session_factory() as session:
            workflow = await self._load(session, workflow_id)
            claim_id = workflow.claim_id
            try:
                step = self._open_step(workflow, step_name, check_prerequisites=False)
                if step.required:
                    raise InvalidStepError(step_name, "required steps cannot be skipped")
                step.status = StepStatus.SKIPPED
                step.completed_by = skipped_by
                step.completed_at = _now()
                step.notes = reason
                self._log(session, workflow, WorkflowAction.STEP_SKIPPED, skipped_by, step_name,
                          details={"reason": reason})
                self._advance(session, workflow, step, skipped_by, auto_advance=auto_advance)
                await session.commit()
            except WorkflowError as e:
                await session.rollback()
                await self._log_rejection(workflow_id, claim_id, step_name, skipped_by, e)
                raise
            return workflow

    async def cancel_workflow(
        self,
        workflow_id: uuid.UUID,
        cancelled_by: str,
        reason: str | None = None,
    ) -> WorkflowInstance:
        """Cancel a workflow that has not reached a terminal state."""
        async with self._locks.hold(workflow_id), self._session_factory() as session:
            workflow = await self._load(session, workflow_id)
            claim_id = workflow.claim_id
            if workflow.overall_status.is_terminal:
                error = WorkflowStateError(
                    f"Workflow {workflow_id} is already {workflow.overall_status.value}"
                )
                await session.rollback()
                await self._log_rejection(workflow_id, claim_id, None, cancelled_by, error)
                raise error

            now = _now()
            workflow.overall_status = WorkflowStatus.CANCELLED
            workflow.completed_at = now
            workflow.updated_at = now
            self._log(session, workflow, WorkflowAction.WORKFLOW_CANCELLED, cancelled_by,
                      details={"reason": reason})
            await session.commit()

        logger.info("Cancelled workflow %s by %s", workflow_id, cancelled_by)
        return workflow

    async def process_automated_steps(
        self, workflow_id: uuid.UUID, triggered_by: str
    ) -> WorkflowInstance:
        """Run every eligible automated step, in step order, until none is left.

        Each step runs in its own transaction, so steps completed before a
        failure stay completed.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowStateError: If the workflow is already terminal.
            ExecutorFailure: If an executor raised; step and workflow are failed.
        """
        async with self._locks.hold(workflow_id):
            while True:
                async with self._session_factory() as session:
                    workflow = await self._load(session, workflow_id)
                    if workflow.overall_status.is_terminal:
                        if workflow.overall_status is WorkflowStatus.COMPLETED:
                            return workflow
                        raise WorkflowStateError(
                            f"Workflow {workflow_id} is {workflow.overall_status.value}"
                        )

                    step = self._next_automated_step(workflow)
                    if step is None:
                        return workflow

                    step_name = step.step_name
                    try:
                        await self._run_automated_step(session, workflow, step, triggered_by)
                        await session.commit()
                    except WorkflowError:
                        await session.rollback()
                        raise
                    except Exception as e:
                        await session.rollback()
                        await self._record_executor_failure(workflow_id, step_name, triggered_by, e)
                        raise ExecutorFailure(step_name, e) from e

    # -- queries ---------------------------------------------------------------

    async def get_workflow_instance(self, workflow_id: uuid.UUID) -> WorkflowInstance:
        async with self._session_factory() as session:
            return await self._load(session, workflow_id)

    async def get_workflows(self, filters: WorkflowFilters | None = None) -> Sequence[WorkflowInstance]:
        """Workflows matching filters, newest first."""
        filters = filters or WorkflowFilters()
        query = select(WorkflowInstance)
        if filters.status is not None:
            query = query.where(WorkflowInstance.overall_status == filters.status)
        if filters.claim_id is not None:
            query = query.where(WorkflowInstance.claim_id == filters.claim_id)
        if filters.assigned_to is not None:
            query = query.where(
                WorkflowInstance.workflow_id.in_(
                    select(WorkflowStep.workflow_id).where(
                        WorkflowStep.assigned_to == filters.assigned_to
                    )
                )
            )
        if filters.date_from is not None:
            query = query.where(WorkflowInstance.created_at >= filters.date_from)
        if filters.date_to is not None:
            query = query.where(WorkflowInstance.created_at <= filters.date_to)
        query = (
            query.order_by(WorkflowInstance.created_at.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().all()

    async def get_workflow_statistics(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        """Counts per status and per step, with average durations.

        Returns:
            Dict with ``overall`` (per overall_status: count, avg_duration_hours),
            ``step_breakdown`` (per step_name and status: count,
            avg_duration_minutes, estimated_duration_minutes) and ``summary``.
        """
        instance_filter = []
        if date_from is not None:
            instance_filter.append(WorkflowInstance.created_at >= date_from)
        if date_to is not None:
            instance_filter.append(WorkflowInstance.created_at <= date_to)

        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    WorkflowInstance.overall_status,
                    WorkflowInstance.created_at,
                    WorkflowInstance.completed_at,
                ).where(*instance_filter)
            )
            instances = result.all()

            step_result = await session.execute(
                select(
                    WorkflowStep.step_name,
                    WorkflowStep.status,
                    func.count().label("step_count"),
                    func.avg(WorkflowStep.actual_duration_minutes).label("avg_duration_minutes"),
                    func.avg(WorkflowStep.estimated_duration_minutes).label(
                        "estimated_duration_minutes"
                    ),
                )
                .join(WorkflowInstance, WorkflowStep.workflow_id == WorkflowInstance.workflow_id)
                .where(*instance_filter)
                .group_by(WorkflowStep.step_name, WorkflowStep.status)
                .order_by(WorkflowStep.step_name)
            )
            step_rows = step_result.all()

        now = _now()
        durations: defaultdict[WorkflowStatus, list[float]] = defaultdict(list)
        for status, created_at, completed_at in instances:
            end = completed_at or now
            durations[status].append((end - created_at).total_seconds() / 3600)

        overall = [
            {
                "overall_status": status.value,
                "count": len(hours),
                "avg_duration_hours": round(sum(hours) / len(hours), 2),
            }
            for status, hours in durations.items()
        ]
        counts = {row["overall_status"]: row["count"] for row in overall}

        return {
            "overall": overall,
            "step_breakdown": [
                {
                    "step_name": row.step_name,
                    "status": row.status.value,
                    "count": row.step_count,
                    "avg_duration_minutes": (
                        float(row.avg_duration_minutes)
                        if row.avg_duration_minutes is not None
                        else None
                    ),
                    "estimated_duration_minutes": (
                        float(row.estimated_duration_minutes)
                        if row.estimated_duration_minutes is not None
                        else None
                    ),
                }
                for row in step_rows
            ],
            "summary": {
                "total_workflows": len(instances),
                "completed_workflows": counts.get(WorkflowStatus.COMPLETED.value, 0),
                "in_progress_workflows": counts.get(WorkflowStatus.IN_PROGRESS.value, 0),
                "failed_workflows": counts.get(WorkflowStatus.FAILED.value, 0),
                "cancelled_workflows": counts.get(WorkflowStatus.CANCELLED.value, 0),
            },
        }

    async def get_activity(self, workflow_id: uuid.UUID) -> Sequence[WorkflowActivity]:
        """Activity trail of a workflow, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowActivity)
                .where(WorkflowActivity.workflow_id == workflow_id)
                .order_by(WorkflowActivity.created_at, WorkflowActivity.activity_id)
            )
            return result.scalars().all()

    # -- internals -------------------------------------------------------------

    async def _load(self, session: AsyncSession, workflow_id: uuid.UUID) -> WorkflowInstance:
        try:
            result = await session.execute(
                select(WorkflowInstance).where(WorkflowInstance.workflow_id == workflow_id)
            )
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Workflow store unavailable") from e
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def _open_step(
        self,
        workflow: WorkflowInstance,
        step_name: str,
        *,
        check_prerequisites: bool = True,
    ) -> WorkflowStep:
        if workflow.overall_status.is_terminal:
            raise WorkflowStateError(
                f"Workflow {workflow.workflow_id} is already {workflow.overall_status.value}",
                {"step_name": step_name},
            )
        step = workflow.get_step(step_name)
        if step is None:
            raise InvalidStepError(step_name, "step does not exist in this workflow")
        if step.status not in _OPEN_STEP_STATUSES:
            raise InvalidStepError(step_name, f"step is {step.status.value}")
        if check_prerequisites:
            unmet = unmet_prerequisites(workflow, step)
            if unmet:
                raise PrerequisiteNotMetError(step_name, unmet)
        return step

    def _start_step(
        self,
        session: AsyncSession,
        workflow: WorkflowInstance,
        step: WorkflowStep,
        actor: str,
        now: datetime,
    ) -> None:
        unmet = unmet_prerequisites(workflow, step)
        if unmet:
            raise PrerequisiteNotMetError(step.step_name, unmet)
        step.status = StepStatus.IN_PROGRESS
        step.assigned_to = actor
        step.started_at = now
        workflow.current_step = step.step_name
        workflow.updated_at = now
        self._log(session, workflow, WorkflowAction.STEP_STARTED, actor, step.step_name,
                  details={"started_at": now.isoformat()})

    def _complete_step(
        self,
        session: AsyncSession,
        workflow: WorkflowInstance,
        step: WorkflowStep,
        actor: str,
        notes: str | None,
        now: datetime,
    ) -> None:
        started_at = step.started_at or now
        step.status = StepStatus.COMPLETED
        step.completed_by = actor
        step.completed_at = now
        step.started_at = started_at
        step.actual_duration_minutes = round((now - started_at).total_seconds() / 60)
        step.notes = notes
        workflow.updated_at = now
        self._log(session, workflow, WorkflowAction.STEP_COMPLETED, actor, step.step_name,
                  details={"notes": notes, "completed_at": now.isoformat()})

    def _advance(
        self,
        session: AsyncSession,
        workflow: WorkflowInstance,
        finished: WorkflowStep,
        actor: str,
        *,
        auto_advance: bool,
    ) -> None:
        now = _now()
        if required_steps_done(workflow):
            for step in workflow.steps:
                if step.status in _OPEN_STEP_STATUSES:
                    step.status = StepStatus.SKIPPED
                    step.completed_at = now
                    self._log(session, workflow, WorkflowAction.STEP_SKIPPED, actor,
                              step.step_name, details={"reason": "workflow completed"})
            workflow.overall_status = WorkflowStatus.COMPLETED
            workflow.completed_at = now
            workflow.updated_at = now
            self._log(session, workflow, WorkflowAction.WORKFLOW_COMPLETED, actor,
                      details={"completion_time": now.isoformat()})
            logger.info("Workflow %s completed", workflow.workflow_id)
            return

        if not auto_advance:
            return

        candidates = sorted(
            (
                step
                for step in (workflow.get_step(name) for name in finished.next_steps)
                if step is not None
                and step.status is StepStatus.PENDING
                and not unmet_prerequisites(workflow, step)
            ),
            key=lambda s: s.step_order,
        )
        if candidates:
            self._start_step(session, workflow, candidates[0], actor, now)

    def _next_automated_step(self, workflow: WorkflowInstance) -> WorkflowStep | None:
        for step in workflow.steps:
            if (
                step.automated
                and step.status in _OPEN_STEP_STATUSES
                and not unmet_prerequisites(workflow, step)
            ):
                return step
        return None

    async def _run_automated_step(
        self,
        session: AsyncSession,
        workflow: WorkflowInstance,
        step: WorkflowStep,
        actor: str,
    ) -> None:
        now = _now()
        if step.status is StepStatus.PENDING:
            self._start_step(session, workflow, step, actor, now)

        executor = self._executors.get(step.step_name)
        if executor is None:
            raise LookupError(f"No executor registered for automated step {step.step_name}")

        await executor(session, workflow)
        self._complete_step(session, workflow, step, SYSTEM_ACTOR,
                            "Automated execution completed", _now())
        # Automated runs never start manual steps; users pick those up
        self._advance(session, workflow, step, actor, auto_advance=False)
        logger.info(
            "Automated step completed: workflow_id=%s, step=%s",
            workflow.workflow_id,
            step.step_name,
        )

    async def _record_executor_failure(
        self,
        workflow_id: uuid.UUID,
        step_name: str,
        actor: str,
        error: BaseException,
    ) -> None:
        logger.error(
            "Automated step failed: workflow_id=%s, step=%s, error=%s",
            workflow_id,
            step_name,
            error,
        )
        try:
            async with self._session_factory() as session:
                workflow = await self._load(session, workflow_id)
                step = workflow.get_step(step_name)
                now = _now()
                if step is not None:
                    step.status = StepStatus.FAILED
                    step.started_at = step.started_at or now
                    step.error_message = str(error)
                    step.notes = str(error)
                workflow.overall_status = WorkflowStatus.FAILED
                workflow.current_step = step_name
                workflow.completed_at = now
                workflow.updated_at = now
                self._log(session, workflow, WorkflowAction.STEP_FAILED, actor, step_name,
                          outcome="failed", details={"error": str(error)})
                self._log(session, workflow, WorkflowAction.WORKFLOW_FAILED, actor, step_name,
                          outcome="failed", details={"error": str(error)})
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to record failure of step %s", step_name)
            raise BrokerUnavailable("Workflow store unavailable") from e

    async def _log_rejection(
        self,
        workflow_id: uuid.UUID,
        claim_id: str,
        step_name: str | None,
        actor: str,
        error: WorkflowError,
    ) -> None:
        logger.info(
            "Rejected workflow operation: workflow_id=%s, step=%s, reason=%s",
            workflow_id,
            step_name,
            error.message,
        )
        try:
            async with self._session_factory() as session:
                session.add(
                    WorkflowActivity(
                        workflow_id=workflow_id,
                        claim_id=claim_id,
                        step_name=step_name,
                        action=WorkflowAction.STEP_REJECTED,
                        performed_by=actor,
                        outcome="rejected",
                        details_json={"error": type(error).__name__, "reason": error.message},
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            # Caller still receives the original rejection
            logger.exception("Failed to log rejected operation on workflow %s", workflow_id)

    @staticmethod
    def _log(
        session: AsyncSession,
        workflow: WorkflowInstance,
        action: WorkflowAction,
        actor: str,
        step_name: str | None = None,
        *,
        outcome: str = "success",
        details: dict[str, Any] | None = None,
    ) -> None:
        session.add(
            WorkflowActivity(
                workflow_id=workflow.workflow_id,
                claim_id=workflow.claim_id,
                step_name=step_name,
                action=action,
                performed_by=actor,
                outcome=outcome,
                details_json=details,
            )
        )
