"""Tests for the SHA claim workflow engine.

Tests cover:
- Initialization and the first started step
- Manual completion with prerequisite enforcement
- Automated step processing and fail-fast executor errors
- Skipping, cancelling and terminal-state rejection
- Activity trail, listing filters and statistics
"""

import asyncio
import uuid

import pytest

from clinicsync.db.models import StepStatus, WorkflowAction, WorkflowStatus
from clinicsync.errors import (
    ExecutorFailure,
    InvalidStepError,
    PrerequisiteNotMetError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from clinicsync.services.workflow import KeyedLock, SHAWorkflowService, WorkflowFilters
from clinicsync.services.workflow_graph import FULL_GRAPH


def _statuses(workflow) -> dict[str, StepStatus]:
    return {step.step_name: step.status for step in workflow.steps}


class RecordingExecutors:
    """Executors that record calls; compliance can be told to fail."""

    def __init__(self, fail_compliance: bool = False) -> None:
        self.fail_compliance = fail_compliance
        self.calls: list[str] = []

    async def compliance_verification(self, session, workflow) -> None:
        self.calls.append("compliance_verification")
        if self.fail_compliance:
            raise RuntimeError("Missing discharge summary")

    async def invoice_generation(self, session, workflow) -> None:
        self.calls.append("invoice_generation")
        workflow.invoice_id = f"INV-{workflow.claim_id}"

    async def payment_tracking(self, session, workflow) -> None:
        self.calls.append("payment_tracking")

    def as_mapping(self):
        return {
            "compliance_verification": self.compliance_verification,
            "invoice_generation": self.invoice_generation,
            "payment_tracking": self.payment_tracking,
        }


@pytest.fixture
def executors() -> RecordingExecutors:
    return RecordingExecutors()


@pytest.fixture
def service(session_factory, executors) -> SHAWorkflowService:
    return SHAWorkflowService(session_factory, executors=executors.as_mapping())


class TestInitialize:
    """Tests for workflow creation."""

    @pytest.mark.asyncio
    async def test_first_step_started(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        assert workflow.overall_status == WorkflowStatus.IN_PROGRESS
        assert workflow.current_step == "compliance_verification"
        assert _statuses(workflow) == {
            "compliance_verification": StepStatus.IN_PROGRESS,
            "invoice_generation": StepStatus.PENDING,
            "payment_tracking": StepStatus.PENDING,
        }
        first = workflow.get_step("compliance_verification")
        assert first.assigned_to == "user-1"
        assert first.next_steps == ["invoice_generation"]

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, service):
        with pytest.raises(WorkflowNotFoundError):
            await service.get_workflow_instance(uuid.uuid4())


class TestStandardClaimFlow:
    """Automated compliance and invoicing followed by manual payment tracking."""

    @pytest.mark.asyncio
    async def test_claim_runs_to_completion(self, service, executors):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        workflow = await service.process_automated_steps(workflow.workflow_id, "user-1")

        assert executors.calls == ["compliance_verification", "invoice_generation"]
        assert workflow.invoice_id == "INV-C1"
        assert workflow.overall_status == WorkflowStatus.IN_PROGRESS
        # Manual steps are left for a user to pick up
        assert workflow.get_step("payment_tracking").status == StepStatus.PENDING

        workflow = await service.complete_workflow_step(
            workflow.workflow_id, "payment_tracking", "user-2", notes="Remittance received"
        )

        assert workflow.overall_status == WorkflowStatus.COMPLETED
        assert workflow.completed_at is not None
        assert set(_statuses(workflow).values()) == {StepStatus.COMPLETED}
        payment = workflow.get_step("payment_tracking")
        assert payment.completed_by == "user-2"
        assert payment.notes == "Remittance received"

    @pytest.mark.asyncio
    async def test_automated_run_is_idempotent_once_done(self, service, executors):
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.process_automated_steps(workflow.workflow_id, "user-1")

        await service.process_automated_steps(workflow.workflow_id, "user-1")

        assert executors.calls == ["compliance_verification", "invoice_generation"]

    @pytest.mark.asyncio
    async def test_activity_trail(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.process_automated_steps(workflow.workflow_id, "user-1")
        await service.complete_workflow_step(workflow.workflow_id, "payment_tracking", "user-1")

        trail = await service.get_activity(workflow.workflow_id)

        actions = [entry.action for entry in trail]
        assert actions.count(WorkflowAction.STEP_STARTED) == 2
        assert actions.count(WorkflowAction.STEP_COMPLETED) == 3
        assert actions.count(WorkflowAction.WORKFLOW_COMPLETED) == 1
        assert all(entry.claim_id == "C1" for entry in trail)


class TestPrerequisites:
    """Tests for prerequisite enforcement."""

    @pytest.mark.asyncio
    async def test_completing_ahead_of_prerequisites_rejected(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        with pytest.raises(PrerequisiteNotMetError) as exc_info:
            await service.complete_workflow_step(
                workflow.workflow_id, "payment_tracking", "user-1"
            )

        assert exc_info.value.unmet == ["invoice_generation"]
        reloaded = await service.get_workflow_instance(workflow.workflow_id)
        assert reloaded.get_step("payment_tracking").status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejection_is_logged(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        with pytest.raises(PrerequisiteNotMetError):
            await service.complete_workflow_step(
                workflow.workflow_id, "payment_tracking", "user-1"
            )

        trail = await service.get_activity(workflow.workflow_id)

        rejected = [e for e in trail if e.action == WorkflowAction.STEP_REJECTED]
        assert len(rejected) == 1
        assert rejected[0].outcome == "rejected"
        assert rejected[0].details_json["error"] == "PrerequisiteNotMetError"

    @pytest.mark.asyncio
    async def test_unknown_step_rejected(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        with pytest.raises(InvalidStepError):
            await service.complete_workflow_step(workflow.workflow_id, "no_such_step", "user-1")

    @pytest.mark.asyncio
    async def test_completed_step_cannot_be_completed_again(self, session_factory):
        service = SHAWorkflowService(session_factory, graph=FULL_GRAPH)
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.complete_workflow_step(workflow.workflow_id, "claim_creation", "user-1")

        with pytest.raises(InvalidStepError, match="completed"):
            await service.complete_workflow_step(workflow.workflow_id, "claim_creation", "user-1")


class TestExecutorFailure:
    """Tests for fail-fast automated processing."""

    @pytest.mark.asyncio
    async def test_first_failure_fails_step_and_workflow(self, session_factory):
        executors = RecordingExecutors(fail_compliance=True)
        service = SHAWorkflowService(session_factory, executors=executors.as_mapping())
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        with pytest.raises(ExecutorFailure) as exc_info:
            await service.process_automated_steps(workflow.workflow_id, "user-1")

        assert exc_info.value.step_name == "compliance_verification"
        assert executors.calls == ["compliance_verification"]

        reloaded = await service.get_workflow_instance(workflow.workflow_id)
        assert reloaded.overall_status == WorkflowStatus.FAILED
        step = reloaded.get_step("compliance_verification")
        assert step.status == StepStatus.FAILED
        assert step.error_message == "Missing discharge summary"
        assert reloaded.get_step("invoice_generation").status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_workflow_rejects_further_processing(self, session_factory):
        service = SHAWorkflowService(
            session_factory, executors=RecordingExecutors(fail_compliance=True).as_mapping()
        )
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        with pytest.raises(ExecutorFailure):
            await service.process_automated_steps(workflow.workflow_id, "user-1")

        with pytest.raises(WorkflowStateError):
            await service.process_automated_steps(workflow.workflow_id, "user-1")
        with pytest.raises(WorkflowStateError):
            await service.complete_workflow_step(
                workflow.workflow_id, "invoice_generation", "user-1"
            )

    @pytest.mark.asyncio
    async def test_missing_executor_fails_step(self, session_factory):
        service = SHAWorkflowService(session_factory, executors={})
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        with pytest.raises(ExecutorFailure, match="No executor registered"):
            await service.process_automated_steps(workflow.workflow_id, "user-1")


class TestSkipAndCancel:
    """Tests for skipping steps and cancelling workflows."""

    @pytest.mark.asyncio
    async def test_required_step_cannot_be_skipped(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        with pytest.raises(InvalidStepError, match="required"):
            await service.skip_workflow_step(workflow.workflow_id, "payment_tracking", "user-1")

    @pytest.mark.asyncio
    async def test_cancel(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")

        cancelled = await service.cancel_workflow(workflow.workflow_id, "admin", "Duplicate claim")

        assert cancelled.overall_status == WorkflowStatus.CANCELLED
        assert cancelled.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_terminal_workflow_rejected(self, service):
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.cancel_workflow(workflow.workflow_id, "admin")

        with pytest.raises(WorkflowStateError):
            await service.cancel_workflow(workflow.workflow_id, "admin")


class TestFullGraph:
    """Tests for the nine-step claim graph."""

    @pytest.mark.asyncio
    async def test_optional_step_skipped_on_completion(self, session_factory, executors):
        service = SHAWorkflowService(
            session_factory, graph=FULL_GRAPH, executors=executors.as_mapping()
        )
        workflow = await service.initialize_sha_workflow("C9", "user-1")
        workflow_id = workflow.workflow_id

        for step in ("claim_creation", "clinical_review", "document_collection"):
            workflow = await service.complete_workflow_step(workflow_id, step, "user-1")
        assert workflow.current_step == "compliance_verification"

        await service.process_automated_steps(workflow_id, "user-1")
        for step in ("invoice_review", "invoice_printing", "claim_submission"):
            workflow = await service.complete_workflow_step(workflow_id, step, "user-1")

        assert workflow.overall_status == WorkflowStatus.COMPLETED
        assert workflow.get_step("payment_tracking").status == StepStatus.SKIPPED
        assert "payment_tracking" not in executors.calls

    @pytest.mark.asyncio
    async def test_no_auto_advance(self, session_factory):
        service = SHAWorkflowService(session_factory, graph=FULL_GRAPH)
        workflow = await service.initialize_sha_workflow("C9", "user-1")

        workflow = await service.complete_workflow_step(
            workflow.workflow_id, "claim_creation", "user-1", auto_advance=False
        )

        assert workflow.get_step("clinical_review").status == StepStatus.PENDING


class TestConcurrency:
    """Tests for per-workflow serialization."""

    @pytest.mark.asyncio
    async def test_concurrent_completions_apply_once(self, session_factory, executors):
        locks = KeyedLock()
        service = SHAWorkflowService(
            session_factory, executors=executors.as_mapping(), locks=locks
        )
        workflow = await service.initialize_sha_workflow("C1", "user-1")
        await service.process_automated_steps(workflow.workflow_id, "user-1")

        results = await asyncio.gather(
            service.complete_workflow_step(workflow.workflow_id, "payment_tracking", "a"),
            service.complete_workflow_step(workflow.workflow_id, "payment_tracking", "b"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], WorkflowStateError)
        assert len(locks) == 0


class TestQueries:
    """Tests for listing and statistics."""

    @pytest.mark.asyncio
    async def test_filters(self, service):
        first = await service.initialize_sha_workflow("C1", "user-1")
        await service.initialize_sha_workflow("C2", "user-2")
        await service.cancel_workflow(first.workflow_id, "admin")

        by_claim = await service.get_workflows(WorkflowFilters(claim_id="C2"))
        by_status = await service.get_workflows(WorkflowFilters(status=WorkflowStatus.CANCELLED))
        by_assignee = await service.get_workflows(WorkflowFilters(assigned_to="user-2"))

        assert [w.claim_id for w in by_claim] == ["C2"]
        assert [w.claim_id for w in by_status] == ["C1"]
        assert [w.claim_id for w in by_assignee] == ["C2"]
        assert len(await service.get_workflows(WorkflowFilters(limit=1))) == 1

    @pytest.mark.asyncio
    async def test_statistics(self, service):
        done = await service.initialize_sha_workflow("C1", "user-1")
        await service.process_automated_steps(done.workflow_id, "user-1")
        await service.complete_workflow_step(done.workflow_id, "payment_tracking", "user-1")
        await service.initialize_sha_workflow("C2", "user-1")

        stats = await service.get_workflow_statistics()

        assert stats["summary"] == {
            "total_workflows": 2,
            "completed_workflows": 1,
            "in_progress_workflows": 1,
            "failed_workflows": 0,
            "cancelled_workflows": 0,
        }
        overall = {row["overall_status"]: row["count"] for row in stats["overall"]}
        assert overall == {"completed": 1, "in_progress": 1}
        breakdown = {
            (row["step_name"], row["status"]): row["count"] for row in stats["step_breakdown"]
        }
        assert breakdown[("payment_tracking", "completed")] == 1
        assert breakdown[("payment_tracking", "pending")] == 1
        assert breakdown[("compliance_verification", "in_progress")] == 1
