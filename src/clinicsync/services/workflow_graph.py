"""Step graphs for the SHA claim workflow.

A graph is a DAG whose nodes are steps and whose edges are prerequisite
relations. It is validated when constructed: duplicate names, references to
unknown steps and cycles raise WorkflowDefinitionError. ``next_steps`` are
derived from the prerequisites so the two never disagree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clinicsync.core.config import WorkflowGraphName
from clinicsync.errors import WorkflowDefinitionError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """Static description of one workflow step.

    Attributes:
        name: Step name, unique within a graph.
        order: Display and tie-break order (ascending).
        automated: Whether an executor runs the step instead of a user.
        required: Whether the workflow can complete without this step.
        estimated_duration_minutes: Planning estimate shown to users.
        prerequisites: Names of steps that must be completed or skipped first.
    """

    name: str
    order: int
    automated: bool = False
    required: bool = True
    estimated_duration_minutes: int | None = None
    prerequisites: tuple[str, ...] = field(default_factory=tuple)


class WorkflowGraph:
    """Validated, immutable step graph."""

    def __init__(self, steps: Iterable[StepDefinition]) -> None:
        ordered = sorted(steps, key=lambda s: (s.order, s.name))
        if not ordered:
            raise WorkflowDefinitionError("A workflow graph needs at least one step")

        self._steps: dict[str, StepDefinition] = {}
        for step in ordered:
            if step.name in self._steps:
                raise WorkflowDefinitionError(f"Duplicate step name: {step.name}")
            self._steps[step.name] = step

        for step in ordered:
            unknown = [p for p in step.prerequisites if p not in self._steps]
            if unknown:
                raise WorkflowDefinitionError(
                    f"Step {step.name} references unknown prerequisites: {', '.join(unknown)}",
                    {"step_name": step.name, "unknown": unknown},
                )
            if step.name in step.prerequisites:
                raise WorkflowDefinitionError(f"Step {step.name} lists itself as a prerequisite")

        self._next: dict[str, list[str]] = {name: [] for name in self._steps}
        for step in ordered:
            for prerequisite in step.prerequisites:
                self._next[prerequisite].append(step.name)

        self._check_acyclic()

    def _check_acyclic(self) -> None:
        # Kahn's algorithm: every node must be removable
        indegree = {name: len(step.prerequisites) for name, step in self._steps.items()}
        ready = [name for name, degree in indegree.items() if degree == 0]
        visited = 0
        while ready:
            name = ready.pop()
            visited += 1
            for successor in self._next[name]:
                indegree[successor] -= 1
                if indegree[successor] == 0:
                    ready.append(successor)

        if visited != len(self._steps):
            cyclic = sorted(name for name, degree in indegree.items() if degree > 0)
            raise WorkflowDefinitionError(
                f"Step graph contains a cycle through: {', '.join(cyclic)}",
                {"steps": cyclic},
            )

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def get(self, name: str) -> StepDefinition:
        return self._steps[name]

    def next_steps(self, name: str) -> list[str]:
        """Steps that list name as a prerequisite, in step order."""
        return list(self._next[name])

    @property
    def roots(self) -> list[StepDefinition]:
        return [step for step in self if not step.prerequisites]


STANDARD_GRAPH = WorkflowGraph(
    [
        StepDefinition(
            name="compliance_verification",
            order=1,
            automated=True,
            estimated_duration_minutes=5,
        ),
        StepDefinition(
            name="invoice_generation",
            order=2,
            automated=True,
            estimated_duration_minutes=2,
            prerequisites=("compliance_verification",),
        ),
        StepDefinition(
            name="payment_tracking",
            order=3,
            estimated_duration_minutes=1,
            prerequisites=("invoice_generation",),
        ),
    ]
)

FULL_GRAPH = WorkflowGraph(
    [
        StepDefinition(name="claim_creation", order=1, estimated_duration_minutes=15),
        StepDefinition(
            name="clinical_review",
            order=2,
            estimated_duration_minutes=30,
            prerequisites=("claim_creation",),
        ),
        StepDefinition(
            name="document_collection",
            order=3,
            estimated_duration_minutes=20,
            prerequisites=("clinical_review",),
        ),
        StepDefinition(
            name="compliance_verification",
            order=4,
            automated=True,
            estimated_duration_minutes=5,
            prerequisites=("document_collection",),
        ),
        StepDefinition(
            name="invoice_generation",
            order=5,
            automated=True,
            estimated_duration_minutes=2,
            prerequisites=("compliance_verification",),
        ),
        StepDefinition(
            name="invoice_review",
            order=6,
            estimated_duration_minutes=15,
            prerequisites=("invoice_generation",),
        ),
        StepDefinition(
            name="invoice_printing",
            order=7,
            estimated_duration_minutes=5,
            prerequisites=("invoice_review",),
        ),
        StepDefinition(
            name="claim_submission",
            order=8,
            estimated_duration_minutes=10,
            prerequisites=("invoice_printing",),
        ),
        StepDefinition(
            name="payment_tracking",
            order=9,
            automated=True,
            required=False,
            estimated_duration_minutes=1,
            prerequisites=("claim_submission",),
        ),
    ]
)

GRAPHS: dict[WorkflowGraphName, WorkflowGraph] = {
    WorkflowGraphName.STANDARD: STANDARD_GRAPH,
    WorkflowGraphName.FULL: FULL_GRAPH,
}


def graph_for(name: WorkflowGraphName | str) -> WorkflowGraph:
    return GRAPHS[WorkflowGraphName(name)]
