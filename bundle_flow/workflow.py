"""Per-bundle workflow instance and the canonical step status machine."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from .domain import (
    Bundle,
    StepPriority,
    StepStatus,
    StepTransition,
    WorkflowStep,
)
from .exceptions import StateConflict, ValidationError
from .gateways import PersistenceGateway
from .repository import RecordNotFoundError
from .templates import TemplateGraph

logger = logging.getLogger(__name__)

TRANSITIONS: Mapping[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.LOCKED: frozenset({StepStatus.AVAILABLE, StepStatus.BLOCKED}),
    StepStatus.AVAILABLE: frozenset({StepStatus.ASSIGNED, StepStatus.BLOCKED}),
    # ASSIGNED -> AVAILABLE is reserved for the no-show expiry.
    StepStatus.ASSIGNED: frozenset(
        {StepStatus.IN_PROGRESS, StepStatus.AVAILABLE, StepStatus.BLOCKED}
    ),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.BLOCKED}),
    StepStatus.BLOCKED: frozenset({StepStatus.AVAILABLE, StepStatus.LOCKED}),
    StepStatus.COMPLETED: frozenset(),
}

if set(TRANSITIONS) != set(StepStatus):  # pragma: no cover - import-time guard
    raise RuntimeError("Status transition table does not cover every status")


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in TRANSITIONS[current]


class BundleWorkflowInstance:
    """The operation DAG instantiated for one bundle.

    Works on copies of the persisted steps. Mutations are staged on the
    instance and only reach the persistence gateway on ``commit``, which
    saves every touched step or, if a save fails, restores the ones
    already written.
    """

    def __init__(
        self,
        bundle: Bundle,
        graph: TemplateGraph,
        steps: Iterable[WorkflowStep],
        *,
        new: bool = False,
    ) -> None:
        self.bundle = bundle
        self.graph = graph
        self._steps: Dict[str, WorkflowStep] = {step.step_id: step for step in steps}
        self._originals: Dict[str, Optional[WorkflowStep]] = {}
        self._new = new
        self._bundle_dirty = False
        self.transitions: List[StepTransition] = []
        if new:
            self._originals = {step_id: None for step_id in self._steps}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def instantiate(
        cls,
        bundle_id: str,
        graph: TemplateGraph,
        piece_count: int,
        *,
        priority: StepPriority = StepPriority.NORMAL,
        now: datetime,
    ) -> "BundleWorkflowInstance":
        if not bundle_id:
            raise ValidationError("Bundle id must not be empty")
        if piece_count <= 0:
            raise ValidationError(f"Piece count must be positive, got {piece_count}")
        bundle = Bundle(
            id=bundle_id,
            template_id=graph.id,
            pieces=piece_count,
            priority=priority,
            created_at=now,
        )
        steps = []
        for op_id in graph.topological_order:
            operation = graph.operation(op_id)
            is_root = not operation.depends_on
            steps.append(
                WorkflowStep(
                    step_id=WorkflowStep.make_id(bundle_id, op_id),
                    bundle_id=bundle_id,
                    operation_id=op_id,
                    pieces=piece_count,
                    dependencies=frozenset(
                        WorkflowStep.make_id(bundle_id, dep) for dep in operation.depends_on
                    ),
                    status=StepStatus.AVAILABLE if is_root else StepStatus.LOCKED,
                    priority=priority,
                    created_at=now,
                    available_at=now if is_root else None,
                )
            )
        return cls(bundle, graph, steps, new=True)

    @classmethod
    def load(
        cls, persistence: PersistenceGateway, bundle_id: str, graph: TemplateGraph
    ) -> "BundleWorkflowInstance":
        try:
            bundle = persistence.get_bundle(bundle_id)
        except RecordNotFoundError as exc:
            raise ValidationError(f"Unknown bundle {bundle_id!r}") from exc
        return cls(bundle, graph, persistence.list_steps(bundle_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def step(self, step_id: str) -> WorkflowStep:
        try:
            return self._steps[step_id]
        except KeyError as exc:
            raise ValidationError(
                f"Step {step_id!r} does not belong to bundle {self.bundle.id!r}"
            ) from exc

    @property
    def steps(self) -> List[WorkflowStep]:
        order = {op_id: index for index, op_id in enumerate(self.graph.display_order())}
        return sorted(self._steps.values(), key=lambda step: order[step.operation_id])

    def steps_with_status(self, status: StepStatus) -> List[WorkflowStep]:
        return [step for step in self.steps if step.status is status]

    def dependencies_completed(self, step: WorkflowStep) -> bool:
        return all(
            self._steps[dep].status is StepStatus.COMPLETED for dep in step.dependencies
        )

    def dependents_of(self, step: WorkflowStep) -> List[WorkflowStep]:
        """Direct dependents, resolved through the template's reverse index."""

        return [
            self._steps[WorkflowStep.make_id(self.bundle.id, op_id)]
            for op_id in sorted(self.graph.dependents_of(step.operation_id))
        ]

    @property
    def is_complete(self) -> bool:
        return all(step.status is StepStatus.COMPLETED for step in self._steps.values())

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def transition(
        self,
        step_id: str,
        target: StepStatus,
        *,
        now: datetime,
        operator_id: Optional[str] = None,
        notes: str = "",
        **changes: object,
    ) -> WorkflowStep:
        """Move a step to ``target`` applying ``changes``; raise on illegal moves."""

        current = self.step(step_id)
        if not can_transition(current.status, target):
            raise StateConflict(
                step_id,
                f"cannot move from {current.status.value} to {target.value}",
            )
        updated = replace(current, status=target, **changes)
        if target is StepStatus.AVAILABLE:
            updated.available_at = now
        self._stage(updated)
        self.transitions.append(
            StepTransition(
                step_id=step_id,
                bundle_id=self.bundle.id,
                from_status=current.status,
                to_status=target,
                timestamp=now,
                operator_id=operator_id,
                notes=notes,
            )
        )
        logger.debug(
            "Step %s: %s -> %s", step_id, current.status.value, target.value
        )
        return updated

    def _stage(self, step: WorkflowStep) -> None:
        if step.step_id not in self._originals:
            self._originals[step.step_id] = replace(self._steps[step.step_id])
        self._steps[step.step_id] = step

    def archive(self, now: datetime) -> None:
        """Mark the bundle archived once its terminal steps are all completed."""

        if not self.is_complete:
            raise StateConflict(self.bundle.id, "bundle still has open steps")
        self.bundle = replace(self.bundle, completed_at=now)
        self._bundle_dirty = True

    def commit(self, persistence: PersistenceGateway) -> None:
        """Persist every staged change; all-or-nothing for this bundle."""

        written: List[str] = []
        try:
            if self._new:
                persistence.save_bundle(self.bundle)
            for step_id in self._originals:
                persistence.save_step(self._steps[step_id])
                written.append(step_id)
            if self._bundle_dirty and not self._new:
                persistence.save_bundle(self.bundle)
        except Exception:
            logger.error(
                "Persisting bundle %s failed, rolling back %d step(s)",
                self.bundle.id,
                len(written),
            )
            self._rollback(persistence, written)
            raise
        self._originals = {}
        self._new = False
        self._bundle_dirty = False

    def _rollback(self, persistence: PersistenceGateway, written: List[str]) -> None:
        for step_id in written:
            original = self._originals[step_id]
            if original is None:
                persistence.remove_step(step_id)
            else:
                persistence.save_step(original)
        if self._new and persistence.has_bundle(self.bundle.id):
            persistence.remove_bundle(self.bundle.id)
        for step_id, original in self._originals.items():
            if original is not None:
                self._steps[step_id] = original
        if self._bundle_dirty:
            self.bundle = replace(self.bundle, completed_at=None)
        self.transitions = []


__all__ = ["BundleWorkflowInstance", "TRANSITIONS", "can_transition"]
