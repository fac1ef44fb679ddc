"""Matching of ready workflow steps to qualified operators."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Collection, Dict, List, Optional, Tuple

from .capacity import CapacityRegistry
from .domain import (
    AssignmentPolicy,
    Notification,
    NotificationKind,
    OperationTemplate,
    OperatorCapacity,
    StepStatus,
    WorkflowStep,
)
from .workflow import BundleWorkflowInstance

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AssignmentOutcome:
    """What the selector did for one AVAILABLE step."""

    step_id: str
    policy: AssignmentPolicy
    assigned_operator_id: Optional[str] = None
    notified_operator_ids: List[str] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)
    reservations: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def capacity_exhausted(self) -> bool:
        return self.assigned_operator_id is None and not self.notified_operator_ids


def rank_operators(operators: Collection[OperatorCapacity]) -> List[OperatorCapacity]:
    """Most available capacity first; ties broken by operator id."""

    return sorted(
        operators,
        key=lambda op: (-op.available_capacity_percent, op.operator_id),
    )


def build_notification(
    operator_id: str,
    step: WorkflowStep,
    operation: OperationTemplate,
    kind: NotificationKind,
    details: Optional[Dict[str, str]] = None,
) -> Notification:
    return Notification(
        operator_id=operator_id,
        step_id=step.step_id,
        bundle_id=step.bundle_id,
        kind=kind,
        priority=step.priority,
        operation_name=operation.name,
        machine_type=operation.machine_type,
        estimated_minutes=step.pieces * operation.estimated_time_per_piece,
        details=dict(details or {}),
    )


class AssignmentSelector:
    """Finds operators for one AVAILABLE step under the configured policy."""

    def __init__(self, registry: CapacityRegistry) -> None:
        self._registry = registry
        self.capacity_exhausted_count = 0
        self._count_lock = threading.Lock()

    def candidates(
        self,
        operation: OperationTemplate,
        capacity_threshold: float,
        *,
        restrict_to: Optional[str] = None,
        exclude: Collection[str] = (),
    ) -> List[OperatorCapacity]:
        qualified = self._registry.query_qualified(
            operation.machine_type, operation.required_skills, capacity_threshold
        )
        return rank_operators(
            op
            for op in qualified
            if op.operator_id not in exclude
            and (restrict_to is None or op.operator_id == restrict_to)
        )

    def select(
        self,
        instance: BundleWorkflowInstance,
        step_id: str,
        *,
        policy: AssignmentPolicy,
        capacity_threshold: float,
        now: datetime,
        restrict_to: Optional[str] = None,
        exclude: Collection[str] = (),
        details: Optional[Dict[str, str]] = None,
    ) -> AssignmentOutcome:
        """Run one selection pass for ``step_id`` inside ``instance``.

        Reservations are applied to the capacity registry immediately and
        listed on the outcome so the caller can release them if the
        bundle's commit fails. Notifications are only collected.
        """

        step = instance.step(step_id)
        outcome = AssignmentOutcome(step_id=step_id, policy=policy)
        if step.status is not StepStatus.AVAILABLE or step.assigned_operator_id:
            return outcome
        operation = instance.graph.operation(step.operation_id)
        ranked = self.candidates(
            operation, capacity_threshold, restrict_to=restrict_to, exclude=exclude
        )

        if policy is AssignmentPolicy.AUTO_ASSIGN:
            self._auto_assign(
                instance, step, operation, ranked, capacity_threshold, now, outcome, details
            )
        else:
            for operator in ranked:
                outcome.notified_operator_ids.append(operator.operator_id)
                outcome.notifications.append(
                    build_notification(
                        operator.operator_id,
                        step,
                        operation,
                        NotificationKind.SEQUENTIAL_READY,
                        details,
                    )
                )

        if outcome.capacity_exhausted and restrict_to is None:
            with self._count_lock:
                self.capacity_exhausted_count += 1
            logger.info(
                "Capacity exhausted for step %s (%s on %s); left available",
                step.step_id,
                operation.name,
                operation.machine_type,
            )
        return outcome

    def _auto_assign(
        self,
        instance: BundleWorkflowInstance,
        step: WorkflowStep,
        operation: OperationTemplate,
        ranked: List[OperatorCapacity],
        capacity_threshold: float,
        now: datetime,
        outcome: AssignmentOutcome,
        details: Optional[Dict[str, str]],
    ) -> None:
        for operator in ranked:
            # Eligibility is re-checked under the operator's lock; a concurrent
            # reservation may have used the capacity we just read.
            reserved = self._registry.try_reserve(
                operator.operator_id,
                step.pieces,
                capacity_threshold,
                machine_type=operation.machine_type,
                required_skills=operation.required_skills,
            )
            if not reserved:
                continue
            outcome.reservations.append((operator.operator_id, step.pieces))
            assigned = instance.transition(
                step.step_id,
                StepStatus.ASSIGNED,
                now=now,
                operator_id=operator.operator_id,
                notes="auto assigned",
                assigned_operator_id=operator.operator_id,
                assigned_at=now,
                reserved_workload=step.pieces,
            )
            outcome.assigned_operator_id = operator.operator_id
            outcome.notifications.append(
                build_notification(
                    operator.operator_id,
                    assigned,
                    operation,
                    NotificationKind.NEW_ASSIGNMENT,
                    details,
                )
            )
            logger.info(
                "Assigned step %s to operator %s", step.step_id, operator.operator_id
            )
            return


__all__ = [
    "AssignmentSelector",
    "AssignmentOutcome",
    "rank_operators",
    "build_notification",
]
