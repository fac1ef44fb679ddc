"""Service layer: the completion cascade and the engine's inbound commands."""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import (
    Callable,
    Collection,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from .assignment import AssignmentOutcome, AssignmentSelector, build_notification
from .capacity import CapacityRegistry, WorkloadChange
from .domain import (
    ArticleTemplate,
    AssignmentPolicy,
    NotificationKind,
    Notification,
    OperationTemplate,
    OperatorCapacity,
    StepPriority,
    StepStatus,
    StepTransition,
    WorkflowStep,
    utcnow,
)
from .exceptions import StateConflict, ValidationError
from .gateways import NotificationGateway, NotificationOutbox, PersistenceGateway
from .repository import RecordNotFoundError
from .templates import OperationTemplateGraph, TemplateGraph
from .workflow import BundleWorkflowInstance

logger = logging.getLogger(__name__)

DEFAULT_ASSIGNMENT_EXPIRY = timedelta(minutes=30)


@dataclass(slots=True)
class EngineOptions:
    """Configuration values controlling assignment and expiry."""

    policy: AssignmentPolicy = AssignmentPolicy.AUTO_ASSIGN
    capacity_threshold: float = 80.0
    assignment_expiry: timedelta = DEFAULT_ASSIGNMENT_EXPIRY
    sweep_interval_seconds: float = 60.0
    rescan_on_capacity_change: bool = True
    history_limit: int = 5000


@dataclass(slots=True)
class OperatorWorkload:
    capacity: OperatorCapacity
    assigned_steps: List[WorkflowStep]
    eligible_steps: List[WorkflowStep]


@dataclass(slots=True)
class CompletionResult:
    """Summary returned after a step completes and its cascade ran."""

    step: WorkflowStep
    unlocked_step_ids: List[str] = field(default_factory=list)
    outcomes: List[AssignmentOutcome] = field(default_factory=list)
    capacity_released: float = 0.0
    operator_rescanned: bool = False
    bundle_archived: bool = False


class _BundleUnit:
    """Changes collected while one bundle is locked."""

    def __init__(self, instance: BundleWorkflowInstance) -> None:
        self.instance = instance
        self.workload_log: List[Tuple[str, float]] = []
        self.notifications: List[Notification] = []
        self.outcomes: List[AssignmentOutcome] = []
        self.rescan_operators: Set[str] = set()

    def absorb(self, outcome: AssignmentOutcome) -> AssignmentOutcome:
        self.outcomes.append(outcome)
        self.workload_log.extend(outcome.reservations)
        self.notifications.extend(outcome.notifications)
        return outcome

    def change_workload(
        self, registry: CapacityRegistry, operator_id: str, delta: float
    ) -> WorkloadChange:
        change = registry.change_workload(operator_id, delta)
        # Log what was applied; clamping at zero can make it differ from delta.
        self.workload_log.append(
            (operator_id, change.current_workload - change.previous_workload)
        )
        if change.crossed_threshold:
            self.rescan_operators.add(operator_id)
        return change


class WorkflowService:
    """Facade that exposes the workflow engine's commands and queries."""

    def __init__(
        self,
        persistence: Optional[PersistenceGateway] = None,
        notification_gateway: Optional[NotificationGateway] = None,
        *,
        options: Optional[EngineOptions] = None,
        outbox: Optional[NotificationOutbox] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.persistence = persistence if persistence is not None else PersistenceGateway()
        self.outbox = outbox if outbox is not None else NotificationOutbox(notification_gateway)
        self.options = options or EngineOptions()
        self.templates = OperationTemplateGraph(self.persistence)
        self.capacity = CapacityRegistry(self.persistence, self.options.capacity_threshold)
        self.selector = AssignmentSelector(self.capacity)
        self._clock = clock or utcnow
        self._bundle_locks: Dict[str, threading.RLock] = {}
        self._bundle_templates: Dict[str, str] = {}
        self._guard = threading.Lock()
        self._history: Deque[StepTransition] = deque(maxlen=self.options.history_limit)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_options(
        self,
        *,
        policy: Optional[AssignmentPolicy] = None,
        capacity_threshold: Optional[float] = None,
        assignment_expiry_minutes: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        rescan_on_capacity_change: Optional[bool] = None,
    ) -> EngineOptions:
        """Apply new engine parameters; numeric values are clamped to sane ranges."""

        current = self.options
        self.options = EngineOptions(
            policy=policy or current.policy,
            capacity_threshold=min(max(capacity_threshold, 0.0), 100.0)
            if capacity_threshold is not None
            else current.capacity_threshold,
            assignment_expiry=timedelta(minutes=max(assignment_expiry_minutes, 1.0))
            if assignment_expiry_minutes is not None
            else current.assignment_expiry,
            sweep_interval_seconds=max(sweep_interval_seconds, 1.0)
            if sweep_interval_seconds is not None
            else current.sweep_interval_seconds,
            rescan_on_capacity_change=current.rescan_on_capacity_change
            if rescan_on_capacity_change is None
            else rescan_on_capacity_change,
            history_limit=current.history_limit,
        )
        self.capacity.capacity_threshold = self.options.capacity_threshold
        if (
            self.options.capacity_threshold > current.capacity_threshold
            and self.options.rescan_on_capacity_change
        ):
            # A higher threshold lowers the availability floor for every operator.
            for operator in self.capacity.list():
                self._rescan(operator.operator_id)
        return self.options

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def register_template(self, template: ArticleTemplate) -> TemplateGraph:
        return self.templates.register(template)

    def register_operator(self, operator: OperatorCapacity) -> OperatorCapacity:
        registered = self.capacity.register(operator)
        self._rescan(operator.operator_id)
        return registered

    def set_operator_break(self, operator_id: str, on_break: bool) -> OperatorCapacity:
        operator = self.capacity.set_on_break(operator_id, on_break)
        if not on_break:
            self._rescan(operator_id)
        return operator

    def set_operator_active(self, operator_id: str, active: bool) -> OperatorCapacity:
        operator = self.capacity.set_active(operator_id, active)
        if active:
            self._rescan(operator_id)
        return operator

    # ------------------------------------------------------------------
    # Bundle locking
    # ------------------------------------------------------------------
    def _lock_for_bundle(self, bundle_id: str) -> threading.RLock:
        with self._guard:
            lock = self._bundle_locks.get(bundle_id)
            if lock is None:
                lock = self._bundle_locks[bundle_id] = threading.RLock()
            return lock

    def _graph_for_bundle(self, bundle_id: str) -> TemplateGraph:
        template_id = self._bundle_templates.get(bundle_id)
        if template_id is None:
            try:
                template_id = self.persistence.get_bundle(bundle_id).template_id
            except RecordNotFoundError as exc:
                raise ValidationError(f"Unknown bundle {bundle_id!r}") from exc
            self._bundle_templates[bundle_id] = template_id
        return self.templates.get(template_id)

    def _bundle_of_step(self, step_id: str) -> str:
        try:
            return self.persistence.get_step(step_id).bundle_id
        except RecordNotFoundError as exc:
            raise ValidationError(f"Unknown step {step_id!r}") from exc

    @contextmanager
    def _bundle_unit(
        self, bundle_id: str, instance: Optional[BundleWorkflowInstance] = None
    ) -> Iterator[_BundleUnit]:
        """Serialise work on one bundle and commit it as a single unit.

        Workload changes made inside the unit are reverted if the body or the
        commit raises. Notifications are only published after the commit.
        """

        with self._lock_for_bundle(bundle_id):
            if instance is None:
                instance = BundleWorkflowInstance.load(
                    self.persistence, bundle_id, self._graph_for_bundle(bundle_id)
                )
            unit = _BundleUnit(instance)
            try:
                yield unit
                instance.commit(self.persistence)
            except Exception:
                self._compensate(unit)
                raise
            self._history.extend(instance.transitions)
        self.outbox.publish(unit.notifications)

    def _compensate(self, unit: _BundleUnit) -> None:
        for operator_id, delta in reversed(unit.workload_log):
            try:
                self.capacity.change_workload(operator_id, -delta)
            except Exception:
                logger.exception(
                    "Could not revert workload change %+.1f for operator %s",
                    delta,
                    operator_id,
                )

    def _select(
        self,
        unit: _BundleUnit,
        step_id: str,
        now: datetime,
        **kwargs,
    ) -> AssignmentOutcome:
        return unit.absorb(
            self.selector.select(
                unit.instance,
                step_id,
                policy=self.options.policy,
                capacity_threshold=self.options.capacity_threshold,
                now=now,
                **kwargs,
            )
        )

    # ------------------------------------------------------------------
    # Inbound commands
    # ------------------------------------------------------------------
    def create_workflow(
        self,
        bundle_id: str,
        template_id: str,
        piece_count: int,
        *,
        priority: StepPriority = StepPriority.NORMAL,
    ) -> List[WorkflowStep]:
        graph = self.templates.get(template_id)
        now = self._clock()
        with self._lock_for_bundle(bundle_id):
            if self.persistence.has_bundle(bundle_id):
                raise ValidationError(f"Bundle {bundle_id!r} already has a workflow")
            instance = BundleWorkflowInstance.instantiate(
                bundle_id, graph, piece_count, priority=priority, now=now
            )
            with self._bundle_unit(bundle_id, instance) as unit:
                for step in instance.steps_with_status(StepStatus.AVAILABLE):
                    self._select(unit, step.step_id, now)
            self._bundle_templates[bundle_id] = template_id
        logger.info(
            "Created workflow for bundle %s from %s (%d steps, %d pieces)",
            bundle_id,
            template_id,
            len(graph.operations),
            piece_count,
        )
        return instance.steps

    def claim_step(self, step_id: str, operator_id: str) -> WorkflowStep:
        """Compare-and-swap AVAILABLE/unassigned to ASSIGNED for ``operator_id``."""

        if self.options.policy is not AssignmentPolicy.BROADCAST_CLAIM:
            raise ValidationError("Claiming is only enabled under the broadcast_claim policy")
        bundle_id = self._bundle_of_step(step_id)
        now = self._clock()
        with self._bundle_unit(bundle_id) as unit:
            # Read under the bundle lock so a concurrent break or deactivation is seen.
            operator = self.capacity.get(operator_id)
            step = unit.instance.step(step_id)
            operation = unit.instance.graph.operation(step.operation_id)
            if not operator.qualifies_for(operation.machine_type, operation.required_skills):
                raise ValidationError(
                    f"Operator {operator_id!r} is not qualified for {operation.name!r}"
                )
            if not operator.can_take_work:
                raise ValidationError(f"Operator {operator_id!r} is not available")
            if step.status is not StepStatus.AVAILABLE or step.assigned_operator_id:
                raise StateConflict(step_id, f"already {step.status.value}, claim rejected")
            unit.change_workload(self.capacity, operator_id, step.pieces)
            claimed = unit.instance.transition(
                step_id,
                StepStatus.ASSIGNED,
                now=now,
                operator_id=operator_id,
                notes="claimed",
                assigned_operator_id=operator_id,
                assigned_at=now,
                reserved_workload=step.pieces,
            )
        logger.info("Operator %s claimed step %s", operator_id, step_id)
        return claimed

    def start_step(self, step_id: str, operator_id: str) -> WorkflowStep:
        bundle_id = self._bundle_of_step(step_id)
        now = self._clock()
        with self._bundle_unit(bundle_id) as unit:
            step = unit.instance.step(step_id)
            if step.status is not StepStatus.ASSIGNED:
                raise StateConflict(step_id, f"cannot start a {step.status.value} step")
            if step.assigned_operator_id != operator_id:
                raise StateConflict(step_id, f"is not assigned to operator {operator_id!r}")
            started = unit.instance.transition(
                step_id,
                StepStatus.IN_PROGRESS,
                now=now,
                operator_id=operator_id,
                started_at=now,
            )
        return started

    def complete_step(
        self, step_id: str, operator_id: str, pieces_completed: int
    ) -> CompletionResult:
        """Complete a step, release capacity and unlock satisfied dependents."""

        if pieces_completed < 0:
            raise ValidationError("Completed pieces must not be negative")
        bundle_id = self._bundle_of_step(step_id)
        now = self._clock()
        with self._bundle_unit(bundle_id) as unit:
            instance = unit.instance
            step = instance.step(step_id)
            if step.status is not StepStatus.IN_PROGRESS:
                raise StateConflict(step_id, f"cannot complete a {step.status.value} step")
            if step.assigned_operator_id != operator_id:
                raise StateConflict(step_id, f"is not assigned to operator {operator_id!r}")
            if pieces_completed > step.pieces:
                raise ValidationError(
                    f"Completed pieces {pieces_completed} exceed bundle size {step.pieces}"
                )
            completed = instance.transition(
                step_id,
                StepStatus.COMPLETED,
                now=now,
                operator_id=operator_id,
                notes=f"{pieces_completed} pieces",
                completed_pieces=pieces_completed,
                completed_operator_id=operator_id,
                completed_at=now,
                reserved_workload=0,
            )
            result = CompletionResult(step=completed, capacity_released=pieces_completed)
            unit.change_workload(self.capacity, operator_id, -pieces_completed)

            operation = instance.graph.operation(completed.operation_id)
            details = {
                "previous_operation": operation.name,
                "previous_operator_id": operator_id,
            }
            for dependent in instance.dependents_of(completed):
                if dependent.status is not StepStatus.LOCKED:
                    continue
                if not instance.dependencies_completed(dependent):
                    continue
                instance.transition(
                    dependent.step_id,
                    StepStatus.AVAILABLE,
                    now=now,
                    notes=f"unlocked by {completed.step_id}",
                )
                result.unlocked_step_ids.append(dependent.step_id)
                result.outcomes.append(
                    self._select(unit, dependent.step_id, now, details=details)
                )

            if instance.is_complete:
                instance.archive(now)
                result.bundle_archived = True
            rescan = set(unit.rescan_operators)

        if result.bundle_archived:
            logger.info("Bundle %s completed and archived", bundle_id)
        if self.options.rescan_on_capacity_change:
            for rescan_operator in sorted(rescan):
                self._rescan(rescan_operator)
                result.operator_rescanned = result.operator_rescanned or (
                    rescan_operator == operator_id
                )
        return result

    def update_operator_capacity(
        self,
        operator_id: str,
        *,
        delta: Optional[float] = None,
        absolute: Optional[float] = None,
    ) -> WorkloadChange:
        if (delta is None) == (absolute is None):
            raise ValidationError("Provide exactly one of delta or absolute")
        if absolute is not None:
            if absolute < 0:
                raise ValidationError("Absolute workload must not be negative")
            change = self.capacity.set_absolute_workload(operator_id, absolute)
        else:
            change = self.capacity.change_workload(operator_id, delta)
        if change.crossed_threshold and self.options.rescan_on_capacity_change:
            self._rescan(operator_id)
        return change

    def block_step(self, step_id: str, reason: str) -> WorkflowStep:
        if not reason or not reason.strip():
            raise ValidationError("A block reason is required")
        bundle_id = self._bundle_of_step(step_id)
        now = self._clock()
        with self._bundle_unit(bundle_id) as unit:
            step = unit.instance.step(step_id)
            blocked = unit.instance.transition(
                step_id,
                StepStatus.BLOCKED,
                now=now,
                operator_id=step.assigned_operator_id,
                notes=reason,
                blocked_reason=reason.strip(),
                assigned_operator_id=None,
                assigned_at=None,
                started_at=None,
                reserved_workload=0,
            )
            if step.assigned_operator_id and step.reserved_workload:
                unit.change_workload(
                    self.capacity, step.assigned_operator_id, -step.reserved_workload
                )
            rescan = set(unit.rescan_operators)
        logger.info("Blocked step %s: %s", step_id, reason)
        for operator_id in sorted(rescan):
            self._rescan(operator_id)
        return blocked

    def resolve_block(self, step_id: str, target_status: StepStatus) -> WorkflowStep:
        if target_status not in (StepStatus.AVAILABLE, StepStatus.LOCKED):
            raise ValidationError(
                f"A block can only resolve to available or locked, not {target_status.value}"
            )
        bundle_id = self._bundle_of_step(step_id)
        now = self._clock()
        with self._bundle_unit(bundle_id) as unit:
            instance = unit.instance
            step = instance.step(step_id)
            if step.status is not StepStatus.BLOCKED:
                raise StateConflict(step_id, f"is {step.status.value}, not blocked")
            satisfied = instance.dependencies_completed(step)
            if target_status is StepStatus.AVAILABLE and not satisfied:
                raise ValidationError(
                    f"Step {step_id!r} still has outstanding dependencies"
                )
            if target_status is StepStatus.LOCKED and satisfied:
                raise ValidationError(
                    f"Step {step_id!r} has no outstanding dependencies to wait for"
                )
            resolved = instance.transition(
                step_id,
                target_status,
                now=now,
                notes="block resolved",
                blocked_reason="",
            )
            if target_status is StepStatus.AVAILABLE:
                self._select(unit, step_id, now)
                resolved = instance.step(step_id)
        return resolved

    def expire_stale_assignments(self, now: Optional[datetime] = None) -> List[str]:
        """Revert ASSIGNED steps nobody started within the expiry window."""

        now = now or self._clock()
        cutoff = now - self.options.assignment_expiry
        expired: List[str] = []
        rescan: Set[str] = set()
        for candidate in self.persistence.list_steps_by_status(StepStatus.ASSIGNED):
            if candidate.assigned_at is None or candidate.assigned_at > cutoff:
                continue
            with self._bundle_unit(candidate.bundle_id) as unit:
                step = unit.instance.step(candidate.step_id)
                # Re-read under the lock: the operator may have started meanwhile.
                if step.status is not StepStatus.ASSIGNED or step.assigned_at != candidate.assigned_at:
                    continue
                no_show = step.assigned_operator_id
                operation = unit.instance.graph.operation(step.operation_id)
                reverted = unit.instance.transition(
                    step.step_id,
                    StepStatus.AVAILABLE,
                    now=now,
                    operator_id=no_show,
                    notes="assignment expired",
                    assigned_operator_id=None,
                    assigned_at=None,
                    reserved_workload=0,
                )
                if no_show is not None:
                    if step.reserved_workload:
                        unit.change_workload(self.capacity, no_show, -step.reserved_workload)
                    unit.notifications.append(
                        build_notification(
                            no_show, reverted, operation, NotificationKind.EXPIRED
                        )
                    )
                self._select(
                    unit,
                    step.step_id,
                    now,
                    exclude={no_show} if no_show else (),
                )
                rescan |= unit.rescan_operators
            expired.append(candidate.step_id)
            logger.info("Assignment of step %s expired", candidate.step_id)
        for operator_id in sorted(rescan):
            self._rescan(operator_id)
        if self.options.policy is AssignmentPolicy.AUTO_ASSIGN:
            # Steps expired in an earlier sweep get the no-show back as a candidate.
            retried = self._retry_waiting(now, skip=set(expired))
            if retried:
                logger.info("Expiry sweep assigned %d waiting steps", len(retried))
        return expired

    # ------------------------------------------------------------------
    # Capacity re-evaluation
    # ------------------------------------------------------------------
    def _operation_for(self, step: WorkflowStep) -> OperationTemplate:
        return self._graph_for_bundle(step.bundle_id).operation(step.operation_id)

    def _eligible_steps(self, operator: OperatorCapacity) -> List[WorkflowStep]:
        eligible = []
        for step in self.persistence.list_steps_by_status(StepStatus.AVAILABLE):
            if step.assigned_operator_id is not None:
                continue
            operation = self._operation_for(step)
            if operator.qualifies_for(operation.machine_type, operation.required_skills):
                eligible.append(step)
        eligible.sort(
            key=lambda step: (-int(step.priority), step.available_at or step.created_at)
        )
        return eligible

    def _rescan(self, operator_id: str) -> List[AssignmentOutcome]:
        """Offer every waiting step this operator qualifies for to that operator.

        Runs after the triggering command has committed, so failures are
        logged and the step stays AVAILABLE for a later rescan or sweep.
        """

        try:
            operator = self.capacity.get(operator_id)
            if not operator.can_take_work:
                return []
            eligible = self._eligible_steps(operator)
        except Exception:
            logger.exception("Rescan for operator %s failed", operator_id)
            return []
        outcomes: List[AssignmentOutcome] = []
        now = self._clock()
        for step in eligible:
            try:
                with self._bundle_unit(step.bundle_id) as unit:
                    outcome = self._select(
                        unit, step.step_id, now, restrict_to=operator_id
                    )
            except Exception:
                logger.exception(
                    "Rescan of step %s for operator %s failed", step.step_id, operator_id
                )
                continue
            outcomes.append(outcome)
        return outcomes

    def _retry_waiting(self, now: datetime, skip: Collection[str] = ()) -> List[str]:
        """Run the selector again for every unassigned AVAILABLE step."""

        assigned: List[str] = []
        waiting = sorted(
            self.persistence.list_steps_by_status(StepStatus.AVAILABLE),
            key=lambda step: (-int(step.priority), step.available_at or step.created_at),
        )
        for candidate in waiting:
            if candidate.step_id in skip or candidate.assigned_operator_id is not None:
                continue
            try:
                with self._bundle_unit(candidate.bundle_id) as unit:
                    outcome = self._select(unit, candidate.step_id, now)
            except Exception:
                logger.exception("Retry of waiting step %s failed", candidate.step_id)
                continue
            if outcome.assigned_operator_id is not None:
                assigned.append(candidate.step_id)
        return assigned

    # ------------------------------------------------------------------
    # Outbound queries
    # ------------------------------------------------------------------
    def get_workflow_status(self, bundle_id: str) -> List[WorkflowStep]:
        with self._lock_for_bundle(bundle_id):
            return BundleWorkflowInstance.load(
                self.persistence, bundle_id, self._graph_for_bundle(bundle_id)
            ).steps

    def get_operator_workload(self, operator_id: str) -> OperatorWorkload:
        capacity = self.capacity.get(operator_id)
        assigned = [
            step
            for status in (StepStatus.ASSIGNED, StepStatus.IN_PROGRESS)
            for step in self.persistence.list_steps_by_status(status)
            if step.assigned_operator_id == operator_id
        ]
        assigned.sort(key=lambda step: (-int(step.priority), step.assigned_at or step.created_at))
        return OperatorWorkload(
            capacity=capacity,
            assigned_steps=assigned,
            eligible_steps=self._eligible_steps(capacity),
        )

    def transition_history(self, bundle_id: Optional[str] = None) -> List[StepTransition]:
        history = list(self._history)
        if bundle_id is None:
            return history
        return [entry for entry in history if entry.bundle_id == bundle_id]

    def list_bundle_ids(self) -> List[str]:
        return sorted(bundle.id for bundle in self.persistence.list_bundles())

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def start_background(self) -> "ExpirySweeper":
        self.outbox.start()
        sweeper = ExpirySweeper(self)
        sweeper.start()
        return sweeper


class ExpirySweeper:
    """Periodically runs the no-show expiry outside the request path."""

    def __init__(self, service: WorkflowService, interval: Optional[float] = None) -> None:
        self._service = service
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        if self._interval is not None:
            return self._interval
        return self._service.options.sweep_interval_seconds

    def run_once(self) -> Sequence[str]:
        return self._service.expire_stale_assignments()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed; retrying next interval")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = [
    "WorkflowService",
    "EngineOptions",
    "OperatorWorkload",
    "CompletionResult",
    "ExpirySweeper",
]
