"""Core data structures for the garment bundle workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Canonical lifecycle of a workflow step."""

    LOCKED = "locked"
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class StepPriority(IntEnum):
    """Priority levels carried by bundles and their steps."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4

    @property
    def label(self) -> str:
        return {
            StepPriority.LOW: "Low",
            StepPriority.NORMAL: "Normal",
            StepPriority.HIGH: "High",
            StepPriority.URGENT: "Urgent",
        }[self]

    @classmethod
    def parse(cls, value: str) -> "StepPriority":
        try:
            return cls[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown priority {value!r}") from exc


class AssignmentPolicy(str, Enum):
    """How a newly available step is matched to operators."""

    AUTO_ASSIGN = "auto_assign"
    BROADCAST_CLAIM = "broadcast_claim"


class NotificationKind(str, Enum):
    NEW_ASSIGNMENT = "new_assignment"
    SEQUENTIAL_READY = "sequential_ready"
    EXPIRED = "expired"


class Shift(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    NIGHT = "night"


@dataclass(frozen=True, slots=True)
class OperationTemplate:
    """Reusable definition of one operation in an article's production sequence."""

    operation_id: str
    name: str
    machine_type: str
    required_skills: FrozenSet[str] = frozenset()
    estimated_time_per_piece: float = 0.0  # minutes
    sequence_number: int = 0
    depends_on: FrozenSet[str] = frozenset()
    quality_check_required: bool = False

    def __post_init__(self) -> None:
        # Accept any iterable of ids from callers; store immutable sets.
        object.__setattr__(self, "required_skills", frozenset(self.required_skills))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))


@dataclass(frozen=True, slots=True)
class ArticleTemplate:
    """The operation DAG of one article/style."""

    id: str
    article: str
    operations: Tuple[OperationTemplate, ...]
    version: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "operations", tuple(self.operations))

    def operation(self, operation_id: str) -> OperationTemplate:
        for operation in self.operations:
            if operation.operation_id == operation_id:
                return operation
        raise KeyError(operation_id)


@dataclass(slots=True)
class WorkflowStep:
    """A per-bundle instance of one template operation."""

    step_id: str
    bundle_id: str
    operation_id: str
    pieces: int
    dependencies: FrozenSet[str] = frozenset()
    status: StepStatus = StepStatus.LOCKED
    priority: StepPriority = StepPriority.NORMAL
    completed_pieces: int = 0
    assigned_operator_id: Optional[str] = None
    completed_operator_id: Optional[str] = None
    reserved_workload: int = 0
    blocked_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    available_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @staticmethod
    def make_id(bundle_id: str, operation_id: str) -> str:
        return f"{bundle_id}:{operation_id}"


@dataclass(slots=True)
class OperatorCapacity:
    """Live capacity record of a single operator."""

    operator_id: str
    machine_type: str
    max_capacity_per_hour: float
    skills: FrozenSet[str] = frozenset()
    name: str = ""
    current_workload: float = 0.0
    shift: Shift = Shift.MORNING
    on_break: bool = False
    active: bool = True

    def __post_init__(self) -> None:
        self.skills = frozenset(self.skills)

    @property
    def available_capacity_percent(self) -> float:
        if self.max_capacity_per_hour <= 0:
            return 0.0
        used = self.current_workload / self.max_capacity_per_hour * 100.0
        return max(0.0, 100.0 - used)

    def qualifies_for(self, machine_type: str, required_skills: FrozenSet[str]) -> bool:
        return self.machine_type == machine_type and required_skills <= self.skills

    @property
    def can_take_work(self) -> bool:
        return self.active and not self.on_break


@dataclass(slots=True)
class Bundle:
    """A production bundle moving through one article template."""

    id: str
    template_id: str
    pieces: int
    priority: StepPriority = StepPriority.NORMAL
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def archived(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True, slots=True)
class Notification:
    """Outbound event for a single operator."""

    operator_id: str
    step_id: str
    bundle_id: str
    kind: NotificationKind
    priority: StepPriority
    operation_name: str = ""
    machine_type: str = ""
    estimated_minutes: float = 0.0
    details: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepTransition:
    """Audit record of one status change."""

    step_id: str
    bundle_id: str
    from_status: StepStatus
    to_status: StepStatus
    timestamp: datetime
    operator_id: Optional[str] = None
    notes: str = ""


__all__ = [
    "StepStatus",
    "StepPriority",
    "AssignmentPolicy",
    "NotificationKind",
    "Shift",
    "OperationTemplate",
    "ArticleTemplate",
    "WorkflowStep",
    "OperatorCapacity",
    "Bundle",
    "Notification",
    "StepTransition",
    "utcnow",
]
