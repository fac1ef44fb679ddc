"""Live tracking of operator workload and availability."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

from .domain import OperatorCapacity
from .exceptions import ValidationError
from .gateways import PersistenceGateway
from .repository import RecordNotFoundError

logger = logging.getLogger(__name__)


def availability_floor(capacity_threshold: float) -> float:
    """Minimum available capacity percent an operator needs to receive work."""

    return 100.0 - capacity_threshold


@dataclass(frozen=True, slots=True)
class WorkloadChange:
    operator_id: str
    previous_workload: float
    current_workload: float
    available_capacity_percent: float
    crossed_threshold: bool


class CapacityRegistry:
    """Operator capacity records with per-operator atomic updates.

    Updates for different operators never contend; read-modify-write on one
    operator happens under that operator's lock.
    """

    def __init__(self, persistence: PersistenceGateway, capacity_threshold: float = 80.0) -> None:
        self._persistence = persistence
        self.capacity_threshold = capacity_threshold
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, operator_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(operator_id)
            if lock is None:
                lock = self._locks[operator_id] = threading.Lock()
            return lock

    def _load(self, operator_id: str) -> OperatorCapacity:
        try:
            return self._persistence.get_operator(operator_id)
        except RecordNotFoundError as exc:
            raise ValidationError(f"Unknown operator {operator_id!r}") from exc

    # ------------------------------------------------------------------
    # Onboarding and status
    # ------------------------------------------------------------------
    def register(self, operator: OperatorCapacity) -> OperatorCapacity:
        problems = []
        if not operator.operator_id:
            problems.append("operator id is empty")
        if not operator.machine_type:
            problems.append("machine type is empty")
        if operator.max_capacity_per_hour <= 0:
            problems.append("max capacity per hour must be positive")
        if operator.current_workload < 0:
            problems.append("current workload must not be negative")
        if problems:
            raise ValidationError("Invalid operator record", problems)
        with self._lock_for(operator.operator_id):
            if self._persistence.has_operator(operator.operator_id):
                raise ValidationError(f"Operator {operator.operator_id!r} already exists")
            self._persistence.save_operator(operator)
        logger.info(
            "Registered operator %s on %s", operator.operator_id, operator.machine_type
        )
        return self._load(operator.operator_id)

    def get(self, operator_id: str) -> OperatorCapacity:
        return self._load(operator_id)

    def list(self) -> List[OperatorCapacity]:
        return sorted(self._persistence.list_operators(), key=lambda op: op.operator_id)

    def set_on_break(self, operator_id: str, on_break: bool) -> OperatorCapacity:
        with self._lock_for(operator_id):
            operator = self._load(operator_id)
            operator.on_break = on_break
            self._persistence.save_operator(operator)
        return operator

    def set_active(self, operator_id: str, active: bool) -> OperatorCapacity:
        with self._lock_for(operator_id):
            operator = self._load(operator_id)
            operator.active = active
            self._persistence.save_operator(operator)
        return operator

    # ------------------------------------------------------------------
    # Workload
    # ------------------------------------------------------------------
    def _apply(self, operator: OperatorCapacity, workload: float) -> WorkloadChange:
        floor = availability_floor(self.capacity_threshold)
        was_eligible = operator.available_capacity_percent >= floor
        previous = operator.current_workload
        operator.current_workload = max(0.0, workload)
        self._persistence.save_operator(operator)
        available = operator.available_capacity_percent
        return WorkloadChange(
            operator_id=operator.operator_id,
            previous_workload=previous,
            current_workload=operator.current_workload,
            available_capacity_percent=available,
            crossed_threshold=not was_eligible and available >= floor,
        )

    def update_workload(self, operator_id: str, delta: float) -> bool:
        """Adjust workload by ``delta``; True when the operator became eligible again."""

        return self.change_workload(operator_id, delta).crossed_threshold

    def change_workload(self, operator_id: str, delta: float) -> WorkloadChange:
        with self._lock_for(operator_id):
            operator = self._load(operator_id)
            change = self._apply(operator, operator.current_workload + delta)
        logger.debug(
            "Workload %s: %.1f -> %.1f (%.1f%% available)",
            operator_id,
            change.previous_workload,
            change.current_workload,
            change.available_capacity_percent,
        )
        return change

    def set_absolute_workload(self, operator_id: str, workload: float) -> WorkloadChange:
        with self._lock_for(operator_id):
            operator = self._load(operator_id)
            return self._apply(operator, workload)

    def try_reserve(
        self,
        operator_id: str,
        pieces: float,
        capacity_threshold: Optional[float] = None,
        *,
        machine_type: Optional[str] = None,
        required_skills: FrozenSet[str] = frozenset(),
    ) -> bool:
        """Reserve ``pieces`` only if the operator is still eligible right now."""

        threshold = self.capacity_threshold if capacity_threshold is None else capacity_threshold
        with self._lock_for(operator_id):
            try:
                operator = self._persistence.get_operator(operator_id)
            except RecordNotFoundError:
                return False
            if not operator.can_take_work:
                return False
            if machine_type is not None and not operator.qualifies_for(
                machine_type, required_skills
            ):
                return False
            if operator.available_capacity_percent < availability_floor(threshold):
                return False
            self._apply(operator, operator.current_workload + pieces)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def query_qualified(
        self,
        machine_type: str,
        skills: Iterable[str],
        capacity_threshold: Optional[float] = None,
    ) -> List[OperatorCapacity]:
        threshold = self.capacity_threshold if capacity_threshold is None else capacity_threshold
        floor = availability_floor(threshold)
        return [
            operator
            for operator in self._persistence.list_operators(machine_type, skills)
            if operator.can_take_work and operator.available_capacity_percent >= floor
        ]


__all__ = ["CapacityRegistry", "WorkloadChange", "availability_floor"]
