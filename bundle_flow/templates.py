"""Operation DAGs per article, validated once and compiled for cascades."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Tuple

from .domain import ArticleTemplate, OperationTemplate
from .exceptions import ValidationError
from .gateways import PersistenceGateway
from .repository import DuplicateRecordError, RecordNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TemplateGraph:
    """A validated article template with its precomputed indexes."""

    template: ArticleTemplate
    operations: Mapping[str, OperationTemplate]
    topological_order: Tuple[str, ...]
    dependents: Mapping[str, FrozenSet[str]]

    @property
    def id(self) -> str:
        return self.template.id

    @property
    def roots(self) -> FrozenSet[str]:
        return frozenset(
            op_id for op_id, op in self.operations.items() if not op.depends_on
        )

    def operation(self, operation_id: str) -> OperationTemplate:
        return self.operations[operation_id]

    def dependents_of(self, operation_id: str) -> FrozenSet[str]:
        return self.dependents.get(operation_id, frozenset())

    def display_order(self) -> List[str]:
        """Operation ids ordered by sequence number, then topological position."""

        position = {op_id: index for index, op_id in enumerate(self.topological_order)}
        return sorted(
            self.operations,
            key=lambda op_id: (self.operations[op_id].sequence_number, position[op_id]),
        )


def validate_template(template: ArticleTemplate) -> List[str]:
    """Return human-readable problems with ``template``; empty means valid.

    Rules:
    - At least one operation, operation ids unique within the template.
    - Every ``depends_on`` id names an operation of the same template.
    - No self-dependency and no cycle (checked with Kahn's algorithm).
    """

    errors: List[str] = []
    if not template.id:
        errors.append("MISSING_ID: template id is empty")
    if not template.operations:
        errors.append(f"EMPTY: template={template.id} has no operations")
        return errors

    ids: Dict[str, OperationTemplate] = {}
    for op in template.operations:
        if not op.operation_id:
            errors.append(f"MISSING_ID: operation {op.name!r} has no id")
            continue
        if op.operation_id in ids:
            errors.append(f"DUPLICATE: operation={op.operation_id}")
            continue
        if op.estimated_time_per_piece < 0:
            errors.append(f"NEGATIVE_TIME: operation={op.operation_id}")
        ids[op.operation_id] = op

    for op_id, op in ids.items():
        for dep in sorted(op.depends_on):
            if dep == op_id:
                errors.append(f"SELF_DEP: operation={op_id}")
            elif dep not in ids:
                errors.append(f"MISSING_DEP: operation={op_id} depends_on={dep}")
    if errors:
        errors.sort()
        return errors

    _, leftover = _kahn(ids)
    if leftover:
        errors.append("CYCLE: operations=" + ",".join(sorted(leftover)))
    return errors


def _kahn(operations: Mapping[str, OperationTemplate]) -> Tuple[List[str], List[str]]:
    children: Dict[str, List[str]] = {op_id: [] for op_id in operations}
    indeg: Dict[str, int] = {op_id: 0 for op_id in operations}
    for op_id, op in operations.items():
        for dep in op.depends_on:
            children[dep].append(op_id)
            indeg[op_id] += 1

    # Deterministic order: ties broken by sequence number then id.
    def key(op_id: str) -> Tuple[int, str]:
        return operations[op_id].sequence_number, op_id

    queue = sorted((op_id for op_id, d in indeg.items() if d == 0), key=key)
    order: List[str] = []
    while queue:
        u = queue.pop(0)
        order.append(u)
        ready = []
        for v in children[u]:
            indeg[v] -= 1
            if indeg[v] == 0:
                ready.append(v)
        queue = sorted(queue + ready, key=key)
    leftover = [op_id for op_id, d in indeg.items() if d > 0]
    return order, leftover


def compile_template(template: ArticleTemplate) -> TemplateGraph:
    errors = validate_template(template)
    if errors:
        raise ValidationError(f"Template {template.id!r} is invalid", errors)
    operations = {op.operation_id: op for op in template.operations}
    order, _ = _kahn(operations)
    dependents: Dict[str, set] = {op_id: set() for op_id in operations}
    for op_id, op in operations.items():
        for dep in op.depends_on:
            dependents[dep].add(op_id)
    return TemplateGraph(
        template=template,
        operations=operations,
        topological_order=tuple(order),
        dependents={k: frozenset(v) for k, v in dependents.items()},
    )


class OperationTemplateGraph:
    """Registry of compiled article templates."""

    def __init__(self, persistence: PersistenceGateway) -> None:
        self._persistence = persistence
        self._graphs: Dict[str, TemplateGraph] = {}
        self._lock = threading.Lock()

    def register(self, template: ArticleTemplate) -> TemplateGraph:
        graph = compile_template(template)
        with self._lock:
            if template.id in self._graphs:
                raise ValidationError(f"Template {template.id!r} is already registered")
            try:
                self._persistence.add_template(template)
            except DuplicateRecordError as exc:
                raise ValidationError(
                    f"Template {template.id!r} is already registered"
                ) from exc
            self._graphs[template.id] = graph
        logger.info(
            "Registered template %s (%d operations)", template.id, len(graph.operations)
        )
        return graph

    def get(self, template_id: str) -> TemplateGraph:
        graph = self._graphs.get(template_id)
        if graph is not None:
            return graph
        try:
            template = self._persistence.get_template(template_id)
        except RecordNotFoundError as exc:
            raise ValidationError(f"Unknown template {template_id!r}") from exc
        graph = compile_template(template)
        with self._lock:
            return self._graphs.setdefault(template_id, graph)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._graphs


def garment_line_template(template_id: str = "garment-basic") -> ArticleTemplate:
    """The standard shirt line: a single chain from cutting to finishing."""

    def op(operation_id, name, machine_type, skills, minutes, sequence, depends_on=(), **kwargs):
        return OperationTemplate(
            operation_id=operation_id,
            name=name,
            machine_type=machine_type,
            required_skills=frozenset(skills),
            estimated_time_per_piece=minutes,
            sequence_number=sequence,
            depends_on=frozenset(depends_on),
            **kwargs,
        )

    return ArticleTemplate(
        id=template_id,
        article="Basic shirt",
        operations=(
            op("cutting", "Cutting", "cutting_machine", ["cutting"], 2, 1),
            op(
                "single_needle_1",
                "Single Needle - First Pass",
                "single_needle",
                ["single_needle", "basic_sewing"],
                5,
                2,
                ["cutting"],
            ),
            op("overlock", "Overlock", "overlock_machine", ["overlock"], 3, 3, ["single_needle_1"]),
            op(
                "single_needle_2",
                "Single Needle - Second Pass",
                "single_needle",
                ["single_needle", "advanced_sewing"],
                4,
                4,
                ["overlock"],
            ),
            op("button_hole", "Button Hole", "button_hole_machine", ["button_hole"], 2, 5, ["single_needle_2"]),
            op(
                "finishing",
                "Finishing",
                "manual",
                ["finishing", "quality_check"],
                3,
                6,
                ["button_hole"],
                quality_check_required=True,
            ),
        ),
    )


__all__ = [
    "TemplateGraph",
    "garment_line_template",
    "OperationTemplateGraph",
    "validate_template",
    "compile_template",
]
