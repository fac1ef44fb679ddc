"""Dependency-resolving work assignment for garment production bundles.

This package provides the operation template graph, per-bundle workflow
instances, operator capacity tracking, assignment policies, and the
completion cascade that unlocks downstream operations as work finishes.
"""

from .domain import (
    ArticleTemplate,
    AssignmentPolicy,
    Bundle,
    Notification,
    NotificationKind,
    OperationTemplate,
    OperatorCapacity,
    Shift,
    StepPriority,
    StepStatus,
    WorkflowStep,
)
from .exceptions import StateConflict, ValidationError, WorkflowError
from .services import CompletionResult, EngineOptions, WorkflowService

__all__ = [
    "ArticleTemplate",
    "AssignmentPolicy",
    "Bundle",
    "Notification",
    "NotificationKind",
    "OperationTemplate",
    "OperatorCapacity",
    "Shift",
    "StepPriority",
    "StepStatus",
    "WorkflowStep",
    "StateConflict",
    "ValidationError",
    "WorkflowError",
    "CompletionResult",
    "EngineOptions",
    "WorkflowService",
]
