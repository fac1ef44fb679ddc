"""Boundaries to the collaborators the engine does not own.

``PersistenceGateway`` wraps whatever repositories hold templates, bundles,
steps and operator records. ``NotificationGateway`` is the delivery
collaborator; the orchestrator never calls it directly but queues events in
a ``NotificationOutbox`` that a separate consumer drains.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import replace
from typing import Iterable, List, Optional, Protocol, TypeVar

from .domain import (
    ArticleTemplate,
    Bundle,
    Notification,
    OperatorCapacity,
    StepStatus,
    WorkflowStep,
)
from .repository import InMemoryRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository(Protocol[T]):
    def __contains__(self, item_id: object) -> bool: ...

    def add(self, item_id: str, item: T) -> None: ...

    def upsert(self, item_id: str, item: T) -> None: ...

    def get(self, item_id: str) -> T: ...

    def remove(self, item_id: str) -> None: ...

    def list(self) -> List[T]: ...

    def list_by(self, attribute: str, value: object) -> List[T]: ...


class PersistenceGateway:
    """Load/save access to every record the engine works with.

    Reads hand out copies so that callers can stage changes without
    touching stored state until they save.
    """

    def __init__(
        self,
        template_repo: Optional[Repository[ArticleTemplate]] = None,
        bundle_repo: Optional[Repository[Bundle]] = None,
        step_repo: Optional[Repository[WorkflowStep]] = None,
        operator_repo: Optional[Repository[OperatorCapacity]] = None,
    ) -> None:
        # Explicit None checks: an empty SQLiteRepository has len() == 0.
        self.templates = template_repo if template_repo is not None else InMemoryRepository()
        self.bundles = bundle_repo if bundle_repo is not None else InMemoryRepository()
        self.steps = (
            step_repo
            if step_repo is not None
            else InMemoryRepository(indexes=("bundle_id", "status"))
        )
        self.operators = (
            operator_repo
            if operator_repo is not None
            else InMemoryRepository(indexes=("machine_type",))
        )

    # Templates ---------------------------------------------------------
    def get_template(self, template_id: str) -> ArticleTemplate:
        return self.templates.get(template_id)

    def add_template(self, template: ArticleTemplate) -> None:
        self.templates.add(template.id, template)

    # Bundles -----------------------------------------------------------
    def get_bundle(self, bundle_id: str) -> Bundle:
        return replace(self.bundles.get(bundle_id))

    def has_bundle(self, bundle_id: str) -> bool:
        return bundle_id in self.bundles

    def save_bundle(self, bundle: Bundle) -> None:
        self.bundles.upsert(bundle.id, replace(bundle))

    def remove_bundle(self, bundle_id: str) -> None:
        self.bundles.remove(bundle_id)

    def list_bundles(self) -> List[Bundle]:
        return [replace(bundle) for bundle in self.bundles.list()]

    # Steps -------------------------------------------------------------
    def get_step(self, step_id: str) -> WorkflowStep:
        return replace(self.steps.get(step_id))

    def save_step(self, step: WorkflowStep) -> None:
        self.steps.upsert(step.step_id, replace(step))

    def remove_step(self, step_id: str) -> None:
        self.steps.remove(step_id)

    def list_steps(self, bundle_id: str) -> List[WorkflowStep]:
        return [replace(step) for step in self.steps.list_by("bundle_id", bundle_id)]

    def list_steps_by_status(self, status: StepStatus) -> List[WorkflowStep]:
        return [replace(step) for step in self.steps.list_by("status", status)]

    # Operators ---------------------------------------------------------
    def get_operator(self, operator_id: str) -> OperatorCapacity:
        return replace(self.operators.get(operator_id))

    def has_operator(self, operator_id: str) -> bool:
        return operator_id in self.operators

    def save_operator(self, operator: OperatorCapacity) -> None:
        self.operators.upsert(operator.operator_id, replace(operator))

    def list_operators(
        self, machine_type: Optional[str] = None, skills: Iterable[str] = ()
    ) -> List[OperatorCapacity]:
        if machine_type is None:
            candidates = self.operators.list()
        else:
            candidates = self.operators.list_by("machine_type", machine_type)
        required = frozenset(skills)
        return [replace(op) for op in candidates if required <= op.skills]


class NotificationGateway(Protocol):
    """Best-effort delivery of operator notifications."""

    def notify(self, notification: Notification) -> None: ...


class LoggingNotificationGateway:
    """Gateway that only writes notifications to the log."""

    def notify(self, notification: Notification) -> None:
        logger.info(
            "Notify %s: %s for step %s (%s)",
            notification.operator_id,
            notification.kind.value,
            notification.step_id,
            notification.priority.label,
        )


class RecordingNotificationGateway:
    """Gateway that keeps every delivered notification in memory."""

    def __init__(self) -> None:
        self.delivered: List[Notification] = []
        self._lock = threading.Lock()

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self.delivered.append(notification)

    def for_operator(self, operator_id: str) -> List[Notification]:
        with self._lock:
            return [n for n in self.delivered if n.operator_id == operator_id]


class NotificationOutbox:
    """Outbound event queue between the orchestrator and a gateway.

    ``publish`` never blocks on delivery and never raises delivery errors.
    Events are delivered either by calling ``drain`` or by a daemon
    consumer thread started with ``start``.
    """

    def __init__(self, gateway: Optional[NotificationGateway] = None) -> None:
        self.gateway: NotificationGateway = gateway or LoggingNotificationGateway()
        self._queue: "queue.Queue[Optional[Notification]]" = queue.Queue()
        self._consumer: Optional[threading.Thread] = None
        self.failed = 0

    def publish(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self._queue.put(notification)

    def pending(self) -> int:
        return self._queue.qsize()

    def _deliver(self, notification: Notification) -> None:
        try:
            self.gateway.notify(notification)
        except Exception:
            self.failed += 1
            logger.warning(
                "Delivery of %s to operator %s failed",
                notification.kind.value,
                notification.operator_id,
                exc_info=True,
            )

    def drain(self) -> int:
        """Deliver everything queued so far; return the number of events handled."""

        handled = 0
        while True:
            try:
                notification = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if notification is not None:
                self._deliver(notification)
                handled += 1
            self._queue.task_done()

    def _run(self) -> None:
        while True:
            notification = self._queue.get()
            try:
                if notification is None:
                    return
                self._deliver(notification)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._consumer is not None and self._consumer.is_alive():
            return
        self._consumer = threading.Thread(
            target=self._run, name="notification-outbox", daemon=True
        )
        self._consumer.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._consumer is None:
            return
        self._queue.put(None)
        self._consumer.join(timeout)
        self._consumer = None


__all__ = [
    "PersistenceGateway",
    "NotificationGateway",
    "LoggingNotificationGateway",
    "RecordingNotificationGateway",
    "NotificationOutbox",
]
