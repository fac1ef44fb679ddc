"""Shared fixtures for the workflow engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from bundle_flow import (
    ArticleTemplate,
    AssignmentPolicy,
    EngineOptions,
    OperationTemplate,
    OperatorCapacity,
    WorkflowService,
)
from bundle_flow.gateways import RecordingNotificationGateway


class FakeClock:
    """Manually advanced clock handed to the service."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingStepRepository:
    """Step store whose write number ``fail_after + 1`` raises once."""

    def __init__(self, inner, fail_after):
        self.inner = inner
        self.fail_after = fail_after
        self.writes = 0

    def upsert(self, item_id, item):
        self.writes += 1
        if self.writes == self.fail_after + 1:
            raise OSError("disk full")
        self.inner.upsert(item_id, item)

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def __contains__(self, item_id):
        return item_id in self.inner


def make_operation(operation_id, machine_type=None, depends_on=(), sequence=0, minutes=1.0):
    return OperationTemplate(
        operation_id=operation_id,
        name=operation_id.replace("_", " ").title(),
        machine_type=machine_type or f"{operation_id}_machine",
        required_skills=frozenset({operation_id}),
        estimated_time_per_piece=minutes,
        sequence_number=sequence,
        depends_on=frozenset(depends_on),
    )


def make_operator(operator_id, operation_id, max_capacity=100, workload=0.0, **kwargs):
    return OperatorCapacity(
        operator_id=operator_id,
        machine_type=f"{operation_id}_machine",
        skills=frozenset({operation_id}),
        max_capacity_per_hour=max_capacity,
        current_workload=workload,
        **kwargs,
    )


@pytest.fixture
def diamond_template():
    """A -> B, A -> C, {B, C} -> D."""

    return ArticleTemplate(
        id="diamond",
        article="Diamond test article",
        operations=(
            make_operation("a", sequence=1),
            make_operation("b", depends_on=["a"], sequence=2),
            make_operation("c", depends_on=["a"], sequence=3),
            make_operation("d", depends_on=["b", "c"], sequence=4),
        ),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return RecordingNotificationGateway()


@pytest.fixture
def make_service(gateway, clock):
    def factory(policy=AssignmentPolicy.AUTO_ASSIGN, **option_overrides):
        options = EngineOptions(policy=policy, **option_overrides)
        return WorkflowService(notification_gateway=gateway, options=options, clock=clock)

    return factory


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def diamond_service(service, diamond_template):
    service.register_template(diamond_template)
    for operation_id in ("a", "b", "c", "d"):
        service.register_operator(make_operator(f"op-{operation_id}", operation_id))
    return service
