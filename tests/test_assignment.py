import threading
from datetime import datetime, timezone

import pytest

from bundle_flow import AssignmentPolicy, NotificationKind, StepStatus
from bundle_flow.assignment import AssignmentSelector, rank_operators
from bundle_flow.capacity import CapacityRegistry
from bundle_flow.gateways import PersistenceGateway
from bundle_flow.templates import compile_template
from bundle_flow.workflow import BundleWorkflowInstance

from conftest import make_operator

NOW = datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return CapacityRegistry(PersistenceGateway(), capacity_threshold=80.0)


@pytest.fixture
def instance(diamond_template):
    graph = compile_template(diamond_template)
    return BundleWorkflowInstance.instantiate("B1", graph, 10, now=NOW)


def test_ranking_prefers_most_available_then_lowest_id():
    ranked = rank_operators(
        [
            make_operator("op-3", "a", workload=10),
            make_operator("op-2", "a", workload=40),
            make_operator("op-1", "a", workload=10),
        ]
    )
    assert [op.operator_id for op in ranked] == ["op-1", "op-3", "op-2"]


def test_auto_assign_reserves_on_the_winner(registry, instance):
    registry.register(make_operator("op-busy", "a", workload=50))
    registry.register(make_operator("op-free", "a", workload=0))
    selector = AssignmentSelector(registry)

    outcome = selector.select(
        instance, "B1:a", policy=AssignmentPolicy.AUTO_ASSIGN, capacity_threshold=80.0, now=NOW
    )

    assert outcome.assigned_operator_id == "op-free"
    assert outcome.reservations == [("op-free", 10)]
    assert [n.kind for n in outcome.notifications] == [NotificationKind.NEW_ASSIGNMENT]
    assert outcome.notifications[0].estimated_minutes == pytest.approx(10.0)
    step = instance.step("B1:a")
    assert step.status is StepStatus.ASSIGNED
    assert step.assigned_operator_id == "op-free"
    assert registry.get("op-free").current_workload == 10


def test_operator_below_the_floor_is_never_selected(registry, instance):
    registry.register(make_operator("op-full", "a", workload=81))
    selector = AssignmentSelector(registry)

    outcome = selector.select(
        instance, "B1:a", policy=AssignmentPolicy.AUTO_ASSIGN, capacity_threshold=80.0, now=NOW
    )

    assert outcome.capacity_exhausted
    assert selector.capacity_exhausted_count == 1
    assert instance.step("B1:a").status is StepStatus.AVAILABLE
    assert registry.get("op-full").current_workload == 81


def test_broadcast_notifies_every_qualified_operator(registry, instance):
    registry.register(make_operator("op-1", "a"))
    registry.register(make_operator("op-2", "a", workload=30))
    registry.register(make_operator("op-x", "b"))
    selector = AssignmentSelector(registry)

    outcome = selector.select(
        instance,
        "B1:a",
        policy=AssignmentPolicy.BROADCAST_CLAIM,
        capacity_threshold=80.0,
        now=NOW,
    )

    assert outcome.assigned_operator_id is None
    assert outcome.notified_operator_ids == ["op-1", "op-2"]
    assert {n.kind for n in outcome.notifications} == {NotificationKind.SEQUENTIAL_READY}
    assert instance.step("B1:a").status is StepStatus.AVAILABLE
    assert registry.get("op-1").current_workload == 0


def test_locked_steps_are_ignored(registry, instance):
    registry.register(make_operator("op-b", "b"))
    selector = AssignmentSelector(registry)

    outcome = selector.select(
        instance, "B1:b", policy=AssignmentPolicy.AUTO_ASSIGN, capacity_threshold=80.0, now=NOW
    )

    assert outcome.assigned_operator_id is None
    assert registry.get("op-b").current_workload == 0


def test_exhaustion_count_is_exact_under_concurrent_selection(registry, diamond_template):
    graph = compile_template(diamond_template)
    selector = AssignmentSelector(registry)
    rounds = 200

    def select_many(index):
        own = BundleWorkflowInstance.instantiate(f"B{index}", graph, 10, now=NOW)
        for _ in range(rounds):
            selector.select(
                own,
                f"B{index}:a",
                policy=AssignmentPolicy.AUTO_ASSIGN,
                capacity_threshold=80.0,
                now=NOW,
            )

    threads = [threading.Thread(target=select_many, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert selector.capacity_exhausted_count == 8 * rounds
