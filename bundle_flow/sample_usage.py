"""Demonstration script for the bundle workflow engine."""

from __future__ import annotations

import logging
from pprint import pprint

from . import OperatorCapacity, Shift, StepPriority, WorkflowService
from .gateways import RecordingNotificationGateway
from .templates import garment_line_template


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    gateway = RecordingNotificationGateway()
    engine = WorkflowService(notification_gateway=gateway)

    # Master data
    template = engine.register_template(garment_line_template())
    operators = [
        OperatorCapacity(
            operator_id="op-cut-1",
            name="Ram Shrestha",
            machine_type="cutting_machine",
            skills={"cutting"},
            max_capacity_per_hour=120,
        ),
        OperatorCapacity(
            operator_id="op-sn-1",
            name="Sita Tamang",
            machine_type="single_needle",
            skills={"single_needle", "basic_sewing", "advanced_sewing"},
            max_capacity_per_hour=60,
            current_workload=30,
        ),
        OperatorCapacity(
            operator_id="op-ol-1",
            name="Hari Gurung",
            machine_type="overlock_machine",
            skills={"overlock"},
            max_capacity_per_hour=80,
            current_workload=20,
            shift=Shift.AFTERNOON,
        ),
    ]
    for operator in operators:
        engine.register_operator(operator)

    engine.create_workflow("B-001", template.id, 20, priority=StepPriority.HIGH)

    # Shop floor feedback
    cutting = "B-001:cutting"
    engine.start_step(cutting, "op-cut-1")
    result = engine.complete_step(cutting, "op-cut-1", 20)
    print("Unlocked:", result.unlocked_step_ids)

    first_pass = "B-001:single_needle_1"
    engine.start_step(first_pass, "op-sn-1")
    engine.complete_step(first_pass, "op-sn-1", 20)

    engine.outbox.drain()

    print("Workflow status:")
    pprint(
        [
            (step.operation_id, step.status.value, step.assigned_operator_id)
            for step in engine.get_workflow_status("B-001")
        ]
    )
    print("Workload op-ol-1:")
    workload = engine.get_operator_workload("op-ol-1")
    pprint(
        {
            "available": round(workload.capacity.available_capacity_percent, 1),
            "assigned": [step.step_id for step in workload.assigned_steps],
            "eligible": [step.step_id for step in workload.eligible_steps],
        }
    )
    print("Notifications:")
    for notification in gateway.delivered:
        print(
            f"  {notification.operator_id}: {notification.kind.value} "
            f"{notification.operation_name} ({notification.estimated_minutes:.0f} min)"
        )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
