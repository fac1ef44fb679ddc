"""FastAPI-based surface for the workflow engine's commands and queries."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates

from ..domain import (
    AssignmentPolicy,
    OperatorCapacity,
    Shift,
    StepPriority,
    StepStatus,
    WorkflowStep,
)
from ..exceptions import StateConflict, ValidationError
from ..gateways import NotificationGateway, PersistenceGateway
from ..repository import RecordNotFoundError
from ..services import EngineOptions, WorkflowService
from ..storage import WorkflowDatabase
from ..templates import garment_line_template

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def create_app(
    database_path: str = "workflow.sqlite3",
    *,
    options: Optional[EngineOptions] = None,
    notification_gateway: Optional[NotificationGateway] = None,
    demo_data: bool = True,
    background: bool = True,
) -> FastAPI:
    database = WorkflowDatabase(database_path)
    persistence = PersistenceGateway(
        template_repo=database.templates,
        bundle_repo=database.bundles,
        step_repo=database.steps,
        operator_repo=database.operators,
    )
    service = WorkflowService(
        persistence, notification_gateway, options=options
    )
    if demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="Bundle Workflow Engine")
    app.state.workflow_service = service
    app.state.database = database
    app.state.sweeper = None

    @app.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - framework hook
        if background:
            app.state.sweeper = service.start_background()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        if app.state.sweeper is not None:
            app.state.sweeper.stop()
        service.outbox.stop()
        database.close()

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            {"error": "validation", "detail": str(exc), "problems": exc.problems},
            status_code=422,
        )

    @app.exception_handler(StateConflict)
    async def state_conflict(request: Request, exc: StateConflict):
        return JSONResponse(
            {"error": "state_conflict", "detail": str(exc), "step_id": exc.step_id},
            status_code=409,
        )

    @app.exception_handler(RecordNotFoundError)
    async def not_found(request: Request, exc: RecordNotFoundError):
        return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)

    @app.get("/")
    async def dashboard(request: Request):
        service: WorkflowService = request.app.state.workflow_service
        bundles = [
            (bundle_id, service.get_workflow_status(bundle_id))
            for bundle_id in service.list_bundle_ids()
        ]
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "bundles": bundles,
                "operators": service.capacity.list(),
                "options": service.options,
            },
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    @app.post("/workflows")
    async def create_workflow(
        request: Request,
        bundle_id: str = Form(...),
        template_id: str = Form(...),
        piece_count: int = Form(...),
        priority: str = Form("normal"),
    ):
        service: WorkflowService = request.app.state.workflow_service
        steps = service.create_workflow(
            bundle_id, template_id, piece_count, priority=parse_priority(priority)
        )
        return {"bundle_id": bundle_id, "steps": [step_payload(step) for step in steps]}

    @app.post("/steps/{step_id}/claim")
    async def claim_step(step_id: str, request: Request, operator_id: str = Form(...)):
        service: WorkflowService = request.app.state.workflow_service
        return step_payload(service.claim_step(step_id, operator_id))

    @app.post("/steps/{step_id}/start")
    async def start_step(step_id: str, request: Request, operator_id: str = Form(...)):
        service: WorkflowService = request.app.state.workflow_service
        return step_payload(service.start_step(step_id, operator_id))

    @app.post("/steps/{step_id}/complete")
    async def complete_step(
        step_id: str,
        request: Request,
        operator_id: str = Form(...),
        pieces_completed: int = Form(...),
    ):
        service: WorkflowService = request.app.state.workflow_service
        result = service.complete_step(step_id, operator_id, pieces_completed)
        return {
            "step": step_payload(result.step),
            "unlocked": result.unlocked_step_ids,
            "assigned": {
                outcome.step_id: outcome.assigned_operator_id
                for outcome in result.outcomes
                if outcome.assigned_operator_id
            },
            "bundle_archived": result.bundle_archived,
        }

    @app.post("/steps/{step_id}/block")
    async def block_step(step_id: str, request: Request, reason: str = Form(...)):
        service: WorkflowService = request.app.state.workflow_service
        return step_payload(service.block_step(step_id, reason))

    @app.post("/steps/{step_id}/resolve")
    async def resolve_block(
        step_id: str, request: Request, target_status: str = Form(...)
    ):
        service: WorkflowService = request.app.state.workflow_service
        return step_payload(service.resolve_block(step_id, parse_status(target_status)))

    @app.post("/operators/{operator_id}/capacity")
    async def update_capacity(
        operator_id: str,
        request: Request,
        delta: Optional[float] = Form(None),
        absolute: Optional[float] = Form(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        change = service.update_operator_capacity(
            operator_id, delta=delta, absolute=absolute
        )
        return {
            "operator_id": operator_id,
            "current_workload": change.current_workload,
            "available_capacity_percent": round(change.available_capacity_percent, 2),
            "crossed_threshold": change.crossed_threshold,
        }

    @app.post("/operators/{operator_id}/break")
    async def operator_break(
        operator_id: str, request: Request, on_break: Optional[str] = Form(None)
    ):
        service: WorkflowService = request.app.state.workflow_service
        operator = service.set_operator_break(operator_id, on_break is not None)
        return operator_payload(operator)

    @app.post("/options")
    async def update_options(
        request: Request,
        policy: Optional[str] = Form(None),
        capacity_threshold: Optional[float] = Form(None),
        assignment_expiry_minutes: Optional[float] = Form(None),
    ):
        service: WorkflowService = request.app.state.workflow_service
        updated = service.update_options(
            policy=parse_policy(policy) if policy else None,
            capacity_threshold=capacity_threshold,
            assignment_expiry_minutes=assignment_expiry_minutes,
        )
        return {
            "policy": updated.policy.value,
            "capacity_threshold": updated.capacity_threshold,
            "assignment_expiry_minutes": updated.assignment_expiry.total_seconds() / 60,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @app.get("/workflows/{bundle_id}")
    async def workflow_status(bundle_id: str, request: Request):
        service: WorkflowService = request.app.state.workflow_service
        return {
            "bundle_id": bundle_id,
            "steps": [step_payload(step) for step in service.get_workflow_status(bundle_id)],
        }

    @app.get("/operators/{operator_id}/workload")
    async def operator_workload(operator_id: str, request: Request):
        service: WorkflowService = request.app.state.workflow_service
        workload = service.get_operator_workload(operator_id)
        return {
            "operator": operator_payload(workload.capacity),
            "assigned_steps": [step_payload(step) for step in workload.assigned_steps],
            "eligible_steps": [step_payload(step) for step in workload.eligible_steps],
        }

    return app


def step_payload(step: WorkflowStep) -> Dict[str, object]:
    return {
        "step_id": step.step_id,
        "bundle_id": step.bundle_id,
        "operation_id": step.operation_id,
        "status": step.status.value,
        "priority": step.priority.label,
        "pieces": step.pieces,
        "completed_pieces": step.completed_pieces,
        "assigned_operator_id": step.assigned_operator_id,
        "dependencies": sorted(step.dependencies),
        "blocked_reason": step.blocked_reason or None,
        "assigned_at": step.assigned_at.isoformat() if step.assigned_at else None,
        "completed_at": step.completed_at.isoformat() if step.completed_at else None,
    }


def operator_payload(operator: OperatorCapacity) -> Dict[str, object]:
    return {
        "operator_id": operator.operator_id,
        "name": operator.name,
        "machine_type": operator.machine_type,
        "skills": sorted(operator.skills),
        "current_workload": operator.current_workload,
        "available_capacity_percent": round(operator.available_capacity_percent, 2),
        "shift": operator.shift.value,
        "on_break": operator.on_break,
        "active": operator.active,
    }


def _parse_enum(enum_cls, value: str, kind: str):
    token = value.strip().lower()
    for member in enum_cls:
        if token in {str(member.value).lower(), member.name.lower()}:
            return member
    raise ValidationError(f"Unknown {kind} {value!r}")


def parse_priority(value: str) -> StepPriority:
    try:
        return StepPriority.parse(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def parse_status(value: str) -> StepStatus:
    return _parse_enum(StepStatus, value, "status")


def parse_policy(value: str) -> AssignmentPolicy:
    return _parse_enum(AssignmentPolicy, value, "policy")


def split_csv(values: str) -> List[str]:
    return [value.strip() for value in values.split(",") if value.strip()]


def ensure_demo_data(service: WorkflowService) -> None:
    if len(service.capacity.list()) > 0:
        return

    template = garment_line_template()
    if template.id not in service.templates:
        try:
            service.register_template(template)
        except ValidationError:
            # Registered by an earlier run against the same database.
            service.templates.get(template.id)

    demo_operators = [
        ("op-cut-1", "Ram Shrestha", "cutting_machine", "cutting", 120, Shift.MORNING),
        ("op-sn-1", "Sita Tamang", "single_needle", "single_needle,basic_sewing,advanced_sewing", 60, Shift.MORNING),
        ("op-sn-2", "Maya Rai", "single_needle", "single_needle,basic_sewing", 50, Shift.AFTERNOON),
        ("op-ol-1", "Hari Gurung", "overlock_machine", "overlock", 80, Shift.MORNING),
        ("op-bh-1", "Gita Magar", "button_hole_machine", "button_hole", 90, Shift.MORNING),
        ("op-fin-1", "Kiran Thapa", "manual", "finishing,quality_check", 70, Shift.AFTERNOON),
    ]
    for operator_id, name, machine_type, skills, capacity, shift in demo_operators:
        service.register_operator(
            OperatorCapacity(
                operator_id=operator_id,
                name=name,
                machine_type=machine_type,
                skills=frozenset(split_csv(skills)),
                max_capacity_per_hour=capacity,
                shift=shift,
            )
        )
