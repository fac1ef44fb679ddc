import pytest
from fastapi.testclient import TestClient

from bundle_flow.gateways import RecordingNotificationGateway
from bundle_flow.web.app import create_app


@pytest.fixture
def client(tmp_path):
    app = create_app(
        str(tmp_path / "workflow.sqlite3"),
        notification_gateway=RecordingNotificationGateway(),
        background=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def create_bundle(client, bundle_id="B-100", pieces=10, priority="high"):
    return client.post(
        "/workflows",
        data={
            "bundle_id": bundle_id,
            "template_id": "garment-basic",
            "piece_count": str(pieces),
            "priority": priority,
        },
    )


def test_create_and_read_workflow(client):
    response = create_bundle(client)
    assert response.status_code == 200
    payload = response.json()
    assert [step["operation_id"] for step in payload["steps"]][:2] == [
        "cutting",
        "single_needle_1",
    ]
    assert payload["steps"][0]["status"] == "assigned"
    assert payload["steps"][0]["assigned_operator_id"] == "op-cut-1"
    assert payload["steps"][0]["priority"] == "High"

    status = client.get("/workflows/B-100").json()
    assert len(status["steps"]) == 6
    assert status["steps"][-1]["status"] == "locked"


def test_start_and_complete_unlocks_next_operation(client):
    create_bundle(client)

    started = client.post("/steps/B-100:cutting/start", data={"operator_id": "op-cut-1"})
    assert started.json()["status"] == "in_progress"

    completed = client.post(
        "/steps/B-100:cutting/complete",
        data={"operator_id": "op-cut-1", "pieces_completed": "10"},
    )
    assert completed.status_code == 200
    body = completed.json()
    assert body["unlocked"] == ["B-100:single_needle_1"]
    assert body["assigned"] == {"B-100:single_needle_1": "op-sn-1"}

    workload = client.get("/operators/op-sn-1/workload").json()
    assert [step["step_id"] for step in workload["assigned_steps"]] == [
        "B-100:single_needle_1"
    ]
    assert workload["operator"]["current_workload"] == 10


def test_errors_map_to_status_codes(client):
    create_bundle(client)

    conflict = client.post("/steps/B-100:overlock/start", data={"operator_id": "op-ol-1"})
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "state_conflict"

    claim = client.post("/steps/B-100:cutting/claim", data={"operator_id": "op-cut-1"})
    assert claim.status_code == 422

    unknown = client.get("/workflows/nope")
    assert unknown.status_code == 422

    duplicate = create_bundle(client)
    assert duplicate.status_code == 422

    bad_priority = create_bundle(client, bundle_id="B-101", priority="whenever")
    assert bad_priority.status_code == 422


def test_block_resolve_and_capacity_routes(client):
    create_bundle(client)

    blocked = client.post("/steps/B-100:cutting/block", data={"reason": "shade mismatch"})
    assert blocked.json()["status"] == "blocked"
    assert blocked.json()["blocked_reason"] == "shade mismatch"

    resolved = client.post("/steps/B-100:cutting/resolve", data={"target_status": "available"})
    assert resolved.json()["status"] == "assigned"

    capacity = client.post("/operators/op-ol-1/capacity", data={"absolute": "40"})
    assert capacity.json()["available_capacity_percent"] == 50.0


def test_broadcast_policy_enables_claims(client):
    options = client.post("/options", data={"policy": "broadcast_claim"})
    assert options.json()["policy"] == "broadcast_claim"

    create_bundle(client)
    claimed = client.post("/steps/B-100:cutting/claim", data={"operator_id": "op-cut-1"})
    assert claimed.status_code == 200
    assert claimed.json()["assigned_operator_id"] == "op-cut-1"

    again = client.post("/steps/B-100:cutting/claim", data={"operator_id": "op-cut-1"})
    assert again.status_code == 409


def test_dashboard_lists_bundles_and_operators(client):
    create_bundle(client)

    page = client.get("/")

    assert page.status_code == 200
    assert "B-100" in page.text
    assert "op-sn-2" in page.text
