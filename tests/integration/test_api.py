import pytest
from fastapi.testclient import TestClient
from fixtures.approvals import Shipments, build_fulfilment

from ledgerflow.api import create_app
from ledgerflow.engine import WorkflowEngine

BASE = "/workflows-executions/fulfil-order"


@pytest.fixture
def shipments():
    return Shipments()


@pytest.fixture
def client(registry, engine, shipments):
    registry.register_workflow(build_fulfilment(shipments))
    with TestClient(create_app(engine)) as client:
        yield client


def _start(client, transaction_id="tx-1"):
    response = client.post(f"{BASE}/run", json={"input": {"order_id": "o-1"}, "transaction_id": transaction_id})
    assert response.status_code == 200
    assert response.json()["status"] == "invoking"


def test_success_signal_completes_transaction(client, shipments):
    _start(client)

    response = client.post(
        f"{BASE}/steps/success",
        json={"transaction_id": "tx-1", "step_id": "approve", "response": {"by": "ops"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "done"
    assert body["result"] == {"tracking": "trk-o-1", "approved_by": "ops"}
    assert shipments.shipped == [{"order": "o-1", "approved_by": "ops"}]

    duplicate = client.post(
        f"{BASE}/steps/success",
        json={"transaction_id": "tx-1", "step_id": "approve", "response": {"by": "ops"}},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "StepConflictError"


def test_failure_signal_reverts(client, shipments):
    _start(client)

    response = client.post(
        f"{BASE}/steps/failure",
        json={
            "transaction_id": "tx-1",
            "step_id": "approve",
            "error": {"type": "ValidationError", "message": "order rejected"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "reverted"
    assert body["error"]["message"] == "order rejected"
    assert shipments.cancelled == ["parcel-o-1"]


def test_malformed_body_is_400(client):
    response = client.post(f"{BASE}/steps/success", json={"step_id": "approve"})
    assert response.status_code == 400
    assert response.json()["error"] == "MalformedRequest"
    assert response.json()["details"][0]["loc"] == ["body", "transaction_id"]


def test_unknown_transaction_or_step_is_404(client):
    _start(client)

    unknown_tx = client.post(
        f"{BASE}/steps/success", json={"transaction_id": "nope", "step_id": "approve", "response": 1}
    )
    unknown_step = client.post(
        f"{BASE}/steps/success", json={"transaction_id": "tx-1", "step_id": "nope", "response": 1}
    )
    unknown_workflow = client.get("/workflows-executions/other/tx-1")

    assert unknown_tx.status_code == 404
    assert unknown_step.status_code == 404
    assert unknown_workflow.status_code == 404


def test_invalid_signals_are_422(client):
    _start(client)

    missing_response = client.post(
        f"{BASE}/steps/success", json={"transaction_id": "tx-1", "step_id": "approve"}
    )
    not_waiting = client.post(
        f"{BASE}/steps/success", json={"transaction_id": "tx-1", "step_id": "ship", "response": 1}
    )
    missing_compensate_input = client.post(
        f"{BASE}/steps/success",
        json={"transaction_id": "tx-1", "step_id": "pack", "action": "compensate"},
    )

    assert missing_response.status_code == 422
    assert not_waiting.status_code == 422
    assert missing_compensate_input.status_code == 422


def test_get_transaction_report(client):
    _start(client)

    response = client.get(f"{BASE}/tx-1")

    assert response.status_code == 200
    steps = {s["step_id"]: s["status"] for s in response.json()["steps"] if s["action"] == "invoke"}
    assert steps == {"pack": "success", "approve": "waiting"}


def test_unexpected_errors_are_500(registry, log, config, monkeypatch):
    engine = WorkflowEngine(registry, log, config=config)

    async def broken(signal):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(engine, "signal", broken)
    with TestClient(create_app(engine), raise_server_exceptions=False) as client:
        response = client.post(
            f"{BASE}/steps/success", json={"transaction_id": "tx-1", "step_id": "approve", "response": 1}
        )

    assert response.status_code == 500
    assert response.json() == {"error": "InternalError", "message": "Internal server error"}
