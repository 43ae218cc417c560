"""API tests for the rollout admin endpoints."""

import pytest
from fastapi import status

BASE = "/api/admin/rollouts"


@pytest.mark.api
def test_start_with_explicit_stages(client, api_store):
    response = client.post(
        f"{BASE}/new-checkout/start",
        json={
            "stages": [
                {"percentage": 1, "duration_hours": 1, "success_criteria": {"metric": "error_rate", "threshold": 0.01}},
                {"percentage": 10},
                {"percentage": 100},
            ]
        },
    )

    assert response.status_code == status.HTTP_200_OK
    result = response.json()
    assert result["success"] is True
    assert result["data"]["state"] == "in_progress"
    assert result["data"]["percentage"] == 1
    assert api_store.peek("new-checkout").global_rollout_percentage == 1


@pytest.mark.api
def test_start_with_preset(client):
    response = client.post(f"{BASE}/new-checkout/start", json={"preset": "canary"})

    assert response.json()["success"] is True

    rollout = client.get(f"{BASE}/new-checkout").json()["data"]
    assert rollout["strategy"]["name"] == "Canary Deployment"
    assert rollout["percentage"] == 1


@pytest.mark.api
@pytest.mark.parametrize(
    "body",
    [
        {},
        {"preset": "canary", "stages": [{"percentage": 100}]},
    ],
)
def test_start_requires_exactly_one_of_stages_or_preset(client, body):
    result = client.post(f"{BASE}/new-checkout/start", json=body).json()
    assert result["success"] is False
    assert result["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.api
def test_start_with_unknown_preset(client):
    result = client.post(f"{BASE}/new-checkout/start", json={"preset": "yolo"}).json()
    assert result["error"]["code"] == "VALIDATION_ERROR"
    assert "canary" in result["error"]["details"]["available"]


@pytest.mark.api
def test_start_with_decreasing_stages(client):
    result = client.post(
        f"{BASE}/new-checkout/start", json={"stages": [{"percentage": 50}, {"percentage": 10}]}
    ).json()
    assert result["success"] is False
    assert result["error"]["code"] == "INVALID_STAGES"


@pytest.mark.api
def test_start_for_unknown_flag(client):
    result = client.post(f"{BASE}/missing/start", json={"stages": [{"percentage": 100}]}).json()
    assert result["error"]["code"] == "FLAG_NOT_FOUND"


@pytest.mark.api
def test_advance_and_rollback(client, api_store, api_notifier):
    client.post(f"{BASE}/new-checkout/start", json={"stages": [{"percentage": 1}, {"percentage": 10}, {"percentage": 100}]})

    advanced = client.post(f"{BASE}/new-checkout/advance").json()
    assert advanced["data"]["percentage"] == 10

    rolled_back = client.post(f"{BASE}/new-checkout/rollback", json={"reason": "p99 latency"}).json()
    assert rolled_back["success"] is True
    assert rolled_back["data"]["state"] == "rolled_back"
    assert rolled_back["data"]["percentage"] == 1
    assert api_store.peek("new-checkout").global_rollout_percentage == 1
    assert api_notifier.of_type("rollout.rolled_back")[0]["reason"] == "p99 latency"


@pytest.mark.api
def test_rollback_without_body(client):
    client.post(f"{BASE}/new-checkout/start", json={"stages": [{"percentage": 5}, {"percentage": 100}]})
    result = client.post(f"{BASE}/new-checkout/rollback").json()
    assert result["success"] is True
    assert result["data"]["percentage"] == 0


@pytest.mark.api
def test_advance_without_rollout(client):
    result = client.post(f"{BASE}/new-checkout/advance").json()
    assert result["success"] is False
    assert result["error"]["code"] == "ROLLOUT_NOT_FOUND"


@pytest.mark.api
def test_get_unknown_rollout(client):
    result = client.get(f"{BASE}/new-checkout").json()
    assert result["error"]["code"] == "ROLLOUT_NOT_FOUND"


@pytest.mark.api
def test_emergency_disable(client, api_store, api_notifier):
    response = client.post(f"{BASE}/kill-me/emergency-disable", json={"reason": "error spike"})

    assert response.json()["success"] is True
    assert api_store.peek("kill-me").enabled is False
    assert len(api_notifier.of_type("flag.emergency_disabled")) == 1

    evaluation = client.post("/api/flags/kill-me/evaluate", json={"subject_id": "u1"}).json()
    assert evaluation["data"]["reason"] == "disabled"


@pytest.mark.api
def test_emergency_disable_requires_reason(client):
    response = client.post(f"{BASE}/kill-me/emergency-disable", json={"reason": ""})
    assert response.status_code == 422


@pytest.mark.api
def test_resume_after_rollback(client):
    client.post(f"{BASE}/new-checkout/start", json={"stages": [{"percentage": 1}, {"percentage": 10}, {"percentage": 100}]})
    client.post(f"{BASE}/new-checkout/advance")
    client.post(f"{BASE}/new-checkout/rollback")

    result = client.post(f"{BASE}/new-checkout/resume").json()

    assert result["success"] is True
    assert result["data"]["state"] == "in_progress"


@pytest.mark.api
def test_list_rollouts_and_strategies(client):
    client.post(f"{BASE}/new-checkout/start", json={"preset": "ring"})

    listing = client.get(BASE).json()["data"]
    assert listing["total"] == 1
    assert listing["rollouts"][0]["flag_key"] == "new-checkout"

    strategies = client.get(f"{BASE}/strategies").json()["data"]["strategies"]
    assert "blue_green" in strategies
    assert strategies["canary"]["stages"][0]["percentage"] == 1
