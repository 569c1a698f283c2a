import pytest
from fastapi.testclient import TestClient

from weavr.app import app
from weavr.config import Settings
from weavr.runtime import reset_runtime_for_tests

WEBHOOK_WORKFLOW = """
name: on-push
trigger:
  type: http.webhook
  with:
    source: github
    path: github/push
steps:
  - id: note
    action: log
    with:
      message: "push to {{ trigger.body.ref }}"
"""

MANUAL_WORKFLOW = """
name: greet
env:
  GREETING: hello
steps:
  - id: greet
    action: transform
    with:
      value: "{{ env.GREETING }} {{ trigger.data.name }}"
  - id: shout
    action: log
    needs: [greet]
    with:
      message: "{{ steps.greet }}!"
"""


@pytest.fixture
def client(tmp_path):
    workflows = tmp_path / "workflows"
    workflows.mkdir()
    (workflows / "on-push.yaml").write_text(WEBHOOK_WORKFLOW, encoding="utf-8")
    (workflows / "greet.yaml").write_text(MANUAL_WORKFLOW, encoding="utf-8")
    reset_runtime_for_tests(Settings(home_dir=str(tmp_path)))
    with TestClient(app) as test_client:
        yield test_client


def test_healthz_reports_components(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["scheduler"]["schedules"] == 1
    assert body["checks"]["registry"]["actions"] > 10


def test_actions_listing(client):
    data = client.get("/actions").json()["data"]

    action_ids = {item["id"] for item in data["actions"]}
    trigger_modes = {item["id"]: item["mode"] for item in data["triggers"]}
    assert {"core.log", "http.request", "ai.agent"} <= action_ids
    assert trigger_modes["cron.schedule"] == "schedule"
    assert trigger_modes["http.webhook"] == "webhook"


def test_manual_run_with_wait_returns_finished_run(client):
    response = client.post("/workflows/greet/run", json={"data": {"name": "ada"}, "wait": True})

    assert response.status_code == 200
    run = response.json()["data"]
    assert run["status"] == "completed"
    assert run["steps"]["greet"]["output"] == "hello ada"
    assert run["steps"]["shout"]["output"] == {"message": "hello ada!"}
    assert run["trigger_data"]["type"] == "manual"

    fetched = client.get(f"/runs/{run['id']}").json()
    assert fetched["data"]["id"] == run["id"]
    listed = client.get("/runs", params={"workflow": "greet"}).json()["data"]["items"]
    assert [item["id"] for item in listed] == [run["id"]]


def test_manual_run_without_wait_returns_run_id(client):
    response = client.post("/workflows/greet/run")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["workflow"] == "greet"
    assert data["run_id"]


def test_unknown_workflow_is_404_envelope(client):
    response = client.post("/workflows/nope/run", json={})

    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert body["request_id"]


def test_unknown_run_is_404(client):
    response = client.get("/runs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"]["details"] == {"run_id": "does-not-exist"}


def test_runs_limit_validation_uses_envelope(client):
    response = client.get("/runs", params={"limit": 0})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_webhook_triggers_bound_workflow(client):
    response = client.post(
        "/webhooks/github",
        json={"ref": "main"},
        headers={"Authorization": "Bearer secret", "X-GitHub-Event": "push"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["received"] is True
    assert data["triggered"] is True
    assert data["workflows"] == ["on-push"]
    assert len(data["run_ids"]) == 1


def test_webhook_without_binding_is_still_received(client):
    response = client.post("/webhooks/stripe", json={"id": "evt_1"})

    assert response.status_code == 200
    assert response.json()["data"] == {"received": True, "triggered": False, "run_ids": [], "workflows": []}


def test_pause_and_resume_schedule(client):
    paused = client.post("/schedules/on-push/pause").json()["data"]
    assert paused["status"] == "paused"

    result = client.post("/webhooks/github", json={}).json()["data"]
    assert result["triggered"] is False

    resumed = client.post("/schedules/on-push/resume").json()["data"]
    assert resumed["status"] == "active"
    assert client.get("/schedules").json()["data"]["items"][0]["name"] == "on-push"


def test_pause_unknown_schedule(client):
    response = client.post("/schedules/ghost/pause")

    assert response.status_code == 404
