from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from jobflow.api import auth
from jobflow.api.main import app
from jobflow.scheduler.job_executor import set_job_executor

API_KEY = {"X-API-Key": "test-key"}


@pytest.fixture
def client(monkeypatch, executor):
    monkeypatch.setattr(auth, "INTERNAL_API_KEY", "test-key")
    monkeypatch.setattr(auth, "JWT_SECRET", "jwt-secret")
    set_job_executor(executor)
    with TestClient(app) as client:
        yield client


def bearer(sub="user-1", expires_in=timedelta(minutes=5)):
    claims = {"sub": sub, "exp": datetime.now(timezone.utc) + expires_in}
    return {"Authorization": f"Bearer {jwt.encode(claims, 'jwt-secret', algorithm='HS256')}"}


class TestAuth:
    def test_requires_credentials(self, client):
        assert client.get("/v1/scheduled-jobs").status_code == 401

    def test_rejects_wrong_key(self, client):
        assert client.get("/v1/scheduled-jobs", headers={"X-API-Key": "nope"}).status_code == 401

    def test_accepts_jwt_and_stamps_subject(self, client):
        response = client.post(
            "/v1/scheduled-jobs",
            json={"type": "one_time", "job_type": "internal_function", "function_name": "noop"},
            headers=bearer("user-7"),
        )
        assert response.status_code == 201
        detail = client.get(f"/v1/scheduled-jobs/{response.json()['id']}", headers=API_KEY).json()
        assert detail["created_by"] == "user-7"

    def test_rejects_expired_jwt(self, client):
        response = client.get("/v1/scheduled-jobs", headers=bearer(expires_in=timedelta(minutes=-5)))
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_health_is_public(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["database"] == "ok"


class TestScheduledJobs:
    def test_schedule_and_inspect(self, client, webhook):
        response = client.post(
            "/v1/scheduled-jobs",
            json={
                "type": "one_time",
                "job_type": "webhook",
                "url": "https://hooks.test/run",
                "method": "POST",
                "body": {"hello": "world"},
                "scheduled_time": "2024-01-01T00:00:00Z",
            },
            headers=API_KEY,
        )
        assert response.status_code == 201
        job_id = response.json()["id"]

        processed = client.post("/v1/process-jobs", headers=API_KEY).json()
        assert processed["processed"] == 1
        assert processed["results"][0]["status"] == "completed"
        assert len(webhook.requests) == 1

        detail = client.get(f"/v1/scheduled-jobs/{job_id}", params={"history": "true"}, headers=API_KEY).json()
        assert detail["status"] == "completed"
        assert detail["stats"] == {"total_runs": 1, "total_failures": 0}
        assert detail["latest_execution"]["output_data"] == {"ok": True}
        assert len(detail["history"]) == 1

        listed = client.get("/v1/scheduled-jobs", params={"status": "completed"}, headers=API_KEY).json()
        assert [j["id"] for j in listed] == [job_id]

    def test_validation_errors_are_400(self, client):
        response = client.post(
            "/v1/scheduled-jobs",
            json={"type": "recurring", "job_type": "webhook", "url": "https://hooks.test"},
            headers=API_KEY,
        )
        assert response.status_code == 400
        assert "recurrence_rule" in response.json()["detail"]

    def test_unknown_job_is_404(self, client):
        assert client.get("/v1/scheduled-jobs/job-missing", headers=API_KEY).status_code == 404

    def test_process_jobs_accepts_get(self, client):
        assert client.get("/v1/process-jobs", headers=API_KEY).json() == {"processed": 0, "results": []}


class TestWorkflows:
    STEPS = [
        {"type": "internal_function", "config": {"function_name": "echo", "params": {"hi": "{{name}}"},
                                                 "set_vars": {"greeted": "{{this.hi}}"}}},
        {"type": "internal_function", "config": {"function_name": "schedule_resume",
                                                 "params": {"delay": "1d"}}},
        {"type": "internal_function", "config": {"function_name": "noop"}},
    ]

    def create(self, client):
        response = client.post("/v1/workflows", json={"name": "greeting", "steps": self.STEPS}, headers=API_KEY)
        assert response.status_code == 201
        return response.json()

    def test_create_and_list(self, client):
        workflow = self.create(client)
        assert [s["step_number"] for s in workflow["steps"]] == [1, 2, 3]

        listed = client.get("/v1/workflows", headers=API_KEY).json()
        assert listed[0]["id"] == workflow["id"]
        assert listed[0]["step_count"] == 3

        fetched = client.get(f"/v1/workflows/{workflow['id']}", headers=API_KEY).json()
        assert fetched["steps"][0]["config"]["function_name"] == "echo"

    def test_start_runs_until_delay(self, client):
        workflow = self.create(client)

        response = client.post(
            f"/v1/workflows/{workflow['id']}/start",
            json={"init_data": {"name": "Ada"}},
            headers=API_KEY,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "delayed"
        assert body["advance_result"]["next_step"] == 3

        execution = client.get(f"/v1/workflow-executions/{body['execution_id']}", headers=API_KEY).json()
        assert execution["variables"] == {"name": "Ada", "greeted": "Ada"}
        assert [s["step_number"] for s in execution["steps"]] == [1, 2]
        assert [j["job_type"] for j in execution["scheduled_jobs"]] == ["workflow_resume"]

        advanced = client.post(
            f"/v1/workflow-executions/{body['execution_id']}/advance", headers=API_KEY,
        ).json()
        assert advanced["status"] == "completed"

    def test_bad_definition_is_400(self, client):
        response = client.post(
            "/v1/workflows",
            json={"name": "bad", "steps": [{"type": "email", "config": {}}]},
            headers=API_KEY,
        )
        assert response.status_code == 400

    def test_missing_resources_are_404(self, client):
        assert client.post("/v1/workflows/wf-missing/start", json={}, headers=API_KEY).status_code == 404
        assert client.get("/v1/workflows/wf-missing", headers=API_KEY).status_code == 404
        assert client.get("/v1/workflow-executions/exec-missing", headers=API_KEY).status_code == 404
        assert client.post("/v1/workflow-executions/exec-missing/advance", headers=API_KEY).status_code == 404


class TestTemplates:
    def test_render(self, client):
        response = client.post(
            "/v1/templates/render",
            json={
                "text": "Hi {{contact.first_name|capitalize}}, {{contact.phone}}",
                "records": {"contact": {"first_name": "ada"}},
            },
            headers=API_KEY,
        )
        assert response.json() == {
            "status": "partial_success",
            "text": "Hi Ada, {{contact.phone}}",
            "unresolved": ["{{contact.phone}}"],
        }
