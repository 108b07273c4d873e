from datetime import timedelta

import httpx

from conftest import WebhookStub
from jobflow.db import execute, parse_timestamp, utcnow
from jobflow.scheduler import job_store
from jobflow.scheduler.http_client import OutboundClient
from jobflow.scheduler.job_executor import JobExecutor
from jobflow.scheduler.job_runner import process_job, process_jobs
from jobflow.scheduler.scheduling import validate_schedule_request


def schedule(**request):
    request.setdefault("type", "one_time")
    return job_store.create_job(validate_schedule_request(request))


def soon():
    return utcnow() + timedelta(minutes=1)


class TestWebhookRetries:
    def test_two_failures_then_success(self, routines, script_runner):
        stub = WebhookStub(httpx.Response(500), httpx.Response(500), httpx.Response(200, json={"ok": True}))
        executor = JobExecutor(
            http_client=OutboundClient(transport=httpx.MockTransport(stub)),
            routines=routines,
            script_runner=script_runner,
        )
        job = schedule(job_type="webhook", url="https://hooks.test/ping", max_attempts=3, backoff_seconds=10)

        first = process_jobs(executor=executor, now=soon())
        assert first["processed"] == 1
        assert first["results"][0]["status"] == "retry_scheduled"
        stored = job_store.get_job(job["id"])
        assert stored["status"] == "pending"
        assert stored["attempts"] == 1
        wait = parse_timestamp(stored["scheduled_time"]) - utcnow()
        assert timedelta(seconds=8) < wait <= timedelta(seconds=10)

        second = process_jobs(executor=executor, now=soon())
        assert second["results"][0]["status"] == "retry_scheduled"
        assert job_store.get_job(job["id"])["attempts"] == 2

        third = process_jobs(executor=executor, now=soon())
        assert third["results"][0]["status"] == "completed"

        stored = job_store.get_job(job["id"])
        assert stored["status"] == "completed"
        assert stored["attempts"] == 3
        assert stored["execution_count"] == 1

        history = job_store.get_job_history(job["id"])
        assert [r["status"] for r in history] == ["failed", "failed", "success"]
        assert history[0]["error_message"] == "Request failed with status code 500"
        assert history[2]["output_data"] == {"ok": True}
        assert len(stub.requests) == 3


class TestTerminalTransitions:
    def test_one_time_job_fails_after_last_attempt(self, executor):
        job = schedule(job_type="internal_function", function_name="nope", max_attempts=1)

        result = process_jobs(executor=executor, now=soon())

        assert result["results"][0]["status"] == "failed"
        stored = job_store.get_job(job["id"])
        assert stored["status"] == "failed"
        assert stored["attempts"] == 1
        assert job_store.get_latest_result(job["id"])["error_message"] == "Unknown internal function: nope"

    def test_recurring_job_advances_after_exhausted_retries(self, executor):
        job = schedule(
            type="recurring",
            job_type="internal_function",
            function_name="nope",
            recurrence_rule="0 * * * *",
            scheduled_time="2024-01-01T10:00:00Z",
            max_attempts=1,
        )

        result = process_jobs(executor=executor, now=soon())

        outcome = result["results"][0]
        assert outcome["status"] == "advanced_after_failure"
        assert parse_timestamp(outcome["next_run"]) == parse_timestamp("2024-01-01T11:00:00Z")
        stored = job_store.get_job(job["id"])
        assert stored["status"] == "pending"
        assert stored["attempts"] == 0
        assert stored["execution_count"] == 1

    def test_recurring_success_advances(self, executor):
        job = schedule(
            type="recurring",
            job_type="internal_function",
            function_name="echo",
            params={"n": 1},
            recurrence_rule="*/15 * * * *",
            scheduled_time="2024-01-01T10:00:00Z",
        )

        outcome = process_jobs(executor=executor, now=soon())["results"][0]

        assert outcome["status"] == "advanced"
        assert parse_timestamp(job_store.get_job(job["id"])["scheduled_time"]) == parse_timestamp(
            "2024-01-01T10:15:00Z"
        )
        assert job_store.get_latest_result(job["id"])["output_data"] == {"n": 1}

    def test_custom_code_job_uses_script_runner(self, executor, script_runner):
        job = schedule(job_type="custom_code", code="input['x'] * 2", input={"x": 4})

        process_jobs(executor=executor, now=soon())

        assert script_runner.calls == [("input['x'] * 2", {"x": 4})]
        assert job_store.get_latest_result(job["id"])["output_data"] == {"from": "script"}


class TestPollCycle:
    def test_nothing_due_is_a_noop(self, executor):
        schedule(job_type="internal_function", function_name="noop", delay="1h")
        assert process_jobs(executor=executor) == {"processed": 0, "results": []}
        assert process_jobs(executor=executor) == {"processed": 0, "results": []}

    def test_completed_jobs_are_not_rerun(self, executor, webhook):
        schedule(job_type="webhook", url="https://hooks.test/once")
        process_jobs(executor=executor, now=soon())
        process_jobs(executor=executor, now=soon())
        assert len(webhook.requests) == 1

    def test_one_failing_job_does_not_affect_others(self, executor):
        bad = schedule(job_type="internal_function", function_name="nope", max_attempts=1)
        good = schedule(job_type="internal_function", function_name="echo", params={"ok": 1})

        result = process_jobs(executor=executor, now=soon())

        statuses = {r["id"]: r["status"] for r in result["results"]}
        assert statuses == {bad["id"]: "failed", good["id"]: "completed"}

    def test_stale_claims_are_recovered_before_claiming(self, executor):
        job = schedule(job_type="internal_function", function_name="noop")
        job_store.claim_batch(now=soon())
        execute(
            "UPDATE scheduled_jobs SET updated_at = %s WHERE id = %s",
            ((utcnow() - timedelta(hours=1)).isoformat(timespec="microseconds"), job["id"]),
        )

        result = process_jobs(executor=executor, now=soon())

        assert [r["id"] for r in result["results"]] == [job["id"]]
        assert job_store.get_job(job["id"])["status"] == "completed"

    def test_bookkeeping_failure_is_reported_not_raised(self, executor, monkeypatch):
        job = schedule(job_type="internal_function", function_name="noop")
        claimed = job_store.claim_batch(now=soon())

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(job_store, "complete_one_time", broken)
        outcome = process_job(claimed[0], executor)

        assert outcome == {"id": job["id"], "status": "bookkeeping_failed", "error": "disk full"}
        assert job_store.get_job(job["id"])["status"] == "running"
        assert job_store.get_job_history(job["id"]) == []
