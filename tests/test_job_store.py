import threading
from datetime import timedelta

import pytest

from jobflow.db import execute, parse_timestamp, transaction, utcnow
from jobflow.scheduler import job_store
from jobflow.scheduler.scheduling import validate_schedule_request


def make_job(**overrides):
    request = {
        "type": "one_time",
        "job_type": "internal_function",
        "function_name": "noop",
        "scheduled_time": (utcnow() - timedelta(minutes=1)).isoformat(),
    }
    request.update(overrides)
    return job_store.create_job(validate_schedule_request(request))


class TestCreateJob:
    def test_persists_descriptor(self):
        job = make_job(params={"a": 1}, name="nightly")
        stored = job_store.get_job(job["id"])
        assert stored["name"] == "nightly"
        assert stored["status"] == "pending"
        assert stored["attempts"] == 0
        assert stored["data"] == {"type": "internal_function", "function_name": "noop", "params": {"a": 1}}

    def test_idempotency_key_dedupes(self):
        run_at = utcnow() + timedelta(hours=1)
        first = job_store.create_resume_job("exec-1", 2, run_at)
        second = job_store.create_resume_job("exec-1", 2, run_at)
        assert first["id"] == second["id"]
        assert len(job_store.list_jobs_for_execution("exec-1")) == 1


class TestClaimBatch:
    def test_claims_only_due_pending_jobs_in_order(self):
        later = make_job(scheduled_time=(utcnow() - timedelta(minutes=1)).isoformat())
        earlier = make_job(scheduled_time=(utcnow() - timedelta(minutes=5)).isoformat())
        make_job(scheduled_time=(utcnow() + timedelta(hours=1)).isoformat())

        claimed = job_store.claim_batch(limit=10)

        assert [j["id"] for j in claimed] == [earlier["id"], later["id"]]
        assert all(j["status"] == "running" for j in claimed)
        assert job_store.get_job(earlier["id"])["status"] == "running"

    def test_respects_limit(self):
        for _ in range(4):
            make_job()
        assert len(job_store.claim_batch(limit=3)) == 3
        assert len(job_store.claim_batch(limit=3)) == 1
        assert job_store.claim_batch(limit=3) == []

    def test_parallel_claimers_never_share_a_row(self):
        created = {make_job()["id"] for _ in range(25)}
        claimed: list[str] = []
        lock = threading.Lock()

        def claimer():
            while True:
                batch = job_store.claim_batch(limit=4)
                if not batch:
                    return
                with lock:
                    claimed.extend(j["id"] for j in batch)

        threads = [threading.Thread(target=claimer) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == len(set(claimed))
        assert set(claimed) == created


class TestRecoverStuck:
    def test_stale_running_job_returns_to_pending_with_attempts_kept(self):
        job = make_job()
        job_store.claim_batch()
        execute("UPDATE scheduled_jobs SET attempts = 2 WHERE id = %s", (job["id"],))

        assert job_store.recover_stuck(now=utcnow() + timedelta(minutes=5)) == []
        assert job_store.get_job(job["id"])["status"] == "running"

        recovered = job_store.recover_stuck(now=utcnow() + timedelta(minutes=11))

        assert recovered == [job["id"]]
        stored = job_store.get_job(job["id"])
        assert stored["status"] == "pending"
        assert stored["attempts"] == 2


class TestTransitions:
    def test_record_attempt_appends(self):
        job = make_job()
        with transaction() as tx:
            job_store.record_attempt(tx, job["id"], 1, 1, False, error="boom", duration_ms=5)
        with transaction() as tx:
            job_store.record_attempt(tx, job["id"], 1, 2, True, output={"ok": True}, duration_ms=7)

        history = job_store.get_job_history(job["id"])
        assert [(r["attempt"], r["status"]) for r in history] == [(1, "failed"), (2, "success")]
        assert history[0]["error_message"] == "boom"
        assert history[1]["output_data"] == {"ok": True}
        assert job_store.get_job_stats(job["id"]) == {"total_runs": 2, "total_failures": 1}
        assert job_store.get_latest_result(job["id"])["attempt"] == 2

    def test_schedule_retry_backoff(self):
        job = make_job()
        now = utcnow()
        with transaction() as tx:
            retry_at = job_store.schedule_retry(tx, job["id"], 3, 10, now=now)
        assert retry_at == now + timedelta(seconds=40)
        stored = job_store.get_job(job["id"])
        assert stored["status"] == "pending"
        assert stored["attempts"] == 3
        assert parse_timestamp(stored["scheduled_time"]) == retry_at

    def test_advance_recurring_uses_previous_scheduled_time(self):
        job = make_job(
            type="recurring",
            recurrence_rule="0 * * * *",
            scheduled_time="2024-01-01T10:00:00Z",
        )
        execute("UPDATE scheduled_jobs SET attempts = 3 WHERE id = %s", (job["id"],))
        with transaction() as tx:
            job_store.advance_recurring(tx, job_store.get_job(job["id"]))

        stored = job_store.get_job(job["id"])
        assert parse_timestamp(stored["scheduled_time"]) == parse_timestamp("2024-01-01T11:00:00Z")
        assert stored["status"] == "pending"
        assert stored["attempts"] == 0
        assert stored["execution_count"] == 1

    def test_failed_bookkeeping_rolls_back(self):
        job = make_job()
        with pytest.raises(RuntimeError):
            with transaction() as tx:
                job_store.record_attempt(tx, job["id"], 1, 1, True, output={})
                job_store.complete_one_time(tx, job["id"], 1)
                raise RuntimeError("datastore went away")

        assert job_store.get_job_history(job["id"]) == []
        assert job_store.get_job(job["id"])["status"] == "pending"
