import threading

from jobflow import worker
from jobflow.scheduler import job_store
from jobflow.scheduler.job_executor import set_job_executor
from jobflow.scheduler.scheduling import validate_schedule_request


def test_parse_args_defaults():
    args = worker.parse_args([])
    assert args.interval == worker.WORKER_POLL_INTERVAL
    assert args.once is False


def test_run_once_processes_due_jobs(executor):
    set_job_executor(executor)
    job = job_store.create_job(validate_schedule_request({
        "type": "one_time",
        "job_type": "internal_function",
        "function_name": "noop",
        "scheduled_time": "2024-01-01T00:00:00Z",
    }))

    total = worker.run_worker(interval=0.01, stop_event=threading.Event(), once=True)

    assert total == 1
    assert job_store.get_job(job["id"])["status"] == "completed"


def test_poll_failure_does_not_stop_the_loop(monkeypatch):
    calls = []
    stop = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        stop.set()
        return {"processed": 0, "results": []}

    monkeypatch.setattr(worker, "process_jobs", flaky)

    assert worker.run_worker(interval=0.01, stop_event=stop) == 0
    assert len(calls) == 2
