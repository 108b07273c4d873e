import httpx
import pytest

from jobflow import db
from jobflow.routines.registry import RoutineRegistry
from jobflow.scheduler.http_client import OutboundClient
from jobflow.scheduler.job_executor import JobExecutor, set_job_executor


@pytest.fixture(autouse=True)
def sqlite_db(tmp_path, monkeypatch):
    """Point the datastore at a fresh SQLite file for every test."""
    monkeypatch.setattr(db, "DATABASE_URL", "")
    monkeypatch.setattr(db, "SQLITE_PATH", tmp_path / "jobflow-test.db")
    monkeypatch.setattr(db, "_initialized", False)
    db.init_db()
    yield
    set_job_executor(None)


class FakeScriptRunner:
    """Returns canned results instead of spawning an interpreter."""

    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def run(self, code, input_value=None, *, timeout=None, label=""):
        self.calls.append((code, input_value))
        return self.result


class WebhookStub:
    """httpx handler that replays a queue of responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses) or [httpx.Response(200, json={"ok": True})]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def echo(params: dict) -> dict:
    return dict(params)


@pytest.fixture
def routines():
    registry = RoutineRegistry()
    registry.load()
    registry.register("echo", echo)
    return registry


@pytest.fixture
def webhook():
    return WebhookStub()


@pytest.fixture
def script_runner():
    return FakeScriptRunner(result={"from": "script"})


@pytest.fixture
def executor(routines, webhook, script_runner):
    client = OutboundClient(transport=httpx.MockTransport(webhook))
    return JobExecutor(http_client=client, routines=routines, script_runner=script_runner)
