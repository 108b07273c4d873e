import json

import httpx
import pytest

from jobflow.errors import TransportError
from jobflow.scheduler.http_client import BearerTokenAuth, OutboundClient


def client_for(handler, **kwargs):
    return OutboundClient(transport=httpx.MockTransport(handler), **kwargs)


class TestOutboundClient:
    def test_json_body_and_response(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = request.content
            seen["headers"] = request.headers
            return httpx.Response(200, json={"received": True})

        with client_for(handler) as client:
            result = client.request("post", "https://api.test/hook", headers={"X-Trace": "t1"}, body={"a": 1})

        assert result == {"received": True}
        assert seen["method"] == "POST"
        assert json.loads(seen["body"]) == {"a": 1}
        assert seen["headers"]["X-Trace"] == "t1"

    def test_text_response(self):
        client = client_for(lambda request: httpx.Response(200, text="pong"))
        assert client.request("GET", "https://api.test/ping") == "pong"

    def test_empty_response(self):
        client = client_for(lambda request: httpx.Response(204))
        assert client.request("DELETE", "https://api.test/thing") is None

    def test_non_2xx_raises(self):
        client = client_for(lambda request: httpx.Response(404, json={"error": "gone"}))

        with pytest.raises(TransportError) as excinfo:
            client.request("GET", "https://api.test/missing")

        assert str(excinfo.value) == "Request failed with status code 404"
        assert excinfo.value.status_code == 404
        assert excinfo.value.body == {"error": "gone"}
        assert excinfo.value.kind == "transport"

    def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError, match="failed"):
            client_for(handler).request("GET", "https://api.test/down")

    def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError, match="timed out"):
            client_for(handler, timeout=0.1).request("GET", "https://api.test/slow")

    def test_malformed_url_raises(self):
        stub_calls = []
        client = client_for(lambda request: stub_calls.append(request) or httpx.Response(200))

        with pytest.raises(TransportError, match="Invalid request"):
            client.request("GET", "http://[::1")

        assert stub_calls == []

    def test_non_string_header_values_are_sent_as_text(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(204)

        client_for(handler).request(
            "GET", "https://api.test/count", headers={"X-Count": 5, "X-Flag": True, "X-Empty": None},
        )

        assert seen["headers"]["X-Count"] == "5"
        assert seen["headers"]["X-Flag"] == "true"
        assert seen["headers"]["X-Empty"] == ""


class TestBearerTokenAuth:
    def test_token_is_cached(self):
        issued = []

        def fetch():
            issued.append(1)
            return f"tok-{len(issued)}", 3600

        auth = BearerTokenAuth(fetch)
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={})

        client = client_for(handler, auth=auth)
        client.request("GET", "https://api.test/a")
        client.request("GET", "https://api.test/b")

        assert seen == ["Bearer tok-1", "Bearer tok-1"]
        assert len(issued) == 1

    def test_refreshes_once_on_401(self):
        tokens = iter(["stale", "fresh"])
        auth = BearerTokenAuth(lambda: (next(tokens), None))
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer stale":
                return httpx.Response(401)
            return httpx.Response(200, json={"ok": True})

        result = client_for(handler, auth=auth).request("GET", "https://api.test/secure")

        assert result == {"ok": True}
        assert seen == ["Bearer stale", "Bearer fresh"]

    def test_refreshes_when_about_to_expire(self):
        tokens = iter(["first", "second"])
        auth = BearerTokenAuth(lambda: (next(tokens), 10), refresh_margin=30)

        assert auth.get_token() == "first"
        assert auth.get_token() == "second"

    def test_invalidate(self):
        tokens = iter(["first", "second"])
        auth = BearerTokenAuth(lambda: (next(tokens), None))
        auth.get_token()
        auth.invalidate()
        assert auth.get_token() == "second"
