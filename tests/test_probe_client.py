import requests

from conftest import FakeProbe, Reply, make_config
from probe_client import ERROR, OK, SKIPPED, TIMEOUT


class FailingProbe(FakeProbe):
    def __init__(self, config, target, exc):
        super().__init__(config, target)
        self.exc = exc

    def _send(self, method, url, **kwargs):
        raise self.exc


def test_request_returns_result(probe, target):
    target.route("/api/users", Reply(200, [{"id": 1}], {"X-Test": "yes"}))
    res = probe.get("/users", api=True, params={"page": 2})
    assert res.kind == OK
    assert res.status == 200
    assert res.header("x-test") == "yes"
    assert res.json() == [{"id": 1}]
    assert res.has_data()
    assert target.requests[-1].query == {"page": "2"}
    assert probe.requests_sent == 1
    assert probe.requests_failed == 0


def test_http_error_status_is_not_an_exception(probe, target):
    target.route("/boom", Reply(500, "Internal Server Error"))
    res = probe.get("/boom")
    assert res.ok
    assert not res.success
    assert res.status == 500


def test_excluded_path_sends_nothing(probe, target):
    res = probe.get("/api/health")
    assert res.kind == SKIPPED
    assert target.requests == []
    assert probe.requests_sent == 0


def test_timeout_maps_to_timeout_kind(target):
    client = FailingProbe(make_config(), target, requests.Timeout("read timed out"))
    res = client.get("/slow")
    assert res.kind == TIMEOUT
    assert res.error
    assert client.requests_failed == 1


def test_connection_error_maps_to_error_kind(target):
    client = FailingProbe(make_config(), target, requests.ConnectionError("refused"))
    res = client.post("/x", json={})
    assert res.kind == ERROR
    assert not res.ok
    assert client.requests_sent == 1
    assert client.requests_failed == 1


def test_send_field_places_value(probe, target):
    target.route("/api/search", Reply(200, "ok"))
    probe.send_field("GET", "/search", "q", "abc")
    probe.send_field("POST", "/search", "q", "abc", extra={"page": 1})
    get_req, post_req = target.requests
    assert get_req.query == {"q": "abc"}
    assert post_req.json == {"page": 1, "q": "abc"}


def test_set_cookie_headers_collected(probe, target):
    target.route("/", Reply(200, "<html></html>", {"Set-Cookie": "session=abc; HttpOnly"}))
    res = probe.get("/")
    assert res.set_cookies == ["session=abc; HttpOnly"]
