"""ProbeClient over a real requests.Session against a local HTTP server."""
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from business_logic_audit import check_unauthenticated_admin
from config import Credential
from conftest import make_config, make_jwt
from credentials import TokenCache
from probe_client import ProbeClient

SESSION_COOKIE = "next-auth.session-token=s3cr3t"


class PortalHandler(BaseHTTPRequestHandler):
    """Login sets a session cookie; the admin listing answers only to that cookie."""

    def _reply(self, status, body, headers=None):
        raw = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(raw)

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length") or 0))
        if self.path == "/api/auth/signin":
            token = make_jwt({"sub": "1", "role": "CITOYEN"})
            self._reply(200, {"token": token}, {"Set-Cookie": SESSION_COOKIE + "; Path=/; HttpOnly"})
        else:
            self._reply(404, {"error": "Not Found"})

    def do_GET(self):
        if self.path == "/api/admin/users":
            if SESSION_COOKIE in (self.headers.get("Cookie") or ""):
                self._reply(200, [{"id": 1, "email": "admin@portal.test", "role": "SUPER_ADMIN"}])
            else:
                self._reply(401, {"error": "Unauthorized"})
        else:
            self._reply(404, {"error": "Not Found"})

    def log_message(self, format, *args):
        pass


@pytest.fixture
def portal():
    server = ThreadingHTTPServer(("127.0.0.1", 0), PortalHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def live_probe(portal):
    config = make_config(target=portal, credentials={"citoyen": Credential("citoyen@test.local", "Passw0rd!")})
    session = requests.Session()
    session.trust_env = False
    client = ProbeClient(config, session=session)
    yield client
    client.close()


def test_login_cookie_does_not_leak_into_anonymous_checks(live_probe):
    config = live_probe.config
    tokens = TokenCache(config, live_probe)
    assert check_unauthenticated_admin(config, live_probe, tokens) == []

    assert tokens.get_token("citoyen")
    assert len(live_probe.session.cookies) == 0
    assert check_unauthenticated_admin(config, live_probe, tokens) == []


def test_login_response_still_exposes_set_cookie(live_probe):
    res = live_probe.post("/auth/signin", api=True, json={"email": "a@b.c", "password": "x"})
    assert res.success
    assert any(c.startswith("next-auth.session-token=") for c in res.set_cookies)


def test_explicit_cookie_header_is_sent(live_probe):
    res = live_probe.get("/api/admin/users", headers={"Cookie": SESSION_COOKIE})
    assert res.status == 200
    assert res.json()[0]["role"] == "SUPER_ADMIN"
