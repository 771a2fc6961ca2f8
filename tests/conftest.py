"""Shared fixtures: an in-process fake target behind a real ProbeClient."""
from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests
from requests.structures import CaseInsensitiveDict

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config import AuditConfig, Credential  # noqa: E402
from credentials import TokenCache  # noqa: E402
from heuristics import b64url_encode  # noqa: E402
from probe_client import ProbeClient  # noqa: E402

TARGET = "http://sut.test"


@dataclass
class FakeRequest:
    method: str
    path: str
    query: Dict[str, str]
    json: Any = None
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Reply:
    status: int = 200
    body: Any = ""
    headers: Dict[str, str] = field(default_factory=dict)

    def encoded(self) -> Tuple[bytes, Dict[str, str]]:
        headers = dict(self.headers)
        if isinstance(self.body, (dict, list)):
            headers.setdefault("Content-Type", "application/json")
            return json.dumps(self.body).encode("utf-8"), headers
        return str(self.body).encode("utf-8"), headers


Handler = Union[Reply, Callable[[FakeRequest], Reply]]


class FakeTarget:
    """Path router standing in for the system under test; unknown paths answer 404."""

    def __init__(self, default: Optional[Reply] = None) -> None:
        self.routes: Dict[Tuple[Optional[str], str], Handler] = {}
        self.default = default or Reply(404, "Not Found")
        self.requests: List[FakeRequest] = []

    def route(self, path: str, handler: Handler, method: Optional[str] = None) -> "FakeTarget":
        self.routes[(method.upper() if method else None, path)] = handler
        return self

    def hits(self, path: str, method: Optional[str] = None) -> List[FakeRequest]:
        return [r for r in self.requests if r.path == path and (method is None or r.method == method)]

    def dispatch(self, req: FakeRequest) -> Reply:
        self.requests.append(req)
        handler = self.routes.get((req.method, req.path)) or self.routes.get((None, req.path))
        if handler is None:
            return self.default
        return handler(req) if callable(handler) else handler


class FakeProbe(ProbeClient):
    """ProbeClient whose transport is a FakeTarget; raw sockets see a closed host."""

    def __init__(self, config: AuditConfig, target: FakeTarget) -> None:
        super().__init__(config)
        self.target = target

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        full_url = requests.Request(method, url, params=kwargs.get("params")).prepare().url
        parts = urlsplit(full_url)
        req = FakeRequest(
            method=method,
            path=parts.path or "/",
            query=dict(parse_qsl(parts.query, keep_blank_values=True)),
            json=kwargs.get("json"),
            data=kwargs.get("data"),
            headers=dict(kwargs.get("headers") or {}),
        )
        reply = self.target.dispatch(req)
        body, headers = reply.encoded()
        resp = requests.Response()
        resp.status_code = reply.status
        resp._content = body
        resp.headers = CaseInsensitiveDict(headers)
        resp.url = full_url
        resp.encoding = "utf-8"
        return resp

    def tcp_connect(self, host: str, port: int, timeout: float = 2.0) -> bool:
        return False

    def inspect_tls(self, host=None, port=None, timeout: float = 5.0):
        return None

    def supports_protocol(self, version: str, host=None, port=None, timeout: float = 5.0) -> bool:
        return False

    def open_partial(self, host: str, port: int, use_tls: bool = False, timeout: float = 5.0):
        raise ConnectionRefusedError(f"{host}:{port} refuses raw connections")


def make_jwt(claims: Dict[str, Any], alg: str = "HS256") -> str:
    header = b64url_encode(json.dumps({"alg": alg, "typ": "JWT"}).encode("utf-8"))
    payload = b64url_encode(json.dumps(claims).encode("utf-8"))
    return f"{header}.{payload}.c2lnbmF0dXJl"


def make_config(**overrides: Any) -> AuditConfig:
    values: Dict[str, Any] = dict(
        target=TARGET,
        rate_limit=0,
        attempt_delay=0,
        max_retries=0,
        timeout_ms=2000,
    )
    values.update(overrides)
    return AuditConfig(**values)


@pytest.fixture
def config() -> AuditConfig:
    return make_config()


@pytest.fixture
def citizen_config() -> AuditConfig:
    return make_config(credentials={"citoyen": Credential("citoyen@test.local", "Passw0rd!")})


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def probe(config, target) -> FakeProbe:
    client = FakeProbe(config, target)
    yield client
    client.close()


@pytest.fixture
def tokens(config, probe) -> TokenCache:
    return TokenCache(config, probe)
