########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""HTTP / TLS / raw-socket probing primitives shared by every check.

The HTTP side never raises for a status code or a network failure: every call
returns a :class:`ProbeResult` whose ``kind`` tells an answered request apart
from a timeout, a connection error or a request suppressed by the scope.
"""
from __future__ import annotations

import json
import logging
import random
import socket
import ssl
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

import requests
import urllib3
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

from config import AuditConfig

logger = logging.getLogger(__name__)

OK = "ok"
TIMEOUT = "timeout"
ERROR = "error"
SKIPPED = "skipped"

MAX_REDIRECTS = 5
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) secaudit/1.0"


def _headers_to_list(headerobj) -> List[Tuple[str, str]]:
    if headerobj is None:
        return []
    if hasattr(headerobj, "getlist"):
        out = []
        for k in headerobj:
            for v in headerobj.getlist(k):
                out.append((str(k), str(v)))
        return out
    return [(str(k), str(v)) for k, v in (headerobj.items() if hasattr(headerobj, "items") else [])]


def _set_cookie_headers(resp: requests.Response) -> List[str]:
    raw = getattr(resp, "raw", None)
    raw_headers = getattr(raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return [v for k, v in _headers_to_list(raw_headers) if k.lower() == "set-cookie"]
    value = resp.headers.get("Set-Cookie")
    if not value:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


# ----------------------- ProbeResult ----------------------------#
@dataclass
class ProbeResult:
    kind: str
    method: str
    url: str
    status: int = 0
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    text: str = ""
    elapsed: float = 0.0
    set_cookies: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True when the target answered, whatever the status code."""
        return self.kind == OK

    @property
    def success(self) -> bool:
        return self.kind == OK and 200 <= self.status < 300

    @property
    def lower_text(self) -> str:
        return (self.text or "").lower()

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name, default) or default

    def json(self, default: Any = None) -> Any:
        if not self.text:
            return default
        try:
            return json.loads(self.text)
        except ValueError:
            return default

    def snippet(self, limit: int = 300) -> str:
        return (self.text or "")[:limit]

    def has_data(self) -> bool:
        data = self.json()
        if isinstance(data, (list, dict)):
            return len(data) > 0
        return bool((self.text or "").strip())


# ----------------------- TLSInfo ----------------------------#
@dataclass
class TLSInfo:
    host: str
    port: int
    protocol: Optional[str] = None
    cipher: Optional[str] = None
    cipher_bits: Optional[int] = None
    cert: Dict[str, Any] = field(default_factory=dict)
    verify_error: Optional[str] = None
    verify_code: Optional[int] = None

    @property
    def not_after(self) -> Optional[str]:
        return self.cert.get("notAfter") if self.cert else None

    def subject_cn(self) -> Optional[str]:
        return _cn(self.cert.get("subject")) if self.cert else None

    def issuer_cn(self) -> Optional[str]:
        return _cn(self.cert.get("issuer")) if self.cert else None


def _cn(rdns) -> Optional[str]:
    for rdn in rdns or ():
        for key, value in rdn:
            if key == "commonName":
                return value
    return None


_TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


# ----------------------- ProbeClient ----------------------------#
class ProbeClient:
    """Thin, fail-soft wrapper around a ``requests.Session``."""

    def __init__(self, config: AuditConfig, session: Optional[requests.Session] = None) -> None:
        if config is None:
            raise ValueError("config is required")
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.session.max_redirects = MAX_REDIRECTS
        # cookies travel only in explicit Cookie headers, never in a shared jar
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        self.session.cookies.clear()
        self.session.verify = config.verify_tls
        if not config.verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        # connection failures only; status codes are the caller's business
        retry = Retry(
            total=config.max_retries,
            connect=config.max_retries,
            read=0,
            status=0,
            redirect=MAX_REDIRECTS,
            backoff_factor=0.3,
            allowed_methods=frozenset(["GET", "HEAD", "OPTIONS"]),
            raise_on_status=False,
            raise_on_redirect=False,
        )
        pool = max(10, config.threads * 4, config.dos_max_concurrent)
        adapter = HTTPAdapter(pool_connections=pool, pool_maxsize=pool, max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self._stats_lock = threading.Lock()
        self._throttle_lock = threading.Lock()
        self._next_slot = 0.0
        self.requests_sent = 0
        self.requests_failed = 0

    # ----------------------- bookkeeping ----------------------------#
    def _count(self, failed: bool) -> None:
        with self._stats_lock:
            self.requests_sent += 1
            if failed:
                self.requests_failed += 1

    def _throttle(self) -> None:
        if self.config.stealth:
            time.sleep(random.uniform(0.5, 2.0))
        if self.config.rate_limit <= 0:
            return
        interval = 1.0 / float(self.config.rate_limit)
        with self._throttle_lock:
            now = time.monotonic()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + interval
        if wait > 0:
            time.sleep(wait)

    def resolve(self, url_or_path: str, api: bool = False) -> str:
        if url_or_path.startswith(("http://", "https://")):
            return url_or_path
        return self.config.api_url(url_or_path) if api else self.config.url(url_or_path)

    # ----------------------- HTTP ----------------------------#
    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self.session.request(method, url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        timeout: Optional[float] = None,
        allow_redirects: bool = True,
        throttle: bool = True,
        api: bool = False,
    ) -> ProbeResult:
        method = method.upper()
        url = self.resolve(url, api=api)
        path = urlsplit(url).path or "/"
        if self.config.scope.is_excluded(path):
            logger.debug("Skipping out-of-scope %s %s", method, url)
            return ProbeResult(kind=SKIPPED, method=method, url=url, error="excluded by scope")

        if throttle:
            self._throttle()
        start = time.perf_counter()
        try:
            resp = self._send(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                data=data,
                timeout=timeout if timeout is not None else self.config.timeout,
                allow_redirects=allow_redirects,
            )
        except requests.Timeout as exc:
            self._count(failed=True)
            logger.debug("Timeout %s %s: %s", method, url, exc)
            return ProbeResult(kind=TIMEOUT, method=method, url=url, elapsed=time.perf_counter() - start, error=str(exc))
        except requests.RequestException as exc:
            self._count(failed=True)
            logger.debug("Connection error %s %s: %s", method, url, exc)
            return ProbeResult(kind=ERROR, method=method, url=url, elapsed=time.perf_counter() - start, error=str(exc))

        elapsed = time.perf_counter() - start
        self._count(failed=False)
        try:
            text = resp.text or ""
        except (UnicodeDecodeError, LookupError):
            text = (resp.content or b"").decode("utf-8", errors="replace")
        return ProbeResult(
            kind=OK,
            method=method,
            url=url,
            status=int(resp.status_code),
            headers=CaseInsensitiveDict(resp.headers or {}),
            text=text,
            elapsed=elapsed,
            set_cookies=_set_cookie_headers(resp),
        )

    def get(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("DELETE", url, **kwargs)

    def options(self, url: str, **kwargs: Any) -> ProbeResult:
        return self.request("OPTIONS", url, **kwargs)

    def send_field(
        self,
        method: str,
        path: str,
        field_name: str,
        value: Any,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        api: bool = True,
        **kwargs: Any,
    ) -> ProbeResult:
        """Put ``value`` in ``field_name``: query string for GET, JSON body otherwise."""
        if method.upper() in ("GET", "DELETE", "HEAD"):
            params = dict(extra or {})
            params[field_name] = value
            return self.request(method, path, params=params, headers=headers, api=api, **kwargs)
        body = dict(extra or {})
        body[field_name] = value
        return self.request(method, path, json=body, headers=headers, api=api, **kwargs)

    # ----------------------- raw sockets ----------------------------#
    def tcp_connect(self, host: str, port: int, timeout: float = 2.0) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    def inspect_tls(self, host: Optional[str] = None, port: Optional[int] = None, timeout: float = 5.0) -> Optional[TLSInfo]:
        """Connect, read certificate, cipher and protocol, close.

        A verifying handshake runs first so certificate problems surface as
        ``verify_error``; the unverified handshake then fills in the details.
        """
        host = host or self.config.host
        port = port or self.config.port
        info = TLSInfo(host=host, port=port)

        strict = ssl.create_default_context()
        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                with strict.wrap_socket(sock, server_hostname=host) as ssock:
                    info.cert = ssock.getpeercert() or {}
        except ssl.SSLCertVerificationError as exc:
            info.verify_error = getattr(exc, "verify_message", None) or str(exc)
            info.verify_code = getattr(exc, "verify_code", None)
        except (ssl.SSLError, OSError) as exc:
            logger.debug("Verified TLS handshake with %s:%s failed: %s", host, port, exc)

        loose = ssl.create_default_context()
        loose.check_hostname = False
        loose.verify_mode = ssl.CERT_NONE
        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                with loose.wrap_socket(sock, server_hostname=host) as ssock:
                    cipher = ssock.cipher()
                    if cipher:
                        info.cipher, _, info.cipher_bits = cipher[0], cipher[1], cipher[2]
                    info.protocol = ssock.version()
        except (ssl.SSLError, OSError) as exc:
            logger.debug("TLS inspection of %s:%s failed: %s", host, port, exc)
            return None
        return info

    def supports_protocol(self, version: str, host: Optional[str] = None, port: Optional[int] = None, timeout: float = 5.0) -> bool:
        host = host or self.config.host
        port = port or self.config.port
        tls_version = _TLS_VERSIONS.get(version)
        if tls_version is None:
            return False
        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            context.minimum_version = tls_version
            context.maximum_version = tls_version
            with socket.create_connection((host, port), timeout=timeout) as sock:
                with context.wrap_socket(sock, server_hostname=host):
                    return True
        except (ssl.SSLError, OSError, ValueError):
            return False

    def open_partial(self, host: str, port: int, use_tls: bool = False, timeout: float = 5.0) -> socket.socket:
        """Open a socket and send an unfinished request head."""
        sock = socket.create_connection((host, port), timeout=timeout)
        try:
            if use_tls:
                context = ssl.create_default_context()
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                sock = context.wrap_socket(sock, server_hostname=host)
            sock.sendall(f"GET / HTTP/1.1\r\nHost: {host}\r\n".encode("ascii"))
        except (ssl.SSLError, OSError):
            sock.close()
            raise
        return sock

    @contextmanager
    def hold_open(self, count: int, host: Optional[str] = None, port: Optional[int] = None) -> Iterator[List[socket.socket]]:
        """Keep ``count`` partial connections open for the ``with`` body."""
        host = host or self.config.host
        port = port or self.config.port
        use_tls = self.config.is_https
        held: List[socket.socket] = []
        workers = max(1, min(count, self.config.dos_max_concurrent))
        try:
            # every future settles before the pool exits, so no socket escapes ``held``
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(self.open_partial, host, port, use_tls) for _ in range(count)]
            for future in futures:
                exc = future.exception()
                if exc is None:
                    held.append(future.result())
                else:
                    logger.debug("Partial connection refused: %s", exc)
            yield held
        finally:
            for sock in held:
                try:
                    sock.close()
                except OSError:
                    pass
            logger.debug("Closed %d held connections", len(held))

    def close(self) -> None:
        self.session.close()
