########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Detection heuristics.

Each helper turns raw probe output into a yes/no decision (or a small
verdict object). None of them performs network I/O except
:func:`timing_probe`, which only calls the closures it is handed.
"""
from __future__ import annotations

import base64
import json
import re
import statistics
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

from bs4 import BeautifulSoup, Comment

from findings import CRITICAL, HIGH, LOW, MEDIUM

# ----------------------- pattern sets ----------------------------#
SQL_ERROR_PATTERNS: List[Pattern[str]] = [
    re.compile(p, re.I)
    for p in (
        r"SQL syntax",
        r"You have an error in your SQL syntax",
        r"Warning.*mysql_",
        r"\bmysql\b",
        r"PostgreSQL",
        r"syntax error at or near",
        r"pg_query",
        r"SQLSTATE",
        r"\bsqlite",
        r"ORA-\d+",
        r"Unclosed quotation mark",
        r"unterminated (?:quoted )?string",
        r"Incorrect syntax near",
        r"ODBC SQL Server Driver",
        r"DB2 SQL",
        r"PrismaClient(?:Known|Unknown)RequestError",
    )
]

STACK_TRACE_PATTERNS: List[Pattern[str]] = [
    re.compile(p, re.I)
    for p in (
        r"Traceback \(most recent call last\)",
        r"\bat [\w.$<>]+ \((?:/|[A-Z]:\\)[^)]+:\d+:\d+\)",
        r"(?:/home|/usr|/var|/app|/opt|C:\\Users)[/\\][\w./\\-]+\.(?:js|ts|py|php|java|rb)",
        r"node_modules",
        r"\bENOENT\b",
        r"\bECONNREFUSED\b",
        r"prisma",
        r"postgres(?:ql)?://",
        r"mongodb(?:\+srv)?://",
        r"Exception in thread",
        r"stack\s*trace",
    )
]

COMMAND_OUTPUT_PATTERNS: List[Pattern[str]] = [
    re.compile(p)
    for p in (
        r"root:[x*]?:0:0:",
        r"uid=\d+\(\w+\)",
        r"gid=\d+\(\w+\)",
        r"/bin/(?:ba)?sh",
        r"\[boot loader\]",
        r"for 16-bit app support",
    )
]

FILE_DISCLOSURE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"root:[x*]?:0:0:"),
    re.compile(r"\[boot loader\]", re.I),
    re.compile(r"for 16-bit app support", re.I),
]

SSRF_INDICATORS: List[Pattern[str]] = [
    re.compile(p, re.I)
    for p in (
        r"ami-id",
        r"instance-id",
        r"iam/security-credentials",
        r"computeMetadata",
        r"redis_version",
        r"root:[x*]?:0:0:",
        r"\[boot loader\]",
        r"postgres(?:ql)? .*(?:protocol|server)",
        r"MongoDB",
        r"SSH-\d\.\d",
    )
]

API_KEY_PATTERNS: Dict[str, Pattern[str]] = {
    "Google API key": re.compile(r"AIza[0-9A-Za-z\-_]{35}"),
    "AWS access key": re.compile(r"AKIA[0-9A-Z]{16}"),
    "Stripe secret key": re.compile(r"sk_live_[0-9a-zA-Z]{24,}"),
    "Stripe publishable key": re.compile(r"pk_live_[0-9a-zA-Z]{24,}"),
    "GitHub token": re.compile(r"ghp_[0-9a-zA-Z]{36}"),
    "Slack token": re.compile(r"xox[baprs]-[0-9a-zA-Z-]{10,}"),
    "Google OAuth token": re.compile(r"ya29\.[0-9A-Za-z\-_]+"),
    "JSON Web Token": re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"),
}

SENSITIVE_DATA_PATTERNS: Dict[str, Pattern[str]] = {
    "password field": re.compile(r"\"(?:password|motDePasse|passwordHash|pwd)\"\s*:\s*\"[^\"]+\"", re.I),
    "credit card number": re.compile(r"\b(?:4\d{3}|5[1-5]\d{2}|3[47]\d{2})[ -]?\d{4}[ -]?\d{4}[ -]?\d{3,4}\b"),
    "secret value": re.compile(r"\"(?:secret|client_secret|jwt_secret|private_key)\"\s*:\s*\"[^\"]+\"", re.I),
    "API key value": re.compile(r"\"(?:api[_-]?key|apikey)\"\s*:\s*\"[^\"]+\"", re.I),
}

DIRECTORY_LISTING_MARKERS: Tuple[str, ...] = (
    "Index of /",
    "Directory listing for",
    "<title>Index of",
    "Parent Directory",
    "[DIR]",
    "[TXT]",
)

GIT_MARKERS: Tuple[str, ...] = ("[core]", "ref: refs/", "repositoryformatversion")

SCRIPT_MARKERS: List[Pattern[str]] = [
    re.compile(r"<script[^>]*>", re.I),
    re.compile(r"\son(?:error|load|toggle)\s*=", re.I),
    re.compile(r"javascript:", re.I),
]


def match_patterns(text: str, patterns: Iterable[Pattern[str]]) -> Optional[str]:
    """Return the first matching fragment, or None."""
    if not text:
        return None
    for rx in patterns:
        m = rx.search(text)
        if m:
            return m.group(0)
    return None


# ----------------------- timing oracle ----------------------------#
TIMING_THRESHOLD = 4.5


def timing_positive(baseline_samples: Sequence[float], payload_elapsed: float, threshold: float = TIMING_THRESHOLD) -> bool:
    """True when the payload request ran ``threshold`` seconds longer than the median baseline."""
    samples = [float(s) for s in baseline_samples if s is not None]
    if not samples or payload_elapsed is None:
        return False
    return float(payload_elapsed) - statistics.median(samples) > threshold


@dataclass
class TimingVerdict:
    positive: bool
    baseline: float
    payload_elapsed: float

    @property
    def delta(self) -> float:
        return self.payload_elapsed - self.baseline


def timing_probe(send_baseline: Callable[[], Any], send_payload: Callable[[], Any], threshold: float = TIMING_THRESHOLD) -> TimingVerdict:
    """Baseline, payload, then a second baseline right after.

    A slow payload response only counts when it is also slow against the
    trailing baseline, so a single network hiccup does not flag.
    """
    before = send_baseline()
    if not getattr(before, "ok", False):
        return TimingVerdict(False, 0.0, 0.0)
    loaded = send_payload()
    elapsed = float(getattr(loaded, "elapsed", 0.0) or 0.0)
    if getattr(loaded, "kind", "") not in ("ok", "timeout"):
        return TimingVerdict(False, before.elapsed, elapsed)
    if not timing_positive([before.elapsed], elapsed, threshold):
        return TimingVerdict(False, before.elapsed, elapsed)
    after = send_baseline()
    samples = [before.elapsed] + ([after.elapsed] if getattr(after, "ok", False) else [])
    positive = timing_positive(samples, elapsed, threshold) and all(elapsed - s > threshold for s in samples)
    return TimingVerdict(positive, statistics.median(samples), elapsed)


# ----------------------- reflection / storage ----------------------------#
def is_reflected(payload: str, text: str) -> bool:
    return bool(payload) and bool(text) and payload in text


def has_script_marker(text: str) -> bool:
    return match_patterns(text, SCRIPT_MARKERS) is not None


def find_stored(payload: str, read_back_text: str) -> bool:
    """The literal payload came back unescaped from a later read."""
    return is_reflected(payload, read_back_text)


# ----------------------- JWT ----------------------------#
def b64url_decode(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64json(part: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(b64url_decode(part).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return value if isinstance(value, dict) else None


@dataclass
class DecodedJWT:
    header: Dict[str, Any]
    payload: Dict[str, Any]
    signature: str
    raw_header: str
    raw_payload: str


def looks_like_jwt(value: str) -> bool:
    return isinstance(value, str) and value.count(".") == 2 and value.startswith("eyJ")


def decode_jwt(token: str) -> Optional[DecodedJWT]:
    """Split and decode a JWT without verifying anything."""
    if not token or token.count(".") != 2:
        return None
    h, p, s = token.split(".")
    header = _b64json(h)
    payload = _b64json(p)
    if header is None or payload is None:
        return None
    return DecodedJWT(header=header, payload=payload, signature=s, raw_header=h, raw_payload=p)


def _encode_segment(obj: Dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def forge_none_alg(token: str) -> Optional[str]:
    """Same claims, ``alg: none`` header, empty signature segment."""
    parts = decode_jwt(token)
    if parts is None:
        return None
    return f"{_encode_segment({'alg': 'none', 'typ': 'JWT'})}.{parts.raw_payload}."


def forge_payload(token: str, claims: Mapping[str, Any]) -> Optional[str]:
    """Substitute claims and keep the original header and signature."""
    parts = decode_jwt(token)
    if parts is None:
        return None
    payload = dict(parts.payload)
    payload.update(claims)
    return f"{parts.raw_header}.{_encode_segment(payload)}.{parts.signature}"


def forge_expired(token: str, seconds_ago: int = 86400) -> Optional[str]:
    parts = decode_jwt(token)
    if parts is None:
        return None
    exp = int(parts.payload.get("iat") or parts.payload.get("exp") or 1_000_000_000) - seconds_ago
    return forge_payload(token, {"exp": max(exp, 1)})


SENSITIVE_CLAIMS = ("password", "passwordhash", "motdepasse", "secret", "hash", "creditcard", "ssn", "apikey")


def sensitive_claims(payload: Mapping[str, Any]) -> List[str]:
    return [k for k in payload if k.lower().replace("_", "") in SENSITIVE_CLAIMS]


# ----------------------- CORS ----------------------------#
@dataclass
class CorsVerdict:
    severity: str
    cvss: float
    title: str
    allow_origin: str
    allow_credentials: bool


def classify_cors(origin: str, headers: Mapping[str, str]) -> Optional[CorsVerdict]:
    """Wildcard is HIGH, bare reflection CRITICAL, reflection with credentials HIGH."""
    acao = (headers.get("Access-Control-Allow-Origin") or "").strip()
    creds = (headers.get("Access-Control-Allow-Credentials") or "").strip().lower() == "true"
    if not acao:
        return None
    if acao == "*":
        return CorsVerdict(HIGH, 7.5, "CORS Wildcard Origin Allowed", acao, creds)
    if acao == origin:
        if creds:
            return CorsVerdict(HIGH, 7.0, "CORS Origin Reflection With Credentials", acao, creds)
        return CorsVerdict(CRITICAL, 9.1, "CORS Arbitrary Origin Reflection", acao, creds)
    return None


# ----------------------- entropy ----------------------------#
_HEX = re.compile(r"^[0-9a-fA-F]+$")
_DIGITS = re.compile(r"\d+")


def _numeric(value: str) -> Optional[int]:
    if _HEX.match(value or ""):
        return int(value, 16)
    digits = _DIGITS.findall(value or "")
    if digits and sum(len(d) for d in digits) * 2 >= len(value):
        return int("".join(digits))
    return None


def session_ids_predictable(samples: Sequence[str], max_delta: int = 100, min_length: int = 32) -> Optional[str]:
    """Return a reason string when identifiers look guessable, else None."""
    values = [s for s in samples if s]
    if not values:
        return None
    short = [v for v in values if len(v) < min_length]
    if short:
        return f"identifier length {min(len(v) for v in short)} below {min_length} characters"
    if len(values) > 1 and len(set(values)) == 1:
        return "identical identifier issued for every request"
    numbers = [_numeric(v) for v in values]
    if len(values) > 1 and all(n is not None for n in numbers):
        deltas = [abs(b - a) for a, b in zip(numbers, numbers[1:])]
        if any(d < max_delta for d in deltas):
            return f"consecutive identifiers differ by {min(deltas)}"
    return None


# ----------------------- rate limit ----------------------------#
SPOOFABLE_IP_HEADERS: Tuple[str, ...] = (
    "X-Forwarded-For",
    "X-Real-IP",
    "X-Originating-IP",
    "X-Client-IP",
    "True-Client-IP",
    "X-Remote-IP",
    "X-Remote-Addr",
    "CF-Connecting-IP",
)


def spoofed_ip(i: int) -> str:
    return f"203.0.{(i // 254) % 254}.{i % 254 + 1}"


def rate_limit_bypassed(statuses: Sequence[int], threshold: float = 0.9) -> bool:
    """True when at least ``threshold`` of the attempts escaped a 429."""
    answered = [s for s in statuses if s]
    if not statuses or len(answered) < len(statuses) * threshold:
        return False
    not_limited = sum(1 for s in answered if s != 429)
    return not_limited >= len(statuses) * threshold


# ----------------------- enumeration ----------------------------#
def response_signature(result) -> str:
    return f"{getattr(result, 'status', 0)}:{getattr(result, 'text', '') or ''}"


def responses_differ(existing, missing) -> bool:
    if not (getattr(existing, "ok", False) and getattr(missing, "ok", False)):
        return False
    return response_signature(existing) != response_signature(missing)


# ----------------------- cookies ----------------------------#
SESSION_COOKIE_KEYWORDS = ("session", "token", "auth", "sid", "jwt", "access")


@dataclass
class CookieInfo:
    name: str
    value: str
    secure: bool = False
    httponly: bool = False
    samesite: Optional[str] = None
    max_age: Optional[int] = None
    expires: Optional[str] = None
    path: Optional[str] = None


def parse_set_cookie(header: str) -> Optional[CookieInfo]:
    if not header or "=" not in header.split(";", 1)[0]:
        return None
    first, *attrs = [p.strip() for p in header.split(";")]
    name, value = first.split("=", 1)
    info = CookieInfo(name=name.strip(), value=value.strip())
    for attr in attrs:
        key, _, val = attr.partition("=")
        key = key.strip().lower()
        if key == "secure":
            info.secure = True
        elif key == "httponly":
            info.httponly = True
        elif key == "samesite":
            info.samesite = val.strip() or None
        elif key == "max-age":
            try:
                info.max_age = int(val.strip())
            except ValueError:
                info.max_age = None
        elif key == "expires":
            info.expires = val.strip()
        elif key == "path":
            info.path = val.strip()
    return info


def is_session_cookie(name: str) -> bool:
    lowered = (name or "").lower()
    return any(k in lowered for k in SESSION_COOKIE_KEYWORDS)


def parse_cookies(set_cookie_headers: Iterable[str]) -> List[CookieInfo]:
    return [c for c in (parse_set_cookie(h) for h in set_cookie_headers or ()) if c is not None]


def session_cookie_pair(set_cookie_headers: Iterable[str]) -> Optional[str]:
    """``name=value`` of the first session-looking cookie, for replay in a Cookie header."""
    for cookie in parse_cookies(set_cookie_headers):
        if is_session_cookie(cookie.name):
            return f"{cookie.name}={cookie.value}"
    return None


# ----------------------- headers ----------------------------#
@dataclass(frozen=True)
class HeaderRule:
    header: str
    label: str
    severity: str
    cvss: float
    remediation: str


SECURITY_HEADER_RULES: Tuple[HeaderRule, ...] = (
    HeaderRule("Strict-Transport-Security", "HSTS", HIGH, 7.4,
               "Send Strict-Transport-Security: max-age=31536000; includeSubDomains"),
    HeaderRule("Content-Security-Policy", "Content-Security-Policy", HIGH, 7.1,
               "Define a restrictive Content-Security-Policy"),
    HeaderRule("X-Frame-Options", "X-Frame-Options", MEDIUM, 6.1,
               "Send X-Frame-Options: DENY or a frame-ancestors CSP directive"),
    HeaderRule("X-Content-Type-Options", "X-Content-Type-Options", MEDIUM, 5.3,
               "Send X-Content-Type-Options: nosniff"),
    HeaderRule("X-XSS-Protection", "X-XSS-Protection", LOW, 3.1,
               "Send X-XSS-Protection: 0 together with a CSP"),
    HeaderRule("Referrer-Policy", "Referrer-Policy", LOW, 3.1,
               "Send Referrer-Policy: strict-origin-when-cross-origin"),
    HeaderRule("Permissions-Policy", "Permissions-Policy", LOW, 3.1,
               "Send a Permissions-Policy restricting powerful features"),
)

INFO_LEAK_HEADERS: Tuple[str, ...] = ("X-Powered-By", "Server", "X-AspNet-Version", "X-AspNetMvc-Version")


def missing_security_headers(headers: Mapping[str, str]) -> List[HeaderRule]:
    return [rule for rule in SECURITY_HEADER_RULES if not headers.get(rule.header)]


def hsts_max_age(value: str) -> Optional[int]:
    m = re.search(r"max-age\s*=\s*\"?(\d+)", value or "", re.I)
    return int(m.group(1)) if m else None


def frame_protected(headers: Mapping[str, str]) -> bool:
    xfo = (headers.get("X-Frame-Options") or "").strip().upper()
    csp = headers.get("Content-Security-Policy") or ""
    return xfo in ("DENY", "SAMEORIGIN") or "frame-ancestors" in csp


# ----------------------- records ----------------------------#
def record_list(data: Any) -> Optional[list]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "items", "results", "rows", "users", "reclamations"):
            if isinstance(data.get(key), list):
                return data[key]
    return None


def owner_email(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return None
    for key in ("user", "citoyen", "owner", "author"):
        nested = record.get(key)
        if isinstance(nested, dict) and nested.get("email"):
            return nested["email"]
    return record.get("ownerEmail")


def owner_id(record: Any) -> Optional[Any]:
    if not isinstance(record, dict):
        return None
    for key in ("userId", "citoyenId", "ownerId"):
        if record.get(key) is not None:
            return record[key]
    nested = record.get("user")
    if isinstance(nested, dict):
        return nested.get("id")
    return None


def exposed_fields(data: Any, names: Iterable[str]) -> List[str]:
    """Field names from ``names`` present anywhere in a JSON document."""
    wanted = {n.lower() for n in names}
    found: List[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for k, v in node.items():
                if k.lower() in wanted and k not in found:
                    found.append(k)
                walk(v)
        elif isinstance(node, list):
            for item in node[:50]:
                walk(item)

    walk(data)
    return found


# ----------------------- HTML ----------------------------#
CSRF_FIELD = re.compile(r"csrf|xsrf|_token|authenticity_token|__requestverificationtoken", re.I)
SENSITIVE_FIELD_NAMES = ("password", "token", "secret", "api_key", "apikey", "motdepasse")

DOM_SOURCES = ("location.hash", "location.search", "document.URL", "document.referrer", "window.name", "location.href")
DOM_SINKS = ("innerHTML", "outerHTML", "document.write", "eval(", "setTimeout(", "insertAdjacentHTML", "dangerouslySetInnerHTML")


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def find_forms(html: str) -> List[Dict[str, Any]]:
    forms = []
    for form in _soup(html).find_all("form"):
        inputs = []
        for inp in form.find_all(["input", "textarea", "select"]):
            inputs.append({"name": inp.get("name") or "", "type": (inp.get("type") or "text").lower()})
        forms.append({
            "action": form.get("action") or "",
            "method": (form.get("method") or "get").lower(),
            "inputs": inputs,
        })
    return forms


def form_has_csrf_token(form: Mapping[str, Any]) -> bool:
    return any(CSRF_FIELD.search(i.get("name") or "") for i in form.get("inputs", []))


def page_has_csrf_token(html: str) -> bool:
    soup = _soup(html)
    for meta in soup.find_all("meta"):
        if CSRF_FIELD.search(meta.get("name") or ""):
            return True
    return any(form_has_csrf_token(f) for f in find_forms(html))


def sensitive_get_fields(html: str) -> List[Tuple[str, str]]:
    """(action, field) pairs where a secret travels in a GET form."""
    out = []
    for form in find_forms(html):
        if form["method"] != "get":
            continue
        for inp in form["inputs"]:
            if inp["type"] == "password" or inp["name"].lower() in SENSITIVE_FIELD_NAMES:
                out.append((form["action"], inp["name"] or inp["type"]))
    return out


def html_comments(html: str) -> List[str]:
    return [str(c).strip() for c in _soup(html).find_all(string=lambda s: isinstance(s, Comment))]


def find_dom_sinks(html: str) -> List[str]:
    """Sinks used by an inline script that also reads a URL-controlled source."""
    hits: List[str] = []
    for script in _soup(html).find_all("script"):
        code = script.string or ""
        if not any(src in code for src in DOM_SOURCES):
            continue
        for sink in DOM_SINKS:
            if sink in code and sink not in hits:
                hits.append(sink)
    return hits


def looks_like_directory_listing(text: str) -> bool:
    return any(marker in (text or "") for marker in DIRECTORY_LISTING_MARKERS)


def meta_generator(html: str) -> Optional[str]:
    tag = _soup(html).find("meta", attrs={"name": "generator"})
    return tag.get("content") if tag else None
