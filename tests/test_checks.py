import html
from unittest.mock import MagicMock

from auth_audit import check_brute_force, check_jwt_none_algorithm, check_jwt_tampering
from config import Scope
from conftest import FakeProbe, Reply, make_config, make_jwt
from credentials import TokenCache
from exposure_audit import check_git_exposure, check_sensitive_files
from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM
from heuristics import decode_jwt
from injection_audit import check_sql_injection, check_stored_xss
from misconfiguration_audit import check_cors, check_default_credentials, check_security_headers
from resource_consumption_audit import check_denial_of_service
from session_audit import check_session_cookies
from web_attack_audit import check_auth_failures, check_injection

LOGIN = "/api/auth/signin"
ME = "/api/users/me"

SECURE_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=()",
}


def _citizen(citizen_config, target):
    target.route(LOGIN, Reply(200, {"token": make_jwt({"sub": "1", "role": "CITOYEN"})}), method="POST")
    probe = FakeProbe(citizen_config, target)
    return probe, TokenCache(citizen_config, probe)


# ----------------------- JWT ----------------------------#
def test_jwt_none_rejected(citizen_config, target):
    target.route(ME, Reply(401, {"error": "invalid token"}))
    probe, tokens = _citizen(citizen_config, target)
    assert check_jwt_none_algorithm(citizen_config, probe, tokens) == []


def test_jwt_none_accepted(citizen_config, target):
    target.route(ME, Reply(200, {"id": 1, "email": "citoyen@test.local"}))
    probe, tokens = _citizen(citizen_config, target)
    findings = check_jwt_none_algorithm(citizen_config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == CRITICAL
    assert findings[0].cwe == "CWE-347"
    sent = target.hits(ME)[0].headers["Authorization"]
    assert sent.startswith("Bearer ") and sent.endswith(".")


def test_jwt_none_without_token_sends_nothing(config, probe, tokens, target):
    assert check_jwt_none_algorithm(config, probe, tokens) == []
    assert target.requests == []


def _me_accepting_admin_claim(status):
    def me(req):
        token = req.headers["Authorization"].split(" ", 1)[1]
        if decode_jwt(token).payload.get("role") == "ADMIN":
            return Reply(status, "")
        return Reply(401, {"error": "invalid signature"})
    return me


def test_jwt_tampered_payload_accepted_without_body(citizen_config, target):
    target.route(ME, _me_accepting_admin_claim(204))
    probe, tokens = _citizen(citizen_config, target)
    findings = check_jwt_tampering(citizen_config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == CRITICAL
    assert findings[0].cwe == "CWE-347"
    sent = target.hits(ME)[0].headers["Authorization"].split(" ", 1)[1]
    assert sent.split(".")[2] == "c2lnbmF0dXJl"
    assert decode_jwt(sent).payload["email"] == "hacker@evil.com"


def test_jwt_tampered_payload_rejected(citizen_config, target):
    target.route(ME, Reply(401, {"error": "invalid signature"}))
    probe, tokens = _citizen(citizen_config, target)
    assert check_jwt_tampering(citizen_config, probe, tokens) == []


# ----------------------- brute force ----------------------------#
def test_brute_force_unthrottled(config, probe, tokens, target):
    target.route(LOGIN, Reply(401, {"error": "invalid credentials"}))
    findings = check_brute_force(config, probe, tokens)
    assert [f.category for f in findings] == ["Brute Force"]
    assert findings[0].severity == HIGH


def test_brute_force_throttled(config, probe, tokens, target):
    calls = {"n": 0}

    def login(req):
        calls["n"] += 1
        return Reply(429, "Too Many Requests") if calls["n"] > 5 else Reply(401, "invalid")

    target.route(LOGIN, login)
    assert check_brute_force(config, probe, tokens) == []
    assert calls["n"] == 6


# ----------------------- injection ----------------------------#
def test_sql_error_reported_once_per_point(config, probe, tokens, target):
    def search(req):
        if "'" in req.query.get("search", ""):
            return Reply(500, "Error: You have an error in your SQL syntax near '''")
        return Reply(200, [])

    target.route("/api/etablissements", search)
    findings = check_sql_injection(config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == CRITICAL
    assert findings[0].cwe == "CWE-89"
    assert findings[0].parameter == "search"


def _complaints(target, render):
    stored = {}

    def create(req):
        stored["titre"] = req.json["titre"]
        return Reply(201, {"id": 7})

    target.route("/api/reclamations", create, method="POST")
    target.route("/api/reclamations/7", lambda req: Reply(200, f"<h1>{render(stored.get('titre', ''))}</h1>", {"Content-Type": "text/html"}))


def test_stored_xss_found_on_read_back(citizen_config, target):
    _complaints(target, lambda title: title)
    probe, tokens = _citizen(citizen_config, target)
    findings = check_stored_xss(citizen_config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == HIGH
    assert findings[0].cwe == "CWE-79"
    assert findings[0].endpoint == "/reclamations/7"


def test_stored_payload_encoded_on_read_back(citizen_config, target):
    _complaints(target, html.escape)
    probe, tokens = _citizen(citizen_config, target)
    assert check_stored_xss(citizen_config, probe, tokens) == []
    assert target.hits("/api/reclamations/7")


# ----------------------- misconfiguration ----------------------------#
def test_all_security_headers_present(config, probe, tokens, target):
    target.route("/", Reply(200, "<html></html>", SECURE_HEADERS))
    assert check_security_headers(config, probe, tokens) == []


def test_missing_headers_and_leaks(config, probe, tokens, target):
    headers = dict(SECURE_HEADERS)
    del headers["Strict-Transport-Security"]
    headers["X-Powered-By"] = "Next.js"
    target.route("/", Reply(200, "<html></html>", headers))
    findings = check_security_headers(config, probe, tokens)
    titles = {f.title: f for f in findings}
    assert titles["Missing Security Header: HSTS"].severity == HIGH
    assert titles["Information Disclosure Header: X-Powered-By"].severity == LOW
    assert len(findings) == 2


def test_cors_reflection(config, probe, tokens, target):
    target.route("/api", lambda req: Reply(200, "{}", {"Access-Control-Allow-Origin": req.headers.get("Origin", "")}))
    findings = check_cors(config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == CRITICAL
    assert findings[0].cwe == "CWE-942"


def test_cors_allow_list(config, probe, tokens, target):
    target.route("/api", Reply(200, "{}", {"Access-Control-Allow-Origin": "http://sut.test"}))
    assert check_cors(config, probe, tokens) == []


def test_default_credentials_stop_on_missing_login(config, probe, tokens, target):
    assert check_default_credentials(config, probe, tokens) == []
    assert len(target.hits(LOGIN)) == 1


# ----------------------- session ----------------------------#
def test_weak_session_cookie(config, probe, tokens, target):
    target.route("/", Reply(200, "<html></html>", {"Set-Cookie": "sessionid=abc; Path=/"}))
    findings = check_session_cookies(config, probe, tokens)
    cwes = {f.cwe for f in findings}
    assert {"CWE-1004", "CWE-1275", "CWE-330"} <= cwes
    assert all(f.severity == MEDIUM for f in findings)


def test_hardened_session_cookie(config, probe, tokens, target):
    value = "a" * 64
    target.route("/", Reply(200, "<html></html>", {"Set-Cookie": f"sessionid={value}; HttpOnly; Secure; SameSite=Strict"}))
    assert check_session_cookies(config, probe, tokens) == []


# ----------------------- exposure ----------------------------#
def test_catch_all_html_is_not_a_leaked_file(config, probe, tokens):
    probe.target.default = Reply(200, "<!DOCTYPE html><html><body>app</body></html>")
    assert check_sensitive_files(config, probe, tokens) == []


def test_exposed_git_config(config, probe, tokens, target):
    target.route("/.git/config", Reply(200, "[core]\n\trepositoryformatversion = 0\n"))
    findings = check_git_exposure(config, probe, tokens)
    assert findings
    assert findings[0].severity == CRITICAL


# ----------------------- denial of service ----------------------------#
def test_dos_disabled_sends_no_traffic():
    config = make_config()
    probe = MagicMock()
    credentials = MagicMock()
    findings = check_denial_of_service(config, probe, credentials)
    assert len(findings) == 1
    assert findings[0].title == "DoS Tests Skipped"
    assert findings[0].severity == INFO
    assert probe.method_calls == []
    assert credentials.method_calls == []


# ----------------------- web attack sweep ----------------------------#
def _sql_error_search(req):
    if "'" in req.query.get("search", ""):
        return Reply(500, "Error: You have an error in your SQL syntax near '''")
    return Reply(200, [])


def test_sweep_leaves_injection_to_its_phase(config, probe, tokens, target):
    target.route("/api/etablissements", _sql_error_search)
    assert check_injection(config, probe, tokens) == []
    assert target.requests == []


def test_sweep_runs_injection_checks_when_phase_is_off(target):
    config = make_config(scope=Scope(test_injections=False))
    target.route("/api/etablissements", _sql_error_search)
    probe = FakeProbe(config, target)
    findings = [f for f in check_injection(config, probe, TokenCache(config, probe)) if f.category == "SQL Injection"]
    assert [(f.endpoint, f.parameter) for f in findings] == [("/etablissements", "search")]


def test_sweep_leaves_auth_failures_to_their_phase(citizen_config, target):
    target.route(ME, _me_accepting_admin_claim(200))
    probe, tokens = _citizen(citizen_config, target)
    assert check_auth_failures(citizen_config, probe, tokens) == []
    assert target.hits(ME) == []
