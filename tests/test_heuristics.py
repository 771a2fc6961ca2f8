from types import SimpleNamespace

import pytest

from conftest import make_jwt
from findings import CRITICAL, HIGH
from heuristics import (
    SQL_ERROR_PATTERNS,
    classify_cors,
    decode_jwt,
    find_forms,
    form_has_csrf_token,
    forge_none_alg,
    looks_like_directory_listing,
    match_patterns,
    missing_security_headers,
    parse_set_cookie,
    rate_limit_bypassed,
    responses_differ,
    timing_positive,
    timing_probe,
)


def _result(elapsed, kind="ok", status=200, text=""):
    return SimpleNamespace(ok=kind == "ok", kind=kind, elapsed=elapsed, status=status, text=text)


def test_timing_threshold():
    assert timing_positive([0.2, 0.3, 0.25], 5.0)
    assert not timing_positive([0.2, 0.3, 0.25], 4.7)
    assert not timing_positive([], 10.0)


def test_timing_probe_needs_trailing_baseline_to_agree():
    baselines = iter([_result(0.1), _result(0.2)])
    verdict = timing_probe(lambda: next(baselines), lambda: _result(5.5))
    assert verdict.positive
    assert verdict.delta > 4.5

    baselines = iter([_result(0.1), _result(3.0)])
    verdict = timing_probe(lambda: next(baselines), lambda: _result(5.5))
    assert not verdict.positive


def test_timing_probe_fast_payload():
    verdict = timing_probe(lambda: _result(0.1), lambda: _result(0.3))
    assert not verdict.positive


def test_sql_error_signatures():
    assert match_patterns("You have an error in your SQL syntax near ''", SQL_ERROR_PATTERNS)
    assert match_patterns("Welcome to the city portal", SQL_ERROR_PATTERNS) is None


def test_jwt_none_forgery_keeps_claims():
    token = make_jwt({"sub": "7", "role": "CITOYEN"})
    forged = forge_none_alg(token)
    decoded = decode_jwt(forged)
    assert decoded.header["alg"] == "none"
    assert decoded.payload == {"sub": "7", "role": "CITOYEN"}
    assert forged.endswith(".")
    assert forge_none_alg("not-a-jwt") is None


@pytest.mark.parametrize(
    "origin, headers, severity",
    [
        ("https://evil.com", {"Access-Control-Allow-Origin": "*"}, HIGH),
        ("https://evil.com", {"Access-Control-Allow-Origin": "https://evil.com"}, CRITICAL),
        ("https://evil.com", {"Access-Control-Allow-Origin": "https://evil.com", "Access-Control-Allow-Credentials": "true"}, HIGH),
    ],
)
def test_classify_cors(origin, headers, severity):
    assert classify_cors(origin, headers).severity == severity


def test_classify_cors_safe():
    assert classify_cors("https://evil.com", {}) is None
    assert classify_cors("https://evil.com", {"Access-Control-Allow-Origin": "https://app.example.org"}) is None


def test_parse_set_cookie_attributes():
    cookie = parse_set_cookie("sessionid=abc123; Path=/; HttpOnly; Secure; SameSite=Lax; Max-Age=3600")
    assert cookie.name == "sessionid"
    assert cookie.value == "abc123"
    assert cookie.httponly and cookie.secure
    assert cookie.samesite == "Lax"
    assert cookie.max_age == 3600
    assert parse_set_cookie("garbage") is None


def test_rate_limit_bypassed():
    assert rate_limit_bypassed([200] * 20)
    assert not rate_limit_bypassed([200] * 5 + [429] * 15)
    assert not rate_limit_bypassed([0] * 20)


def test_responses_differ():
    a = _result(0.1, status=401, text="Unknown user")
    b = _result(0.1, status=401, text="Wrong password")
    assert responses_differ(a, b)
    assert not responses_differ(a, _result(0.1, status=401, text="Unknown user"))
    assert not responses_differ(a, _result(0.1, kind="timeout"))


def test_missing_security_headers():
    labels = {rule.label for rule in missing_security_headers({"X-Frame-Options": "DENY"})}
    assert "HSTS" in labels
    assert "X-Frame-Options" not in labels


def test_forms_and_csrf_tokens():
    html = (
        '<form method="post" action="/a"><input name="title"></form>'
        '<form method="post" action="/b"><input type="hidden" name="csrf_token" value="x"></form>'
    )
    forms = find_forms(html)
    assert len(forms) == 2
    assert not form_has_csrf_token(forms[0])
    assert form_has_csrf_token(forms[1])


def test_directory_listing():
    assert looks_like_directory_listing("<title>Index of /uploads</title>")
    assert not looks_like_directory_listing("<html><body>Home</body></html>")
