from api_audit import check_rate_limit_bypass
from business_logic_audit import check_rate_limiting, check_unauthenticated_admin
from conftest import FakeProbe, Reply
from crypto_audit import check_https_enforced, check_transport_headers
from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM
from heuristics import SPOOFABLE_IP_HEADERS
from recon_audit import check_open_ports, check_version_disclosure


class OpenPortsProbe(FakeProbe):
    def __init__(self, config, target, open_ports):
        super().__init__(config, target)
        self.open_ports = set(open_ports)

    def tcp_connect(self, host, port, timeout=2.0):
        return port in self.open_ports


def test_open_ports_classified(config, target, tokens):
    probe = OpenPortsProbe(config, target, {27017, 23, 8080})
    findings = {f.endpoint.split(":")[1]: f for f in check_open_ports(config, probe, tokens)}
    assert findings["27017"].severity == HIGH
    assert findings["23"].severity == MEDIUM
    assert findings["8080"].severity == INFO
    assert len(findings) == 3


def test_no_open_ports(config, probe, tokens):
    assert check_open_ports(config, probe, tokens) == []


def test_outdated_server_banner(config, probe, tokens, target):
    target.route("/", Reply(200, "home", {"Server": "nginx/1.18.0"}))
    findings = check_version_disclosure(config, probe, tokens)
    severities = sorted(f.severity for f in findings)
    assert severities == [LOW, MEDIUM]


def test_current_server_banner(config, probe, tokens, target):
    target.route("/", Reply(200, "home", {"Server": "nginx/1.25.3"}))
    findings = check_version_disclosure(config, probe, tokens)
    assert [f.severity for f in findings] == [LOW]


def test_plain_http_target_flagged(config, probe, tokens):
    findings = check_https_enforced(config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].severity == CRITICAL


def test_missing_hsts_not_reported_by_crypto_phase(config, probe, tokens, target):
    target.route("/", Reply(200, "home"))
    assert check_transport_headers(config, probe, tokens) == []


def test_weak_hsts_graded(config, probe, tokens, target):
    target.route("/", Reply(200, "home", {"Strict-Transport-Security": "max-age=600"}))
    titles = {f.title for f in check_transport_headers(config, probe, tokens)}
    assert titles == {"HSTS Missing includeSubDomains", "HSTS max-age Too Short"}


def test_unauthenticated_admin_listing(config, probe, tokens, target):
    target.route("/api/admin/users", Reply(200, [{"id": 1, "email": "a@b.c", "role": "SUPER_ADMIN"}]))
    target.route("/api/admin/settings", Reply(200, {"error": "Unauthorized"}))
    findings = check_unauthenticated_admin(config, probe, tokens)
    assert [f.endpoint for f in findings] == ["/api/admin/users"]
    assert findings[0].cwe == "CWE-306"


def test_missing_rate_limit_on_login(config, probe, tokens, target):
    target.route("/api/auth/signin", Reply(401, {"error": "invalid"}))
    findings = check_rate_limiting(config, probe, tokens)
    assert len(findings) == 1
    assert findings[0].category == "Missing Rate Limiting"
    assert findings[0].severity == HIGH
    assert len(target.hits("/api/auth/signin")) == 50


def test_throttled_listing_not_reported(config, probe, tokens, target):
    calls = {"n": 0}

    def listing(req):
        calls["n"] += 1
        return Reply(429, "slow down") if calls["n"] > 10 else Reply(200, [])

    target.route("/api/reclamations", listing)
    assert check_rate_limiting(config, probe, tokens) == []


def test_rate_limit_bypass_needs_a_throttle_first(config, probe, tokens, target):
    target.route("/api/auth/signin", Reply(401, {"error": "invalid"}))
    assert check_rate_limit_bypass(config, probe, tokens) == []


def test_rate_limit_bypass_via_spoofed_ip(config, probe, tokens, target):
    def login(req):
        spoofed = any(h.lower() in {k.lower() for k in req.headers} for h in SPOOFABLE_IP_HEADERS)
        return Reply(401, "invalid") if spoofed else Reply(429, "Too Many Requests")

    target.route("/api/auth/signin", login)
    findings = check_rate_limit_bypass(config, probe, tokens)
    assert findings
    assert all(f.category == "Rate Limit Bypass" and f.severity == HIGH for f in findings)
