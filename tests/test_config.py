import json

import pytest

from config import DEFAULT_TARGET, AuditConfig, ConfigError, load_config


def test_defaults_without_env_or_file():
    cfg = load_config(env={})
    assert cfg.target == DEFAULT_TARGET
    assert cfg.api_base == DEFAULT_TARGET + "/api"
    assert cfg.threads == 10
    assert cfg.timeout_ms == 30000
    assert cfg.rate_limit == 100
    assert cfg.verify_tls is True
    assert cfg.scope.test_dos is False
    assert cfg.scope.test_injections is True
    assert cfg.scope.is_excluded("/api/health")
    assert cfg.scope.is_excluded("/_next/static/chunk.js")
    assert not cfg.scope.is_excluded("/api/users")


def test_env_values_and_credentials():
    env = {
        "TARGET_URL": "https://app.example.org/",
        "THREADS": "4",
        "TEST_DOS": "true",
        "TEST_CITOYEN_EMAIL": "c@example.org",
        "TEST_CITOYEN_PASSWORD": "pw",
        "TEST_AUTORITE_EMAIL": "only-email@example.org",
    }
    cfg = load_config(env=env)
    assert cfg.target == "https://app.example.org"
    assert cfg.api_base == "https://app.example.org/api"
    assert cfg.threads == 4
    assert cfg.scope.test_dos is True
    assert cfg.credential("citoyen").email == "c@example.org"
    assert cfg.credential("autorite") is None


def test_precedence_env_then_file_then_overrides(tmp_path):
    path = tmp_path / "audit.yaml"
    path.write_text(
        "target: http://file.test\n"
        "threads: 6\n"
        "scope:\n"
        "  testInjections: false\n"
        "  excludePaths: ['/private/*']\n",
        encoding="utf-8",
    )
    env = {"TARGET_URL": "http://env.test", "THREADS": "2", "RATE_LIMIT": "7"}
    cfg = load_config(path, {"threads": 12}, env=env)
    assert cfg.target == "http://file.test"
    assert cfg.rate_limit == 7
    assert cfg.threads == 12
    assert cfg.scope.test_injections is False
    assert cfg.scope.is_excluded("/private/x")
    assert not cfg.scope.is_excluded("/api/health")


def test_json_config_file(tmp_path):
    path = tmp_path / "audit.json"
    path.write_text(json.dumps({"targetUrl": "http://json.test", "apiBaseUrl": "http://json.test/v2"}), encoding="utf-8")
    cfg = load_config(path, env={})
    assert cfg.api_url("/users") == "http://json.test/v2/users"


def test_unsupported_file_type(tmp_path):
    path = tmp_path / "audit.ini"
    path.write_text("[x]", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path, env={})


def test_malformed_yaml(tmp_path):
    path = tmp_path / "audit.yml"
    path.write_text("target: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path, env={})


@pytest.mark.parametrize("changes", [{"threads": 0}, {"target": "ftp://x"}, {"target": ""}, {"dos_max_concurrent": 0}])
def test_invalid_values(changes):
    with pytest.raises(ConfigError):
        AuditConfig(**changes)


def test_non_integer_env_value():
    with pytest.raises(ConfigError):
        load_config(env={"THREADS": "many"})


def test_config_is_frozen():
    cfg = AuditConfig(target="http://sut.test")
    with pytest.raises(Exception):
        cfg.threads = 3
    with pytest.raises(TypeError):
        cfg.endpoints["auth"]["login"] = "/x"


def test_endpoint_templates():
    cfg = AuditConfig(target="http://sut.test")
    assert cfg.endpoint("auth", "login") == "/auth/signin"
    assert cfg.endpoint("reclamations", "decision", id=42) == "/reclamations/42/decision"
    with pytest.raises(KeyError):
        cfg.endpoint("auth", "nope")


def test_verify_tls_env_switch():
    assert load_config(env={"VERIFY_TLS": "false"}).verify_tls is False
