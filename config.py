########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Run configuration.

Values are resolved in this order, later sources winning:
built-in defaults, environment (``.env`` is honoured), a YAML/JSON file and
finally explicit overrides (usually from the command line). The resulting
:class:`AuditConfig` is frozen for the lifetime of a run.
"""
from __future__ import annotations

import fnmatch
import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_TARGET = "http://192.168.1.100:3000"

ROLES = ("citoyen", "autorite", "delegation", "gouverneur", "superadmin")

DEFAULT_INCLUDE = (
    "/api/*",
    "/auth/*",
    "/dashboard/*",
    "/uploads/*",
    "/reclamations/*",
    "/etablissements/*",
    "/evenements/*",
)
DEFAULT_EXCLUDE = ("/api/health", "/favicon.ico", "/_next/*")

DEFAULT_ENDPOINTS: Dict[str, Dict[str, str]] = {
    "auth": {
        "login": "/auth/signin",
        "register": "/auth/register",
        "logout": "/auth/signout",
        "forgot_password": "/auth/forgot-password",
        "reset_password": "/auth/reset-password",
        "me": "/users/me",
    },
    "reclamations": {
        "list": "/reclamations",
        "get": "/reclamations/:id",
        "decision": "/reclamations/:id/decision",
        "assign": "/reclamations/:id/affecter",
    },
    "etablissements": {
        "list": "/etablissements",
        "get": "/etablissements/:id",
        "evaluations": "/etablissements/:id/evaluations",
    },
    "evenements": {
        "list": "/evenements",
        "create": "/evenements",
        "validate": "/evenements/:id/valider",
    },
    "users": {
        "list": "/users",
        "get": "/users/:id",
        "update": "/users/:id",
        "delete": "/users/:id",
        "photo": "/users/:id/photo",
    },
    "upload": {"create": "/upload"},
    "stats": {"global": "/stats"},
}

_TRUE = {"1", "true", "yes", "on", "y"}


class ConfigError(ValueError):
    """Raised when the run configuration cannot be built."""


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class Credential:
    email: str
    password: str


@dataclass(frozen=True)
class Scope:
    include_paths: Tuple[str, ...] = DEFAULT_INCLUDE
    exclude_paths: Tuple[str, ...] = DEFAULT_EXCLUDE
    test_authentication: bool = True
    test_authorization: bool = True
    test_injections: bool = True
    test_business_logic: bool = True
    test_dos: bool = False

    def is_excluded(self, path: str) -> bool:
        path = path or "/"
        return any(fnmatch.fnmatchcase(path, pat) for pat in self.exclude_paths)

    def is_focused(self, path: str) -> bool:
        return any(fnmatch.fnmatchcase(path or "/", pat) for pat in self.include_paths)


# ----------------------- AuditConfig ----------------------------#
@dataclass(frozen=True)
class AuditConfig:
    target: str = DEFAULT_TARGET
    api_base: str = ""
    aggressive: bool = False
    stealth: bool = False
    threads: int = 10
    timeout_ms: int = 30000
    max_retries: int = 3
    rate_limit: int = 100
    verify_tls: bool = True
    scope: Scope = field(default_factory=Scope)
    credentials: Mapping[str, Credential] = field(default_factory=dict)
    endpoints: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: DEFAULT_ENDPOINTS)
    dos_max_concurrent: int = 100
    attempt_delay: float = 0.05
    auditor: str = "SECAUDIT"

    def __post_init__(self) -> None:
        if not self.target or not self.target.startswith(("http://", "https://")):
            raise ConfigError(f"target must be an http(s) URL, got {self.target!r}")
        object.__setattr__(self, "target", self.target.rstrip("/"))
        api = (self.api_base or self.target + "/api").rstrip("/")
        object.__setattr__(self, "api_base", api)
        if self.threads < 1:
            raise ConfigError("threads must be >= 1")
        if self.timeout_ms < 1:
            raise ConfigError("timeout must be >= 1 ms")
        if self.rate_limit < 0 or self.max_retries < 0:
            raise ConfigError("rate_limit and max_retries must not be negative")
        if self.dos_max_concurrent < 1:
            raise ConfigError("dos_max_concurrent must be >= 1")
        object.__setattr__(self, "credentials", MappingProxyType(dict(self.credentials)))
        frozen_eps = {k: MappingProxyType(dict(v)) for k, v in dict(self.endpoints).items()}
        object.__setattr__(self, "endpoints", MappingProxyType(frozen_eps))

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def host(self) -> str:
        return urlsplit(self.target).hostname or ""

    @property
    def port(self) -> int:
        parts = urlsplit(self.target)
        return parts.port or (443 if parts.scheme == "https" else 80)

    @property
    def is_https(self) -> bool:
        return self.target.startswith("https://")

    def url(self, path: str = "/") -> str:
        if path.startswith(("http://", "https://")):
            return path
        return urljoin(self.target + "/", path.lstrip("/"))

    def api_url(self, path: str = "") -> str:
        if path.startswith(("http://", "https://")):
            return path
        return self.api_base + "/" + path.lstrip("/") if path else self.api_base

    def endpoint(self, entity: str, name: str, **params: Any) -> str:
        try:
            template = self.endpoints[entity][name]
        except KeyError:
            raise KeyError(f"no endpoint template for {entity}.{name}")
        for key, value in params.items():
            template = template.replace(f":{key}", str(value))
        return template

    def credential(self, role: str) -> Optional[Credential]:
        return self.credentials.get(role)

    def with_overrides(self, **changes: Any) -> "AuditConfig":
        return replace(self, **changes)


# ----------------------- loading ----------------------------#
def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if env.get("TARGET_URL"):
        out["target"] = env["TARGET_URL"]
    if env.get("API_BASE_URL"):
        out["api_base"] = env["API_BASE_URL"]
    for key, name in (("AGGRESSIVE", "aggressive"), ("STEALTH", "stealth"), ("VERIFY_TLS", "verify_tls")):
        if key in env:
            out[name] = _as_bool(env[key])
    for key, name in (("THREADS", "threads"), ("TIMEOUT", "timeout_ms"), ("MAX_RETRIES", "max_retries"), ("RATE_LIMIT", "rate_limit")):
        if env.get(key):
            out[name] = _as_int(key, env[key])
    scope: Dict[str, Any] = {}
    if "TEST_DOS" in env:
        scope["test_dos"] = _as_bool(env["TEST_DOS"])
    if scope:
        out["scope"] = scope
    creds: Dict[str, Dict[str, str]] = {}
    for role in ROLES:
        email = env.get(f"TEST_{role.upper()}_EMAIL")
        password = env.get(f"TEST_{role.upper()}_PASSWORD")
        if email and password:
            creds[role] = {"email": email, "password": password}
    if creds:
        out["credentials"] = creds
    return out


_FILE_KEYS = {
    "target": "target",
    "targetUrl": "target",
    "apiBaseUrl": "api_base",
    "api_base": "api_base",
    "aggressive": "aggressive",
    "stealth": "stealth",
    "threads": "threads",
    "timeout": "timeout_ms",
    "timeout_ms": "timeout_ms",
    "maxRetries": "max_retries",
    "max_retries": "max_retries",
    "rateLimit": "rate_limit",
    "rate_limit": "rate_limit",
    "verify_tls": "verify_tls",
    "credentials": "credentials",
    "endpoints": "endpoints",
    "scope": "scope",
    "dos_max_concurrent": "dos_max_concurrent",
    "attempt_delay": "attempt_delay",
}

_SCOPE_KEYS = {
    "includePaths": "include_paths",
    "include_paths": "include_paths",
    "excludePaths": "exclude_paths",
    "exclude_paths": "exclude_paths",
    "testAuthentication": "test_authentication",
    "test_authentication": "test_authentication",
    "testAuthorization": "test_authorization",
    "test_authorization": "test_authorization",
    "testInjections": "test_injections",
    "test_injections": "test_injections",
    "testBusinessLogic": "test_business_logic",
    "test_business_logic": "test_business_logic",
    "testDoS": "test_dos",
    "test_dos": "test_dos",
}


def read_config_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"config file not found: {p}")
    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() in (".yml", ".yaml"):
            raw = yaml.safe_load(text) or {}
        elif p.suffix.lower() == ".json":
            raw = json.loads(text or "{}")
        else:
            raise ConfigError(f"unsupported config file type: {p.suffix or p.name}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot parse {p}: {exc}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{p} must contain a mapping at top level")
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _FILE_KEYS.get(key)
        if name is None:
            logger.warning("Ignoring unknown config key %r in %s", key, p)
            continue
        if name == "scope" and isinstance(value, dict):
            value = {_SCOPE_KEYS[k]: v for k, v in value.items() if k in _SCOPE_KEYS}
        out[name] = value
    return out


def _merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if value is None:
            continue
        if key in ("scope", "credentials", "endpoints") and isinstance(value, Mapping):
            merged = dict(base.get(key) or {})
            merged.update(value)
            base[key] = merged
        else:
            base[key] = value
    return base


def build_config(values: Mapping[str, Any]) -> AuditConfig:
    data = dict(values)
    scope_raw = dict(data.pop("scope", {}) or {})
    for key in ("include_paths", "exclude_paths"):
        if key in scope_raw:
            scope_raw[key] = tuple(scope_raw[key] or ())
    for key in list(scope_raw):
        if key.startswith("test_"):
            scope_raw[key] = _as_bool(scope_raw[key])
    creds_raw = data.pop("credentials", {}) or {}
    creds: Dict[str, Credential] = {}
    for role, pair in creds_raw.items():
        if isinstance(pair, Credential):
            creds[role] = pair
        elif isinstance(pair, Mapping) and pair.get("email") and pair.get("password"):
            creds[role] = Credential(email=str(pair["email"]), password=str(pair["password"]))
        else:
            raise ConfigError(f"credentials for role {role!r} need email and password")
    endpoints = {k: dict(v) for k, v in DEFAULT_ENDPOINTS.items()}
    for entity, templates in (data.pop("endpoints", {}) or {}).items():
        endpoints.setdefault(entity, {}).update(templates or {})
    for key in ("aggressive", "stealth", "verify_tls"):
        if key in data:
            data[key] = _as_bool(data[key])
    for key in ("threads", "timeout_ms", "max_retries", "rate_limit", "dos_max_concurrent"):
        if key in data:
            data[key] = _as_int(key, data[key])
    try:
        return AuditConfig(scope=Scope(**scope_raw), credentials=creds, endpoints=endpoints, **data)
    except TypeError as exc:
        raise ConfigError(str(exc))


def load_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> AuditConfig:
    if env is None:
        if use_dotenv:
            load_dotenv(Path.cwd() / ".env", override=False)
        env = os.environ
    values: Dict[str, Any] = {}
    _merge(values, _from_env(env))
    if path:
        _merge(values, read_config_file(path))
    if overrides:
        _merge(values, overrides)
    cfg = build_config(values)
    logger.debug("Config loaded: target=%s api=%s threads=%d dos=%s", cfg.target, cfg.api_base, cfg.threads, cfg.scope.test_dos)
    return cfg
