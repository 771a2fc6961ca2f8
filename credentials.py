########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from config import AuditConfig
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

_TOKEN_KEYS = ("token", "accessToken", "access_token", "jwt")


def extract_token(body, headers=None) -> Optional[str]:
    """Pull a bearer token out of a login response body or its headers."""
    if isinstance(body, dict):
        for key in _TOKEN_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        nested = body.get("data") or body.get("user")
        if isinstance(nested, dict):
            return extract_token(nested)
    auth = (headers or {}).get("Authorization") if headers is not None else None
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


# ----------------------- TokenCache ----------------------------#
class TokenCache:
    """Role -> bearer token, logged in lazily, once per role per run.

    A failed login is cached as ``None`` and never retried during the run.
    """

    def __init__(self, config: AuditConfig, probe: ProbeClient) -> None:
        if config is None or probe is None:
            raise ValueError("config and probe are required")
        self.config = config
        self.probe = probe
        self._tokens: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()
        self.login_attempts: Dict[str, int] = {}

    def get_token(self, role: str) -> Optional[str]:
        with self._lock:
            if role in self._tokens:
                return self._tokens[role]
            token = self._login(role)
            self._tokens[role] = token
            return token

    def auth_headers(self, role: str) -> Dict[str, str]:
        token = self.get_token(role)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def cached_roles(self) -> Dict[str, bool]:
        with self._lock:
            return {role: tok is not None for role, tok in self._tokens.items()}

    def _login(self, role: str) -> Optional[str]:
        cred = self.config.credential(role)
        if cred is None:
            logger.debug("No credentials configured for role %s", role)
            return None
        self.login_attempts[role] = self.login_attempts.get(role, 0) + 1
        login_path = self.config.endpoint("auth", "login")
        res = self.probe.post(login_path, api=True, json={"email": cred.email, "password": cred.password})
        if not res.ok:
            logger.warning("Login for role %s failed: %s", role, res.error or res.kind)
            return None
        if not res.success:
            logger.warning("Login for role %s rejected (HTTP %s)", role, res.status)
            return None
        token = extract_token(res.json(), res.headers)
        if token:
            logger.info("Authenticated as %s", role)
        else:
            logger.warning("Login for role %s returned no token", role)
        return token
