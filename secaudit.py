########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from colorama import Fore, Style, init as _colorama_init

from config import AuditConfig, ConfigError, load_config
from findings import SEVERITY_ORDER
from pipeline import AuditRun, execute
from report_utils import ReportGenerator, verify_report_set

_colorama_init()

logger = logging.getLogger("secaudit")

START_DELAY = 3.0
SEVERITY_COLORS = {
    "CRITICAL": Fore.RED + Style.BRIGHT,
    "HIGH": Fore.RED,
    "MEDIUM": Fore.YELLOW,
    "LOW": Fore.BLUE,
    "INFO": Fore.WHITE,
}


def styled_print(message: str, status: str = 'info') -> None:
    symbols = {'info': 'Info:', 'ok': 'OK:', 'warn': 'WARNING:', 'fail': 'FAIL:', 'run': '->', 'done': 'Done'}
    colors = {'info': Fore.BLUE, 'ok': Fore.GREEN, 'warn': Fore.YELLOW, 'fail': Fore.RED, 'run': Fore.CYAN, 'done': Fore.GREEN}
    reset = Style.RESET_ALL
    print(f"{colors.get(status, '')}{symbols.get(status, '')} {message}{reset}")


def normalize_url(url: str) -> str:
    return url if url.startswith(('http://', 'https://')) else 'http://' + url


def create_output_directory(target: str) -> Path:
    clean = target.replace('https://', '').replace('http://', '').replace('/', '_').replace(':', '_')
    timestamp = datetime.now().strftime('%d-%m-%Y_%H%M%S')
    out_dir = Path(f'audit_{clean}_{timestamp}')
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir


def setup_logging(output_dir: Path, debug: bool) -> Path:
    if debug:
        logging.basicConfig(level=logging.DEBUG, format='[DEBUG] %(message)s', force=True)
    else:
        logging.basicConfig(level=logging.INFO, format='[INFO] %(message)s', force=True)
    # urllib3 retry chatter drowns the audit log at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    log_dir = output_dir / 'log'
    log_dir.mkdir(exist_ok=True)
    logfile = log_dir / f"secaudit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(logfile, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.addHandler(file_handler)
    return logfile


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='secaudit',
        description='Active security audit of a web application and its REST API',
    )
    parser.add_argument('--config', metavar='PATH', help='YAML or JSON configuration file')
    parser.add_argument('--target', metavar='URL', help='Base URL of the application under test')
    parser.add_argument('--api-base', metavar='URL', help='Base URL of the API (default: <target>/api)')
    parser.add_argument('--enable-dos', action='store_true', help='Run the destructive denial-of-service phase')
    parser.add_argument('--aggressive', action='store_true', help='Larger payloads and more attempts')
    parser.add_argument('--stealth', action='store_true', help='Random pause before each request')
    parser.add_argument('--threads', type=int, help='Worker threads for concurrent checks')
    parser.add_argument('--timeout', type=int, metavar='MS', help='Per-request timeout in milliseconds')
    parser.add_argument('--output', metavar='DIR', help='Output directory (default: audit_<host>_<timestamp>)')
    parser.add_argument('--insecure', action='store_true', help='Do not verify TLS certificates')
    parser.add_argument('--no-delay', action='store_true', help='Start without the confirmation delay')
    parser.add_argument('--no-progress', action='store_true', help='Disable progress bars')
    parser.add_argument('--debug', action='store_true', help='Verbose console logging')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.target:
        overrides['target'] = normalize_url(args.target)
    if args.api_base:
        overrides['api_base'] = normalize_url(args.api_base)
    if args.aggressive:
        overrides['aggressive'] = True
    if args.stealth:
        overrides['stealth'] = True
    if args.threads is not None:
        overrides['threads'] = args.threads
    if args.timeout is not None:
        overrides['timeout_ms'] = args.timeout
    if args.insecure:
        overrides['verify_tls'] = False
    if args.enable_dos:
        overrides['scope'] = {'test_dos': True}
    return overrides


def print_scope(config: AuditConfig) -> None:
    scope = config.scope
    styled_print(f'Target: {config.target}', 'info')
    styled_print(f'API base: {config.api_base}', 'info')
    styled_print(f'Threads: {config.threads}  Timeout: {config.timeout_ms}ms  Rate limit: {config.rate_limit}/s', 'info')
    categories = [
        ('authentication', scope.test_authentication),
        ('authorization', scope.test_authorization),
        ('injection', scope.test_injections),
        ('business logic', scope.test_business_logic),
        ('denial of service', scope.test_dos),
    ]
    enabled = ', '.join(name for name, on in categories if on) or 'none'
    styled_print(f'Optional test categories: {enabled}', 'info')
    styled_print(f'Credentials configured for: {", ".join(config.credentials) or "no roles"}', 'info')
    if scope.test_dos:
        styled_print('Denial-of-service tests are ENABLED and may take the target down', 'warn')
    if config.aggressive:
        styled_print('Aggressive mode: large payloads and many attempts', 'warn')
    if not config.verify_tls:
        styled_print('TLS certificate verification is disabled', 'warn')


def print_summary(run: AuditRun) -> None:
    counts = run.severity_counts()
    total = sum(counts.values())
    print()
    print(f"{'Severity':<10} {'Count':>6} {'Share':>7}")
    print('-' * 25)
    for sev in SEVERITY_ORDER:
        share = (counts[sev] / total * 100) if total else 0.0
        print(f"{SEVERITY_COLORS[sev]}{sev:<10}{Style.RESET_ALL} {counts[sev]:>6} {share:>6.1f}%")
    print('-' * 25)
    print(f"{'TOTAL':<10} {total:>6}")
    print()
    styled_print(f'Elapsed: {run.duration:.1f}s', 'info')
    styled_print(f'Requests sent: {run.requests_sent}  failed: {run.requests_failed}', 'info')
    if run.failures:
        styled_print(f'{len(run.failures)} check(s) failed; see the log for tracebacks', 'warn')


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, overrides_from_args(args))
    except ConfigError as exc:
        styled_print(f'Invalid configuration: {exc}', 'fail')
        return 1

    output_dir = Path(args.output) if args.output else create_output_directory(config.target)
    output_dir.mkdir(parents=True, exist_ok=True)
    logfile = setup_logging(output_dir, args.debug)
    logger.debug('Logging to %s', logfile)

    print_scope(config)
    try:
        if not args.no_delay:
            styled_print(f'Starting in {START_DELAY:.0f}s, press Ctrl+C to abort', 'run')
            time.sleep(START_DELAY)

        run = execute(config, show_progress=not args.no_progress)
        paths = ReportGenerator(run).save_all(output_dir)
        verify_report_set(paths)
    except KeyboardInterrupt:
        styled_print('Audit interrupted by user', 'warn')
        return 130
    except Exception as exc:
        logger.exception('Audit aborted')
        styled_print(f'Audit aborted: {exc}', 'fail')
        return 1

    print_summary(run)
    for path in paths.values():
        styled_print(f'Report: {path}', 'ok')
    styled_print(f'Log: {logfile}', 'ok')
    styled_print('Audit complete', 'done')
    return 0


if __name__ == '__main__':
    sys.exit(main())
