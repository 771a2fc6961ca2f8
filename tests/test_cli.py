import pytest

import secaudit
from conftest import make_config
from findings import HIGH, Finding
from pipeline import AuditRun
from report_utils import CSV_SUMMARY, HTML_REPORT, JSON_REPORT, MARKDOWN_REPORT


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("TARGET_URL", "API_BASE_URL", "TEST_DOS", "THREADS", "VERIFY_TLS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(secaudit, "setup_logging", lambda output_dir, debug: output_dir / "log" / "test.log")
    return tmp_path


def test_overrides_from_args():
    args = secaudit.build_parser().parse_args(["--target", "sut.test:3000", "--enable-dos", "--threads", "3", "--timeout", "500"])
    overrides = secaudit.overrides_from_args(args)
    assert overrides["target"] == "http://sut.test:3000"
    assert overrides["scope"] == {"test_dos": True}
    assert overrides["threads"] == 3
    assert overrides["timeout_ms"] == 500


def test_successful_run_writes_all_reports(cli_env, monkeypatch):
    seen = {}

    def fake_execute(config, show_progress=False):
        seen["config"] = config
        run = AuditRun(config=config)
        run.collector.add(Finding(title="Missing Security Header: HSTS", severity=HIGH, category="Missing Security Header"))
        return run

    monkeypatch.setattr(secaudit, "execute", fake_execute)
    out = cli_env / "reports"
    code = secaudit.main(["--target", "http://sut.test", "--output", str(out), "--no-delay", "--no-progress"])
    assert code == 0
    assert seen["config"].target == "http://sut.test"
    assert seen["config"].scope.test_dos is False
    for name in (JSON_REPORT, HTML_REPORT, MARKDOWN_REPORT, CSV_SUMMARY):
        assert (out / name).exists()


def test_invalid_config_exits_1(cli_env):
    assert secaudit.main(["--target", "http://sut.test", "--threads", "0", "--no-delay"]) == 1


def test_interrupt_exits_130(cli_env, monkeypatch):
    def interrupted(config, show_progress=False):
        raise KeyboardInterrupt

    monkeypatch.setattr(secaudit, "execute", interrupted)
    assert secaudit.main(["--target", "http://sut.test", "--output", str(cli_env / "o"), "--no-delay"]) == 130


def test_driver_failure_exits_1(cli_env, monkeypatch):
    def crash(config, show_progress=False):
        raise OSError("disk full")

    monkeypatch.setattr(secaudit, "execute", crash)
    assert secaudit.main(["--target", "http://sut.test", "--output", str(cli_env / "o"), "--no-delay"]) == 1


def test_default_output_directory_name(cli_env):
    path = secaudit.create_output_directory(make_config().target)
    assert path.name.startswith("audit_sut.test_")
    assert path.is_dir()


def test_insecure_flag_turns_off_tls_verification(cli_env, monkeypatch):
    seen = []

    def fake_execute(config, show_progress=False):
        seen.append(config.verify_tls)
        return AuditRun(config=config)

    monkeypatch.setattr(secaudit, "execute", fake_execute)
    base = ["--target", "https://sut.test", "--no-delay", "--no-progress"]
    assert secaudit.main(base + ["--output", str(cli_env / "strict")]) == 0
    assert secaudit.main(base + ["--output", str(cli_env / "loose"), "--insecure"]) == 0
    assert seen == [True, False]
