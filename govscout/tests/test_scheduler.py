"""Tests for settings loading and scheduler wiring."""
from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from govscout.config import AlertSettings, DigestSettings, Settings, load_settings
from govscout.db import create_session_factory
from govscout.notifier import Notifier
from govscout.scheduler import ALERT_JOB_ID, DIGEST_JOB_ID, build_scheduler


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("GOVSCOUT_ALERT_THRESHOLD", "GOVSCOUT_ALERT_CRON", "GOVSCOUT_DIGEST_CRON",
                     "GOVSCOUT_ALERT_DEDUPE", "GOVSCOUT_CONFIG"):
            monkeypatch.delenv(name, raising=False)
        settings = load_settings()
        assert settings.alerts.threshold == 80
        assert settings.alerts.lookback_hours == 24
        assert settings.alerts.cron == "0 8 * * mon-fri"
        assert settings.alerts.dedupe is False
        assert settings.digest.cron == "0 9 * * mon"
        assert settings.digest.window_days == 7
        assert settings.scoring.timeout_seconds == 30
        assert settings.scoring.max_attempts == 3
        assert settings.imports.chunk_size == 50

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("GOVSCOUT_ALERT_THRESHOLD", "90")
        monkeypatch.setenv("GOVSCOUT_ALERT_RECIPIENTS", "a@example.com, b@example.com")
        monkeypatch.setenv("GOVSCOUT_DIGEST_ENABLED", "false")
        assert AlertSettings().threshold == 90
        assert AlertSettings().recipients == ["a@example.com", "b@example.com"]
        assert DigestSettings().enabled is False

    def test_bad_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("GOVSCOUT_ALERT_THRESHOLD", "lots")
        assert AlertSettings().threshold == 80

    def test_yaml_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GOVSCOUT_ALERT_LOOKBACK_HOURS", raising=False)
        path = tmp_path / "govscout.yaml"
        path.write_text(
            "database_url: sqlite:///govscout-test.db\n"
            "alerts:\n"
            "  threshold: 85\n"
            "  recipients: [capture@example.com]\n"
            "digest:\n"
            "  enabled: false\n",
            encoding="utf-8",
        )
        settings = load_settings(path)
        assert settings.database_url == "sqlite:///govscout-test.db"
        assert settings.alerts.threshold == 85
        assert settings.alerts.recipients == ["capture@example.com"]
        assert settings.alerts.lookback_hours == 24
        assert settings.digest.enabled is False

    def test_yaml_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("scoring:\n  max_attempts: 5\n", encoding="utf-8")
        monkeypatch.setenv("GOVSCOUT_CONFIG", str(path))
        assert load_settings().scoring.max_attempts == 5

    def test_missing_yaml_uses_defaults(self, tmp_path):
        assert load_settings(tmp_path / "absent.yaml").alerts.threshold == AlertSettings().threshold


class TestBuildScheduler:
    def test_registers_both_jobs(self):
        settings = Settings(database_url="sqlite://")
        scheduler = build_scheduler(settings, create_session_factory("sqlite://"), Notifier(),
                                    BackgroundScheduler(timezone="UTC"))
        jobs = {job.id: job for job in scheduler.get_jobs()}
        assert set(jobs) == {ALERT_JOB_ID, DIGEST_JOB_ID}
        for job in jobs.values():
            assert isinstance(job.trigger, CronTrigger)
            assert job.max_instances == 1
            assert job.coalesce is True
        assert not scheduler.running

    def test_custom_cron(self):
        settings = Settings(
            database_url="sqlite://",
            alerts=AlertSettings(cron="*/15 * * * *"),
            digest=DigestSettings(cron="30 7 * * fri"),
        )
        scheduler = build_scheduler(settings, create_session_factory("sqlite://"), Notifier())
        alert_trigger = scheduler.get_job(ALERT_JOB_ID).trigger
        fields = {f.name: str(f) for f in alert_trigger.fields}
        assert fields["minute"] == "*/15"
        digest_fields = {f.name: str(f) for f in scheduler.get_job(DIGEST_JOB_ID).trigger.fields}
        assert digest_fields["day_of_week"] == "fri"
        assert digest_fields["hour"] == "7"
