"""
Settings tests
"""
from datetime import timedelta

from nurture_engine.config import EngineSettings
from nurture_engine.core.engine import build_email_sender
from nurture_engine.integrations.email import SMTPEmailSender, DryRunEmailSender


def test_defaults():
    settings = EngineSettings()

    assert settings.max_step_attempts == 5
    assert settings.claim_lease == timedelta(minutes=5)
    assert settings.webhook_secret is None
    assert not settings.enable_scheduler


def test_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
    monkeypatch.setenv("WORKFLOW_WEBHOOK_SECRET", "abc")
    monkeypatch.setenv("SMTP_PORT", "2525")
    monkeypatch.setenv("SMTP_USE_TLS", "no")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("MAX_STEP_ATTEMPTS", "0")
    monkeypatch.setenv("ENABLE_SCHEDULER", "true")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = EngineSettings.from_env(load_dotenv_file=False)

    assert settings.database_url == "sqlite+aiosqlite:///./test.db"
    assert settings.webhook_secret == "abc"
    assert settings.smtp_port == 2525
    assert settings.smtp_use_tls is False
    assert settings.poll_interval_seconds == 2.5
    assert settings.max_step_attempts == 0
    assert settings.enable_scheduler is True
    assert settings.log_level == "DEBUG"


def test_empty_values_fall_back(monkeypatch):
    monkeypatch.setenv("WORKFLOW_WEBHOOK_SECRET", "")
    monkeypatch.setenv("POLL_BATCH_SIZE", "")

    settings = EngineSettings.from_env(load_dotenv_file=False)

    assert settings.webhook_secret is None
    assert settings.poll_batch_size == 100


def test_email_sender_selection():
    assert isinstance(build_email_sender(EngineSettings()), DryRunEmailSender)

    sender = build_email_sender(EngineSettings(smtp_host="smtp.example.com", smtp_port=25, smtp_use_tls=False))
    assert isinstance(sender, SMTPEmailSender)
    assert sender.host == "smtp.example.com"
    assert sender.port == 25
