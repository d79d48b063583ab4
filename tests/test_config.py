from core.config import Settings


def test_fields_read_from_upper_case_environment(monkeypatch):
    monkeypatch.setenv("DEFAULT_COOLDOWN_SECONDS", "60")
    monkeypatch.setenv("EXECUTION_WORKERS", "2")
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", "s3cret")
    monkeypatch.setenv("DLQ_ENABLED", "false")

    settings = Settings()

    assert settings.default_cooldown_seconds == 60
    assert settings.execution_workers == 2
    assert settings.webhook_hmac_secret == "s3cret"
    assert settings.dlq_enabled is False


def test_in_memory_sqlite_is_accepted():
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:")

    assert settings.is_sqlite
    assert settings.tag_cache_ttl == 300
    assert "cache_ttl" not in Settings.model_fields
