from config import Settings, get_settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.database_url == "sqlite:///./budget.db"
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 7
    assert settings.notification_buffer_size == 10
    assert settings.default_currency == "RUB"
    assert settings.auth_rate_limit == "60/minute;10/second"
    assert settings.ai_rate_limit == "30/minute;10/second"
    assert settings.is_sqlite


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BUDGET_DATABASE_URL", "postgresql://u:p@db/budget")
    monkeypatch.setenv("BUDGET_NOTIFICATION_BUFFER_SIZE", "25")
    monkeypatch.setenv("BUDGET_CORS_ORIGINS", "http://a.test, http://b.test,")
    monkeypatch.setenv("BUDGET_AI_RATE_LIMIT", "5/minute")

    settings = Settings(_env_file=None)

    assert not settings.is_sqlite
    assert settings.notification_buffer_size == 25
    assert settings.ai_rate_limit == "5/minute"
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
