import pytest

from api.config.settings import AuthMode, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "CRM Sync Queue"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.debug is True
    assert settings.auth_mode == AuthMode.NONE
    assert settings.service_token is None


def test_default_queue_policy():
    settings = Settings()

    assert settings.job_default_priority == 0
    assert settings.job_max_attempts == 10
    assert settings.job_claim_timeout_s == 300
    assert settings.job_backoff_base_s == 60.0
    assert settings.job_max_backoff_s == 3600.0
    assert settings.job_cleanup_after_days == 7
    assert settings.job_org_max_per_hour == 0


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("JOB_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.test/x")

    settings = Settings()

    assert settings.job_max_attempts == 3
    assert settings.slack_webhook_url == "https://hooks.slack.test/x"


def test_production_validation_blocks_none_auth():
    """Test that production environment blocks AUTH_MODE=none."""
    with pytest.raises(ValueError, match="AUTH_MODE=none is not allowed in production"):
        Settings(environment="production", auth_mode=AuthMode.NONE)


def test_production_validation_blocks_dev_auth():
    """Test that production environment blocks AUTH_MODE=dev."""
    with pytest.raises(ValueError, match="AUTH_MODE=dev is not allowed in production"):
        Settings(environment="production", auth_mode=AuthMode.DEV)


def test_production_allows_oidc_auth():
    """Test that production environment allows AUTH_MODE=oidc."""
    settings = Settings(environment="production", auth_mode=AuthMode.OIDC)
    assert settings.environment == "production"
    assert settings.auth_mode == AuthMode.OIDC


def test_backoff_bounds_validated():
    with pytest.raises(ValueError, match="JOB_MAX_BACKOFF_S"):
        Settings(job_backoff_base_s=600.0, job_max_backoff_s=60.0)


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
