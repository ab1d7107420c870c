import pytest
from pydantic import ValidationError

from gatehouse.config import Settings, get_settings, reset_settings_cache

ACCESS = "a" * 40
REFRESH = "r" * 40


def test_secrets_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_test_mode_generates_distinct_ephemeral_secrets():
    settings = Settings(test_mode=True)

    assert len(settings.access_token_secret) >= 32
    assert settings.access_token_secret != settings.refresh_token_secret


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret=ACCESS, refresh_token_secret=ACCESS)


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="short", refresh_token_secret=REFRESH)


@pytest.mark.parametrize(
    "field", ["access_token_ttl_seconds", "refresh_token_ttl_seconds", "mfa_max_attempts"]
)
def test_positive_fields(field):
    with pytest.raises(ValidationError):
        Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH, **{field: 0})


def test_window_may_be_zero_but_not_negative():
    assert Settings(test_mode=True, totp_window=0).totp_window == 0
    with pytest.raises(ValidationError):
        Settings(test_mode=True, totp_window=-1)


def test_defaults():
    settings = Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH)

    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
    assert settings.enable_mfa is True
    assert settings.totp_window == 1
    assert settings.refresh_reuse_revokes_all is False


def test_from_env_reads_documented_names(monkeypatch):
    monkeypatch.setenv("JWT_ACCESS_SECRET", ACCESS)
    monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "60")
    monkeypatch.setenv("MFA_SECRET_KEY", "seed-key")
    monkeypatch.setenv("REFRESH_REUSE_REVOKES_ALL", "true")
    reset_settings_cache()

    settings = get_settings()

    assert settings.access_token_secret == ACCESS
    assert settings.access_token_ttl_seconds == 60
    assert settings.mfa_encryption_key == "seed-key"
    assert settings.refresh_reuse_revokes_all is True
    assert get_settings() is settings
    reset_settings_cache()
