import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="k" * 32)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.user_cache_ttl_minutes == 30
        assert settings.cache_default_ttl_minutes == 60
        assert settings.cleanup_interval_hours == 24
        assert settings.cleanup_retry_minutes == 30
        assert settings.cleanup_enabled is True

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_secret_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=None, test_mode=False)

    def test_ephemeral_secret_in_test_mode(self):
        first = Settings(jwt_secret=None, test_mode=True)
        second = Settings(jwt_secret=None, test_mode=True)

        assert first.jwt_secret and len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_minutes", "refresh_token_ttl_days"]
    )
    def test_ttls_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="k" * 32, **{field: 0})

    @pytest.mark.parametrize(
        "field,value",
        [
            ("cleanup_interval_hours", 0),
            ("cleanup_interval_hours", -1),
            ("cleanup_retry_minutes", 0),
            ("cleanup_retry_minutes", -0.5),
        ],
    )
    def test_cleanup_delays_must_be_positive(self, field, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="k" * 32, **{field: value})

    def test_fractional_cleanup_delays_allowed(self):
        settings = Settings(
            jwt_secret="k" * 32, cleanup_interval_hours=0.5, cleanup_retry_minutes=1.5
        )
        assert settings.cleanup_interval_hours == 0.5
        assert settings.cleanup_retry_minutes == 1.5


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "e" * 40)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "30")
        monkeypatch.setenv("JWT_ISSUER", "issuer-from-env")
        monkeypatch.setenv("CLEANUP_ENABLED", "false")

        settings = Settings.from_env()

        assert settings.jwt_secret == "e" * 40
        assert settings.access_token_ttl_minutes == 5
        assert settings.refresh_token_ttl_days == 30
        assert settings.jwt_issuer == "issuer-from-env"
        assert settings.cleanup_enabled is False

    def test_dotenv_file_used_when_env_missing(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("JWT_AUDIENCE=dotenv-audience\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_AUDIENCE", raising=False)

        assert Settings.from_env().jwt_audience == "dotenv-audience"

    def test_environment_wins_over_dotenv(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("JWT_AUDIENCE=dotenv-audience\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_AUDIENCE", "env-audience")

        assert Settings.from_env().jwt_audience == "env-audience"


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("JWT_ISSUER", "changed")
    reset_settings_cache()
    assert get_settings().jwt_issuer == "changed"
    reset_settings_cache()
