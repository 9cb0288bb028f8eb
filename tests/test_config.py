"""Tests for config.py - settings from the environment."""

import pytest
from pydantic import ValidationError

from valwatch.config import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        """Test defaults apply with no environment."""
        settings = Settings(_env_file=None)
        assert settings.broadcaster_balance_threshold == 5_000_000
        assert settings.last_x_hour_poll_vote_notification == 12
        assert settings.startup_max_attempts == 3
        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.mainnet_axelar_lcd_rest_base_urls

    def test_environment(self, monkeypatch):
        """Test settings are read from environment variables."""
        monkeypatch.setenv("TG_TOKEN", "999:xyz")
        monkeypatch.setenv("MAINNET_AXELAR_LCD_REST_BASE_URLS", '["https://a.example.com/", "https://b.example.com"]')
        monkeypatch.setenv("RPC_ENDPOINTS", '[{"name": "main", "url": "https://rpc.example.com"}]')
        monkeypatch.setenv("REDIS_HOST", "redis")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("TELEGRAM_CHAT_IDS", "[100, -200]")

        settings = Settings(_env_file=None)

        assert settings.tg_token == "999:xyz"
        assert settings.mainnet_axelar_lcd_rest_base_urls == ["https://a.example.com", "https://b.example.com"]
        assert settings.rpc_endpoints[0].name == "main"
        assert settings.redis_url == "redis://redis:6379/0"
        assert settings.log_level == "DEBUG"
        assert settings.telegram_chat_ids == [100, -200]

    def test_env_file(self, tmp_path):
        """Test settings are read from an env file."""
        env = tmp_path / ".env"
        env.write_text("AXELAR_VOTER_ADDRESS=axelar1abc\nUPTIME_THRESHOLD_LOW=98\n")
        settings = Settings(_env_file=env)
        assert settings.axelar_voter_address == "axelar1abc"
        assert settings.uptime_threshold_low == 98

    @pytest.mark.parametrize(
        "overrides",
        [
            {"mainnet_axelar_lcd_rest_base_urls": []},
            {"mainnet_axelar_lcd_rest_base_urls": ["ftp://lcd.example.com"]},
            {"mainnet_axelar_ws_urls": ["https://rpc.example.com"]},
            {"axelar_voter_address": "cosmos1abc"},
            {"broadcaster_balance_threshold": 0},
            {"uptime_check_interval": -5},
            {"uptime_threshold_high": 96},
            {"uptime_threshold_low": 101},
            {"log_level": "LOUD"},
            {"bot_keepalive_interval": 0},
            {"rpc_endpoints": [{"name": "x", "url": "not a url"}]},
        ],
    )
    def test_invalid(self, overrides):
        """Test invalid values are rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_get_settings_is_cached_per_env_file(self, tmp_path):
        """Test the same env file yields the same settings object."""
        env = tmp_path / ".env"
        env.write_text("AXELAR_VOTER_ADDRESS=axelar1abc\n")
        try:
            settings = get_settings(str(env))
            assert settings is get_settings(str(env))
            assert settings.axelar_voter_address == "axelar1abc"
            assert get_settings(None) is not settings
        finally:
            get_settings.cache_clear()
