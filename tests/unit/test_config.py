"""Tests for configuration validation"""
import pytest

from discovery_engine import config


@pytest.fixture
def with_api_keys(monkeypatch):
    monkeypatch.setattr(config, "API_KEYS", ["test_key_123"])


class TestConfigValidation:
    """Test validate_config() against module settings"""

    def test_defaults_are_valid(self, with_api_keys):
        """Default configuration passes validation once keys are set"""
        config.validate_config()

    def test_missing_api_keys(self, monkeypatch):
        monkeypatch.setattr(config, "API_KEYS", [])

        with pytest.raises(ValueError, match="API_KEYS"):
            config.validate_config()

    def test_missing_database_url(self, monkeypatch, with_api_keys):
        monkeypatch.setattr(config, "DATABASE_URL", "")

        with pytest.raises(ValueError, match="DATABASE_URL"):
            config.validate_config()

    @pytest.mark.parametrize("name,value", [
        ("RATE_LIMIT_ANALYZE", "5 per minute"),
        ("EVENT_FETCH_LIMIT", 0),
        ("MIN_EVENTS_FOR_ANALYSIS", 0),
        ("LOOKAHEAD_WINDOW_HOURS", 0.0),
        ("MAX_TRACKED_DISCOVERIES", -1),
        ("UNSURFACED_MIN_CONFIDENCE", 1.5),
        ("STORE_TIMEOUT_SECONDS", 0.0),
    ])
    def test_invalid_values_rejected(self, monkeypatch, with_api_keys, name, value):
        monkeypatch.setattr(config, name, value)

        with pytest.raises(ValueError, match=name):
            config.validate_config()


class TestCsvSettings:
    def test_split_csv_drops_blanks(self):
        assert config._split_csv(" key-a, ,key-b,") == ["key-a", "key-b"]
        assert config._split_csv("") == []
