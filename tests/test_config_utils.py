"""
Test configuration loading and helper utilities
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from config import Config, ConfigError
from utils import format_currency, format_datetime, sanitize_input, validate_amount


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults_need_no_services(self, config):
        assert not config.has_database_config
        assert not config.has_telegram_config
        assert not config.has_risk_service
        assert config.min_amount == Decimal("1")
        assert (config.risk_low_threshold, config.risk_review_threshold, config.risk_high_threshold) == (30, 40, 70)

    def test_supabase_url_is_accepted(self, config, monkeypatch):
        monkeypatch.setenv("SUPABASE_DB_URL", "postgresql://escrow@db/escrow")
        assert Config().has_database_config

    @pytest.mark.parametrize("key, value", [
        ("MIN_ESCROW_AMOUNT", "0"),
        ("MAX_ESCROW_AMOUNT", "0.5"),
        ("RISK_LOW_THRESHOLD", "50"),
        ("RISK_ASSESSMENT_TIMEOUT", "0"),
        ("LOG_LEVEL", "VERBOSE"),
        ("ADMIN_CHAT_ID", "@admins"),
        ("API_PORT", "70000"),
        ("STALLED_ASSESSMENT_MINUTES", "soon"),
    ])
    def test_invalid_values(self, config, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ConfigError):
            Config()

    def test_production_requires_database(self, config, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        with pytest.raises(ConfigError, match="DATABASE_URL is required"):
            Config()

        monkeypatch.setenv("DATABASE_URL", "postgresql://escrow@db/escrow")
        assert Config().is_production

    def test_repr_hides_secrets(self, config, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123456:secret")
        assert "secret" not in repr(Config())


class TestValidateAmount:

    @pytest.mark.parametrize("raw, expected", [
        ("1,500.5", Decimal("1500.50")),
        (250000, Decimal("250000.00")),
        (99.999, Decimal("100.00")),
    ])
    def test_valid(self, raw, expected):
        assert validate_amount(raw) == (True, expected, None)

    @pytest.mark.parametrize("raw", ["abc", "NaN", "Infinity", -5, 0, None])
    def test_invalid(self, raw):
        is_valid, amount, error = validate_amount(raw)
        assert not is_valid
        assert amount is None
        assert error

    def test_limits(self):
        assert not validate_amount("5", min_amount=Decimal("10"))[0]
        assert not validate_amount("50", max_amount=Decimal("10"))[0]


class TestFormatting:

    def test_rupiah(self):
        assert format_currency(Decimal("1250000")) == "Rp 1.250.000"

    def test_other_currency(self):
        assert format_currency(Decimal("99.5"), "USD") == "USD 99.50"

    def test_datetime(self):
        assert format_datetime(None) == "N/A"
        assert format_datetime(datetime(2025, 6, 1, 12, 30, tzinfo=timezone.utc)) == "2025-06-01 12:30:00 UTC"

    def test_sanitize_input(self):
        assert sanitize_input("<b>late delivery</b>") == "blate delivery/b"
        assert sanitize_input("  spaced\x00  ") == "spaced"
        assert sanitize_input(None) == ""
