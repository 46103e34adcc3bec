"""Tests for settings parsing and validation."""

import json
import logging

from config import Settings
from logging_config import JSONFormatter


class TestSettings:

    def test_defaults_are_valid(self):
        settings = Settings(ENVIRONMENT="development", STORE_BACKEND="sqlite", CORS_ORIGINS="*")

        assert settings.validate_config() == []
        assert settings.debug_enabled is True
        assert settings.cors_origins_list == ["*"]

    def test_cors_origins_are_split(self):
        settings = Settings(CORS_ORIGINS="https://a.example, https://b.example,")

        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]

    def test_unknown_backend_is_rejected(self):
        errors = Settings(STORE_BACKEND="dynamodb").validate_config()

        assert any("STORE_BACKEND" in e for e in errors)

    def test_production_rules(self):
        settings = Settings(ENVIRONMENT="production", CORS_ORIGINS="*", STORE_BACKEND="memory")

        errors = settings.validate_config()

        assert settings.is_production
        assert len(errors) == 2

    def test_port_range(self):
        assert Settings(PORT=70000).validate_config() == ["PORT must be between 1 and 65535"]


class TestJSONFormatter:

    def test_extra_fields_are_nested(self):
        record = logging.LogRecord("reconciliation", logging.INFO, __file__, 1, "Created secondary contact", None, None)
        record.contact_id = 7

        payload = json.loads(JSONFormatter(environment="test").format(record))

        assert payload["message"] == "Created secondary contact"
        assert payload["level"] == "INFO"
        assert payload["environment"] == "test"
        assert payload["extra"] == {"contact_id": 7}
