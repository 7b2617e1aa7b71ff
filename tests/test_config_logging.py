"""
Tests for configuration loading and structured logging
"""

import json
import logging

from kodbank import config as config_module
from kodbank.config import KodBankConfig, reload_config
from kodbank.logging_config import JSONFormatter, TextFormatter, get_logger, log_action


class TestConfig:

    def test_defaults(self):
        config = KodBankConfig(_env_file=None)

        assert config.api_port == 5000
        assert config.account_number_prefix == "KB"
        assert config.registration_seed_balance == "1000.00"
        assert config.default_account_type == "Savings"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("KODBANK_DATABASE_URL", "memory://")
        monkeypatch.setenv("KODBANK_LOCK_TIMEOUT_SECONDS", "0.25")
        original = config_module.config
        try:
            config = reload_config()
            assert config.database_url == "memory://"
            assert config.lock_timeout_seconds == 0.25
            assert config_module.get_config() is config
        finally:
            config_module.config = original


class CapturingHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStructuredLogging:

    def setup_method(self):
        self.logger = get_logger("kodbank.tests")
        self.handler = CapturingHandler()
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.DEBUG)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(logging.NOTSET)

    def test_log_action_fields_render_as_json(self):
        log_action(self.logger, "warning", "Transfer rejected", user_id="alice",
                   action="transfer", resource="attempt:t1", extra={"amount": "5.00"})

        entry = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert entry["level"] == "WARNING"
        assert entry["message"] == "Transfer rejected"
        assert entry["user_id"] == "alice"
        assert entry["extra"] == {"amount": "5.00"}
        assert "correlation_id" not in entry

    def test_text_formatter_appends_action(self):
        log_action(self.logger, "info", "Account opened", action="create_account",
                   resource="account:KB1")

        line = TextFormatter().format(self.handler.records[0])
        assert line.endswith("Account opened [create_account account:KB1]")

    def test_disabled_level_is_skipped(self):
        self.logger.setLevel(logging.ERROR)
        log_action(self.logger, "info", "quiet")
        assert self.handler.records == []
