"""
Tests for configuration loading and structured logging
"""

import json
import logging
import sys

import pytest

from microlend import config as config_module
from microlend.config import MicrolendConfig, reload_config
from microlend.logging_config import JSONFormatter, TextFormatter, log_action, setup_logging


class TestConfig:

    def test_defaults(self):
        config = MicrolendConfig()
        assert config.api_port == 8090
        assert config.log_format == "json"
        assert config.max_concurrency_retries == 3
        assert not config.accept_quoted_financials
        assert config.auto_approve_repayments

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MICROLEND_API_PORT", "9000")
        monkeypatch.setenv("MICROLEND_ACCEPT_QUOTED_FINANCIALS", "true")
        reloaded = reload_config()
        try:
            assert reloaded.api_port == 9000
            assert reloaded.accept_quoted_financials
            assert config_module.get_config() is reloaded
        finally:
            monkeypatch.undo()
            reload_config()

    @pytest.mark.parametrize("url, path", [
        ("sqlite:///data/microlend.db", "data/microlend.db"),
        ("sqlite:///", ":memory:"),
        ("/tmp/plain.db", "/tmp/plain.db"),
    ])
    def test_sqlite_path(self, url, path):
        assert MicrolendConfig(database_url=url).sqlite_path == path


def _record(message="Loan approved", **extra):
    record = logging.LogRecord("microlend.loans", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_json_fields(self):
        entry = json.loads(JSONFormatter().format(
            _record(user_id="u1", action="approve_loan", resource="LOAN000001")
        ))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "microlend.loans"
        assert entry["message"] == "Loan approved"
        assert entry["action"] == "approve_loan"
        assert entry["resource"] == "LOAN000001"
        assert "correlation_id" not in entry
        assert "timestamp" in entry

    def test_json_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]

    def test_text_suffix(self):
        line = TextFormatter().format(_record(action="disburse_loan"))
        assert line.endswith("Loan approved [disburse_loan -]")
        assert TextFormatter().format(_record()).endswith("Loan approved")


class TestSetupLogging:

    def test_json_to_file(self, tmp_path):
        log_file = tmp_path / "microlend.log"
        logger = setup_logging("DEBUG", logger_name="microlend.test_json", log_file=str(log_file))

        log_action(logger, "info", "Repayment recorded", user_id="u1", action="record_repayment",
                   resource="LOAN000001", extra={"receipt_id": "RCP000001"})
        logger.handlers[0].flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["user_id"] == "u1"
        assert entry["extra"] == {"receipt_id": "RCP000001"}
        assert not logger.propagate

    def test_handlers_replaced(self, tmp_path):
        name = "microlend.test_replace"
        setup_logging(logger_name=name, log_file=str(tmp_path / "a.log"))
        logger = setup_logging(logger_name=name, log_format="text", log_file=str(tmp_path / "b.log"))
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, TextFormatter)

    def test_level_filtering(self, tmp_path):
        log_file = tmp_path / "warn.log"
        logger = setup_logging("WARNING", logger_name="microlend.test_level", log_file=str(log_file))
        log_action(logger, "info", "ignored")
        log_action(logger, "warning", "kept")
        logger.handlers[0].flush()
        lines = log_file.read_text().splitlines()
        assert [json.loads(line)["message"] for line in lines] == ["kept"]
