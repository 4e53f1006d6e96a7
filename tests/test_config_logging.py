"""
Tests for configuration, structured logging and system wiring
"""

import json
import logging
import pytest

from atm_core.config import AtmConfig, get_config, reload_config
from atm_core.logging_config import JSONFormatter, get_logger, log_action, mask_card, setup_logging
from atm_core.storage import InMemoryStorage, JSONFileStorage
from atm_core.system import AtmSystem
from atm_core.audit import AuditEventType


class TestConfig:

    def test_defaults(self):
        config = AtmConfig()
        assert config.card_number_length == 16
        assert config.max_failed_attempts == 5
        assert config.temp_lock_minutes == 30
        assert config.admin_card_number == "9999888877776666"
        assert config.admin_default_pin == "8888"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("ATM_MAX_FAILED_ATTEMPTS", "3")
        monkeypatch.setenv("ATM_STORAGE_BACKEND", "memory")

        config = reload_config()
        try:
            assert config.max_failed_attempts == 3
            assert config.storage_backend == "memory"
            assert get_config() is config
        finally:
            monkeypatch.delenv("ATM_MAX_FAILED_ATTEMPTS")
            monkeypatch.delenv("ATM_STORAGE_BACKEND")
            reload_config()


class TestLogging:

    def test_mask_card(self):
        assert mask_card("1111222233334444") == "************4444"
        assert mask_card("123") == "123"
        assert mask_card(None) == ""

    def test_json_formatter(self):
        record = logging.LogRecord("atm.test", logging.INFO, __file__, 1, "hello", (), None)
        record.card_number = "****4444"
        record.action = "withdraw"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["card_number"] == "****4444"
        assert entry["action"] == "withdraw"
        assert "correlation_id" not in entry

    def test_log_action_masks_card(self, caplog):
        logger = get_logger("atm.test")
        with caplog.at_level(logging.INFO, logger="atm.test"):
            log_action(logger, "info", "Withdrew 10", card_number="1111222233334444",
                       action="withdraw", extra={"balance_after": "90"})

        record = caplog.records[-1]
        assert record.card_number == "************4444"
        assert record.action == "withdraw"
        assert record.extra == {"balance_after": "90"}

    def test_log_action_respects_level(self, caplog):
        logger = get_logger("atm.quiet")
        with caplog.at_level(logging.WARNING, logger="atm.quiet"):
            log_action(logger, "debug", "noise")
        assert not caplog.records

    def test_setup_logging_text_format(self, tmp_path):
        log_file = tmp_path / "atm.log"
        logger = setup_logging("DEBUG", logger_name="atm_setup_test", log_format="text",
                               log_file=str(log_file))
        logger.info("started")
        for handler in logger.handlers:
            handler.close()

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert "| INFO     | atm_setup_test | started" in log_file.read_text()

    def test_pin_never_logged(self, system, make_account, caplog):
        make_account("1111222233334444", pin="1234")
        with caplog.at_level(logging.DEBUG, logger="atm"):
            system.account_service.login("1111222233334444", "1234")
            system.account_service.change_pin("1111222233334444", "1234", "246810")

        for record in caplog.records:
            assert "246810" not in record.getMessage()
            assert "1111222233334444" not in record.getMessage()


class TestAtmSystem:

    def test_memory_backend(self, config):
        system = AtmSystem(config=config)
        assert isinstance(system.storage, InMemoryStorage)
        assert system.store.exists(config.admin_card_number)
        assert system.account_service.locks is system.admin_service.locks

    def test_json_backend_survives_restart(self, tmp_path):
        config = AtmConfig(storage_backend="json", data_dir=str(tmp_path),
                           pin_hash_n=2, pin_hash_r=1, pin_hash_p=1, configure_logging=False)
        system = AtmSystem(config=config)
        assert isinstance(system.storage, JSONFileStorage)

        system.admin_service.create_account(True, "1111222233334444", "1234", "Zhang San", "500", "200")
        system.account_service.withdraw("1111222233334444", 100)
        system.close()

        reopened = AtmSystem(config=config)
        assert reopened.account_service.get_balance("1111222233334444") == 400
        assert len(reopened.ledger.all()) == 1
        assert reopened.audit_trail.verify_integrity()["valid"]
        assert len(reopened.audit_trail.get_events_by_type(AuditEventType.ADMIN_BOOTSTRAPPED)) == 1

    def test_log_settings_applied(self, monkeypatch, tmp_path):
        log_file = tmp_path / "atm.log"
        monkeypatch.setenv("ATM_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("ATM_LOG_FORMAT", "text")
        monkeypatch.setenv("ATM_LOG_FILE", str(log_file))

        logger = logging.getLogger("atm")
        try:
            AtmSystem(config=AtmConfig(storage_backend="memory",
                                       pin_hash_n=2, pin_hash_r=1, pin_hash_p=1))
            assert logger.level == logging.ERROR
            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0], logging.FileHandler)

            logging.getLogger("atm.system").warning("below threshold")
            logging.getLogger("atm.system").error("store unavailable")
            logger.handlers[0].flush()

            text = log_file.read_text()
            assert "| ERROR    | atm.system | store unavailable" in text
            assert "below threshold" not in text
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)
            logger.propagate = True

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            AtmSystem(config=AtmConfig(storage_backend="sqlite", configure_logging=False))

    def test_bootstrap_audited_once(self, system):
        events = system.audit_trail.get_events_by_type(AuditEventType.ADMIN_BOOTSTRAPPED)
        assert len(events) == 1
        assert events[0].entity_id == system.config.admin_card_number

    def test_demo_seed(self, storage, clock):
        config = AtmConfig(storage_backend="memory", seed_demo_accounts=True,
                           pin_hash_n=2, pin_hash_r=1, pin_hash_p=1, configure_logging=False)
        system = AtmSystem(config=config, storage=storage, clock=clock)

        assert system.account_service.login("1234567890123456", "1234")
        assert system.account_service.login("3456789012345678", "3456").error_kind.value == "account_locked"
