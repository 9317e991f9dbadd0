"""
test_logging_setup.py - Root logger configuration
"""

import logging

import pytest

from lending import configure_logging


@pytest.fixture
def restore_root_level():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)


class TestConfigureLogging:

    def test_named_level(self, restore_root_level):
        configure_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_lowercase_level(self, restore_root_level):
        configure_logging("warning")
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, restore_root_level):
        configure_logging("VERBOSE")
        assert logging.getLogger().level == logging.INFO

    def test_engine_events_logged(self, protocol, ctx, caplog):
        with caplog.at_level(logging.INFO, logger="lending"):
            protocol.deposit(ctx("alice"), "ETH", 1)
        assert any("deposited" in r.getMessage() for r in caplog.records)
