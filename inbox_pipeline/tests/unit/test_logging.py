"""Unit tests for logging setup."""

import logging

import pytest
import structlog

from inbox_pipeline.core.logging import bind_context, clear_context, configure_logging


@pytest.fixture(autouse=True)
def restore_structlog():
    yield
    clear_context()
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_polling_libraries_quieted(self):
        configure_logging("DEBUG", json_output=True)

        assert logging.getLogger("apscheduler").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_unknown_level_accepted(self):
        configure_logging("chatty", json_output=False)
        assert logging.getLogger("apscheduler").level == logging.WARNING


class TestContext:
    def test_bind_and_clear(self):
        """Test job context is visible to later log calls until cleared."""
        clear_context()
        bind_context(job_id="classify-7-1700000000000", message_id=7)

        assert structlog.contextvars.get_contextvars() == {
            "job_id": "classify-7-1700000000000",
            "message_id": 7,
        }

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}
