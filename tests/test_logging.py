"""Tests for logging utilities."""

import logging

import pytest
from rich.logging import RichHandler

from fleetplay.logging import (
    TRACE,
    StructuredLogger,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
    log_performance,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_default(self):
        """Test default logging configuration."""
        configure_logging()
        assert logging.root.level == logging.WARNING
        assert len(logging.root.handlers) == 1

    def test_configure_custom_level(self):
        """Test custom log level."""
        configure_logging(level=logging.DEBUG)
        assert logging.root.level == logging.DEBUG

    def test_file_handler(self, tmp_path):
        """Test a file handler at its own level."""
        log_file = tmp_path / "logs" / "run.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.DEBUG)
        assert logging.root.level == logging.DEBUG
        logging.getLogger("fleetplay.test").debug("to the file")
        for handler in logging.root.handlers:
            handler.flush()
        assert "to the file" in log_file.read_text()

    def test_rich_console(self):
        """Test the rich console handler is installed on request."""
        configure_logging(rich_console=True)
        assert isinstance(logging.root.handlers[0], RichHandler)


class TestLevels:
    """Tests for verbosity and level-name mapping."""

    def test_verbosity(self):
        """Test -v counts map to levels."""
        assert get_level_from_verbosity(0) == logging.WARNING
        assert get_level_from_verbosity(1) == logging.INFO
        assert get_level_from_verbosity(2) == logging.DEBUG
        assert get_level_from_verbosity(3) == TRACE
        assert get_level_from_verbosity(7) == TRACE

    def test_level_names(self):
        """Test level names, case-insensitively."""
        assert get_level_from_name("DEBUG") == logging.DEBUG
        assert get_level_from_name("trace") == TRACE
        with pytest.raises(ValueError, match="Invalid log level"):
            get_level_from_name("loud")


class TestLogPerformance:
    """Tests for log_performance context manager."""

    def test_logs_duration(self, caplog):
        """Test the duration and context are logged."""
        logger = logging.getLogger("test.perf")
        with caplog.at_level(logging.INFO, logger="test.perf"):
            with log_performance(logger, "Play", hosts=3):
                pass
        assert "Play completed in" in caplog.text
        assert "(hosts=3)" in caplog.text

    def test_threshold(self, caplog):
        """Test fast scopes below the threshold are not logged."""
        logger = logging.getLogger("test.perf.threshold")
        with caplog.at_level(logging.INFO, logger="test.perf.threshold"):
            with log_performance(logger, "Quick", threshold=60):
                pass
        assert "Quick" not in caplog.text

    def test_logs_on_exception(self, caplog):
        """Test the duration is logged even when the scope raises."""
        logger = logging.getLogger("test.perf.error")
        with caplog.at_level(logging.INFO, logger="test.perf.error"):
            with pytest.raises(RuntimeError):
                with log_performance(logger, "Broken"):
                    raise RuntimeError("boom")
        assert "Broken completed in" in caplog.text


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_context_appended(self, caplog):
        """Test bound and call-site context are appended in order."""
        log = StructuredLogger("test.structured", play="deploy")
        with caplog.at_level(logging.INFO, logger="test.structured"):
            log.bind(host="web1").info("Task started", task="install")
        assert "Task started (play=deploy, host=web1, task=install)" in caplog.text

    def test_bind_does_not_mutate(self):
        """Test bind returns a new logger."""
        log = get_logger("test.bind", play="a")
        bound = log.bind(host="h")
        assert log.context == {"play": "a"}
        assert bound.context == {"play": "a", "host": "h"}

    def test_level_filtering(self, caplog):
        """Test disabled levels produce nothing."""
        log = StructuredLogger("test.filtered")
        with caplog.at_level(logging.WARNING, logger="test.filtered"):
            log.debug("hidden")
            log.trace("hidden too")
            log.warning("shown", host="h1")
        assert "hidden" not in caplog.text
        assert "shown (host=h1)" in caplog.text

    def test_performance_uses_context(self, caplog):
        """Test the performance scope carries bound context."""
        log = StructuredLogger("test.structured.perf", play="p")
        with caplog.at_level(logging.INFO, logger="test.structured.perf"):
            with log.performance("Batch", hosts=2):
                pass
        assert "Batch completed in" in caplog.text
        assert "play=p, hosts=2" in caplog.text
