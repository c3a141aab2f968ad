"""Test sou Logging Infrastructure
"""

import logging
import logging.handlers
import sys

import pytest

from sou import SouConfig
from sou.common.exceptions import BadConfig
from sou.common.logger import _handlers, _SouLogFormatter, get_sou_logger


class TestLoggingSetup:
    @pytest.fixture(autouse=True)
    def config(self):
        # Setup the configuration
        self.config = SouConfig()
        self.logger = None
        yield
        # Teardown the setup
        self.config = None
        self.logger = None

    def test_log_messages_bad_logger_type(self):
        """Test unsupported logger type."""
        self.config.logger_type = "badtype"
        with pytest.raises(BadConfig):
            self.logger = get_sou_logger("bad_logger", self.config)

    def test_log_messages_to_file(self, tmp_path):
        """Test to log messages to a file, creating the log directory."""
        fname = "test_log_messages_to_file"
        assert (
            self.config.logger_type == "file"
        ), f"Unexpected logger type encountered, '{self.config.logger_type}', expected 'file'"
        self.config.log_dir = str(tmp_path / "log-dir")
        self.config.log_fmt = "{levelname} {message}"
        self.logger = get_sou_logger(fname, self.config)
        assert (
            tmp_path / "log-dir"
        ).is_dir(), f"Missing logging directory, {self.config.log_dir}"
        assert _handlers[fname] == self.logger.logger.handlers[0]
        assert isinstance(_handlers[fname], logging.FileHandler)

        self.logger.info("layer {} is {}", "sha256:abc", "ready")
        self.logger.debug("not {}", "shown")
        _handlers[fname].flush()
        text = (tmp_path / "log-dir" / f"{fname}.log").read_text()
        assert text == "INFO layer sha256:abc is ready\n"

    def test_log_messages_to_devlog(self):
        """Test to log messages via /dev/log"""
        fname = "test_log_messages_to_devlog"
        self.config.logger_type = "devlog"
        self.logger = get_sou_logger(fname, self.config)
        assert _handlers[fname] == self.logger.logger.handlers[0]
        assert isinstance(_handlers[fname], logging.handlers.SysLogHandler)
        assert (
            _handlers[fname].address == "/dev/log"
        ), f"Unexpected handler address set, {_handlers[fname].address!r}"

    def test_log_messages_to_hostport(self):
        """Test to log messages to a UDP syslog host and port."""
        fname = "test_log_messages_to_hostport"
        self.config.logger_type = "hostport"
        self.config.logger_host = "localhost"
        self.config.logger_port = "42"
        self.logger = get_sou_logger(fname, self.config)
        assert isinstance(_handlers[fname], logging.handlers.SysLogHandler)
        assert _handlers[fname].address == (
            "localhost",
            42,
        ), f"Unexpected handler address set, {_handlers[fname].address!r}"

    @pytest.mark.parametrize(
        "logger_type,handler_class",
        [("stderr", logging.StreamHandler), ("null", logging.NullHandler)],
    )
    def test_log_messages_other_types(self, logger_type, handler_class):
        fname = f"test_log_messages_to_{logger_type}"
        self.config.logger_type = logger_type
        self.logger = get_sou_logger(fname, self.config)
        assert type(_handlers[fname]) is handler_class

    def test_handler_added_once(self):
        fname = "test_handler_added_once"
        self.config.logger_type = "null"
        first = get_sou_logger(fname, self.config)
        second = get_sou_logger(fname, self.config)
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1

    def test_log_level(self, tmp_path):
        """Test to verify log level setting, both the default and per caller."""
        cfg = tmp_path / "sou.cfg"
        cfg.write_text(
            "[logging]\nlogger_type = null\nlogging_level = INFO\n"
            "[test_log_level_other]\nlogging_level = CRITICAL\n"
        )
        config = SouConfig(str(cfg))
        logger = get_sou_logger("test_log_level", config)
        assert (
            logger.logger.getEffectiveLevel() == logging.INFO
        ), f"Unexpected default logging level, {logger.logger.getEffectiveLevel()}"
        logger = get_sou_logger("test_log_level_other", config)
        assert (
            logger.logger.getEffectiveLevel() == logging.CRITICAL
        ), f"Unexpected logging level, {logger.logger.getEffectiveLevel()}"


class TestFormatter:
    @staticmethod
    def record(msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)

    def test_newlines_are_folded(self):
        formatter = _SouLogFormatter(fmt="{levelname} {message}")
        assert formatter.format(self.record("one\ntwo")) == "INFO one#012two"

    def test_exception_is_folded(self):
        formatter = _SouLogFormatter(fmt="{message}")
        try:
            raise ValueError("bad value")
        except ValueError:
            record = logging.LogRecord(
                "test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        text = formatter.format(record)
        assert "\n" not in text
        assert text.startswith("failed#012Traceback")
        assert text.endswith("ValueError: bad value")

    def test_max_line_length(self):
        formatter = _SouLogFormatter(fmt="{message}", max_line_length=15)
        assert formatter.format(self.record("abcdefghijklmnopqrstuvwxyz")) == (
            "abcde ... vwxyz"
        )

    def test_utc_time(self):
        formatter = _SouLogFormatter(fmt="{asctime}")
        record = self.record("x")
        record.created = 0.0
        assert formatter.format(record) == "1970-01-01T00:00:00+00:00"

    def test_license_attribution(self):
        assert "Copyright (c) 2010-2012 OpenStack Foundation" in (
            _SouLogFormatter.__doc__
        )
        assert "Licensed under the Apache License, Version 2.0" in (
            _SouLogFormatter.__doc__
        )
