"""
Tests for logging setup.
"""

import json
import logging

import pytest

from headjack import __version__
from headjack.utils.logging_config import ColoredFormatter, StructuredFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message="hello", level=logging.INFO, **extra):
    record = logging.LogRecord("headjack.test", level, __file__, 1, message, None, None)
    record.__dict__.update(extra)
    return record


class TestStructuredFormatter:

    def test_adds_service_fields(self):
        formatter = StructuredFormatter('%(name)s %(levelname)s %(message)s')
        payload = json.loads(formatter.format(make_record(room_id="!room:example.org")))

        assert payload["message"] == "hello"
        assert payload["service"] == "headjack"
        assert payload["version"] == __version__
        assert payload["level"] == "INFO"
        assert payload["room_id"] == "!room:example.org"
        assert "timestamp" in payload

    def test_room_id_is_optional(self):
        formatter = StructuredFormatter('%(message)s')
        payload = json.loads(formatter.format(make_record()))
        assert "room_id" not in payload


class TestColoredFormatter:

    def test_colors_level_without_touching_record(self):
        formatter = ColoredFormatter('%(levelname)s %(message)s')
        record = make_record(level=logging.WARNING)

        output = formatter.format(record)

        assert "\033[33mWARNING\033[0m" in output
        assert record.levelname == "WARNING"


class TestSetupLogging:

    def test_text_console(self):
        setup_logging("debug")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, ColoredFormatter)
        assert logging.getLogger("nio").level == logging.WARNING

    def test_json_console_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "bot.log"
        setup_logging("INFO", log_format="json", log_file=str(log_file))

        logging.getLogger("headjack.test").info("written", extra={"room_id": "!r:example.org"})
        for handler in logging.getLogger().handlers:
            handler.flush()

        root = logging.getLogger()
        assert all(isinstance(h.formatter, StructuredFormatter) for h in root.handlers)
        line = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert line["message"] == "written"
        assert line["room_id"] == "!r:example.org"

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging("LOUD")
