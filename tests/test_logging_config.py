"""
Tests for satchel_core.logging_config — formatters, redaction and setup.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
import unittest
import warnings

from satchel_core.config import LoggingConfig
from satchel_core.errors import DegradedSecurityWarning
from satchel_core.logging_config import (
    REDACTED,
    _HumanFormatter,
    _JSONFormatter,
    _RedactingFilter,
    redact,
    setup_logging,
    setup_logging_from_config,
)

SECRET_HEX = "ab" * 32


def _record(msg, *args, level=logging.INFO, exc_info=None):
    return logging.LogRecord("satchel", level, __file__, 1, msg, args, exc_info)


class TestRedact(unittest.TestCase):

    def test_masks_key_sized_hex(self):
        self.assertEqual(redact(f"key={SECRET_HEX}"), f"key={REDACTED}")

    def test_leaves_short_hex(self):
        fingerprint = "3442193e"
        self.assertEqual(redact(f"fingerprint {fingerprint}"), f"fingerprint {fingerprint}")

    def test_leaves_addresses(self):
        text = "address bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        self.assertEqual(redact(text), text)


class TestRedactingFilter(unittest.TestCase):

    def test_rewrites_formatted_message(self):
        record = _record("derived %s", SECRET_HEX)
        self.assertTrue(_RedactingFilter().filter(record))
        self.assertEqual(record.getMessage(), f"derived {REDACTED}")

    def test_untouched_when_clean(self):
        record = _record("unlocked %s", "mainnet")
        _RedactingFilter().filter(record)
        self.assertEqual(record.args, ("mainnet",))


class TestFormatters(unittest.TestCase):

    def test_json_fields(self):
        obj = json.loads(_JSONFormatter().format(_record("hello")))
        self.assertEqual(obj["level"], "INFO")
        self.assertEqual(obj["logger"], "satchel")
        self.assertEqual(obj["msg"], "hello")
        self.assertIn("ts", obj)

    def test_json_exception(self):
        try:
            raise ValueError(SECRET_HEX)
        except ValueError:
            record = _record("failed", level=logging.ERROR, exc_info=sys.exc_info())
        obj = json.loads(_JSONFormatter().format(record))
        self.assertEqual(obj["error"], "ValueError")
        self.assertNotIn(SECRET_HEX, obj["exception"])

    def test_human_plain(self):
        line = _HumanFormatter(colour=False).format(_record("hello", level=logging.WARNING))
        self.assertIn("[WARNING]", line)
        self.assertIn("satchel: hello", line)
        self.assertNotIn("\033[", line)

    def test_human_colour(self):
        line = _HumanFormatter(colour=True).format(_record("hello", level=logging.ERROR))
        self.assertIn("\033[31m", line)


class TestSetupLogging(unittest.TestCase):

    def setUp(self):
        root = logging.getLogger()
        self._handlers = list(root.handlers)
        self._level = root.level
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._handlers:
                handler.close()
        root.handlers[:] = self._handlers
        root.setLevel(self._level)
        logging.captureWarnings(False)
        self.tmp.cleanup()

    def test_console_only(self):
        setup_logging(level="DEBUG", fmt="json")
        root = logging.getLogger()
        self.assertEqual(root.level, logging.DEBUG)
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0].formatter, _JSONFormatter)
        self.assertTrue(any(isinstance(f, _RedactingFilter) for f in root.handlers[0].filters))

    def test_unknown_level_defaults_to_info(self):
        setup_logging(level="chatty")
        self.assertEqual(logging.getLogger().level, logging.INFO)

    def test_file_handler_is_json_and_redacted(self):
        path = os.path.join(self.tmp.name, "logs", "satchel.log")
        setup_logging(level="INFO", fmt="human", log_file=path)
        logging.getLogger("satchel").info(f"seed {SECRET_HEX}")
        for handler in logging.getLogger().handlers:
            handler.flush()
        with open(path) as f:
            line = json.loads(f.readline())
        self.assertEqual(line["msg"], f"seed {REDACTED}")

    def test_from_config(self):
        setup_logging_from_config(LoggingConfig(level="WARNING", format="human"))
        root = logging.getLogger()
        self.assertEqual(root.level, logging.WARNING)
        self.assertIsInstance(root.handlers[0].formatter, _HumanFormatter)

    def test_warnings_are_captured(self):
        setup_logging(level="WARNING")
        with warnings.catch_warnings(), self.assertLogs("py.warnings", level="WARNING") as captured:
            warnings.simplefilter("always")
            warnings.warn("raw key fallback", DegradedSecurityWarning)
        self.assertIn("raw key fallback", captured.output[0])


if __name__ == "__main__":
    unittest.main()
