# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for logging configuration utilities."""

from __future__ import (
    annotations,
)
import logging
import os
import tempfile
import unittest

from snaprepl_main.configuration import (
    LogParams,
)
from snaprepl_main.loggers import (
    MSG_COLUMN,
    get_default_log_formatter,
    get_logger,
    get_simple_logger,
    reset_logger,
)
from snaprepl_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
)
from snaprepl_tests.abstract_testcase import (
    AbstractTestCase,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestLogging,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestLogging(AbstractTestCase):

    def test_get_logger_without_log_file(self) -> None:
        log = get_logger(LogParams(self.argparser_parse_args(["-v", "snapshot"])))
        try:
            self.assertFalse(log.propagate)
            self.assertEqual(logging.DEBUG, log.level)
            self.assertEqual(1, len(log.handlers))
            self.assertIsInstance(log.handlers[0], logging.StreamHandler)
            self.assertNotIn(log.name, logging.root.manager.loggerDict)
        finally:
            reset_logger(log)
        self.assertEqual([], log.handlers)

    def test_get_logger_with_log_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "snaprepl.log")
            log = get_logger(LogParams(self.argparser_parse_args(["--log-file", log_file, "snapshot"])))
            try:
                self.assertTrue(any(isinstance(h, logging.FileHandler) for h in log.handlers))
                log.info("%s", "hello world")
            finally:
                reset_logger(log)
            with open(log_file, encoding="utf-8") as f:
                content = f.read()
            self.assertIn("[I] hello world", content)
            self.assertEqual(0o600, os.stat(log_file).st_mode & 0o777)

    def test_log_file_must_not_be_symlink(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            target = os.path.join(tmpdir, "target.log")
            link = os.path.join(tmpdir, "link.log")
            os.symlink(target, link)
            with self.assertRaises(OSError):
                get_logger(LogParams(self.argparser_parse_args(["--log-file", link, "snapshot"])))

    def test_third_party_logger_is_used_as_is(self) -> None:
        log = logging.getLogger("snaprepl_test_third_party")
        self.assertIs(log, get_logger(LogParams(self.argparser_parse_args(["snapshot"])), log=log))

    def test_custom_levels(self) -> None:
        get_simple_logger()
        self.assertEqual("TRACE", logging.getLevelName(LOG_TRACE))
        self.assertEqual("STDERR", logging.getLevelName(LOG_STDERR))
        self.assertEqual("STDOUT", logging.getLevelName(LOG_STDOUT))
        self.assertLess(LOG_TRACE, logging.DEBUG)
        self.assertLess(logging.INFO, LOG_STDOUT)
        self.assertLess(LOG_STDOUT, LOG_STDERR)
        self.assertLess(LOG_STDERR, logging.WARNING)

    def test_default_formatter(self) -> None:
        formatter = get_default_log_formatter()
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "Deleting: %s", ("tank@s1",), None)
        msg = formatter.format(record)
        self.assertIn("[W] Deleting:", msg)
        self.assertTrue(msg.endswith("tank@s1"))
        self.assertEqual(MSG_COLUMN, msg.index("tank@s1"))

        record = logging.LogRecord("x", LOG_STDOUT, __file__, 1, "%s", ("raw output",), None)
        self.assertEqual("raw output", formatter.format(record))

    def test_simple_logger(self) -> None:
        log = get_simple_logger()
        try:
            self.assertEqual(logging.INFO, log.level)
            self.assertFalse(log.propagate)
        finally:
            reset_logger(log)
