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
"""Test case base class used by most unit tests.

Provides shared setup for consistent CLI argument parsing and for building Params objects without touching the real
logging configuration.
"""

from __future__ import annotations
import argparse
import logging
import unittest
from unittest.mock import MagicMock

from snaprepl_main import argparse_cli, configuration


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args)

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, log_params=log_params, log=log)
