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
"""Unit tests for finding the most recent common snapshot of two replicas."""

from __future__ import (
    annotations,
)
import logging
import unittest
from unittest.mock import (
    MagicMock,
)

from snaprepl_main.errors import (
    NoPrecursorError,
)
from snaprepl_main.precursor import (
    find_precursor,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestFindPrecursor,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestFindPrecursor(unittest.TestCase):

    def test_returns_newest_common_snapshot(self) -> None:
        self.assertEqual("s2", find_precursor(["s1", "s2", "s3"], ["x@s1", "x@s2"]))

    def test_destination_with_different_pool_prefix(self) -> None:
        src = ["tank@repl_2024_01_01_00_00_00", "tank@repl_2024_01_02_00_00_00", "tank@repl_2024_01_03_00_00_00"]
        dst = ["backup/tank@repl_2024_01_01_00_00_00", "backup/tank@repl_2024_01_02_00_00_00"]
        self.assertEqual("tank@repl_2024_01_02_00_00_00", find_precursor(src, dst))

    def test_identical_names(self) -> None:
        self.assertEqual("tank@repl_1", find_precursor(["tank@repl_1"], ["tank@repl_1"]))

    def test_prefers_newest_source_snapshot_even_if_destination_has_more(self) -> None:
        src = ["tank@repl_1", "tank@repl_2"]
        dst = ["b/tank@repl_1", "b/tank@repl_2", "b/tank@repl_3"]
        self.assertEqual("tank@repl_2", find_precursor(src, dst))

    def test_disjoint_raises(self) -> None:
        with self.assertRaises(NoPrecursorError):
            find_precursor(["tank@repl_1", "tank@repl_2"], ["b/tank@repl_3"])

    def test_empty_inputs_raise(self) -> None:
        with self.assertRaises(NoPrecursorError):
            find_precursor([], ["b/tank@repl_1"])
        with self.assertRaises(NoPrecursorError):
            find_precursor(["tank@repl_1"], [])

    def test_traces_comparisons(self) -> None:
        log = MagicMock(spec=logging.Logger)
        find_precursor(["a@1", "a@2"], ["b/a@1"], log)
        self.assertEqual(2, log.log.call_count)
