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
"""Unit tests for snapshot label generation and snapshot name parsing."""

from __future__ import (
    annotations,
)
import unittest
from datetime import (
    datetime,
    timedelta,
    timezone,
    tzinfo,
)
from typing import (
    Callable,
)

from snaprepl_main.errors import (
    ClockError,
)
from snaprepl_main.naming import (
    AUTO_PREFIX,
    KIND_PREFIXES,
    REMOTE_PREFIX,
    REPL_PREFIX,
    dataset_of,
    format_timestamp,
    label_of,
    new_label,
    now,
    snapshot_name,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestNewLabel,
        TestSnapshotNames,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def fixed_clock(dt: datetime) -> Callable[[tzinfo | None], datetime]:
    def now_fn(tz: tzinfo | None) -> datetime:
        return dt if tz is None else dt.astimezone(tz)

    return now_fn


#############################################################################
class TestNewLabel(unittest.TestCase):

    def test_format(self) -> None:
        dt = datetime(2024, 11, 6, 8, 30, 5, tzinfo=timezone.utc)
        self.assertEqual("2024_11_06_08_30_05", format_timestamp(dt))
        self.assertEqual("repl_2024_11_06_08_30_05", new_label(REPL_PREFIX, "UTC", fixed_clock(dt)))
        self.assertEqual("auto_2024_11_06_08_30_05", new_label(AUTO_PREFIX, "UTC", fixed_clock(dt)))
        self.assertEqual("remote_2024_11_06_08_30_05", new_label(REMOTE_PREFIX, "UTC", fixed_clock(dt)))

    def test_honors_time_zone(self) -> None:
        dt = datetime(2024, 11, 6, 23, 30, 5, tzinfo=timezone.utc)
        self.assertEqual("repl_2024_11_07_01_30_05", new_label(REPL_PREFIX, "+02:00", fixed_clock(dt)))

    def test_labels_sort_chronologically(self) -> None:
        t1 = datetime(2024, 9, 30, 23, 59, 59, tzinfo=timezone.utc)
        for delta in (timedelta(seconds=1), timedelta(minutes=1), timedelta(hours=5), timedelta(days=40)):
            t2 = t1 + delta
            for kind in KIND_PREFIXES:
                self.assertLess(new_label(kind, "UTC", fixed_clock(t1)), new_label(kind, "UTC", fixed_clock(t2)))

    def test_zero_padded_fixed_width(self) -> None:
        label = new_label(AUTO_PREFIX, "UTC", fixed_clock(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)))
        self.assertEqual("auto_2024_01_02_03_04_05", label)
        self.assertEqual(len("auto_") + 19, len(label))

    def test_local_time_zone(self) -> None:
        label = new_label(AUTO_PREFIX)
        self.assertTrue(label.startswith(AUTO_PREFIX))
        self.assertIsNotNone(now().tzinfo)

    def test_invalid_kind(self) -> None:
        with self.assertRaises(ValueError):
            new_label("hourly_", "UTC")

    def test_unresolvable_time_zone_raises_clock_error(self) -> None:
        with self.assertRaises(ClockError):
            new_label(REPL_PREFIX, "not-a-zone")
        with self.assertRaises(ClockError):
            new_label(REPL_PREFIX, "Nowhere/Nonexisting_City")

    def test_failing_clock_raises_clock_error(self) -> None:
        def broken_clock(tz: tzinfo | None) -> datetime:
            raise OSError("no clock")

        with self.assertRaises(ClockError):
            now("UTC", broken_clock)


#############################################################################
class TestSnapshotNames(unittest.TestCase):

    def test_snapshot_name(self) -> None:
        self.assertEqual("tank/a@repl_1", snapshot_name("tank/a", "repl_1"))

    def test_label_of(self) -> None:
        self.assertEqual("repl_1", label_of("tank/a@repl_1"))
        self.assertEqual("", label_of("tank/a"))
        self.assertEqual("x", label_of("weird@name@x"))

    def test_dataset_of(self) -> None:
        self.assertEqual("tank/a", dataset_of("tank/a@repl_1"))
        self.assertEqual("weird@name", dataset_of("weird@name@x"))
