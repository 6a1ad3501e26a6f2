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
"""Unit tests for the JSON sidecar file that records the precursor snapshot of archive-based replication."""

from __future__ import (
    annotations,
)
import json
import os
import tempfile
import unittest
from unittest.mock import (
    patch,
)

from snaprepl_main.errors import (
    MetadataError,
)
from snaprepl_main.metadata import (
    PRECURSOR_KEY,
    read_metadata,
    write_metadata,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestMetadata,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestMetadata(unittest.TestCase):

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "tank.json")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def write_raw(self, text: str) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(text)

    def test_write_then_read(self) -> None:
        write_metadata(self.path, "tank@remote_2024_11_06_08_30_05")
        self.assertEqual("tank@remote_2024_11_06_08_30_05", read_metadata(self.path))
        with open(self.path, encoding="utf-8") as f:
            self.assertEqual({PRECURSOR_KEY: "tank@remote_2024_11_06_08_30_05"}, json.load(f))
        self.assertEqual(0o600, os.stat(self.path).st_mode & 0o777)

    def test_overwrite_leaves_no_temp_files(self) -> None:
        write_metadata(self.path, "tank@remote_1")
        write_metadata(self.path, "tank@remote_2")
        self.assertEqual("tank@remote_2", read_metadata(self.path))
        self.assertEqual(["tank.json"], os.listdir(self.tmpdir.name))

    def test_failed_write_keeps_previous_content(self) -> None:
        write_metadata(self.path, "tank@remote_1")
        with patch("snaprepl_main.metadata.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(MetadataError):
                write_metadata(self.path, "tank@remote_2")
        self.assertEqual("tank@remote_1", read_metadata(self.path))
        self.assertEqual(["tank.json"], os.listdir(self.tmpdir.name))

    def test_write_into_missing_directory(self) -> None:
        with self.assertRaises(MetadataError):
            write_metadata(os.path.join(self.tmpdir.name, "nonexisting", "tank.json"), "tank@remote_1")

    def test_write_empty_precursor(self) -> None:
        with self.assertRaises(MetadataError):
            write_metadata(self.path, "")

    def test_missing_file(self) -> None:
        with self.assertRaises(MetadataError):
            read_metadata(self.path)

    def test_invalid_json(self) -> None:
        self.write_raw("{not json")
        with self.assertRaises(MetadataError):
            read_metadata(self.path)

    def test_missing_key(self) -> None:
        self.write_raw('{"precursor_snap": "tank@remote_1"}')
        with self.assertRaises(MetadataError):
            read_metadata(self.path)

    def test_not_an_object(self) -> None:
        self.write_raw('["tank@remote_1"]')
        with self.assertRaises(MetadataError):
            read_metadata(self.path)

    def test_invalid_value(self) -> None:
        for value in ('""', "42", "null", '"  "'):
            self.write_raw('{"precursor_snapshot": ' + value + "}")
            with self.assertRaises(MetadataError):
                read_metadata(self.path)

    def test_symlink_is_rejected(self) -> None:
        target = os.path.join(self.tmpdir.name, "target.json")
        write_metadata(target, "tank@remote_1")
        os.symlink(target, self.path)
        with self.assertRaises(MetadataError):
            read_metadata(self.path)
