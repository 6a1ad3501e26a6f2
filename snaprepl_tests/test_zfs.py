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
"""Unit tests for the 'zfs' and 'ssh' command line builders and for running short-lived commands."""

from __future__ import (
    annotations,
)
import subprocess
import unittest
from unittest.mock import (
    patch,
)

from snaprepl_main.errors import (
    SnapshotCreateError,
)
from snaprepl_main.zfs import (
    create_snapshot,
    destroy_snapshot,
    run_command,
    ssh_cmd,
    zfs_destroy_cmd,
    zfs_receive_cmd,
    zfs_send_cmd,
    zfs_snapshot_cmd,
)
from snaprepl_tests.abstract_testcase import (
    AbstractTestCase,
)
from snaprepl_tests.tools import (
    logged_messages,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestCommandBuilders,
        TestRunCommand,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestCommandBuilders(AbstractTestCase):

    def setUp(self) -> None:
        self.p = self.make_params(self.argparser_parse_args(["--ssh-opt=-p", "--ssh-opt=2222", "repl", "tank", "b"]))

    def test_send(self) -> None:
        self.assertEqual(["zfs", "send", "-v", "-R", "-w", "-L", "tank@s2"], zfs_send_cmd(self.p, "tank@s2"))
        self.assertEqual(
            ["zfs", "send", "-v", "-R", "-w", "-L", "-I", "tank@s1", "tank@s2"],
            zfs_send_cmd(self.p, "tank@s2", precursor="tank@s1"),
        )

    def test_receive(self) -> None:
        self.assertEqual(
            ["zfs", "receive", "-o", "mountpoint=none", "-o", "readonly=on", "backup"], zfs_receive_cmd(self.p, "backup")
        )

    def test_snapshot(self) -> None:
        self.assertEqual(["zfs", "snapshot", "-r", "tank@s1"], zfs_snapshot_cmd(self.p, "tank@s1", recursive=True))
        self.assertEqual(["zfs", "snapshot", "tank@s1"], zfs_snapshot_cmd(self.p, "tank@s1", recursive=False))

    def test_destroy(self) -> None:
        self.assertEqual(["zfs", "destroy", "-r", "tank@s1"], zfs_destroy_cmd(self.p, "tank@s1"))
        with self.assertRaises(AssertionError):
            zfs_destroy_cmd(self.p, "tank")

    def test_ssh(self) -> None:
        self.assertEqual(["ssh", "-p", "2222", "backup@host"], ssh_cmd(self.p, "backup@host"))


#############################################################################
class TestRunCommand(AbstractTestCase):

    def test_returns_stdout_and_logs(self) -> None:
        p = self.make_params(self.argparser_parse_args(["snapshot"]))
        self.assertEqual("hello\n", run_command(p, ["sh", "-c", "echo hello"]))
        self.assertIn("Executing: sh -c echo hello", logged_messages(p.log))

    def test_failure_raises_and_logs_stderr(self) -> None:
        p = self.make_params(self.argparser_parse_args(["snapshot"]))
        with self.assertRaises(subprocess.CalledProcessError):
            run_command(p, ["sh", "-c", "echo oops >&2; exit 1"])
        self.assertIn("oops", logged_messages(p.log))

    def test_dry_run_does_not_execute(self) -> None:
        p = self.make_params(self.argparser_parse_args(["snapshot"]))
        with patch("snaprepl_main.zfs.subprocess_run") as run:
            self.assertEqual("", run_command(p, ["zfs", "snapshot", "tank@s1"], is_dry=True))
        run.assert_not_called()
        self.assertIn("Would execute: zfs snapshot tank@s1", logged_messages(p.log))

    def test_create_snapshot_failure(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--zfs-program=false", "snapshot"]))
        with self.assertRaises(SnapshotCreateError):
            create_snapshot(p, "tank@s1", recursive=False)

    def test_create_snapshot_missing_program(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--zfs-program=snaprepl-nonexisting-program", "snapshot"]))
        with self.assertRaises(SnapshotCreateError):
            create_snapshot(p, "tank@s1", recursive=True)

    def test_create_and_destroy_snapshot(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--zfs-program=true", "snapshot"]))
        create_snapshot(p, "tank@s1", recursive=True)
        destroy_snapshot(p, "tank@s1")
        messages = logged_messages(p.log)
        self.assertIn("Executing: true snapshot -r tank@s1", messages)
        self.assertIn("Executing: true destroy -r tank@s1", messages)

    def test_destroy_snapshot_failure_propagates(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--zfs-program=false", "snapshot"]))
        with self.assertRaises(subprocess.CalledProcessError):
            destroy_snapshot(p, "tank@s1")
