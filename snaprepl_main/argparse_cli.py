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
"""Documentation, definition of input data and ArgumentParser used by the 'snaprepl' CLI."""

from __future__ import (
    annotations,
)
import argparse

from snaprepl_main.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: str = "0.3.0"
ZFS_PROGRAM_DEFAULT: str = "zfs"
SSH_PROGRAM_DEFAULT: str = "ssh"
ZFS_RECV_OPTS_DEFAULT: str = "-o mountpoint=none -o readonly=on"
COMMANDS: tuple[str, ...] = (
    "list_snapshots",
    "init_repl",
    "repl",
    "remote_init_archive",
    "remote_load_archive",
    "remote_repl",
    "snapshot",
    "snapshot_cleanup",
)


def _non_negative_int(value: str) -> int:
    """Parses a non-negative integer CLI value."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0 but got: {number}")
    return number


def _non_empty_str(value: str) -> str:
    """Parses a CLI value that must not be empty or whitespace only."""
    if not value.strip():
        raise argparse.ArgumentTypeError("must not be empty")
    return value


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by snaprepl."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} manages periodic ZFS snapshots of pools and replicates them to a second pool on the same host, to a
detached file archive, or over ssh to a remote host. It is meant to be run periodically, e.g. from cron, and does
not run as a daemon.*

A replication session creates a new base snapshot, streams it ('zfs send', full or incremental relative to the most
recent snapshot that both replicas have in common) into 'zfs receive', and, only once the transfer has been
confirmed, removes the snapshots that the new base supersedes. If the transfer fails, only the just created base
snapshot is destroyed, so the replica timelines never retain a half landed snapshot and a retry is always safe.

Typical usage:

* Create an 'auto_' snapshot of every mounted filesystem, e.g. hourly:

`   {PROG_NAME} snapshot`

* Prune 'auto_' snapshots older than 48 hours:

`   {PROG_NAME} snapshot_cleanup tank 48`

* Replicate pool 'tank' to pool 'backup/tank' for the first time, then incrementally:

`   {PROG_NAME} init_repl tank backup/tank`

`   {PROG_NAME} repl tank backup/tank`

* Seed an offsite replica via a file archive, then keep it up to date via ssh:

`   {PROG_NAME} remote_init_archive tank /mnt/usb/tank.zstream /var/lib/{PROG_NAME}/tank.json`

`   {PROG_NAME} remote_load_archive offsite/tank /mnt/usb/tank.zstream`  (on the remote host)

`   {PROG_NAME} remote_repl backup@offsite.example.com /var/lib/{PROG_NAME}/tank.json`

Exit codes: 0 on success, 2 on invalid arguments, 3 on unexpected errors, and 10..18 for the respective error type
(clock, catalog, no precursor, producer spawn, consumer spawn, pipeline, archive io, metadata, snapshot create).
""")

    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of verbosity. "
             "To print what is happening in great detail, specify -v -v. Overrides the environment variable "
             f"{ENV_VAR_PREFIX}LOG_LEVEL, which defaults to INFO.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--log-file", type=_non_empty_str, default=None, metavar="FILE",
        help="Also append log output to this file.\n\n")
    parser.add_argument(
        "--zfs-program", type=_non_empty_str, default=None, metavar="STRING",
        help=f"The name or path of the 'zfs' executable (default: ${ENV_VAR_PREFIX}ZFS_PROGRAM or "
             f"'{ZFS_PROGRAM_DEFAULT}').\n\n")
    parser.add_argument(
        "--ssh-program", type=_non_empty_str, default=None, metavar="STRING",
        help=f"The name or path of the 'ssh' executable used by remote_repl (default: ${ENV_VAR_PREFIX}SSH_PROGRAM "
             f"or '{SSH_PROGRAM_DEFAULT}').\n\n")
    parser.add_argument(
        "--ssh-opt", action="append", default=[], metavar="STRING",
        help="Extra argument to pass to ssh before the remote endpoint, for example --ssh-opt=-p --ssh-opt=2222. "
             "Can be specified multiple times.\n\n")
    parser.add_argument(
        "--timezone", default=None, type=str, metavar="TZ_SPEC",
        help="Time zone used for snapshot labels and for the snapshot_cleanup cutoff. Default is the local time zone. "
             "Examples: 'UTC', '+02:00', 'Europe/Vienna'.\n\n")
    parser.add_argument(
        "--zfs-recv-opts", type=str, default=ZFS_RECV_OPTS_DEFAULT, metavar="STRING",
        help=f"Options passed to 'zfs receive' (default: '{ZFS_RECV_OPTS_DEFAULT}').\n\n")
    parser.add_argument(
        "--no-raw", action="store_true",
        help="Do not send encrypted datasets as raw streams, i.e. omit 'zfs send -w'.\n\n")
    parser.add_argument(
        "--no-large-blocks", action="store_true",
        help="Omit 'zfs send -L'.\n\n")
    parser.add_argument(
        "--force-recv", action="store_true",
        help="Pass -F to 'zfs receive', i.e. roll back the destination to its most recent snapshot (and for a full "
             "receive, overwrite it) before receiving.\n\n")
    parser.add_argument(
        "--strict-ssh-exit-status", action="store_true",
        help="By default remote_repl accepts ssh exit code 1 in addition to 0, because an ssh session into a forced "
             "'zfs receive' command can report a benign non-zero code on disconnect. With this flag only exit code 0 "
             "is treated as success.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}",
        help="Display version information and exit.\n\n")

    def add_dryrun(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "-n", "--dryrun", "--dry-run", dest="dryrun", action="store_true",
            help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
                 "for real. Neither creates nor destroys snapshots, nor spawns 'zfs send' or 'zfs receive'.\n\n")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    sub = subparsers.add_parser(
        "list_snapshots", help="List all snapshots of a pool and its descendants.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("pool", type=_non_empty_str, help="Pool or dataset to list.")

    sub = subparsers.add_parser(
        "init_repl", help="Full replication of a new 'repl_' base snapshot from one local pool to another.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("from_pool", type=_non_empty_str, help="Source pool.")
    sub.add_argument("to_pool", type=_non_empty_str, help="Destination pool, which must not yet exist (unless "
                                                           "--force-recv).")
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "repl", help="Incremental replication from the most recent common 'repl_' snapshot to a new 'repl_' base.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("from_pool", type=_non_empty_str, help="Source pool.")
    sub.add_argument("to_pool", type=_non_empty_str, help="Destination pool.")
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "remote_init_archive", help="Full replication of a new 'remote_' base snapshot into a file archive, "
                                    "recording the base in a metadata file.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("pool", type=_non_empty_str, help="Source pool.")
    sub.add_argument("file", type=_non_empty_str, help="Archive file to write.")
    sub.add_argument("metadata_path", type=_non_empty_str,
                     help="JSON metadata file that tracks which snapshot the next remote_repl is anchored on.")
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "remote_load_archive", help="Receive a file archive into a pool, as a full replication.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("pool", type=_non_empty_str, help="Destination pool.")
    sub.add_argument("file", type=_non_empty_str, help="Archive file to read.")
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "remote_repl", help="Incremental replication via ssh, anchored on the snapshot recorded in a metadata file.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("remote_endpoint", type=_non_empty_str,
                     help="ssh destination, e.g. 'backup@host', whose authorized_keys entry forces a 'zfs receive'.")
    sub.add_argument("metadata_path", type=_non_empty_str,
                     help="JSON metadata file written by remote_init_archive or a previous remote_repl.")
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "snapshot", help="Create one 'auto_' snapshot of every mounted filesystem.",
        formatter_class=argparse.RawTextHelpFormatter)
    add_dryrun(sub)

    sub = subparsers.add_parser(
        "snapshot_cleanup", help="Destroy 'auto_' snapshots older than the given number of hours.",
        formatter_class=argparse.RawTextHelpFormatter)
    sub.add_argument("pool", type=_non_empty_str, help="Pool whose 'auto_' snapshots (recursively) to prune.")
    sub.add_argument("keep_hours", type=_non_negative_int, help="Retention window in hours.")
    add_dryrun(sub)
    # fmt: on
    return parser
