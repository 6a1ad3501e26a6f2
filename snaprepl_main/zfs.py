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
"""Builders for the 'zfs' and 'ssh' command lines used by snaprepl, plus run_command(), which executes a short-lived CLI
command on the localhost, logs it, and returns its stdout.

Long-running data transfers ('zfs send' piped into 'zfs receive') are not run from here but from pipeline.py.
"""

from __future__ import (
    annotations,
)
import logging
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    TYPE_CHECKING,
)

from snaprepl_main.errors import (
    SnapshotCreateError,
)
from snaprepl_main.utils import (
    LOG_DEBUG,
    list_formatter,
    stderr_to_str,
    subprocess_run,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from snaprepl_main.configuration import (
        Params,
    )


def zfs_list_snapshots_cmd(p: Params, pool: str, recursive: bool) -> list[str]:
    """Returns 'zfs list -H -t snapshot -o name [-r] pool'."""
    return [p.zfs_program, "list", "-H", "-t", "snapshot", "-o", "name"] + (["-r"] if recursive else []) + [pool]


def zfs_list_filesystems_cmd(p: Params) -> list[str]:
    """Returns 'zfs list -H -t filesystem -o name,mountpoint'."""
    return [p.zfs_program, "list", "-H", "-t", "filesystem", "-o", "name,mountpoint"]


def zfs_snapshot_cmd(p: Params, snapshot: str, recursive: bool) -> list[str]:
    """Returns 'zfs snapshot [-r] dataset@label'."""
    return [p.zfs_program, "snapshot"] + (["-r"] if recursive else []) + [snapshot]


def zfs_destroy_cmd(p: Params, snapshot: str) -> list[str]:
    """Returns 'zfs destroy -r dataset@label', which also destroys the same-named snapshots of all descendants."""
    assert "@" in snapshot, snapshot  # never destroy a dataset
    return [p.zfs_program, "destroy", "-r", snapshot]


def zfs_send_cmd(p: Params, new_base: str, precursor: str | None = None) -> list[str]:
    """Returns a full 'zfs send' of new_base, or an incremental 'zfs send -I precursor new_base' if precursor is given."""
    incremental: list[str] = ["-I", precursor] if precursor else []
    return [p.zfs_program, "send"] + p.send_recv_config.send_opts() + incremental + [new_base]


def zfs_receive_cmd(p: Params, dataset: str) -> list[str]:
    """Returns 'zfs receive <opts> dataset'."""
    return [p.zfs_program, "receive"] + p.send_recv_config.receive_opts() + [dataset]


def ssh_cmd(p: Params, remote_endpoint: str) -> list[str]:
    """Returns 'ssh <extra opts> remote_endpoint'; The remote side's authorized_keys entry is expected to force the
    command, e.g. command="/usr/sbin/zfs recv ..."."""
    return [p.ssh_program] + p.ssh_extra_opts + [remote_endpoint]


def run_command(
    p: Params,
    cmd: list[str],
    level: int = LOG_DEBUG,
    is_dry: bool = False,
    print_stdout: bool = False,
    print_stderr: bool = True,
) -> str:
    """Runs the given CLI cmd on the localhost and returns its stdout.

    Raises subprocess.CalledProcessError on non-zero exit, OSError if the program cannot be started, and UnicodeDecodeError
    if the output isn't valid UTF-8. Logs stderr of a failed command as a warning.
    """
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    log: logging.Logger = p.log
    msg: str = "Would execute: %s" if is_dry else "Executing: %s"
    log.log(level, msg, list_formatter(cmd, lstrip=True))
    if is_dry:
        return ""
    try:
        process = subprocess_run(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, encoding="utf-8", check=True)
    except subprocess.CalledProcessError as e:
        xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout)
        log.warning("%s", stderr_to_str(e.stderr).rstrip())
        raise
    xprint(log, process.stdout, run=print_stdout, file=sys.stdout)
    xprint(log, process.stderr, run=print_stderr, file=sys.stderr)
    return process.stdout


def create_snapshot(p: Params, snapshot: str, recursive: bool, is_dry: bool = False) -> None:
    """Creates the given snapshot via 'zfs snapshot'; raises SnapshotCreateError on failure."""
    p.log.info(p.dry("Creating snapshot: %s"), snapshot)
    try:
        run_command(p, zfs_snapshot_cmd(p, snapshot, recursive), level=LOG_DEBUG, is_dry=is_dry)
    except (subprocess.CalledProcessError, OSError, UnicodeDecodeError) as e:
        raise SnapshotCreateError(f"Cannot create snapshot {snapshot}: {e}") from e


def destroy_snapshot(p: Params, snapshot: str, is_dry: bool = False) -> None:
    """Destroys the given snapshot (and the same-named snapshots of its descendants) via 'zfs destroy -r'.

    Raises subprocess.CalledProcessError or OSError on failure; callers decide whether that is fatal.
    """
    run_command(p, zfs_destroy_cmd(p, snapshot), level=logging.INFO, is_dry=is_dry, print_stdout=True)
