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
"""
* Main CLI entry point for snaprepl; runs one sub-command per process invocation, e.g. from cron.
* Overview of the snaprepl_main/snaprepl.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing in argparse_cli.py, and the
  immutable "Params" configuration in configuration.py.
* The Job class below executes exactly one sub-command. Errors propagate up to Job.run_main(), which maps each error type
  to its own process exit code.
* Snapshot names are computed in naming.py, enumerated in catalog.py, matched across replicas in precursor.py, streamed
  in pipeline.py, recorded for archive-based sessions in metadata.py, and pruned in retention.py. The 'zfs' and 'ssh'
  command lines are built in zfs.py.
"""

from __future__ import (
    annotations,
)
import argparse
import json
import os
import signal
import sys
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
)

from snaprepl_main.argparse_cli import (
    argument_parser,
)
from snaprepl_main.catalog import (
    list_mounted_pools,
    list_snapshots,
    list_snapshots_of_kind,
)
from snaprepl_main.configuration import (
    LogParams,
    Params,
)
from snaprepl_main.errors import (
    MetadataError,
    NoPrecursorError,
    SnapreplError,
    SnapshotCreateError,
)
from snaprepl_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from snaprepl_main.metadata import (
    PRECURSOR_KEY,
    read_metadata,
    write_metadata,
)
from snaprepl_main.naming import (
    AUTO_PREFIX,
    REMOTE_PREFIX,
    REPL_PREFIX,
    dataset_of,
    new_label,
    now,
    snapshot_name,
)
from snaprepl_main.pipeline import (
    FileEndpoint,
    ProcessEndpoint,
    ReplicationPipeline,
)
from snaprepl_main.precursor import (
    find_precursor,
)
from snaprepl_main.retention import (
    expired_snapshots,
    remove_snapshots,
    superseded_snapshots,
    transferred_intermediates,
)
from snaprepl_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    terminate_child_processes,
    xfinally,
)
from snaprepl_main.zfs import (
    create_snapshot,
    ssh_cmd,
    zfs_receive_cmd,
    zfs_send_cmd,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    run_main(argument_parser().parse_args(), sys.argv)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one snaprepl sub-command."""

    def __init__(self) -> None:
        self.params: Params
        self.is_test_mode: bool = False  # for testing only

    def terminate(self, old_term_handler: Any, signum: int) -> None:
        """On SIGTERM or SIGINT, terminates the child processes, then unwinds the current operation so that an unconfirmed
        snapshot gets cleaned up."""
        signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
        terminate_child_processes()
        raise SystemExit(128 + signum)

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging and configuration, then dispatches to the sub-command; maps errors to exit codes."""
        third_party_log: Logger | None = log

        def close_logger() -> None:
            if log is not None and log is not third_party_log:  # only close what we opened
                reset_logger(log)

        with xfinally(close_logger):  # runs close_logger() on exit, without masking exception raised in body of `with` block
            try:
                log_params = LogParams(args)
                log = get_logger(log_params=log_params, log=log)
            except BaseException as e:
                get_simple_logger().error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
                raise

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                if self.is_test_mode:
                    log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = Params(args, log_params, log)
                # On CTRL-C and SIGTERM, send signal to descendant processes to also terminate descendants
                old_term_handler = signal.getsignal(signal.SIGTERM)
                signal.signal(signal.SIGTERM, lambda sig, f: self.terminate(old_term_handler, sig))
                old_int_handler = signal.signal(signal.SIGINT, lambda sig, f: self.terminate(old_term_handler, sig))
                try:
                    self.run_command()
                finally:
                    signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
                    signal.signal(signal.SIGINT, old_int_handler)  # restore original signal handler
            except SnapreplError as e:
                log_error_on_exit(e, e.exit_code)
                raise SystemExit(e.exit_code) from e
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def run_command(self) -> None:
        """Dispatches to the method that implements the sub-command selected on the CLI."""
        p = self.params
        args = p.args
        commands: dict[str, Callable[[], None]] = {
            "list_snapshots": lambda: self.list_snapshots(args.pool),
            "init_repl": lambda: self.init_repl(args.from_pool, args.to_pool),
            "repl": lambda: self.repl(args.from_pool, args.to_pool),
            "remote_init_archive": lambda: self.remote_init_archive(args.pool, args.file, args.metadata_path),
            "remote_load_archive": lambda: self.remote_load_archive(args.pool, args.file),
            "remote_repl": lambda: self.remote_repl(args.remote_endpoint, args.metadata_path),
            "snapshot": lambda: self.snapshot(),
            "snapshot_cleanup": lambda: self.snapshot_cleanup(args.pool, args.keep_hours),
        }
        commands[p.command]()

    def list_snapshots(self, pool: str) -> None:
        """Prints all snapshots of the pool and its descendants, one per line."""
        for snapshot in list_snapshots(self.params, pool, recursive=True):
            print(snapshot, file=sys.stdout)

    def init_repl(self, from_pool: str, to_pool: str) -> None:
        """Replicates a new 'repl_' base snapshot of from_pool fully into to_pool, then prunes the older 'repl_' snapshots
        of from_pool."""
        p, log = self.params, self.params.log
        snapshots_at_start: list[str] = list_snapshots_of_kind(p, from_pool, REPL_PREFIX)
        new_base: str = snapshot_name(from_pool, new_label(REPL_PREFIX, p.timezone))
        log.info(p.dry("Full replication: %s"), f"{from_pool} --> {to_pool} via {new_base}")
        producer = ProcessEndpoint(tuple(zfs_send_cmd(p, new_base)))
        consumer = ProcessEndpoint(tuple(zfs_receive_cmd(p, to_pool)))
        ReplicationPipeline(p).run(new_base, producer, consumer)
        remove_snapshots(p, superseded_snapshots(snapshots_at_start, new_base))

    def repl(self, from_pool: str, to_pool: str) -> None:
        """Replicates incrementally from the most recent 'repl_' snapshot that both pools have in common to a new 'repl_'
        base snapshot, then prunes the older 'repl_' snapshots on both pools."""
        p, log = self.params, self.params.log
        from_snapshots: list[str] = list_snapshots_of_kind(p, from_pool, REPL_PREFIX)
        to_snapshots: list[str] = list_snapshots_of_kind(p, to_pool, REPL_PREFIX)
        # the incremental source must be a snapshot of the root dataset; 'zfs send -R' takes care of the descendants
        precursor: str = find_precursor(
            [snap for snap in from_snapshots if dataset_of(snap) == from_pool],
            [snap for snap in to_snapshots if dataset_of(snap) == to_pool],
            log,
        )
        new_base: str = snapshot_name(from_pool, new_label(REPL_PREFIX, p.timezone))
        log.info(p.dry("Incremental replication: %s"), f"{from_pool} --> {to_pool} from {precursor} to {new_base}")
        producer = ProcessEndpoint(tuple(zfs_send_cmd(p, new_base, precursor=precursor)))
        consumer = ProcessEndpoint(tuple(zfs_receive_cmd(p, to_pool)))
        ReplicationPipeline(p).run(new_base, producer, consumer)
        failures: list[str] = remove_snapshots(p, superseded_snapshots(from_snapshots, new_base))
        intermediates: list[str] = transferred_intermediates(from_snapshots, precursor, from_pool, to_pool)
        to_snapshots += [snap for snap in intermediates if snap not in to_snapshots]
        failures += remove_snapshots(p, superseded_snapshots(to_snapshots, new_base))
        if failures:
            log.warning("Replication succeeded but %s superseded snapshots remain", len(failures))

    def remote_init_archive(self, pool: str, file: str, metadata_path: str) -> None:
        """Replicates a new 'remote_' base snapshot of pool fully into an archive file, records the base snapshot in the
        metadata file, then prunes the older 'remote_' snapshots of pool."""
        p, log = self.params, self.params.log
        snapshots_at_start: list[str] = list_snapshots_of_kind(p, pool, REMOTE_PREFIX)
        new_base: str = snapshot_name(pool, new_label(REMOTE_PREFIX, p.timezone))
        log.info(p.dry("Full replication into archive: %s"), f"{pool} --> {file} via {new_base}")
        producer = ProcessEndpoint(tuple(zfs_send_cmd(p, new_base)))
        ReplicationPipeline(p).run(new_base, producer, FileEndpoint(file))
        self._record_precursor(metadata_path, new_base)
        remove_snapshots(p, superseded_snapshots(snapshots_at_start, new_base))

    def remote_load_archive(self, pool: str, file: str) -> None:
        """Receives an archive file into pool as a full replication, then explains how to set up the remote backup user."""
        p, log = self.params, self.params.log
        log.info(p.dry("Loading archive: %s"), f"{file} --> {pool}")
        consumer = ProcessEndpoint(tuple(zfs_receive_cmd(p, pool)))
        ReplicationPipeline(p).run(None, FileEndpoint(file), consumer)
        log.info("Initial replication archive load success")
        log.warning("You should now setup a remote backup user. For that user in .ssh/authorized_keys set:")
        forced_cmd: str = f"/usr/sbin/zfs recv -x mountpoint -x readonly {pool}"
        log.warning(
            "%s", f'  command="{forced_cmd}",no-port-forwarding,no-X11-forwarding,no-agent-forwarding,no-pty [ssh-key]'
        )
        log.warning("You must also setup permission delegation for that user to recv replication snapshots")
        log.warning("%s", f"  zfs allow [user] mount,create,receive {pool}")

    def remote_repl(self, remote_endpoint: str, metadata_path: str) -> None:
        """Replicates incrementally via ssh from the snapshot recorded in the metadata file to a new 'remote_' base
        snapshot, records the new base in the metadata file, then prunes the older 'remote_' snapshots locally."""
        p, log = self.params, self.params.log
        precursor: str = read_metadata(metadata_path)
        if "@" not in precursor:
            raise MetadataError(f"Metadata file {metadata_path} records an invalid snapshot name: {precursor}")
        pool: str = dataset_of(precursor)
        snapshots_at_start: list[str] = list_snapshots_of_kind(p, pool, REMOTE_PREFIX)
        if precursor not in snapshots_at_start:
            raise NoPrecursorError(
                f"Snapshot {precursor} recorded in {metadata_path} no longer exists; you may need to restart replication "
                "via remote_init_archive"
            )
        if not p.dry_run:  # fail before the remote receives anything if the metadata file cannot be updated afterwards
            write_metadata(metadata_path, precursor)
        new_base: str = snapshot_name(pool, new_label(REMOTE_PREFIX, p.timezone))
        log.info(p.dry("Remote replication: %s"), f"{pool} --> {remote_endpoint} from {precursor} to {new_base}")
        producer = ProcessEndpoint(tuple(zfs_send_cmd(p, new_base, precursor=precursor)))
        consumer = ProcessEndpoint(tuple(ssh_cmd(p, remote_endpoint)), accepted_exit_codes=p.ssh_accepted_exit_codes)
        ReplicationPipeline(p).run(new_base, producer, consumer)
        self._record_precursor(metadata_path, new_base)
        remove_snapshots(p, superseded_snapshots(snapshots_at_start, new_base))

    def _record_precursor(self, metadata_path: str, new_base: str) -> None:
        p, log = self.params, self.params.log
        log.info(p.dry("Recording precursor snapshot in %s: %s"), metadata_path, new_base)
        if p.dry_run:
            return
        try:
            write_metadata(metadata_path, new_base)
        except MetadataError:
            log.error(
                "The transfer of %s succeeded but it could not be recorded; write %s into %s before the next session",
                new_base,
                json.dumps({PRECURSOR_KEY: new_base}),
                metadata_path,
            )
            raise

    def snapshot(self) -> None:
        """Creates one non-recursive 'auto_' snapshot of each mounted filesystem; continues past failures and raises the
        first one at the end."""
        p, log = self.params, self.params.log
        pools: list[str] = list_mounted_pools(p)
        label: str = new_label(AUTO_PREFIX, p.timezone)
        failed_pools: list[str] = []
        first_error: SnapshotCreateError | None = None
        for pool in pools:
            try:
                create_snapshot(p, snapshot_name(pool, label), recursive=False, is_dry=p.dry_run)
            except SnapshotCreateError as e:
                log.error("%s", e)
                failed_pools.append(pool)
                first_error = e if first_error is None else first_error
        if first_error is not None:
            log.error("Failed to snapshot %s of %s filesystems: %s", len(failed_pools), len(pools), failed_pools)
            raise first_error
        log.info(p.dry("Created %s snapshots with label: %s"), len(pools), label)

    def snapshot_cleanup(self, pool: str, keep_hours: int) -> None:
        """Destroys the 'auto_' snapshots of pool (and its descendants) that are older than keep_hours."""
        p, log = self.params, self.params.log
        snapshots: list[str] = list_snapshots_of_kind(p, pool, AUTO_PREFIX)
        expired: list[str] = expired_snapshots(snapshots, keep_hours, now(p.timezone), AUTO_PREFIX)
        log.info("Found %s expired out of %s 'auto_' snapshots of %s", len(expired), len(snapshots), pool)
        remove_snapshots(p, expired)


#############################################################################
if __name__ == "__main__":
    main()
