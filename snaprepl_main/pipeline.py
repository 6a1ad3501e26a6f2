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
"""Runs one replication session: creates a new base snapshot, streams it from a producer into a consumer, and confirms
success, or else destroys the just created base snapshot again.

Session states::

    INIT --> SNAPSHOT_CREATED --> STREAMING --> CONFIRMED
                    |                 |
                    +-----------------+-------> FAILED

The producer is either a process (e.g. 'zfs send') or an archive file, and the consumer is either a process (e.g. 'zfs
receive' or 'ssh' into a forced 'zfs receive') or an archive file. A process producer is connected to a process consumer
via an OS pipe; otherwise the bytes are copied through the parent process. The consumer is always waited for first,
because its exit status is what confirms that the stream has landed.
"""

from __future__ import (
    annotations,
)
import contextlib
import enum
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import (
    dataclass,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    IO,
    TYPE_CHECKING,
    Any,
    Final,
)

from snaprepl_main.configuration import (
    DEFAULT_ACCEPTED_EXIT_CODES,
)
from snaprepl_main.errors import (
    ArchiveIOError,
    ConsumerSpawnError,
    PipelineError,
    ProducerSpawnError,
)
from snaprepl_main.utils import (
    list_formatter,
    open_nofollow,
    stderr_to_str,
    xprint,
)
from snaprepl_main.zfs import (
    create_snapshot,
    destroy_snapshot,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from snaprepl_main.configuration import (
        Params,
    )

# constants:
COPY_BUFFER_SIZE: Final[int] = 1024 * 1024


#############################################################################
class PipelineState(enum.Enum):
    """Lifecycle of a replication session."""

    INIT = "INIT"
    SNAPSHOT_CREATED = "SNAPSHOT_CREATED"
    STREAMING = "STREAMING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


#############################################################################
@dataclass(frozen=True)
class ProcessEndpoint:
    """A producer or consumer that is a local process, e.g. 'zfs send', 'zfs receive' or 'ssh'."""

    cmd: tuple[str, ...]
    accepted_exit_codes: frozenset[int] = DEFAULT_ACCEPTED_EXIT_CODES

    def describe(self) -> str:
        return " ".join(self.cmd)


@dataclass(frozen=True)
class FileEndpoint:
    """A producer or consumer that is an archive file containing a 'zfs send' stream."""

    path: str


#############################################################################
def describe_pipeline(producer: ProcessEndpoint | FileEndpoint, consumer: ProcessEndpoint | FileEndpoint) -> str:
    """Returns a shell-like rendering of the data flow, e.g. 'zfs send ... | zfs receive ...' or 'zfs send ... > file'."""
    if isinstance(producer, FileEndpoint):
        assert isinstance(consumer, ProcessEndpoint)
        return f"{consumer.describe()} < {producer.path}"
    if isinstance(consumer, FileEndpoint):
        return f"{producer.describe()} > {consumer.path}"
    return f"{producer.describe()} | {consumer.describe()}"


#############################################################################
class ReplicationPipeline:
    """Executes a single replication session; the ``state`` attribute reflects how far the session got."""

    def __init__(self, params: Params) -> None:
        self.params: Final[Params] = params
        self.state: PipelineState = PipelineState.INIT
        self._children: list[subprocess.Popen] = []
        self._created_archive: str | None = None

    def run(
        self,
        new_base: str | None,
        producer: ProcessEndpoint | FileEndpoint,
        consumer: ProcessEndpoint | FileEndpoint,
        recursive_snapshot: bool = True,
    ) -> None:
        """Creates ``new_base`` (unless None), then streams producer into consumer until both have exited successfully.

        On any failure, including KeyboardInterrupt and SystemExit, kills the child processes, destroys ``new_base`` (and
        nothing else), and re-raises. In dry-run mode only logs what would happen.
        """
        p, log = self.params, self.params.log
        if isinstance(producer, FileEndpoint) and isinstance(consumer, FileEndpoint):
            raise ValueError("Producer and consumer must not both be files")
        self.state = PipelineState.INIT
        if new_base is not None:
            try:
                create_snapshot(p, new_base, recursive=recursive_snapshot, is_dry=p.dry_run)
            except BaseException:
                self.state = PipelineState.FAILED
                raise
            self.state = PipelineState.SNAPSHOT_CREATED
        msg: str = "Would execute: %s" if p.dry_run else "Executing: %s"
        log.info(msg, describe_pipeline(producer, consumer))
        if p.dry_run:
            self.state = PipelineState.CONFIRMED
            return
        try:
            self._stream(producer, consumer)
        except BaseException as e:
            self.state = PipelineState.FAILED
            log.error("Replication failed: %s", e)
            self._remove_partial_archive()
            if new_base is not None:
                self._destroy_unconfirmed_snapshot(new_base)
            raise
        self.state = PipelineState.CONFIRMED
        log.info("Replication confirmed: %s", describe_pipeline(producer, consumer))

    def _stream(self, producer: ProcessEndpoint | FileEndpoint, consumer: ProcessEndpoint | FileEndpoint) -> None:
        """Moves the data; raises on spawn failure, I/O failure, or an exit status outside of the accepted set."""
        self.state = PipelineState.STREAMING
        with tempfile.TemporaryFile() as producer_stderr, tempfile.TemporaryFile() as consumer_output:
            try:
                if isinstance(producer, FileEndpoint):
                    assert isinstance(consumer, ProcessEndpoint)
                    self._stream_from_archive(producer, consumer, consumer_output)
                    return
                producer_proc = self._spawn(producer, DEVNULL, PIPE, producer_stderr, "producer", ProducerSpawnError)
                assert producer_proc.stdout is not None
                if isinstance(consumer, FileEndpoint):
                    self._copy_into_archive(producer_proc.stdout, consumer.path)
                else:
                    consumer_proc = self._spawn(
                        consumer, producer_proc.stdout, consumer_output, consumer_output, "consumer", ConsumerSpawnError
                    )
                    producer_proc.stdout.close()  # the consumer owns the read end now; producer gets EPIPE if it exits
                    self._check_exit_code("consumer", consumer, consumer_proc.wait())
                self._check_exit_code("producer", producer, producer_proc.wait())
            finally:
                self._reap_children()
                self._log_output(producer_stderr)
                self._log_output(consumer_output)

    def _stream_from_archive(self, producer: FileEndpoint, consumer: ProcessEndpoint, consumer_output: IO[bytes]) -> None:
        """Feeds the archive file into the stdin of the consumer process."""
        try:
            source: IO[bytes] = open_nofollow(producer.path, "rb")
        except OSError as e:
            raise ArchiveIOError(f"Cannot open archive file {producer.path}: {e}") from e
        with source:
            consumer_proc = self._spawn(consumer, PIPE, consumer_output, consumer_output, "consumer", ConsumerSpawnError)
            assert consumer_proc.stdin is not None
            is_broken_pipe: bool = False
            try:
                shutil.copyfileobj(source, consumer_proc.stdin, COPY_BUFFER_SIZE)
            except BrokenPipeError:
                is_broken_pipe = True
            except OSError as e:
                raise ArchiveIOError(f"Cannot stream archive file {producer.path}: {e}") from e
            finally:
                with contextlib.suppress(BrokenPipeError):
                    consumer_proc.stdin.close()
            self._check_exit_code("consumer", consumer, consumer_proc.wait())
            if is_broken_pipe:
                msg = f"consumer exited before reading the entire archive {producer.path}: {consumer.describe()}"
                raise PipelineError(msg)

    def _copy_into_archive(self, stream: IO[bytes], path: str) -> None:
        """Copies the producer's output into the given archive file, replacing any previous content."""
        try:
            with open_nofollow(path, "wb") as sink:
                self._created_archive = path
                shutil.copyfileobj(stream, sink, COPY_BUFFER_SIZE)
                sink.flush()
                os.fsync(sink.fileno())
        except OSError as e:
            raise ArchiveIOError(f"Cannot write archive file {path}: {e}") from e
        finally:
            stream.close()

    def _spawn(
        self,
        endpoint: ProcessEndpoint,
        stdin: Any,
        stdout: Any,
        stderr: Any,
        role: str,
        error_type: type[ProducerSpawnError] | type[ConsumerSpawnError],
    ) -> subprocess.Popen:
        """Starts the given process; raises ``error_type`` if it cannot be started."""
        self.params.log.debug("Starting %s: %s", role, list_formatter(endpoint.cmd))
        try:
            proc = subprocess.Popen(list(endpoint.cmd), stdin=stdin, stdout=stdout, stderr=stderr)
        except (OSError, subprocess.SubprocessError) as e:
            raise error_type(f"Cannot start {role} '{endpoint.describe()}': {e}") from e
        self._children.append(proc)
        return proc

    def _check_exit_code(self, role: str, endpoint: ProcessEndpoint, returncode: int) -> None:
        """Raises PipelineError unless ``returncode`` is within the accepted set of the endpoint."""
        if returncode not in endpoint.accepted_exit_codes:
            raise PipelineError(f"{role} failed with exit code {returncode}: {endpoint.describe()}")
        if returncode != 0:
            self.params.log.warning(
                "%s exited with exit code %s, which is accepted as success: %s", role, returncode, endpoint.describe()
            )

    def _reap_children(self) -> None:
        """Kills any child process that is still running, and waits for all of them to exit."""
        for proc in self._children:
            if proc.poll() is None:
                self.params.log.warning("Killing %s", list_formatter(proc.args))
                with contextlib.suppress(OSError):
                    proc.kill()
            proc.wait()
            for stream in (proc.stdin, proc.stdout):
                if stream is not None:
                    with contextlib.suppress(OSError):
                        stream.close()
        self._children = []

    def _log_output(self, output: IO[bytes]) -> None:
        """Logs what a child process printed, e.g. the progress report of 'zfs send -v'."""
        output.seek(0)
        xprint(self.params.log, stderr_to_str(output.read()).rstrip(), file=sys.stderr)

    def _remove_partial_archive(self) -> None:
        """Deletes the archive file if this session created it, because it holds an incomplete stream."""
        if self._created_archive is not None:
            self.params.log.warning("Deleting incomplete archive file: %s", self._created_archive)
            try:
                os.unlink(self._created_archive)
            except FileNotFoundError:
                pass
            except OSError as e:
                self.params.log.error("Cannot delete incomplete archive file %s: %s", self._created_archive, e)
            self._created_archive = None

    def _destroy_unconfirmed_snapshot(self, new_base: str) -> None:
        """Compensates for a failed transfer; a failure here is logged and must not mask the original error."""
        p, log = self.params, self.params.log
        log.warning("Destroying unconfirmed snapshot: %s", new_base)
        try:
            destroy_snapshot(p, new_base)
        except Exception as e:
            log.error("Cannot destroy unconfirmed snapshot %s: %s", new_base, e)
