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
"""Error taxonomy of snaprepl; each error type maps to its own distinct process exit code so that cron jobs and monitoring
can tell apart why a session was aborted."""

from __future__ import (
    annotations,
)
from typing import (
    Final,
)


class SnapreplError(Exception):
    """Base class of all errors that abort a session; ``exit_code`` is the process exit status reported by main()."""

    exit_code: int = 1


class ClockError(SnapreplError):
    """Indicates that the current time or the local time zone offset cannot be resolved."""

    exit_code = 10


class CatalogError(SnapreplError):
    """Indicates that the snapshot/pool enumeration command cannot run, failed, or printed undecodable output."""

    exit_code = 11


class NoPrecursorError(SnapreplError):
    """Indicates that two replica timelines share no common snapshot; an operator must reinitialize replication."""

    exit_code = 12


class ProducerSpawnError(SnapreplError):
    """Indicates that the producer process (e.g. 'zfs send') cannot be started."""

    exit_code = 13


class ConsumerSpawnError(SnapreplError):
    """Indicates that the consumer process (e.g. 'zfs receive' or 'ssh') cannot be started."""

    exit_code = 14


class PipelineError(SnapreplError):
    """Indicates that producer or consumer exited with a status outside of its accepted set."""

    exit_code = 15


class ArchiveIOError(SnapreplError):
    """Indicates that an archive payload file cannot be opened, written or read."""

    exit_code = 16


class MetadataError(SnapreplError):
    """Indicates that an archive metadata sidecar is missing, unreadable or undecodable."""

    exit_code = 17


class SnapshotCreateError(SnapreplError):
    """Indicates that 'zfs snapshot' failed to create a snapshot."""

    exit_code = 18


ALL_ERRORS: Final[tuple[type[SnapreplError], ...]] = (
    ClockError,
    CatalogError,
    NoPrecursorError,
    ProducerSpawnError,
    ConsumerSpawnError,
    PipelineError,
    ArchiveIOError,
    MetadataError,
    SnapshotCreateError,
)
