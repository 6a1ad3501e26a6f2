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
"""Finds the most recent snapshot that two replica timelines have in common; it becomes the base ("precursor") of the next
incremental 'zfs send -I'.

The destination pool may be named differently than the source pool, e.g. 'tank@repl_x' on the source lands as
'backup/tank@repl_x' on the destination, which is why a destination snapshot matches a source snapshot iff the destination
name ends with the source name. If the destination has newer snapshots than the precursor, 'zfs receive' rejects the stream
("most recent snapshot of ... does not match incremental source"), hence we pick the newest common one rather than any.
"""

from __future__ import (
    annotations,
)
import logging
from typing import (
    Sequence,
)

from snaprepl_main.errors import (
    NoPrecursorError,
)
from snaprepl_main.utils import (
    LOG_TRACE,
)


def find_precursor(from_snaps: Sequence[str], to_snaps: Sequence[str], log: logging.Logger | None = None) -> str:
    """Returns the newest snapshot of ``from_snaps`` that also exists in ``to_snaps``; both are sorted oldest first.

    Raises NoPrecursorError if the timelines share no snapshot, in which case an operator must reinitialize the replica with
    a full (non-incremental) transfer.
    """
    for from_snap in reversed(from_snaps):
        for to_snap in reversed(to_snaps):
            if log is not None:
                log.log(LOG_TRACE, "%s", f"{to_snap} == {from_snap}")
            if to_snap.endswith(from_snap):
                return from_snap
    raise NoPrecursorError(
        f"No previous matching snapshot available among {len(from_snaps)} source and {len(to_snaps)} destination "
        "snapshots - the replicas have diverged; you may need to restart replication via init_repl"
    )
