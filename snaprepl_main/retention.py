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
"""Decides which snapshots are no longer needed, and removes them.

Two policies exist: 'auto_' snapshots expire once they are older than a retention window, whereas 'repl_' and 'remote_'
snapshots are superseded by the new base snapshot of each successful replication session. Removal is best effort.
"""

from __future__ import (
    annotations,
)
import subprocess
from datetime import (
    datetime,
    timedelta,
)
from typing import (
    TYPE_CHECKING,
    Iterable,
)

from snaprepl_main.naming import (
    dataset_of,
    format_timestamp,
    label_of,
)
from snaprepl_main.utils import (
    is_descendant,
    stderr_to_str,
)
from snaprepl_main.zfs import (
    destroy_snapshot,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from snaprepl_main.configuration import (
        Params,
    )


def expired_snapshots(snapshots: Iterable[str], keep_hours: int, now: datetime, prefix: str) -> list[str]:
    """Returns the snapshots of the given kind whose label is older than ``now - keep_hours``.

    The cutoff is rendered in the same fixed width layout as the labels, so a plain string comparison decides; ``now``
    must be in the same time zone that the labels were stamped in.
    """
    if keep_hours < 0:
        raise ValueError(f"keep_hours must be >= 0 but got: {keep_hours}")
    cutoff_label: str = prefix + format_timestamp(now - timedelta(hours=keep_hours))
    return [snap for snap in snapshots if label_of(snap).startswith(prefix) and label_of(snap) < cutoff_label]


def superseded_snapshots(snapshots_at_start: Iterable[str], new_base: str) -> list[str]:
    """Returns every snapshot that existed at session start except the new base and its same-label descendants."""
    new_label: str = label_of(new_base)
    return [snapshot for snapshot in snapshots_at_start if label_of(snapshot) != new_label]


def transferred_intermediates(from_snapshots: Iterable[str], precursor: str, from_pool: str, to_pool: str) -> list[str]:
    """Returns the destination names of the snapshots that 'zfs send -R -I precursor new_base' transfers in addition to
    new_base, i.e. of those from_snapshots (listed before new_base was created) that are newer than precursor.

    Example: replicating tank into backup/tank from precursor 'tank@repl_2', the source snapshot 'tank/a@repl_3' lands as
    'backup/tank/a@repl_3'.
    """
    precursor_label: str = label_of(precursor)
    return [
        to_pool + snap[len(from_pool) :]
        for snap in from_snapshots
        if label_of(snap) > precursor_label and is_descendant(dataset_of(snap), of_root_dataset=from_pool)
    ]


def remove_snapshots(p: Params, snapshots: Iterable[str]) -> list[str]:
    """Destroys the given snapshots one by one via 'zfs destroy -r', and returns the ones that could not be destroyed.

    A failure is logged and doesn't stop the removal of the remaining snapshots. Snapshots of descendant datasets that
    share the label of an already destroyed ancestor snapshot are skipped, because 'destroy -r' already took care of them.
    """
    log = p.log
    snapshots = sorted(snapshots, key=lambda snapshot: (label_of(snapshot), dataset_of(snapshot)))
    if len(snapshots) == 0:
        return []
    log.info(p.dry(f"Deleting {len(snapshots)} snapshots: %s"), snapshots)
    failures: list[str] = []
    destroyed: dict[str, list[str]] = {}  # label -> datasets whose snapshot with that label was destroyed recursively
    for snapshot in snapshots:
        dataset, label = dataset_of(snapshot), label_of(snapshot)
        if any(is_descendant(dataset, of_root_dataset=root) for root in destroyed.get(label, [])):
            continue
        try:
            destroy_snapshot(p, snapshot, is_dry=p.dry_run)
        except subprocess.CalledProcessError as e:
            stderr: str = stderr_to_str(e.stderr).rstrip()
            log.warning("Cannot delete snapshot %s: exit code %s %s", snapshot, e.returncode, stderr)
            failures.append(snapshot)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Cannot delete snapshot %s: %s", snapshot, e)
            failures.append(snapshot)
        else:
            destroyed.setdefault(label, []).append(dataset)
    if failures:
        log.warning("Failed to delete %s of %s snapshots: %s", len(failures), len(snapshots), failures)
    return failures
