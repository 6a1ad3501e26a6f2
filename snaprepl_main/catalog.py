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
"""Enumerates existing snapshots and mounted filesystems via 'zfs list', and filters snapshot lists by kind."""

from __future__ import (
    annotations,
)
import subprocess
from typing import (
    TYPE_CHECKING,
    Final,
    Iterable,
)

from snaprepl_main.errors import (
    CatalogError,
)
from snaprepl_main.naming import (
    label_of,
)
from snaprepl_main.utils import (
    LOG_TRACE,
    list_formatter,
)
from snaprepl_main.zfs import (
    run_command,
    zfs_list_filesystems_cmd,
    zfs_list_snapshots_cmd,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from snaprepl_main.configuration import (
        Params,
    )

# constants:
NO_MOUNTPOINT: Final[str] = "none"


def _run_list_command(p: Params, cmd: list[str], what: str) -> list[str]:
    """Runs the given 'zfs list' command and returns the rows of its tabular output, split into columns; skips blank lines
    and the header line if one is present."""
    try:
        stdout: str = run_command(p, cmd, level=LOG_TRACE)
    except subprocess.CalledProcessError as e:
        raise CatalogError(f"{what} failed with exit code {e.returncode}: {' '.join(cmd)}") from e
    except OSError as e:
        raise CatalogError(f"{what} cannot run: {e}") from e
    except UnicodeDecodeError as e:
        raise CatalogError(f"{what} contains invalid utf-8: {e}") from e
    rows: list[list[str]] = [line.split() for line in stdout.splitlines()]
    rows = [row for row in rows if row]
    if rows and rows[0][0] == "NAME":  # without -H, 'zfs list' prints a header line
        rows = rows[1:]
    p.log.log(LOG_TRACE, "%s: %s", what, list_formatter(rows))
    return rows


def _catalog_order(snapshot: str) -> tuple[str, str]:
    return label_of(snapshot), snapshot


def list_snapshots(p: Params, pool: str, recursive: bool = True) -> list[str]:
    """Returns the names of all snapshots of the given pool (and its descendants, if recursive), sorted by label, then by
    name; Given the fixed width label timestamps this is chronological order."""
    rows = _run_list_command(p, zfs_list_snapshots_cmd(p, pool, recursive), "snapshot list")
    return sorted((row[0] for row in rows), key=_catalog_order)


def list_mounted_pools(p: Params) -> list[str]:
    """Returns the names of all filesystems that have a mountpoint, i.e. whose mountpoint column isn't 'none'."""
    rows = _run_list_command(p, zfs_list_filesystems_cmd(p), "mounted list")
    return [row[0] for row in rows if len(row) >= 2 and row[1] != NO_MOUNTPOINT]


def filter_by_kind(catalog: Iterable[str], prefix: str) -> list[str]:
    """Retains the snapshots whose label (the part after the final '@') starts with the given prefix, sorted ascending by
    label, then by name; Given the fixed width label timestamps this is chronological order."""
    snapshots = [snapshot for snapshot in catalog if "@" in snapshot and label_of(snapshot).startswith(prefix)]
    return sorted(snapshots, key=_catalog_order)


def list_snapshots_of_kind(p: Params, pool: str, prefix: str, recursive: bool = True) -> list[str]:
    """Returns the snapshots of the given kind of the given pool, oldest first."""
    return filter_by_kind(list_snapshots(p, pool, recursive=recursive), prefix)

