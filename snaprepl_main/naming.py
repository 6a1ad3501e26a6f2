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
"""Sortable snapshot labels such as ``repl_2024_11_06_08_30_05``.

The timestamp part is fixed width and zero padded in (year, month, day, hour, minute, second) order, so lexicographic
comparison of two labels of the same kind equals chronological comparison. Retention decisions rely on this.
"""

from __future__ import (
    annotations,
)
from datetime import (
    datetime,
    tzinfo,
)
from typing import (
    Callable,
    Final,
)

from snaprepl_main.errors import (
    ClockError,
)
from snaprepl_main.utils import (
    current_datetime,
)

# constants:
AUTO_PREFIX: Final[str] = "auto_"
REPL_PREFIX: Final[str] = "repl_"
REMOTE_PREFIX: Final[str] = "remote_"
KIND_PREFIXES: Final[tuple[str, str, str]] = (AUTO_PREFIX, REPL_PREFIX, REMOTE_PREFIX)
TIMESTAMP_FORMAT: Final[str] = "%Y_%m_%d_%H_%M_%S"  # 2024_11_06_08_30_05


def format_timestamp(dt: datetime) -> str:
    """Renders ``dt`` in the fixed width layout used by all snapshot labels."""
    return dt.strftime(TIMESTAMP_FORMAT)


def now(tz_spec: str | None = None, now_fn: Callable[[tzinfo | None], datetime] | None = None) -> datetime:
    """Returns the current time in the given (or local) time zone as an aware datetime; raises ClockError if that isn't
    possible."""
    try:
        dt: datetime = current_datetime(tz_spec, now_fn)
        return dt if dt.tzinfo is not None else dt.astimezone()  # resolve the local UTC offset
    except (ValueError, OSError, OverflowError, LookupError) as e:  # zoneinfo.ZoneInfoNotFoundError is a KeyError
        raise ClockError(f"Unable to determine the current time: {e}") from e


def new_label(
    kind: str, tz_spec: str | None = None, now_fn: Callable[[tzinfo | None], datetime] | None = None
) -> str:
    """Returns a new snapshot label of the given kind (e.g. 'repl_') stamped with the current time."""
    if kind not in KIND_PREFIXES:
        raise ValueError(f"Invalid snapshot kind: {kind!r}")
    return kind + format_timestamp(now(tz_spec, now_fn))


def snapshot_name(dataset: str, label: str) -> str:
    """Returns the snapshot identifier 'dataset@label'."""
    assert "@" not in dataset, dataset
    return f"{dataset}@{label}"


def label_of(snapshot: str) -> str:
    """Returns the label part of a snapshot identifier, i.e. the substring after the final '@'."""
    return snapshot[snapshot.rindex("@") + 1 :] if "@" in snapshot else ""


def dataset_of(snapshot: str) -> str:
    """Returns the dataset part of a snapshot identifier, i.e. the substring before the final '@'."""
    return snapshot[0 : snapshot.rindex("@")]
