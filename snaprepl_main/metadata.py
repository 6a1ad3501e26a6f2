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
"""Persists which snapshot the next archive-based or ssh-based replication is anchored on.

There is no live channel to the remote replica from which the common snapshot could be negotiated, so the base snapshot of
the most recent successful session is recorded in a small JSON sidecar file, for example:
``{"precursor_snapshot": "tank@remote_2024_11_06_08_30_05"}``.
"""

from __future__ import (
    annotations,
)
import contextlib
import json
import os
import tempfile
from typing import (
    Any,
    Final,
)

from snaprepl_main.errors import (
    MetadataError,
)
from snaprepl_main.utils import (
    FILE_PERMISSIONS,
    open_nofollow,
)

# constants:
PRECURSOR_KEY: Final[str] = "precursor_snapshot"


def write_metadata(path: str, precursor_id: str) -> None:
    """Atomically replaces the sidecar file at ``path`` with one that records ``precursor_id``; raises MetadataError on
    failure, in which case any previous content of the file is left intact."""
    if not isinstance(precursor_id, str) or not precursor_id.strip():
        raise MetadataError(f"Invalid precursor snapshot: {precursor_id!r}")
    parent_dir: str = os.path.dirname(os.path.abspath(path))
    try:
        # write to a temporary file in the same directory, then rename, so readers never see a partially written file
        fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=os.path.basename(path) + ".", dir=parent_dir, text=True)
    except OSError as e:
        raise MetadataError(f"Cannot write metadata file {path}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({PRECURSOR_KEY: precursor_id}, f, indent=4, sort_keys=True)
            f.write("\n")
        os.chmod(temp_path, FILE_PERMISSIONS)
        os.replace(temp_path, path)  # atomic rename
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise MetadataError(f"Cannot write metadata file {path}: {e}") from e


def read_metadata(path: str) -> str:
    """Returns the precursor snapshot recorded in the sidecar file at ``path``; raises MetadataError if the file is missing,
    unreadable, or doesn't have the expected shape."""
    try:
        with open_nofollow(path, "r", encoding="utf-8") as f:
            data: Any = json.load(f)
    except FileNotFoundError as e:
        raise MetadataError(f"Metadata file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise MetadataError(f"Cannot read metadata file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise MetadataError(f"Metadata file {path} contains invalid JSON: {e}") from e
    if not isinstance(data, dict) or PRECURSOR_KEY not in data:
        raise MetadataError(f"Metadata file {path} lacks the '{PRECURSOR_KEY}' key")
    precursor: Any = data[PRECURSOR_KEY]
    if not isinstance(precursor, str) or not precursor.strip():
        raise MetadataError(f"Metadata file {path} has an invalid '{PRECURSOR_KEY}' value: {precursor!r}")
    return precursor
