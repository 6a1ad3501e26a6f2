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
"""Small helpers shared by the snaprepl modules: environment lookup, child process handling, no-follow file access, time
zones and lazy log formatting."""

from __future__ import (
    annotations,
)
import contextlib
import logging
import os
import re
import signal
import stat
import subprocess
import sys
import types
from datetime import (
    datetime,
    timedelta,
    timezone,
    tzinfo,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    IO,
    Any,
    Callable,
    Iterable,
    NoReturn,
)

# constants:
PROG_NAME: str = "snaprepl"
ENV_VAR_PREFIX: str = PROG_NAME.upper() + "_"
DIE_STATUS: int = 3
LOG_STDERR: int = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: int = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: int = logging.DEBUG
LOG_TRACE: int = logging.DEBUG // 2  # custom log level is halfway in between
FILE_PERMISSIONS: int = stat.S_IRUSR | stat.S_IWUSR  # rw------- (user read + write)
UTC_OFFSET_REGEX: re.Pattern = re.compile(r"([+-])(\d\d):?(\d\d)")  # e.g. +02:00 or -0530


def getenv_any(key: str, default: str | None = None) -> str | None:
    """Returns the value of the environment variable SNAPREPL_<KEY>, or the default if it isn't set."""
    return os.getenv(ENV_VAR_PREFIX + key.upper(), default)


def is_descendant(dataset: str, of_root_dataset: str) -> bool:
    """Returns True if dataset is of_root_dataset itself or lies below it, e.g. 'tank/a/b' below 'tank'."""
    return dataset == of_root_dataset or dataset.startswith(of_root_dataset + "/")


def list_formatter(iterable: Iterable[Any], lstrip: bool = False) -> Any:
    """Returns an object whose str() is the space separated items; the join only happens if the log level is enabled."""

    class ListFormatter:

        def __str__(self) -> str:
            s = " ".join(map(str, iterable))
            return s.lstrip() if lstrip else s

    return ListFormatter()


def stderr_to_str(stderr: Any) -> str:
    """Returns the captured output of a child process as str, whether it was captured as text or as bytes."""
    return stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else str(stderr)


def xprint(log: logging.Logger, value: Any, run: bool = True, file: IO[str] | None = None) -> None:
    """Logs the output of a child process verbatim at the STDOUT or STDERR level, unless it is empty."""
    if run and value:
        log.log(LOG_STDOUT if file is sys.stdout else LOG_STDERR, "%s", value)


def die(msg: str, exit_code: int = DIE_STATUS) -> NoReturn:
    """Aborts with a configuration error; the message is printed to stderr by the interpreter."""
    ex = SystemExit(msg)
    ex.code = exit_code
    raise ex


def subprocess_run(cmd: list[str], check: bool = False, **kwargs: Any) -> subprocess.CompletedProcess:
    """Like subprocess.run() but without input or timeout support; kills the child if waiting for it is interrupted,
    e.g. by KeyboardInterrupt or by the SIGTERM handler."""
    with subprocess.Popen(cmd, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate()
        except BaseException:
            proc.kill()
            raise
    if check and proc.returncode:
        raise subprocess.CalledProcessError(proc.returncode, cmd, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def terminate_child_processes(sig: signal.Signals = signal.SIGTERM) -> None:
    """Sends sig to all descendants of the current process, deepest last; processes that already exited are ignored."""
    for pid in _descendant_pids(os.getpid()):
        with contextlib.suppress(OSError):
            os.kill(pid, sig)


def _descendant_pids(root_pid: int) -> list[int]:
    """Returns the PIDs of all (transitive) child processes of root_pid, as reported by 'ps'."""
    lines: list[str] = subprocess.run(
        ["ps", "-Ao", "pid,ppid"], stdin=DEVNULL, stdout=PIPE, text=True, check=True
    ).stdout.splitlines()
    children: dict[int, list[int]] = {}
    for line in lines[1:]:  # skip header line
        pid, ppid = line.split()
        children.setdefault(int(ppid), []).append(int(pid))
    descendants: list[int] = []
    todo: list[int] = [root_pid]
    while todo:
        kids: list[int] = children.get(todo.pop(0), [])
        descendants += kids
        todo += kids
    return descendants


def open_nofollow(path: str, mode: str = "r", encoding: str | None = None) -> IO[Any]:
    """Like open() for the modes 'r', 'w' and 'a' (optionally with 'b'), except that it raises OSError if the basename of
    path is a symlink, and that a newly created file gets rw------- permissions."""
    flags: int | None = {
        "r": os.O_RDONLY,
        "w": os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
        "a": os.O_WRONLY | os.O_CREAT | os.O_APPEND,
    }.get(mode[:1])
    if flags is None:
        raise ValueError(f"Unsupported mode: {mode!r}")
    fd: int = os.open(path, flags | os.O_NOFOLLOW | os.O_CLOEXEC, FILE_PERMISSIONS)
    try:
        return os.fdopen(fd, mode, encoding=encoding)
    except Exception:
        os.close(fd)
        raise


def get_timezone(tz_spec: str | None = None) -> tzinfo | None:
    """Parses --timezone: None means local time, otherwise 'UTC', a fixed offset like '+02:00', or an IANA name like
    'Europe/Berlin'."""
    if tz_spec is None:
        return None
    if tz_spec == "UTC":
        return timezone.utc
    match = UTC_OFFSET_REGEX.fullmatch(tz_spec)
    if match:
        sign, hours, minutes = match.groups()
        offset = timedelta(hours=int(hours), minutes=int(minutes))
        return timezone(-offset if sign == "-" else offset)
    if "/" in tz_spec:
        from zoneinfo import ZoneInfo  # lazy import for startup perf

        return ZoneInfo(tz_spec)
    raise ValueError(f"Invalid timezone specification: {tz_spec}")


def current_datetime(
    tz_spec: str | None = None, now_fn: Callable[[tzinfo | None], datetime] | None = None
) -> datetime:
    """Returns the current time in the given time zone; now_fn replaces datetime.now in tests."""
    return (now_fn or datetime.now)(get_timezone(tz_spec))


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """See xfinally()."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        self._cleanup = cleanup

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise
            exc.__context__ = cleanup_exc  # keep the body's exception primary, but show both in the traceback
        return False


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Returns a context manager that runs cleanup() on exit; if the body raised, an error raised by cleanup() is attached
    to the body's exception via __context__ instead of replacing it."""
    return _XFinally(cleanup)
