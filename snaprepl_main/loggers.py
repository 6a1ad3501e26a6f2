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
"""Builds the Logger of a snaprepl Job, and the fallback logger used if that fails.

The Job's logger is created per invocation and is not registered with the logging module's global manager; it reaches
every component through Params. Whoever creates it closes it again via ``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import contextlib
import logging
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from snaprepl_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
    open_nofollow,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from snaprepl_main.configuration import (
        LogParams,
    )

LOGGER_NAME: Final[str] = "snaprepl_main.snaprepl"
MSG_COLUMN: Final[int] = 54  # arguments of messages like "Deleting: %s" start in this column
LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_logger(log_params: LogParams, log: Logger | None = None) -> Logger:
    """Returns the given third party logger as-is, or else a new logger configured from the CLI."""
    _add_custom_loglevels()
    if log is not None:
        assert isinstance(log, Logger)
        return log
    log = Logger(LOGGER_NAME)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # avoid duplicate messages via the root logger
    _add_handler(log, logging.StreamHandler(stream=sys.stdout), log_params.log_level)
    if log_params.log_file:
        # refuse a symlinked log file before any snapshot is touched; also creates the file with rw------- permissions
        open_nofollow(log_params.log_file, "a", encoding="utf-8").close()
        _add_handler(log, logging.FileHandler(log_params.log_file, encoding="utf-8"), log_params.log_level)

    # perf: tell logging framework not to gather unnecessary expensive info for each log record
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    return log


def _add_handler(log: Logger, handler: logging.Handler, level: str) -> None:
    handler.setFormatter(get_default_log_formatter())
    handler.setLevel(level)
    log.addHandler(handler)


def reset_logger(log: Logger) -> None:
    """Detaches and closes all handlers of the given logger, and restores its default level and propagation."""
    for handler in log.handlers.copy():
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    log.setLevel(logging.NOTSET)
    log.propagate = True


class DefaultLogFormatter(logging.Formatter):
    """Prepends a timestamp and a level prefix like '[I]', and aligns the first '%s' argument of the message in a column.

    Records at the STDOUT and STDERR levels carry the output of child processes, and are emitted unchanged.
    """

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno in (LOG_STDOUT, LOG_STDERR):
            return super().format(record)
        timestamp: str = datetime.now().isoformat(sep=" ", timespec="seconds")
        head: str = f"{timestamp} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
        msg: str = str(record.msg)
        i: int = msg.find("%s")
        if i >= 1:
            msg = (head + msg[0:i]).ljust(MSG_COLUMN) + msg[i:]
        else:
            msg = head + msg
        if record.exc_info or record.exc_text or record.stack_info:
            record.msg = msg
            return super().format(record)
        return msg % record.args if record.args else msg


def get_default_log_formatter() -> logging.Formatter:
    return DefaultLogFormatter()


def get_simple_logger() -> Logger:
    """Returns a minimal stderr logger, used when the Job's logger cannot be built, e.g. because --log-file is invalid."""
    _add_custom_loglevels()
    log = Logger(PROG_NAME)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=f"%(asctime)s [{PROG_NAME}] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(handler)
    return log


def _add_custom_loglevels() -> None:
    """Registers the names of the custom TRACE, STDERR and STDOUT levels with the logging module."""
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")
