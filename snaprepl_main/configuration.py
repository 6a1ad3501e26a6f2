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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class."""

from __future__ import (
    annotations,
)
import argparse
import shlex
from dataclasses import (
    dataclass,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from snaprepl_main.argparse_cli import (
    SSH_PROGRAM_DEFAULT,
    ZFS_PROGRAM_DEFAULT,
)
from snaprepl_main.utils import (
    ENV_VAR_PREFIX,
    die,
    getenv_any,
)

# constants:
LOG_LEVELS: Final[tuple[str, ...]] = ("TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
SSH_ACCEPTED_EXIT_CODES: Final[frozenset[int]] = frozenset({0, 1})
DEFAULT_ACCEPTED_EXIT_CODES: Final[frozenset[int]] = frozenset({0})


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args; CLI flags take precedence over the LOG_LEVEL environment variable."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = (getenv_any("log_level", "INFO") or "INFO").strip().upper()
            if log_level not in LOG_LEVELS:
                die(f"Invalid {ENV_VAR_PREFIX}LOG_LEVEL: {log_level}. Must be one of {', '.join(LOG_LEVELS)}")
        self.log_level: Final[str] = log_level
        self.log_file: Final[str | None] = args.log_file
        self.quiet: Final[bool] = args.quiet

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
@dataclass(frozen=True)
class SendRecvConfig:
    """The single bundle of flags from which every 'zfs send' and 'zfs receive' command line is derived."""

    raw: bool = True  # zfs send -w: keep encrypted datasets encrypted on the wire and at rest
    recursive: bool = True  # zfs send -R: include descendant datasets and their snapshots
    force: bool = False  # zfs receive -F
    large_blocks: bool = True  # zfs send -L
    verbose: bool = True  # zfs send -v
    recv_opts: tuple[str, ...] = ("-o", "mountpoint=none", "-o", "readonly=on")

    def send_opts(self) -> list[str]:
        """Returns the 'zfs send' flags, e.g. ['-v', '-R', '-w', '-L']."""
        opts: list[str] = ["-v"] if self.verbose else []
        opts += ["-R"] if self.recursive else []
        opts += ["-w"] if self.raw else []
        opts += ["-L"] if self.large_blocks else []
        return opts

    def receive_opts(self) -> list[str]:
        """Returns the 'zfs receive' flags, e.g. ['-o', 'mountpoint=none', '-o', 'readonly=on']."""
        return (["-F"] if self.force else []) + list(self.recv_opts)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(self, args: argparse.Namespace, log_params: LogParams, log: Logger) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.command: Final[str] = args.command
        self.dry_run: Final[bool] = bool(getattr(args, "dryrun", False))
        self.zfs_program: Final[str] = self._program(args.zfs_program, "zfs_program", ZFS_PROGRAM_DEFAULT)
        self.ssh_program: Final[str] = self._program(args.ssh_program, "ssh_program", SSH_PROGRAM_DEFAULT)
        self.ssh_extra_opts: Final[list[str]] = list(args.ssh_opt)
        self.timezone: Final[str | None] = args.timezone
        try:
            recv_opts: list[str] = shlex.split(args.zfs_recv_opts)
        except ValueError as e:
            die(f"Invalid --zfs-recv-opts: {e}")
        self.send_recv_config: Final[SendRecvConfig] = SendRecvConfig(
            raw=not args.no_raw,
            recursive=True,
            force=args.force_recv,
            large_blocks=not args.no_large_blocks,
            recv_opts=tuple(recv_opts),
        )
        self.ssh_accepted_exit_codes: Final[frozenset[int]] = (
            DEFAULT_ACCEPTED_EXIT_CODES if args.strict_ssh_exit_status else SSH_ACCEPTED_EXIT_CODES
        )

    @staticmethod
    def _program(value: str | None, env_key: str, default: str) -> str:
        """Resolves a program name from the CLI, then the environment, then the built-in default."""
        program: str = value if value else (getenv_any(env_key, default) or default)
        if not program.strip():
            die(f"Program name must not be empty: {env_key}")
        return program

    def dry(self, msg: str) -> str:
        """Prefix ``msg`` with 'Dry' when running in dry-run mode."""
        return "Dry " + msg if self.dry_run else msg

    def __repr__(self) -> str:
        return str(self.__dict__)
