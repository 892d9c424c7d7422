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
import os
import shlex
from logging import (
    Logger,
)
from typing import (
    Final,
)

from zfsds_main.utils import (
    SHELL_CHARS,
    die,
    getenv_int,
)

# constants:
PIPE_CHUNK_SIZE_DEFAULT: Final[int] = 16384  # bytes forwarded per read from 'zfs send' to 'zfs receive'
UNSAFE_OPT_CHARS: Final[str] = "\"'`$;|&<>\\"


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        log_file: str | None = args.log_file
        if log_file:
            log_file = os.path.abspath(os.path.expanduser(log_file))
            if os.path.islink(log_file):
                die(f"--log-file must not be a symlink: {log_file}")
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
        self.log_file: Final[str | None] = log_file

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(self, args: argparse.Namespace, log: Logger, log_params: LogParams | None = None) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.log: Final[Logger] = log
        self.log_params: Final[LogParams | None] = log_params
        self.zfs_program: Final[str] = self._validate_program(args.zfs_program, "--zfs-program")
        self.zpool_program: Final[str] = self._validate_program(args.zpool_program, "--zpool-program")
        self.sudo: Final[list[str]] = ["sudo", "-n"] if args.sudo else []
        self.dry_run: Final[bool] = args.dryrun
        self.zfs_send_program_opts: Final[list[str]] = self.split_args(args.zfs_send_program_opts)
        self.zfs_recv_program_opts: Final[list[str]] = self.split_args(args.zfs_recv_program_opts)
        timeout_secs: float | None = args.timeout
        if timeout_secs is not None and timeout_secs <= 0:
            die(f"--timeout must be positive, but got: {timeout_secs}")
        self.timeout_secs: Final[float | None] = timeout_secs
        chunk_size: int | None = args.pipe_chunk_size
        if chunk_size is None:
            chunk_size = getenv_int("pipe_chunk_size", PIPE_CHUNK_SIZE_DEFAULT)
        if chunk_size <= 0:
            die(f"--pipe-chunk-size must be positive, but got: {chunk_size}")
        self.pipe_chunk_size: Final[int] = chunk_size

    def split_args(self, text: str) -> list[str]:
        """Splits option string on whitespace into list of options; rejects options containing shell metacharacters."""
        opts: list[str] = shlex.split(text or "")
        for opt in opts:
            if any(char in UNSAFE_OPT_CHARS for char in opt):
                die(f"Option must not contain shell metacharacters: {opt}")
        return opts

    def dry(self, msg: str) -> str:
        """Prefix ``msg`` with 'Dry' when in dry-run mode."""
        return "Dry " + msg if self.dry_run else msg

    @staticmethod
    def _validate_program(program: str, option: str) -> str:
        if not program or any(char.isspace() or char in SHELL_CHARS for char in program):
            die(f"Invalid program name for {option}: '{program}'")
        return program

    def __repr__(self) -> str:
        return (
            f"zfs_program: {self.zfs_program}, zpool_program: {self.zpool_program}, sudo: {self.sudo}, "
            f"dry_run: {self.dry_run}, timeout_secs: {self.timeout_secs}, pipe_chunk_size: {self.pipe_chunk_size}"
        )
