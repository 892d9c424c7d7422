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
"""Thin request/response layer over the 'zfs' and 'zpool' CLIs; every dataset query or mutation elsewhere in zfsds funnels
through class Executor.

Each call is synchronous and independent of the others; nothing is cached. A CLI invocation counts as failed if it exits
with a non-zero status or if it writes anything to stderr, and failures surface as CommandError (or NotFound where the
caller asked about a specific dataset that does not exist).
"""

from __future__ import (
    annotations,
)
import contextlib
import subprocess
from collections.abc import (
    Iterator,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from zfsds_main.errors import (
    CommandError,
    NotFound,
)
from zfsds_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    Subprocesses,
    list_formatter,
    stderr_to_str,
    subprocess_run,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zfsds_main.configuration import (
        Params,
    )

# constants:
DOES_NOT_EXIST_MARKERS: Final[tuple[str, ...]] = (
    ": dataset does not exist",
    ": filesystem does not exist",  # solaris 11.4.0
    ": no such pool",
)


def is_does_not_exist_error(stderr: str) -> bool:
    """Returns True if the given zfs CLI error output says that the referenced dataset or pool does not exist."""
    return any(marker in stderr for marker in DOES_NOT_EXIST_MARKERS)


#############################################################################
class Executor:
    """Runs zfs and zpool CLI commands on the local host, optionally via sudo, and parses their tab separated output."""

    def __init__(self, params: Params) -> None:
        # immutable variables:
        self.params: Final[Params] = params
        self.subprocesses: Final[Subprocesses] = Subprocesses()

    def zfs(self, *args: str, privileged: bool = False) -> list[str]:
        """Returns the zfs CLI command line for the given args; mutating commands run via sudo if so configured."""
        p = self.params
        return (p.sudo if privileged else []) + [p.zfs_program, *args]

    def zpool(self, *args: str) -> list[str]:
        return [self.params.zpool_program, *args]

    def run(self, cmd: list[str], level: int = LOG_TRACE, is_dry: bool = False) -> str:
        """Runs the given CLI cmd and returns its stdout; raises CommandError on failure."""
        p, log = self.params, self.params.log
        msg: str = "Would execute: %s" if is_dry else "Executing: %s"
        log.log(level, msg, list_formatter(cmd))
        if is_dry:
            return ""
        try:
            process = subprocess_run(
                cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, timeout=p.timeout_secs, log=log
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(cmd, -1, f"timed out after {p.timeout_secs} seconds") from e
        except FileNotFoundError as e:
            raise CommandError(cmd, 127, str(e)) from e
        stderr: str = stderr_to_str(process.stderr)
        if process.returncode != 0 or stderr:
            raise CommandError(cmd, process.returncode, stderr)
        return process.stdout

    def try_run(self, cmd: list[str], level: int = LOG_TRACE) -> str | None:
        """Convenience method that returns None instead of raising if the dataset or pool does not exist."""
        try:
            return self.run(cmd, level=level)
        except CommandError as e:
            if is_does_not_exist_error(e.stderr):
                return None
            raise

    def run_mutation(self, cmd: list[str]) -> str:
        """Runs a command that changes ZFS state; in dry-run mode only logs what would be executed."""
        return self.run(cmd, level=LOG_DEBUG, is_dry=self.params.dry_run)

    # Queries ###############################################################

    def list_pools(self) -> list[str]:
        return self.run(self.zpool("list", "-Ho", "name")).splitlines()

    def list_mounts(self) -> list[tuple[str, str]]:
        """Returns (dataset name, mountpoint) pairs for all datasets."""
        lines: list[str] = self.run(self.zfs("get", "-rHp", "-o", "name,value", "mountpoint")).splitlines()
        return [(name, path) for name, path in (line.split("\t", 1) for line in lines)]

    def list_filesystems(self, under: str, recursive: bool = False) -> list[tuple[str, str]]:
        """Returns (name, type) pairs of the filesystems and volumes below ``under``, excluding ``under`` itself, with type
        being 'filesystem' or 'volume'; lists only direct children unless ``recursive``."""
        depth: list[str] = [] if recursive else ["-d", "1"]
        cmd: list[str] = self.zfs("list", "-H", "-r", *depth, "-o", "name,type", "-t", "filesystem,volume", under)
        lines: str | None = self.try_run(cmd)
        if lines is None:
            raise NotFound(f"Dataset does not exist: {under}")
        pairs = [line.split("\t", 1) for line in lines.splitlines()]
        return [(name, type_) for name, type_ in pairs if name != under]

    def list_snapshots(self, of_dataset: str) -> list[str]:
        """Returns the names of the snapshots of the given dataset, sorted ascending by transaction group."""
        cmd: list[str] = self.zfs("list", "-H", "-d", "1", "-t", "snapshot", "-s", "createtxg", "-o", "name", of_dataset)
        lines: str | None = self.try_run(cmd)
        if lines is None:
            raise NotFound(f"Dataset does not exist: {of_dataset}")
        return lines.splitlines()

    def exists(self, dataset: str) -> bool:
        lines: str | None = self.try_run(self.zfs("list", "-H", "-o", "name", dataset))
        return lines is not None and lines == dataset + "\n"

    def get_raw_property(self, dataset: str, key: str) -> str:
        """Returns the raw (parsable, unformatted) value of the given property of the given dataset."""
        lines: str | None = self.try_run(self.zfs("get", "-Hp", "-o", "value", key, dataset))
        if lines is None:
            raise NotFound(f"Dataset does not exist: {dataset}")
        values: list[str] = lines.splitlines()
        if len(values) != 1:
            raise CommandError(self.zfs("get", "-Hp", "-o", "value", key, dataset), 0, f"unexpected output: {lines!r}")
        return values[0]

    # Mutations #############################################################

    def set_raw_property(self, dataset: str, key: str, value: str) -> None:
        self.run_mutation(self.zfs("set", f"{key}={value}", dataset, privileged=True))

    def create_dataset(
        self, dataset: str, create_parents: bool = False, volume_size: str | None = None, options: list[str] | None = None
    ) -> bool:
        """Creates the filesystem (or volume if ``volume_size`` is given); returns False if it already exists."""
        cmd: list[str] = self.zfs("create", privileged=True)
        cmd += ["-p"] if create_parents else []
        cmd += ["-V", volume_size] if volume_size else []
        cmd += options or []
        cmd.append(dataset)
        try:
            self.run_mutation(cmd)
        except CommandError as e:
            if "dataset already exists" in e.stderr:
                return False
            raise
        return True

    def destroy_dataset(self, dataset: str, recursive: bool = False) -> None:
        self.run_mutation(self.zfs("destroy", *(["-r"] if recursive else []), dataset, privileged=True))

    def rename_dataset(self, old_name: str, new_name: str, create_parents: bool = False, recursive: bool = False) -> None:
        flags: list[str] = (["-p"] if create_parents else []) + (["-r"] if recursive else [])
        self.run_mutation(self.zfs("rename", *flags, old_name, new_name, privileged=True))

    def create_snapshot(self, snapshot: str, recursive: bool = False) -> None:
        self.run_mutation(self.zfs("snapshot", *(["-r"] if recursive else []), snapshot, privileged=True))

    def clone_snapshot(self, snapshot: str, clone: str, create_parents: bool = False) -> None:
        self.run_mutation(self.zfs("clone", *(["-p"] if create_parents else []), snapshot, clone, privileged=True))

    def promote(self, dataset: str) -> None:
        self.run_mutation(self.zfs("promote", dataset, privileged=True))

    # Streams ###############################################################

    def send_cmd(self, source: str, incremental_flag: str | None, base: str | None, replicate: bool) -> list[str]:
        """Returns 'zfs send' CLI; ``incremental_flag`` is '-i' (single delta), '-I' (all intermediary snapshots) or None."""
        cmd: list[str] = self.zfs("send", *self.params.zfs_send_program_opts, privileged=True)
        if incremental_flag is not None:
            assert incremental_flag in ("-i", "-I")
            assert base is not None
            cmd += [incremental_flag, base]
        cmd += ["-R"] if replicate else []
        cmd.append(source)
        return cmd

    def recv_cmd(self, destination: str, use_sent_name: bool) -> list[str]:
        """Returns 'zfs receive' CLI; with ``use_sent_name`` the destination is the parent of the received dataset."""
        cmd: list[str] = self.zfs("receive", *self.params.zfs_recv_program_opts, privileged=True)
        cmd += ["-d"] if use_sent_name else []
        cmd.append(destination)
        return cmd

    @contextlib.contextmanager
    def spawn_send_stream(
        self, source: str, incremental_flag: str | None, base: str | None, replicate: bool
    ) -> Iterator[subprocess.Popen]:
        """Starts 'zfs send' whose stdout is the byte stream; waits for the process on exit of the context manager."""
        cmd: list[str] = self.send_cmd(source, incremental_flag, base, replicate)
        self.params.log.log(LOG_DEBUG, "Executing: %s", list_formatter(cmd))
        with self.subprocesses.popen_and_track(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE) as proc:
            yield proc

    @contextlib.contextmanager
    def spawn_receive_stream(self, destination: str, use_sent_name: bool) -> Iterator[subprocess.Popen]:
        """Starts 'zfs receive' whose stdin consumes the byte stream; waits for the process on exit of the context."""
        cmd: list[str] = self.recv_cmd(destination, use_sent_name)
        self.params.log.log(LOG_DEBUG, "Executing: %s", list_formatter(cmd))
        with self.subprocesses.popen_and_track(cmd, stdin=PIPE, stdout=PIPE, stderr=PIPE) as proc:
            yield proc
