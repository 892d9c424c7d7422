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
"""Collection of helper functions used across zfsds; includes environment variable parsing, subprocess execution, process
tree termination and human readable formatting.

Everything in this module relies only on the Python standard library so other modules remain dependency free.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import os
import signal
import subprocess
import sys
import threading
import time
import types
from collections import (
    defaultdict,
)
from collections.abc import (
    Iterable,
    Iterator,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Literal,
    NoReturn,
    TextIO,
    cast,
)

# constants:
PROG_NAME: Final[str] = "zfsds"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!#$%^&*()+={}[]|;<>?,\\"  # '@' is handled separately by the dataset name parser


def getenv_any(key: str, default: str | None = None, env_var_prefix: str = ENV_VAR_PREFIX) -> str | None:
    """All shell environment variable names used for configuration start with this prefix."""
    return os.getenv(env_var_prefix + key, default)


def getenv_int(key: str, default: int, env_var_prefix: str = ENV_VAR_PREFIX) -> int:
    """Returns environment variable ``key`` as int with ``default`` fallback."""
    return int(cast(str, getenv_any(key, default=str(default), env_var_prefix=env_var_prefix)))


def human_readable_bytes(num_bytes: float, separator: str = " ", precision: int | None = None) -> str:
    """Formats 'num_bytes' as a human-readable size; for example "567 MiB"."""
    sign = "-" if num_bytes < 0 else ""
    s = abs(num_bytes)
    units = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB", "RiB", "QiB")
    n = len(units) - 1
    i = 0
    while s >= 1024 and i < n:
        s /= 1024
        i += 1
    formatted_num = human_readable_float(s) if precision is None else f"{s:.{precision}f}"
    return f"{sign}{formatted_num}{separator}{units[i]}"


def human_readable_duration(duration: float, unit: str = "ns", separator: str = "", precision: int | None = None) -> str:
    """Formats a duration in human units, automatically scaling as needed; for example "567ms"."""
    sign = "-" if duration < 0 else ""
    t = abs(duration)
    units = ("ns", "μs", "ms", "s", "m", "h", "d")
    i = units.index(unit)
    if t < 1 and t != 0:
        nanos = (1, 1_000, 1_000_000, 1_000_000_000, 60 * 1_000_000_000, 60 * 60 * 1_000_000_000, 3600 * 24 * 1_000_000_000)
        t *= nanos[i]
        i = 0
    while t >= 1000 and i < 3:
        t /= 1000
        i += 1
    if i >= 3:
        while t >= 60 and i < 5:
            t /= 60
            i += 1
    if i >= 5:
        while t >= 24 and i < len(units) - 1:
            t /= 24
            i += 1
    formatted_num = human_readable_float(t) if precision is None else f"{t:.{precision}f}"
    return f"{sign}{formatted_num}{separator}{units[i]}"


def human_readable_float(number: float) -> str:
    """Formats ``number`` with a variable precision depending on magnitude.

    This design mirrors the way humans round values when scanning logs.

    If the number has one digit before the decimal point (0 <= abs(number) < 10):
      Round and use two decimals after the decimal point (e.g., 3.14559 --> "3.15").

    If the number has two digits before the decimal point (10 <= abs(number) < 100):
      Round and use one decimal after the decimal point (e.g., 12.36 --> "12.4").

    If the number has three or more digits before the decimal point (abs(number) >= 100):
      Round and use zero decimals after the decimal point (e.g., 123.556 --> "124").

    Ensures no unnecessary trailing zeroes are retained: Example: 1.500 --> "1.5", 1.00 --> "1"
    """
    abs_number = abs(number)
    precision = 2 if abs_number < 10 else 1 if abs_number < 100 else 0
    if precision == 0:
        return str(round(number))
    result = f"{number:.{precision}f}"
    assert "." in result
    result = result.rstrip("0").rstrip(".")  # Remove trailing zeros and trailing decimal point if empty
    return "0" if result == "-0" else result


def list_formatter(iterable: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    """Lazy formatter joining items with ``separator`` used to avoid overhead in disabled log levels."""

    class CustomListFormatter:
        """Formatter object that joins items when converted to ``str``."""

        def __str__(self) -> str:
            s = separator.join(map(str, iterable))
            return s.lstrip() if lstrip else s

    return CustomListFormatter()


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return str(stderr) if not isinstance(stderr, bytes) else stderr.decode("utf-8", errors="replace")


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Optionally logs ``value`` at stdout/stderr level."""
    if run and value:
        value = value if end else str(value).rstrip()
        level = LOG_STDOUT if file is sys.stdout else LOG_STDERR
        log.log(level, "%s", value)


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Exits the program with ``exit_code`` after logging ``msg``."""
    if parser is None:
        ex = SystemExit(msg)
        ex.code = exit_code
        raise ex
    else:
        parser.error(msg)


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Drop-in replacement for subprocess.run() that mimics its behavior except it enhances cleanup on TimeoutExpired, and
    provides optional logging of execution status via ``log`` and ``loglevel`` params."""
    input_value = kwargs.pop("input", None)
    timeout = kwargs.pop("timeout", None)
    check = kwargs.pop("check", False)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = subprocess.PIPE

    log: logging.Logger | None = kwargs.pop("log", None)
    loglevel: int | None = kwargs.pop("loglevel", None)
    start_time_nanos: int = time.monotonic_ns()
    is_timeout: bool = False
    exitcode: int | None = None

    def log_status() -> None:
        if log is not None:
            _loglevel: int = loglevel if loglevel is not None else getenv_int("subprocess_run_loglevel", LOG_TRACE)
            if log.isEnabledFor(_loglevel):
                elapsed_time: str = human_readable_float((time.monotonic_ns() - start_time_nanos) / 1_000_000) + "ms"
                status: str = "timeout" if is_timeout else "success" if exitcode == 0 else "failure"
                cmd = kwargs["args"] if "args" in kwargs else (args[0] if args else None)
                cmd_str: str = " ".join(str(arg) for arg in iter(cmd)) if isinstance(cmd, (list, tuple)) else str(cmd)
                log.log(_loglevel, f"Executed [{status}] [{elapsed_time}]: %s", cmd_str)

    with xfinally(log_status):
        with subprocess.Popen(*args, **kwargs) as proc:
            try:
                stdout, stderr = proc.communicate(input_value, timeout=timeout)
            except BaseException as e:
                try:
                    if isinstance(e, subprocess.TimeoutExpired):
                        is_timeout = True
                        terminate_process_subtree(root_pids=[proc.pid])  # send SIGTERM to child proc and descendants
                finally:
                    proc.kill()
                    raise
            else:
                exitcode = proc.poll()
                assert exitcode is not None
                if check and exitcode:
                    raise subprocess.CalledProcessError(exitcode, proc.args, output=stdout, stderr=stderr)
        return subprocess.CompletedProcess(proc.args, exitcode, stdout, stderr)


def terminate_process_subtree(
    except_current_process: bool = True, root_pids: list[int] | None = None, sig: signal.Signals = signal.SIGTERM
) -> None:
    """For each root PID: Sends the given signal to the root PID and all its descendant processes."""
    current_pid: int = os.getpid()
    root_pids = [current_pid] if root_pids is None else root_pids
    all_pids: list[list[int]] = _get_descendant_processes(root_pids)
    assert len(all_pids) == len(root_pids)
    for i, pids in enumerate(all_pids):
        root_pid = root_pids[i]
        if root_pid == current_pid:
            pids += [] if except_current_process else [current_pid]
        else:
            pids.insert(0, root_pid)
        for pid in pids:
            with contextlib.suppress(OSError):
                os.kill(pid, sig)


def _get_descendant_processes(root_pids: list[int]) -> list[list[int]]:
    """For each root PID, returns the list of all descendant process IDs for the given root PID, on POSIX systems."""
    if len(root_pids) == 0:
        return []
    cmd: list[str] = ["ps", "-Ao", "pid,ppid"]
    try:
        lines: list[str] = subprocess.run(cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout.splitlines()
    except (PermissionError, FileNotFoundError):
        # degrade gracefully in sandbox environments that deny executing `ps` entirely
        return [[] for _ in root_pids]
    procs: dict[int, list[int]] = defaultdict(list)
    for line in lines[1:]:  # all lines except the header line
        splits: list[str] = line.split()
        assert len(splits) == 2
        pid = int(splits[0])
        ppid = int(splits[1])
        procs[ppid].append(pid)

    def recursive_append(ppid: int, descendants: list[int]) -> None:
        """Recursively collect descendant PIDs starting from ``ppid``."""
        for child_pid in procs[ppid]:
            descendants.append(child_pid)
            recursive_append(child_pid, descendants)

    all_descendants: list[list[int]] = []
    for root_pid in root_pids:
        descendants: list[int] = []
        recursive_append(root_pid, descendants)
        all_descendants.append(descendants)
    return all_descendants


#############################################################################
class Subprocesses:
    """Tracks the child PIDs spawned by a run so that it can terminate exactly the subprocesses it spawned itself, for
    example the two legs of a 'zfs send | zfs receive' pipe."""

    def __init__(self) -> None:
        self._lock: Final[threading.Lock] = threading.Lock()
        self._child_pids: Final[dict[int, None]] = {}  # a set that preserves insertion order

    @contextlib.contextmanager
    def popen_and_track(self, *popen_args: Any, **popen_kwargs: Any) -> Iterator[subprocess.Popen]:
        """Context manager that calls subprocess.Popen() and tracks the child PID until the child has been waited for.

        Holds a lock across Popen+PID registration so that a concurrent terminate_process_subtrees() cannot miss a newly
        spawned child process.
        """
        with self._lock:
            proc: subprocess.Popen = subprocess.Popen(*popen_args, **popen_kwargs)
            self._child_pids[proc.pid] = None
        try:
            with proc:  # closes pipes and waits for the child on exit
                yield proc
        finally:
            with self._lock:
                self._child_pids.pop(proc.pid, None)

    def terminate_process_subtrees(self, sig: signal.Signals = signal.SIGTERM) -> None:
        """Sends the given signal to all tracked child PIDs and their descendants, ignoring errors for dead PIDs."""
        terminate_process_subtree(root_pids=self.pids(), sig=sig)

    def pids(self) -> list[int]:
        """Returns the PIDs of the child processes that are currently tracked."""
        with self._lock:
            return list(self._child_pids)


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """Context manager ensuring cleanup code executes after ``with`` blocks."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        """Records the callable to run upon exit."""
        self._cleanup: Final = cleanup  # Zero-argument callable executed after the `with` block exits.

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> Literal[False]:
        """Runs cleanup and propagate any exceptions appropriately."""
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise  # No main error --> propagate cleanup error normally
            # Both failed; attach so it shows up in traceback but doesn't mask
            exc.__context__ = cleanup_exc
            return False  # reraise original exception
        return False  # propagate main exception if any


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: with xfinally(lambda: cleanup()): ...
    Returns a context manager that guarantees that cleanup() runs on exit and guarantees any error in cleanup() will never
    mask an exception raised earlier inside the body of the `with` block, while still surfacing both problems when possible.

    * Body raises, cleanup succeeds --> original body exception is re-raised.
    * Body raises, cleanup also raises --> re-raises body exception; cleanup exception is linked via ``__context__``.
    * Body succeeds, cleanup raises --> cleanup exception propagates normally.
    """
    return _XFinally(cleanup)
