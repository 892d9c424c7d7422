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
"""Executes a validated TransferPlan by running 'zfs send' and 'zfs receive' as two concurrent child processes joined by a
byte pipe that this process pumps in bounded chunks.

Bytes reach the receiver in exactly the order the sender emitted them. Backpressure is implicit: when the receiver stops
reading, the write into its stdin blocks, which in turn stops the pump from reading the sender's stdout, which in turn
blocks the sender. The stderr of both sides is drained by background threads so that neither side can ever block on a
full stderr pipe.

A transfer succeeds only if both sides exit with status zero and neither wrote to stderr. If the receiver goes away early
the sender is terminated, on any exception both sides are terminated, and in all cases both processes are waited for
before returning. Nothing is rolled back: the destination stays in whatever state 'zfs receive' left it in.
"""

from __future__ import (
    annotations,
)
import contextlib
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import (
    dataclass,
)
from typing import (
    IO,
    TYPE_CHECKING,
    Final,
)

from zfsds_main.configuration import (
    PIPE_CHUNK_SIZE_DEFAULT,
)
from zfsds_main.errors import (
    TransferFailed,
)
from zfsds_main.utils import (
    human_readable_bytes,
    human_readable_duration,
    stderr_to_str,
    terminate_process_subtree,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from logging import (
        Logger,
    )

    from zfsds_main.executor import (
        Executor,
    )
    from zfsds_main.transfer_planner import (
        TransferPlan,
    )


#############################################################################
@dataclass(frozen=True)
class TransferResult:
    """Outcome of one 'zfs send | zfs receive' pipe; exit codes are None if the pipe was never started (dry run)."""

    num_bytes: int
    send_returncode: int | None
    recv_returncode: int | None
    send_stderr: str
    recv_stderr: str
    recv_stdout: str
    elapsed_nanos: int

    @property
    def succeeded(self) -> bool:
        return self.send_returncode == 0 and self.recv_returncode == 0 and not self.send_stderr and not self.recv_stderr


def run_transfer(executor: Executor, plan: TransferPlan) -> TransferResult:
    """Streams the snapshot(s) selected by the plan from 'zfs send' into 'zfs receive'; raises TransferFailed on failure."""
    p, log = executor.params, executor.params.log
    plan.consume()
    base: str | None = plan.base.name if plan.base is not None else None
    send_cmd: list[str] = executor.send_cmd(plan.source.name, plan.incremental_flag, base, plan.replicate)
    recv_cmd: list[str] = executor.recv_cmd(plan.destination.name, plan.use_sent_name)
    if p.dry_run:
        log.info("Would execute: %s", f"{shlex.join(send_cmd)} | {shlex.join(recv_cmd)}")
        return TransferResult(0, None, None, "", "", "", 0)

    log.info("Transferring %s", str(plan))
    consumer: subprocess.Popen | None = None
    with contextlib.ExitStack() as stack:
        try:
            consumer = stack.enter_context(executor.spawn_receive_stream(plan.destination.name, plan.use_sent_name))
            producer = stack.enter_context(
                executor.spawn_send_stream(plan.source.name, plan.incremental_flag, base, plan.replicate)
            )
        except OSError as e:
            if consumer is not None:
                _terminate(consumer)  # do not leave the receiver waiting for a stream that never comes
            raise TransferFailed(f"Cannot start transfer {plan}: {e}") from e
        result: TransferResult = run_pipeline(producer, consumer, log, chunk_size=p.pipe_chunk_size)
    log.info(
        "Transferred %s",
        f"{human_readable_bytes(result.num_bytes)} in {human_readable_duration(result.elapsed_nanos)}: {plan}",
    )
    return result


def run_pipeline(
    producer: subprocess.Popen, consumer: subprocess.Popen, log: Logger, chunk_size: int = PIPE_CHUNK_SIZE_DEFAULT
) -> TransferResult:
    """Copies the producer's stdout into the consumer's stdin until EOF, waits for both processes to exit and returns the
    outcome; raises TransferFailed unless both exited with status zero without writing to stderr.

    Both processes must have been started with binary pipes: producer with stdout and stderr, consumer with stdin, stdout
    and stderr.
    """
    assert chunk_size > 0
    assert producer.stdout is not None
    assert consumer.stdin is not None
    start_time_nanos: int = time.monotonic_ns()
    send_stderr = _StreamDrainer(producer.stderr, "send_stderr")
    recv_stderr = _StreamDrainer(consumer.stderr, "recv_stderr")
    recv_stdout = _StreamDrainer(consumer.stdout, "recv_stdout")
    num_bytes: int = 0
    watcher = threading.Thread(target=_watch_consumer, args=(producer, consumer, log), name="recv_watcher", daemon=True)
    watcher.start()
    try:
        consumer_gone: bool = False
        try:
            while True:
                chunk: bytes = producer.stdout.read1(chunk_size)  # type: ignore[attr-defined]
                if not chunk:
                    break  # EOF
                try:
                    consumer.stdin.write(chunk)
                    consumer.stdin.flush()
                except BrokenPipeError:
                    consumer_gone = True
                    break
                num_bytes += len(chunk)
        finally:
            with contextlib.suppress(BrokenPipeError, OSError):
                consumer.stdin.close()  # signals EOF to the consumer

        if consumer_gone:
            log.warning("%s", "Receiver exited before the sender finished; terminating sender")
            _terminate(producer)
        recv_returncode: int = consumer.wait()
        watcher.join()
        send_returncode: int = producer.wait()
    except BaseException:
        for proc in (producer, consumer):
            if proc.poll() is None:
                _terminate(proc)
        raise

    result = TransferResult(
        num_bytes=num_bytes,
        send_returncode=send_returncode,
        recv_returncode=recv_returncode,
        send_stderr=send_stderr.result(),
        recv_stderr=recv_stderr.result(),
        recv_stdout=recv_stdout.result(),
        elapsed_nanos=time.monotonic_ns() - start_time_nanos,
    )
    xprint(log, result.recv_stdout, file=sys.stdout)
    if not result.succeeded:
        raise TransferFailed(_failure_detail(result), result)
    return result


def _watch_consumer(producer: subprocess.Popen, consumer: subprocess.Popen, log: Logger) -> None:
    """Terminates the producer as soon as the consumer exits non-zero, even while the producer is not writing anything."""
    if consumer.wait() != 0 and producer.poll() is None:
        log.warning("%s", "Receiver failed before the sender finished; terminating sender")
        _terminate(producer)


def _terminate(proc: subprocess.Popen) -> None:
    """Sends SIGTERM to the process and its descendants so that it cannot keep blocking on a pipe nobody serves anymore."""
    terminate_process_subtree(root_pids=[proc.pid])


def _failure_detail(result: TransferResult) -> str:
    """Returns a one-line description of what went wrong, including the error output of whichever side complained."""
    details: list[str] = []
    if result.send_returncode != 0 or result.send_stderr:
        details.append(f"zfs send exited with status {result.send_returncode}: {result.send_stderr.strip()}")
    if result.recv_returncode != 0 or result.recv_stderr:
        details.append(f"zfs receive exited with status {result.recv_returncode}: {result.recv_stderr.strip()}")
    return "Transfer failed: " + "; ".join(details)


#############################################################################
class _StreamDrainer:
    """Reads a binary stream until EOF in a background thread, and returns everything read as text once done."""

    CHUNK_SIZE: Final[int] = 8192

    def __init__(self, stream: IO[bytes] | None, name: str) -> None:
        self._chunks: list[bytes] = []
        self._thread: threading.Thread = threading.Thread(target=self._drain, args=(stream,), name=name, daemon=True)
        self._thread.start()

    def _drain(self, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        try:
            for chunk in iter(lambda: stream.read(self.CHUNK_SIZE), b""):
                self._chunks.append(chunk)
        except (ValueError, OSError):
            pass  # stream was closed by its owner after the process was terminated

    def result(self) -> str:
        self._thread.join()
        return stderr_to_str(b"".join(self._chunks))
