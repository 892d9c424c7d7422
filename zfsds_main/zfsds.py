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
# Inline script metadata conforming to https://packaging.python.org/specifications/inline-script-metadata
# /// script
# requires-python = ">=3.9"
# dependencies = []
# ///
#
"""
* Main CLI entry point for managing ZFS datasets; the core logic lives in actions.py, properties.py and the transfer_*.py
  modules, whereas this module parses the subcommand and renders its result.
* Overview of the zfsds.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing into a "Params" class.
* All CLI option/parameter values are reachable from the "Params" class.
* The Executor class runs the 'zfs' and 'zpool' CLIs; every dataset query or mutation funnels through it.
* Each subcommand maps to one function in actions.py, properties.py or transfer_planner.py plus transfer_executor.py.
* Errors of type ZfsdsError terminate the CLI with exit status 3, except for CommandError, which terminates the CLI with
  the exit status of the failed 'zfs' or 'zpool' command.
"""

from __future__ import (
    annotations,
)
import argparse
import signal
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
)

from zfsds_main import (
    actions,
)
from zfsds_main.argparse_cli import (
    argument_parser,
)
from zfsds_main.configuration import (
    LogParams,
    Params,
)
from zfsds_main.dataset import (
    Dataset,
)
from zfsds_main.errors import (
    CommandError,
    ZfsdsError,
)
from zfsds_main.executor import (
    Executor,
)
from zfsds_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from zfsds_main.properties import (
    encode_assignment,
    get_property,
    get_symbolic,
    lookup,
    set_property,
    value_from_text,
)
from zfsds_main.transfer_executor import (
    run_transfer,
)
from zfsds_main.transfer_planner import (
    plan_transfer,
)
from zfsds_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    die,
    terminate_process_subtree,
    xfinally,
)


def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args())
    except CommandError as e:
        sys.exit(e.returncode if e.returncode > 0 else DIE_STATUS)


def run_main(args: argparse.Namespace, log: Logger | None = None) -> Any:
    """API for Python clients; visible for testing; returns the result of the subcommand in addition to printing it."""
    return Job().run_main(args, log)


#############################################################################
class Job:
    """Executes one zfsds subcommand."""

    def __init__(self) -> None:
        self.params: Params
        self.executor: Executor
        self.out: Callable[[str], None] = print  # for testing only

    def run_main(self, args: argparse.Namespace, log: Logger | None = None) -> Any:
        """Sets up logging and configuration, then executes the subcommand."""
        is_own_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params=log_params, log=log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
            log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

        with xfinally(lambda: reset_logger(log) if is_own_logger else None):
            try:
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, log, log_params)
                self.executor = Executor(p)
                old_term_handler = signal.signal(signal.SIGTERM, lambda sig, f: self.terminate(old_term_handler))
                try:
                    result: Any = self.run_subcommand(args)
                except BaseException:
                    self.executor.subprocesses.terminate_process_subtrees()
                    raise
                finally:
                    signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
            except CommandError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except ZfsdsError as e:
                log_error_on_exit(e, DIE_STATUS)
                die(str(e))
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            return result

    def terminate(self, old_term_handler: Any) -> None:
        """Shuts down on SIGTERM, taking the subprocesses spawned by this job down too."""
        signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
        terminate_process_subtree(except_current_process=False)

    def run_subcommand(self, args: argparse.Namespace) -> Any:
        """Dispatches to the method named after the subcommand, e.g. 'snapshots' --> cmd_snapshots()."""
        method: Callable[[argparse.Namespace], Any] = getattr(self, "cmd_" + args.subcommand)
        return method(args)

    def resolve(self, name_or_path: str) -> Dataset:
        return actions.resolve(self.executor, name_or_path)

    def cmd_pools(self, args: argparse.Namespace) -> list[Dataset]:
        pools: list[Dataset] = actions.pools(self.executor)
        for pool in pools:
            self.out(pool.name)
        return pools

    def cmd_mounts(self, args: argparse.Namespace) -> dict[str, Dataset]:
        mounts: dict[str, Dataset] = actions.mounts(self.executor)
        for path, dataset in mounts.items():
            self.out(f"{path}\t{dataset}")
        return mounts

    def cmd_list(self, args: argparse.Namespace) -> list[Dataset]:
        children: list[Dataset] = actions.children(self.executor, self.resolve(args.dataset), args.recursive)
        for child in children:
            self.out(f"{child}\t{child.kind.value}")
        return children

    def cmd_snapshots(self, args: argparse.Namespace) -> list[Dataset]:
        snapshots: list[Dataset] = actions.snapshots(self.executor, self.resolve(args.dataset))
        for snapshot in snapshots:
            self.out(snapshot.name)
        return snapshots

    def cmd_get(self, args: argparse.Namespace) -> dict[str, Any]:
        dataset: Dataset = self.resolve(args.dataset)
        for key in args.properties:
            lookup(key)  # fail fast on unknown keys before querying anything
        values: dict[str, Any] = {}
        for key in args.properties:
            getter: Callable[[Executor, Dataset, str], Any] = get_symbolic if args.symbolic else get_property
            value: Any = getter(self.executor, dataset, key)
            values[key] = value
            self.out(f"{dataset}\t{key}\t{format_value(value)}")
        return values

    def cmd_set(self, args: argparse.Namespace) -> None:
        dataset: Dataset = self.resolve(args.dataset)
        values: dict[str, Any] = {key: value_from_text(lookup(key), text) for key, text in args.assignments.items()}
        for key, value in values.items():
            encode_assignment(key, value)  # reject all before setting any
        for key, value in values.items():
            set_property(self.executor, dataset, key, value)

    def cmd_create(self, args: argparse.Namespace) -> Dataset | None:
        properties: dict[str, Any] = {key: value_from_text(lookup(key), text) for key, text in args.properties.items()}
        dataset: Dataset | None = actions.create(self.executor, args.dataset, args.parents, args.volume_size, properties)
        if dataset is None:
            self.params.log.info("Already exists: %s", args.dataset)
        return dataset

    def cmd_destroy(self, args: argparse.Namespace) -> None:
        actions.destroy(self.executor, self.resolve(args.dataset), args.recursive)

    def cmd_rename(self, args: argparse.Namespace) -> Dataset:
        return actions.rename(self.executor, self.resolve(args.dataset), args.new_name, args.parents, args.recursive)

    def cmd_snapshot(self, args: argparse.Namespace) -> Dataset:
        return actions.snapshot(self.executor, self.resolve(args.dataset), args.tag, args.recursive)

    def cmd_clone(self, args: argparse.Namespace) -> Dataset:
        return actions.clone(self.executor, args.snapshot, args.target, args.parents)

    def cmd_promote(self, args: argparse.Namespace) -> None:
        actions.promote(self.executor, self.resolve(args.dataset))

    def cmd_send(self, args: argparse.Namespace) -> Any:
        plan = plan_transfer(
            self.executor,
            args.source,
            args.destination,
            incremental=args.incremental,
            intermediary=args.intermediary,
            use_sent_name=args.use_sent_name,
            replicate=args.replicate,
        )
        return run_transfer(self.executor, plan)


def format_value(value: Any) -> str:
    """Renders a typed property value for display, with '-' for absent values like ZFS does."""
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return str(value)


#############################################################################
if __name__ == "__main__":
    main()
