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
"""Test case base class used by most unit tests.

Provides shared setup for consistent CLI argument parsing, plus FakeExecutor, an in-memory stand-in for the 'zfs' and
'zpool' CLIs that lets dataset lifecycle, property and transfer planning logic run without any ZFS pool.
"""

from __future__ import (
    annotations,
)
import argparse
import logging
import unittest
from unittest.mock import (
    MagicMock,
)

from zfsds_main import (
    argparse_cli,
    configuration,
)
from zfsds_main.errors import (
    CommandError,
    NotFound,
)
from zfsds_main.executor import (
    Executor,
)


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args)

    @staticmethod
    def make_params(
        args: argparse.Namespace | None = None,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
    ) -> configuration.Params:
        args = args if args is not None else AbstractTestCase.argparser_parse_args(["pools"])
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, log=log, log_params=log_params)

    def make_fake_executor(self, datasets: dict[str, str] | None = None, dryrun: bool = False) -> FakeExecutor:
        args = self.argparser_parse_args((["--dryrun"] if dryrun else []) + ["pools"])
        return FakeExecutor(self.make_params(args), datasets or {})


#############################################################################
class FakeExecutor(Executor):
    """In-memory ZFS: ``datasets`` maps each dataset name (including snapshots) to its 'type' column, in creation order,
    and ``properties`` maps each dataset name to its raw property values. Mutations are recorded in ``mutations``."""

    def __init__(self, params: configuration.Params, datasets: dict[str, str]) -> None:
        super().__init__(params)
        self.datasets: dict[str, str] = dict(datasets)
        self.properties: dict[str, dict[str, str]] = {name: {} for name in datasets}
        self.mutations: list[tuple[str, ...]] = []

    def _mutate(self, *call: str) -> bool:
        """Records the mutation and returns True if it shall take effect, i.e. if this is not a dry run."""
        if self.params.dry_run:
            return False
        self.mutations.append(call)
        return True

    def _require(self, name: str) -> None:
        if name not in self.datasets:
            raise NotFound(f"Dataset does not exist: {name}")

    def list_pools(self) -> list[str]:
        return [name for name in self.datasets if "/" not in name and "@" not in name]

    def list_mounts(self) -> list[tuple[str, str]]:
        return [(name, self.properties[name].get("mountpoint", "-")) for name in self.datasets]

    def list_filesystems(self, under: str, recursive: bool = False) -> list[tuple[str, str]]:
        self._require(under)
        prefix: str = under + "/"
        return [
            (name, type_)
            for name, type_ in self.datasets.items()
            if type_ != "snapshot" and name.startswith(prefix) and (recursive or "/" not in name[len(prefix) :])
        ]

    def list_snapshots(self, of_dataset: str) -> list[str]:
        self._require(of_dataset)
        return [name for name in self.datasets if name.startswith(of_dataset + "@")]

    def exists(self, dataset: str) -> bool:
        return dataset in self.datasets

    def get_raw_property(self, dataset: str, key: str) -> str:
        self._require(dataset)
        return self.properties[dataset].get(key, "-")

    def set_raw_property(self, dataset: str, key: str, value: str) -> None:
        self._require(dataset)
        if self._mutate("set", dataset, key, value):
            self.properties[dataset][key] = value

    def create_dataset(
        self, dataset: str, create_parents: bool = False, volume_size: str | None = None, options: list[str] | None = None
    ) -> bool:
        if dataset in self.datasets:
            return False
        parent: str = dataset.rsplit("/", 1)[0]
        if "/" in dataset and parent not in self.datasets and not create_parents:
            raise CommandError(["zfs", "create", dataset], 1, f"cannot create '{dataset}': parent does not exist")
        if self._mutate("create", dataset, *(options or [])):
            self.add(dataset, "volume" if volume_size else "filesystem")
            opts: list[str] = options or []
            for flag, assignment in zip(opts[0::2], opts[1::2]):
                assert flag == "-o"
                key, value = assignment.split("=", 1)
                self.properties[dataset][key] = value
        return True

    def destroy_dataset(self, dataset: str, recursive: bool = False) -> None:
        self._require(dataset)
        if self._mutate("destroy", dataset):
            for name in list(self.datasets):
                if name == dataset or (recursive and name.startswith((dataset + "/", dataset + "@"))):
                    del self.datasets[name]
                    del self.properties[name]

    def rename_dataset(self, old_name: str, new_name: str, create_parents: bool = False, recursive: bool = False) -> None:
        self._require(old_name)
        if self._mutate("rename", old_name, new_name):
            self.datasets = {(new_name if name == old_name else name): type_ for name, type_ in self.datasets.items()}
            self.properties[new_name] = self.properties.pop(old_name)

    def create_snapshot(self, snapshot: str, recursive: bool = False) -> None:
        self._require(snapshot.split("@", 1)[0])
        if self._mutate("snapshot", snapshot):
            self.add(snapshot, "snapshot")

    def clone_snapshot(self, snapshot: str, clone: str, create_parents: bool = False) -> None:
        self._require(snapshot)
        if self._mutate("clone", snapshot, clone):
            self.add(clone, "filesystem", origin=snapshot)

    def promote(self, dataset: str) -> None:
        self._require(dataset)
        self._mutate("promote", dataset)

    def add(self, name: str, type_: str = "filesystem", **properties: str) -> FakeExecutor:
        self.datasets[name] = type_
        self.properties[name] = dict(properties)
        return self
