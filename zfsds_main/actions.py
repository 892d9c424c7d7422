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
"""Dataset lifecycle operations on top of the Executor: listing pools, mounts, children and snapshots, and creating,
destroying, renaming, snapshotting, cloning and promoting datasets.

Each operation checks its preconditions (existence of the dataset, absence of the target) with a fresh query right before
the mutation, and reports violations as NotFound or AlreadyExists rather than as an opaque CommandError. These checks are
not atomic with the mutation that follows them; a concurrent change by a third party surfaces as CommandError instead.
"""

from __future__ import (
    annotations,
)
import posixpath
from typing import (
    TYPE_CHECKING,
    Any,
)

from zfsds_main.dataset import (
    Dataset,
    DatasetKind,
    join,
    parent,
    parse,
)
from zfsds_main.errors import (
    AlreadyExists,
    InvalidName,
    NotFound,
)
from zfsds_main.properties import (
    creation_options,
    get_property,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zfsds_main.executor import (
        Executor,
    )


def pools(executor: Executor) -> list[Dataset]:
    """Returns the root dataset of each imported pool."""
    return [parse(name) for name in executor.list_pools()]


def mounts(executor: Executor) -> dict[str, Dataset]:
    """Returns a mapping from mountpoint directory to the dataset mounted there; skips datasets without a mountpoint
    directory, such as 'none', 'legacy' and snapshots."""
    return {path: parse(name) for name, path in executor.list_mounts() if path.startswith("/")}


def resolve(executor: Executor, name_or_path: str | Dataset) -> Dataset:
    """Returns the dataset for the given dataset name, or for the given absolute mountpoint directory."""
    if isinstance(name_or_path, Dataset):
        return name_or_path
    if name_or_path.startswith("/"):
        path: str = posixpath.normpath(name_or_path)
        dataset: Dataset | None = mounts(executor).get(path)
        if dataset is None:
            raise NotFound(f"No dataset is mounted at {path}")
        return dataset
    return parse(name_or_path)


def exists(executor: Executor, dataset: str | Dataset) -> bool:
    return executor.exists(parse(dataset).name)


def children(executor: Executor, dataset: str | Dataset, recursive: bool = False) -> list[Dataset]:
    """Returns the filesystems and volumes below the given dataset, in the order listed by ZFS; only the direct children
    unless ``recursive``."""
    dataset = parse(dataset)
    if dataset.is_snapshot:
        raise InvalidName(f"A snapshot has no children: {dataset}")
    return [parse(name, DatasetKind(type_)) for name, type_ in executor.list_filesystems(dataset.name, recursive)]


def create(
    executor: Executor,
    dataset: str | Dataset,
    parents: bool = False,
    volume_size: int | str | None = None,
    properties: dict[str, Any] | None = None,
) -> Dataset | None:
    """Creates a filesystem, or a volume of the given size, with the given initial property values; returns None without
    doing anything if the dataset already exists."""
    p, log = executor.params, executor.params.log
    kind: DatasetKind = DatasetKind.VOLUME if volume_size is not None else DatasetKind.FILESYSTEM
    dataset = parse(dataset.name if isinstance(dataset, Dataset) else dataset, kind)
    options: list[str] = creation_options(properties or {})  # validates before talking to ZFS
    if executor.exists(dataset.name):
        log.debug("Already exists: %s", dataset)
        return None
    log.info(p.dry("Creating %s"), f"{dataset.kind.value}: {dataset}")
    size: str | None = str(volume_size) if volume_size is not None else None
    if not executor.create_dataset(dataset.name, parents, size, options):
        log.debug("Concurrently created by someone else: %s", dataset)
        return None
    return dataset


def destroy(executor: Executor, dataset: str | Dataset, recursive: bool = False) -> None:
    """Destroys the given dataset, including its descendants and snapshots if ``recursive``."""
    p, log = executor.params, executor.params.log
    dataset = parse(dataset)
    if not executor.exists(dataset.name):
        raise NotFound(f"Dataset does not exist: {dataset}")
    log.info(p.dry("Destroying %s"), f"{dataset}{' recursively' if recursive else ''}")
    executor.destroy_dataset(dataset.name, recursive)


def rename(
    executor: Executor, dataset: str | Dataset, new_name: str, parents: bool = False, recursive: bool = False
) -> Dataset:
    """Renames the given dataset and returns the handle under its new name.

    A filesystem or volume takes a full new dataset name, and ``parents`` creates missing parents of it. A snapshot takes a
    new tag, with or without leading '@', and ``recursive`` renames the same-named snapshots of all descendants too.
    """
    p, log = executor.params, executor.params.log
    dataset = parse(dataset)
    if dataset.is_snapshot:
        filesystem = parent(dataset)
        assert filesystem is not None
        tag: str = new_name if new_name.startswith("@") else "@" + new_name
        target: Dataset = join(filesystem, tag)
        if parents:
            raise InvalidName(f"Cannot create parents when renaming snapshot {dataset}")
    else:
        target = parse(new_name, dataset.kind)
        if target.is_snapshot:
            raise InvalidName(f"Cannot rename {dataset.kind.value} {dataset} to a snapshot name: {new_name}")
        if recursive:
            raise InvalidName(f"Recursive rename only applies to snapshots, not to {dataset}")
    if not executor.exists(dataset.name):
        raise NotFound(f"Dataset does not exist: {dataset}")
    if executor.exists(target.name):
        raise AlreadyExists(f"Dataset already exists: {target}")
    log.info(p.dry("Renaming %s"), f"{dataset} --> {target}")
    executor.rename_dataset(dataset.name, target.name, parents, recursive)
    return target


def snapshot(executor: Executor, dataset: str | Dataset, tag: str, recursive: bool = False) -> Dataset:
    """Takes a snapshot of the given filesystem or volume (and of all its descendants if ``recursive``); returns it."""
    p, log = executor.params, executor.params.log
    dataset = parse(dataset)
    snap: Dataset = join(dataset, tag if tag.startswith("@") else "@" + tag)  # raises InvalidName for snapshots
    if not executor.exists(dataset.name):
        raise NotFound(f"Dataset does not exist: {dataset}")
    if executor.exists(snap.name):
        raise AlreadyExists(f"Snapshot already exists: {snap}")
    log.info(p.dry("Creating snapshot %s"), f"{snap}{' recursively' if recursive else ''}")
    executor.create_snapshot(snap.name, recursive)
    return snap


def snapshots(executor: Executor, dataset: str | Dataset) -> list[Dataset]:
    """Returns the snapshots of the given filesystem or volume, oldest first."""
    dataset = parse(dataset)
    return [parse(name, DatasetKind.SNAPSHOT) for name in executor.list_snapshots(dataset.name)]


def clone(executor: Executor, snap: str | Dataset, target: str | Dataset, parents: bool = False) -> Dataset:
    """Creates the writable filesystem ``target`` whose initial contents are those of the given snapshot; returns it."""
    p, log = executor.params, executor.params.log
    snap = parse(snap)
    if not snap.is_snapshot:
        raise InvalidName(f"Can only clone a snapshot, not: {snap}")
    target = parse(target)
    if target.is_snapshot:
        raise InvalidName(f"Clone target must not be a snapshot: {target}")
    if not executor.exists(snap.name):
        raise NotFound(f"Snapshot does not exist: {snap}")
    if executor.exists(target.name):
        raise AlreadyExists(f"Dataset already exists: {target}")
    log.info(p.dry("Cloning %s"), f"{snap} --> {target}")
    executor.clone_snapshot(snap.name, target.name, parents)
    return target


def promote(executor: Executor, dataset: str | Dataset) -> None:
    """Makes the given clone independent of the snapshot it was cloned from, reversing their dependency."""
    p, log = executor.params, executor.params.log
    dataset = parse(dataset)
    origin = get_property(executor, dataset, "origin")  # raises NotFound if the dataset does not exist
    if origin is None:
        raise NotFound(f"Dataset is not a clone: {dataset}")
    log.info(p.dry("Promoting %s"), f"{dataset} (origin: {origin})")
    executor.promote(dataset.name)

