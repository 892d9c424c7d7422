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
"""Dataset identity; Derives pool, path, parent and child relationships of ZFS datasets purely from the structure of their
names, without ever talking to ZFS.

A Dataset is a lightweight immutable handle: the name is the single source of truth and nothing about the dataset's existence
or properties is cached. Filesystems, volumes and snapshots are variants of the same value type, tagged via DatasetKind, and
the functions in this module dispatch on that tag. A snapshot name is ``<base>@<tag>`` and contains exactly one '@' char.
"""

from __future__ import (
    annotations,
)
import enum
import posixpath
from dataclasses import (
    dataclass,
)

from zfsds_main.errors import (
    InvalidName,
)
from zfsds_main.utils import (
    SHELL_CHARS,
)


#############################################################################
class DatasetKind(enum.Enum):
    """The three kinds of ZFS datasets; values match the 'type' property as reported by 'zfs list -o type'."""

    FILESYSTEM = "filesystem"
    VOLUME = "volume"
    SNAPSHOT = "snapshot"


#############################################################################
@dataclass(frozen=True)
class Dataset:
    """Handle for a ZFS dataset; two handles are equal iff they have the same kind and the same name."""

    kind: DatasetKind
    name: str

    @property
    def pool(self) -> str:
        """Leading path segment, e.g. 'tank' for 'tank/a/b' and for 'tank@s1'."""
        return self.base_name.split("/", 1)[0]

    @property
    def path(self) -> str | None:
        """Remainder after the first '/', or None if this is the pool root dataset (or a snapshot thereof)."""
        splits: list[str] = self.name.split("/", 1)
        return splits[1] if len(splits) > 1 else None

    @property
    def is_snapshot(self) -> bool:
        return self.kind is DatasetKind.SNAPSHOT

    @property
    def base_name(self) -> str:
        """Name of the filesystem or volume that a snapshot belongs to; the name itself for non-snapshots."""
        return self.name.split("@", 1)[0]

    @property
    def tag(self) -> str | None:
        """Snapshot tag without the leading '@', or None for non-snapshots."""
        return self.name.split("@", 1)[1] if self.is_snapshot else None

    def __str__(self) -> str:
        return self.name


def parse(name: str | Dataset, kind: DatasetKind | None = None) -> Dataset:
    """Returns the Dataset handle for the given name after normalizing the path; a name containing "@" is a snapshot.

    Volumes cannot be told apart from filesystems by the shape of their name, so pass ``kind=DatasetKind.VOLUME`` when the
    caller already knows that the name refers to a volume.
    """
    if isinstance(name, Dataset):
        return name
    normalized: str = _normalize(name)
    _validate(normalized, input_text=name)
    if "@" in normalized:
        if kind is not None and kind is not DatasetKind.SNAPSHOT:
            raise InvalidName(f"Snapshot name cannot refer to a {kind.value}: '{name}'")
        return Dataset(DatasetKind.SNAPSHOT, normalized)
    if kind is DatasetKind.SNAPSHOT:
        raise InvalidName(f"Snapshot name must contain a '@' char: '{name}'")
    return Dataset(kind or DatasetKind.FILESYSTEM, normalized)


def parent(dataset: Dataset) -> Dataset | None:
    """Returns the parent filesystem, or None for a pool root; for a snapshot returns the filesystem or volume it snapshots,
    not the parent directory of that."""
    if dataset.kind is DatasetKind.SNAPSHOT:
        return parse(dataset.base_name)
    elif "/" not in dataset.name:
        return None
    else:
        return Dataset(DatasetKind.FILESYSTEM, dataset.name.rsplit("/", 1)[0])


def join(dataset: Dataset, relative_or_tag: str) -> Dataset:
    """Returns the child dataset at the given relative path, or the snapshot ``dataset@tag`` if the string starts with '@'.

    A snapshot has no children of its own, so joining a snapshot with a relative path joins that path onto the snapshot's
    filesystem and then re-appends the snapshot's tag, e.g. join('tank/a@s1', 'b') == 'tank/a/b@s1'. Tagging a snapshot
    again is impossible and raises InvalidName.
    """
    if not relative_or_tag or relative_or_tag.startswith("/"):
        raise InvalidName(f"Cannot join '{dataset.name}' with '{relative_or_tag}'")
    if dataset.kind is DatasetKind.SNAPSHOT:
        if "@" in relative_or_tag:
            raise InvalidName(f"Cannot take a snapshot of snapshot '{dataset.name}': '{relative_or_tag}'")
        base = parent(dataset)
        assert base is not None
        return parse(join(base, relative_or_tag).name + tag_of(dataset))
    elif relative_or_tag.startswith("@"):
        return parse(dataset.name + relative_or_tag)
    else:
        return parse(posixpath.join(dataset.name, relative_or_tag))


def tag_of(snapshot: Dataset) -> str:
    """Returns the snapshot's tag including the leading '@', e.g. '@s1' for 'tank/a@s1'."""
    if snapshot.kind is not DatasetKind.SNAPSHOT:
        raise InvalidName(f"Not a snapshot: '{snapshot.name}'")
    return snapshot.name[snapshot.name.index("@") :]


def _normalize(name: str) -> str:
    """Collapses '.' and '..' segments as well as redundant and trailing separators, like a lexical path normalization."""
    if not name or name.startswith("/"):
        raise InvalidName(f"Invalid ZFS dataset name: '{name}'")
    return posixpath.normpath(name)


def _validate(dataset: str, input_text: str) -> None:
    """'zfs create' CLI does not accept dataset names that are empty or start or end in a slash, etc."""
    # Also see https://github.com/openzfs/zfs/issues/439#issuecomment-2784424
    # and https://github.com/openzfs/zfs/issues/8798
    if (
        dataset in ("", ".", "..")
        or dataset.startswith(("/", "../"))
        or any(char in SHELL_CHARS or (char.isspace() and char != " ") for char in dataset)
        or not dataset[0].isalpha()
    ):
        raise InvalidName(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")
    if dataset.count("@") > 1:
        raise InvalidName(f"Invalid ZFS dataset name: '{input_text}': a snapshot cannot be tagged again")
    if "@" in dataset:
        base, tag = dataset.split("@", 1)
        if not base or not tag or "/" in tag or base.endswith("/"):
            raise InvalidName(f"Invalid ZFS snapshot name: '{dataset}' for: '{input_text}'")
