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
"""Validates a requested 'zfs send | zfs receive' transfer against snapshot lineage before any byte moves, and produces an
immutable TransferPlan that transfer_executor.run_transfer() consumes exactly once.

Which delta is sent is decided by the caller, never guessed: a full stream, an incremental stream from one base snapshot
('zfs send -i'), or an intermediary stream covering every snapshot between the base and the source ('zfs send -I').
Requesting both an incremental and an intermediary base is rejected.

The snapshot membership checks below compare against listings taken at planning time. Nothing prevents a third party from
creating or destroying the snapshots involved between planning and execution; such a race is not masked by locking and
surfaces as a TransferFailed error from the zfs CLI instead.
"""

from __future__ import (
    annotations,
)
import enum
import threading
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    TYPE_CHECKING,
)

from zfsds_main.dataset import (
    Dataset,
    join,
    parent,
    parse,
    tag_of,
)
from zfsds_main.errors import (
    BaseSnapshotMissingAtDestination,
    BaseSnapshotMissingAtSource,
    ConflictingMode,
    CrossFilesystemBase,
    DestinationAlreadyExists,
    DestinationMissing,
    InvalidName,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zfsds_main.executor import (
        Executor,
    )


#############################################################################
class TransferMode(enum.Enum):
    """Which delta a transfer sends, and what state the destination must be in for it."""

    FULL = "full"  # destination must not exist yet
    INCREMENTAL = "incremental"  # zfs send -i base source; destination must contain base
    INTERMEDIARY = "intermediary"  # zfs send -I base source; destination must contain base
    USE_DESTINATION_NAME = "use_destination_name"  # full stream received via 'zfs receive -d' into an existing parent


#############################################################################
@dataclass(frozen=True)
class TransferPlan:
    """A transfer that passed lineage validation; immutable, and can be executed only once."""

    source: Dataset
    destination: Dataset
    mode: TransferMode
    base: Dataset | None = None
    use_sent_name: bool = False
    replicate: bool = False
    _unconsumed: threading.Lock = field(default_factory=threading.Lock, compare=False, repr=False)

    @property
    def incremental_flag(self) -> str | None:
        """Returns the 'zfs send' flag that selects the delta, or None for a full stream."""
        if self.mode is TransferMode.INCREMENTAL:
            return "-i"
        elif self.mode is TransferMode.INTERMEDIARY:
            return "-I"
        return None

    def consume(self) -> None:
        """Marks the plan as executed; raises ValueError if it has been executed before."""
        if not self._unconsumed.acquire(blocking=False):
            raise ValueError(f"Transfer plan has already been executed: {self.source} --> {self.destination}")

    def __str__(self) -> str:
        base: str = f" from {self.base}" if self.base is not None else ""
        return f"{self.mode.value}{base}: {self.source} --> {self.destination}"


def plan_transfer(
    executor: Executor,
    source: str | Dataset,
    destination: str | Dataset,
    incremental: str | Dataset | None = None,
    intermediary: str | Dataset | None = None,
    use_sent_name: bool = False,
    replicate: bool = False,
) -> TransferPlan:
    """Validates the requested transfer of snapshot ``source`` to ``destination`` and returns the corresponding plan.

    ``incremental`` and ``intermediary`` name the base snapshot either by full name or as '@tag' relative to the source's
    filesystem. Raises a TransferRejected subclass if the request conflicts with itself or with the current snapshot
    lineage of source and destination.
    """
    log = executor.params.log
    if incremental is not None and intermediary is not None:  # takes precedence over any other rejection
        raise ConflictingMode("Cannot specify both an incremental and an intermediary base snapshot")
    src: Dataset = parse(source)
    if not src.is_snapshot:
        raise InvalidName(f"Source of a transfer must be a snapshot: {src.name}")
    dst: Dataset = parse(destination)

    base_spec: str | Dataset | None = incremental if incremental is not None else intermediary
    base: Dataset | None = None
    if base_spec is not None:
        mode: TransferMode = TransferMode.INCREMENTAL if incremental is not None else TransferMode.INTERMEDIARY
        base = _resolve_base_snapshot(src, base_spec)
        tag: str = tag_of(base)
        src_filesystem = parent(src)
        assert src_filesystem is not None
        if not executor.exists(dst.name):
            raise DestinationMissing(f"Destination must already exist when receiving an incremental stream: {dst}")
        if base.name not in executor.list_snapshots(src_filesystem.name):
            raise BaseSnapshotMissingAtSource(f"Snapshot {tag} must exist at {src_filesystem}")
        if join(dst, tag).name not in executor.list_snapshots(dst.name):
            raise BaseSnapshotMissingAtDestination(f"Snapshot {tag} must exist at {dst}")
    elif use_sent_name:
        mode = TransferMode.USE_DESTINATION_NAME
        if not executor.exists(dst.name):
            raise DestinationMissing(f"Destination must already exist when using the sent name: {dst}")
    else:
        mode = TransferMode.FULL
        if executor.exists(dst.name):
            raise DestinationAlreadyExists(f"Destination must not exist when receiving a full stream: {dst}")

    plan = TransferPlan(src, dst, mode, base=base, use_sent_name=use_sent_name, replicate=replicate)
    log.debug("Planned transfer: %s", plan)
    return plan


def _resolve_base_snapshot(source: Dataset, base_spec: str | Dataset) -> Dataset:
    """Resolves '@tag' against the source's filesystem, or else parses a full snapshot name that must live in the same
    filesystem as the source."""
    src_filesystem = parent(source)
    assert src_filesystem is not None
    if isinstance(base_spec, str) and base_spec.startswith("@"):
        return join(src_filesystem, base_spec)
    base: Dataset = parse(base_spec)
    if not base.is_snapshot:
        raise InvalidName(f"Base of an incremental transfer must be a snapshot: {base.name}")
    if parent(base) != src_filesystem:
        raise CrossFilesystemBase(f"Incremental snapshot {base} must be in the same filesystem as {source}")
    return base
