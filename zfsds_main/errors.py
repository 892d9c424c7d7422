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
"""Exception hierarchy surfaced to callers; every failure is a typed error and none is retried automatically, because each
operation is a single authoritative mutation of ZFS state where a blind retry risks applying it twice."""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zfsds_main.transfer_executor import (
        TransferResult,
    )


#############################################################################
class ZfsdsError(Exception):
    """Base class of all errors raised by zfsds."""


class NotFound(ZfsdsError):
    """The referenced dataset or snapshot does not exist."""


class AlreadyExists(ZfsdsError):
    """The target of a create, rename, snapshot or clone operation is already present."""


class InvalidName(ZfsdsError, ValueError):
    """A dataset name is malformed, or a name composition is structurally impossible (e.g. a snapshot of a snapshot)."""


#############################################################################
class PropertyError(ZfsdsError):
    """Base class of property schema violations."""


class UnknownProperty(PropertyError, KeyError):
    """The property key is not registered in the schema."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class NotEditable(PropertyError):
    """The property is read-only, or can only be set at creation time."""


class EnumViolation(PropertyError):
    """A value lies outside of the set of values that the property accepts."""


class DecodeError(PropertyError):
    """A raw property value cannot be decoded into its semantic type."""


#############################################################################
class CommandError(ZfsdsError):
    """A zfs or zpool CLI invocation exited with a non-zero status or wrote to stderr."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"Command failed with exit code {returncode}: {' '.join(cmd)}: {stderr.strip()}")
        self.cmd: list[str] = cmd
        self.returncode: int = returncode
        self.stderr: str = stderr


#############################################################################
class TransferRejected(ZfsdsError):
    """Base class of the reasons why a transfer plan fails lineage validation."""


class ConflictingMode(TransferRejected, ValueError):
    """Both an incremental and an intermediary base snapshot were requested."""


class CrossFilesystemBase(TransferRejected, ValueError):
    """The base snapshot does not belong to the same filesystem as the snapshot being sent."""


class DestinationMissing(TransferRejected, NotFound):
    """The destination must already exist for this kind of transfer."""


class BaseSnapshotMissingAtSource(TransferRejected, NotFound):
    """The base snapshot is not listed among the snapshots of the source filesystem."""


class BaseSnapshotMissingAtDestination(TransferRejected, NotFound):
    """The equivalently tagged base snapshot is not listed among the snapshots of the destination."""


class DestinationAlreadyExists(TransferRejected, AlreadyExists):
    """A full stream can only be received into a destination that does not exist yet."""


#############################################################################
class TransferFailed(ZfsdsError):
    """The send or the receive side of a transfer failed; the destination is left in whatever state zfs left it."""

    def __init__(self, detail: str, result: TransferResult | None = None) -> None:
        super().__init__(detail)
        self.detail: str = detail
        self.result: TransferResult | None = result
