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
"""Typed schema for ZFS dataset properties; Maps the untyped 'zfs get' / 'zfs set' key-value store onto typed, validated
values.

Property semantics (units, inheritance, enum legality, mutability) vary per key and are declared exactly once, as data, in
the PROPERTIES table below, which is built at import time and never mutated afterwards. All reads and writes go through
the generic get_property() / set_property() functions, which consult the table to decode raw strings into typed values and
to encode typed values back into raw strings. Values that are not legal for a property are rejected before anything is
sent to ZFS.

Symbolic values are spelled with '_' on the Python side and with '-' on the ZFS side, e.g. ``passthrough_x`` vs.
``passthrough-x`` or ``gzip_9`` vs. ``gzip-9``.
"""

from __future__ import (
    annotations,
)
import enum
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
    timezone,
)
from pathlib import (
    PurePosixPath,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
    Union,
)

from zfsds_main.dataset import (
    Dataset,
    parse,
)
from zfsds_main.errors import (
    DecodeError,
    EnumViolation,
    NotEditable,
    UnknownProperty,
)
from zfsds_main.utils import (
    LOG_TRACE,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zfsds_main.executor import (
        Executor,
    )

Value = Union[int, float, bool, str, datetime, PurePosixPath, Dataset, None]  # Type alias of a decoded property value


#############################################################################
class SemanticType(enum.Enum):
    """How the raw string value of a property is interpreted."""

    SIZE = "size"  # integer number of bytes
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"  # on/off, optionally extended with named variants
    ENUM = "enum"
    DATE = "date"  # seconds since the epoch
    PATHNAME = "pathname"
    SNAPSHOT = "snapshot"  # name of a snapshot, or '-' for none
    STRING = "string"


class Mutability(enum.Enum):
    """When a property can be assigned."""

    READ_ONLY = "read-only"
    EDITABLE = "editable"  # via 'zfs set' at any time
    CREATE_ONLY = "create-only"  # only via 'zfs create -o key=value'


#############################################################################
@dataclass(frozen=True)
class PropertyDescriptor:
    """Schema entry of a single property.

    ``values`` has type-dependent meaning: for ENUM it is the closed set of legal symbols; for BOOLEAN it lists the symbolic
    variants accepted in addition to on/off; for SIZE and INTEGER it is a closed set if it contains only numbers, and a
    supplement of symbols (such as 'none') to arbitrary numbers otherwise.

    ``inheritable`` is informational only: ZFS itself resolves inherited values, the schema just records whether the
    property participates in inheritance.
    """

    key: str
    semantic_type: SemanticType
    mutability: Mutability = Mutability.READ_ONLY
    inheritable: bool = False
    values: tuple[int | str, ...] = ()

    @property
    def is_editable(self) -> bool:
        return self.mutability is Mutability.EDITABLE

    @property
    def is_closed(self) -> bool:
        """Returns True if ``values`` enumerates every legal value, rather than supplementing an open value space."""
        if self.semantic_type is SemanticType.ENUM:
            return True
        if self.semantic_type in (SemanticType.SIZE, SemanticType.INTEGER):
            return len(self.values) > 0 and all(isinstance(value, int) for value in self.values)
        return False

    @property
    def symbols(self) -> frozenset[str]:
        """The symbolic (non-numeric) entries of ``values``."""
        return frozenset(value for value in self.values if isinstance(value, str))


def _prop(
    key: str,
    semantic_type: SemanticType,
    edit: bool = False,
    create_only: bool = False,
    inherit: bool = False,
    values: tuple[int | str, ...] = (),
) -> PropertyDescriptor:
    assert not (edit and create_only)
    mutability = Mutability.EDITABLE if edit else Mutability.CREATE_ONLY if create_only else Mutability.READ_ONLY
    return PropertyDescriptor(key, semantic_type, mutability, inherit, values)


_SIZE = SemanticType.SIZE
_INT = SemanticType.INTEGER
_FLOAT = SemanticType.FLOAT
_BOOL = SemanticType.BOOLEAN
_ENUM = SemanticType.ENUM
_DATE = SemanticType.DATE
_PATH = SemanticType.PATHNAME
_SNAP = SemanticType.SNAPSHOT
_STR = SemanticType.STRING
_BLOCK_SIZES: Final[tuple[int, ...]] = (512, 1024, 2048, 4096, 8192, 16384, 32768, 65536, 131072)
_CACHE_MODES: Final[tuple[str, ...]] = ("all", "none", "metadata")
_ACL_INHERIT_MODES: Final[tuple[str, ...]] = ("discard", "noallow", "restricted", "passthrough", "passthrough_x")
_COMPRESSION: Final[tuple[str, ...]] = ("lzjb", "gzip", *(f"gzip_{level}" for level in range(1, 10)), "zle", "lz4", "zstd")
_CHECKSUMS: Final[tuple[str, ...]] = ("fletcher2", "fletcher4", "sha256", "sha512", "skein", "edonr", "blake3")

PROPERTIES: Final[dict[str, PropertyDescriptor]] = {
    descriptor.key: descriptor
    for descriptor in (
        # read-only statistics
        _prop("available", _SIZE),
        _prop("compressratio", _FLOAT),
        _prop("creation", _DATE),
        _prop("defer_destroy", _BOOL),
        _prop("mounted", _BOOL),
        _prop("origin", _SNAP),
        _prop("refcompressratio", _FLOAT),
        _prop("referenced", _SIZE),
        _prop("type", _ENUM, values=("filesystem", "snapshot", "volume")),
        _prop("used", _SIZE),
        _prop("usedbychildren", _SIZE),
        _prop("usedbydataset", _SIZE),
        _prop("usedbyrefreservation", _SIZE),
        _prop("usedbysnapshots", _SIZE),
        _prop("userrefs", _INT),
        # editable at any time via 'zfs set'
        _prop("aclinherit", _ENUM, edit=True, inherit=True, values=_ACL_INHERIT_MODES),
        _prop("atime", _BOOL, edit=True, inherit=True),
        _prop("canmount", _BOOL, edit=True, values=("noauto",)),
        _prop("checksum", _BOOL, edit=True, inherit=True, values=_CHECKSUMS),
        _prop("compression", _BOOL, edit=True, inherit=True, values=_COMPRESSION),
        _prop("copies", _INT, edit=True, inherit=True, values=(1, 2, 3)),
        _prop("dedup", _BOOL, edit=True, inherit=True, values=("verify", "sha256", "sha256,verify")),
        _prop("devices", _BOOL, edit=True, inherit=True),
        _prop("exec", _BOOL, edit=True, inherit=True),
        _prop("logbias", _ENUM, edit=True, inherit=True, values=("latency", "throughput")),
        _prop("mlslabel", _STR, edit=True, inherit=True),
        _prop("mountpoint", _PATH, edit=True, inherit=True),
        _prop("nbmand", _BOOL, edit=True, inherit=True),
        _prop("primarycache", _ENUM, edit=True, inherit=True, values=_CACHE_MODES),
        _prop("quota", _SIZE, edit=True, values=("none",)),
        _prop("readonly", _BOOL, edit=True, inherit=True),
        _prop("recordsize", _INT, edit=True, inherit=True, values=_BLOCK_SIZES),
        _prop("refquota", _SIZE, edit=True, values=("none",)),
        _prop("refreservation", _SIZE, edit=True, values=("none",)),
        _prop("reservation", _SIZE, edit=True, values=("none",)),
        _prop("secondarycache", _ENUM, edit=True, inherit=True, values=_CACHE_MODES),
        _prop("setuid", _BOOL, edit=True, inherit=True),
        _prop("sharenfs", _BOOL, edit=True, inherit=True),  # TODO: also accept share(1M) option strings
        _prop("sharesmb", _BOOL, edit=True, inherit=True),  # TODO: also accept sharemgr(1M) option strings
        _prop("snapdir", _ENUM, edit=True, inherit=True, values=("hidden", "visible")),
        _prop("sync", _ENUM, edit=True, inherit=True, values=("standard", "always", "disabled")),
        _prop("version", _INT, edit=True, values=(1, 2, 3, 4, "current")),
        _prop("vscan", _BOOL, edit=True, inherit=True),
        _prop("xattr", _BOOL, edit=True, inherit=True),
        _prop("zoned", _BOOL, edit=True, inherit=True),
        _prop("jailed", _BOOL, edit=True, inherit=True),
        _prop("volsize", _SIZE, edit=True),
        # settable only at creation time via 'zfs create -o'
        _prop("casesensitivity", _ENUM, create_only=True, values=("sensitive", "insensitive", "mixed")),
        _prop("normalization", _ENUM, create_only=True, values=("none", "formC", "formD", "formKC", "formKD")),
        _prop("utf8only", _BOOL, create_only=True),
        _prop("volblocksize", _INT, create_only=True, values=_BLOCK_SIZES),
    )
}


def lookup(key: str) -> PropertyDescriptor:
    """Returns the schema entry for the given property key."""
    descriptor: PropertyDescriptor | None = PROPERTIES.get(key)
    if descriptor is None:
        raise UnknownProperty(f"Unknown ZFS property: '{key}'")
    return descriptor


def to_symbol(raw: str) -> str:
    """Converts a ZFS spelling such as 'gzip-9' into the Python spelling 'gzip_9'."""
    return raw.replace("-", "_")


def from_symbol(symbol: str) -> str:
    """Converts a Python spelling such as 'gzip_9' into the ZFS spelling 'gzip-9'."""
    return symbol.replace("_", "-")


#############################################################################
def decode(descriptor: PropertyDescriptor, raw: str) -> Value:
    """Converts the raw string as returned by 'zfs get -Hp' into the typed value of the given property."""
    typ: SemanticType = descriptor.semantic_type
    if typ is SemanticType.SIZE or typ is SemanticType.INTEGER:
        try:
            return int(raw)
        except ValueError:
            if raw in descriptor.symbols:
                return raw  # e.g. quota=none
            raise DecodeError(f"Property {descriptor.key} has non-numeric value: '{raw}'") from None
    elif typ is SemanticType.FLOAT:
        try:
            return float(raw[0:-1] if raw.endswith("x") else raw)  # compressratio may carry a 'x' suffix, e.g. '1.50x'
        except ValueError:
            raise DecodeError(f"Property {descriptor.key} has non-float value: '{raw}'") from None
    elif typ is SemanticType.BOOLEAN:
        return raw == "on"
    elif typ is SemanticType.ENUM:
        symbol: str = to_symbol(raw)
        if symbol not in descriptor.values:
            raise EnumViolation(f"Property {descriptor.key} has value {symbol}, which is not in {list(descriptor.values)}")
        return symbol
    elif typ is SemanticType.DATE:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except ValueError:
            raise DecodeError(f"Property {descriptor.key} has non-numeric date value: '{raw}'") from None
    elif typ is SemanticType.PATHNAME:
        return PurePosixPath(raw)
    elif typ is SemanticType.SNAPSHOT:
        return None if raw in ("", "-") else parse(raw)
    else:
        assert typ is SemanticType.STRING
        return raw


def encode(descriptor: PropertyDescriptor, value: Any) -> str:
    """Converts the typed value into the raw string accepted by 'zfs set'; the inverse of decode()."""
    typ: SemanticType = descriptor.semantic_type
    key: str = descriptor.key
    if typ is SemanticType.SIZE or typ is SemanticType.INTEGER:
        if isinstance(value, int) and not isinstance(value, bool):
            if value < 0:
                raise EnumViolation(f"Property {key} must not be negative: {value}")
            if descriptor.is_closed and value not in descriptor.values:
                raise EnumViolation(f"Property {key} has value {value}, which is not in {list(descriptor.values)}")
            return str(value)
        if isinstance(value, str) and value in descriptor.symbols:
            return from_symbol(value)
        raise EnumViolation(f"Property {key} accepts an integer or one of {sorted(descriptor.symbols)}, not: {value!r}")
    elif typ is SemanticType.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EnumViolation(f"Property {key} accepts a number, not: {value!r}")
        return repr(float(value))
    elif typ is SemanticType.BOOLEAN:
        if isinstance(value, bool):
            return "on" if value else "off"
        if isinstance(value, str) and value in descriptor.values:
            return from_symbol(value)
        raise EnumViolation(f"Property {key} accepts True, False or one of {list(descriptor.values)}, not: {value!r}")
    elif typ is SemanticType.ENUM:
        if not isinstance(value, str) or value not in descriptor.values:
            raise EnumViolation(f"Property {key} has value {value!r}, which is not in {list(descriptor.values)}")
        return from_symbol(value)
    elif typ is SemanticType.DATE:
        if not isinstance(value, datetime):
            raise EnumViolation(f"Property {key} accepts a datetime, not: {value!r}")
        return str(int(value.timestamp()))
    elif typ is SemanticType.PATHNAME:
        if not isinstance(value, (str, PurePosixPath)):
            raise EnumViolation(f"Property {key} accepts a path, not: {value!r}")
        return str(value)
    elif typ is SemanticType.SNAPSHOT:
        if value is None:
            return "-"
        if not isinstance(value, Dataset) or not value.is_snapshot:
            raise EnumViolation(f"Property {key} accepts a snapshot or None, not: {value!r}")
        return value.name
    else:
        assert typ is SemanticType.STRING
        if not isinstance(value, str) or "\n" in value:
            raise EnumViolation(f"Property {key} accepts a single line string, not: {value!r}")
        return value


def value_from_text(descriptor: PropertyDescriptor, text: str) -> Value:
    """Converts a user supplied string, e.g. from the command line, into a typed value suitable for encode().

    Unlike decode() this keeps the symbolic variants of boolean properties, e.g. 'gzip-9' for compression.
    """
    typ: SemanticType = descriptor.semantic_type
    if typ is SemanticType.BOOLEAN:
        return True if text == "on" else False if text == "off" else to_symbol(text)
    elif typ is SemanticType.SIZE or typ is SemanticType.INTEGER:
        try:
            return int(text)
        except ValueError:
            return to_symbol(text)
    elif typ is SemanticType.ENUM:
        return to_symbol(text)
    elif typ is SemanticType.SNAPSHOT:
        return None if text in ("", "-", "none") else parse(text)
    else:
        return decode(descriptor, text)


#############################################################################
def get_property(executor: Executor, dataset: Dataset, key: str) -> Value:
    """Returns the typed value of the given property of the given dataset, freshly queried from ZFS."""
    descriptor: PropertyDescriptor = lookup(key)
    raw: str = executor.get_raw_property(dataset.name, key)
    executor.params.log.log(LOG_TRACE, "Got property %s", f"{dataset.name}: {key}={raw}")
    return decode(descriptor, raw)


def get_symbolic(executor: Executor, dataset: Dataset, key: str) -> str:
    """Returns the raw value in its symbolic Python spelling, e.g. 'gzip_9' for compression=gzip-9; boolean accessors only
    distinguish on from off, whereas this exposes the extra named states of boolean properties."""
    descriptor: PropertyDescriptor = lookup(key)
    symbol: str = to_symbol(executor.get_raw_property(dataset.name, key))
    if descriptor.semantic_type is SemanticType.BOOLEAN:
        legal: tuple[int | str, ...] = ("on", "off") + descriptor.values
    elif descriptor.semantic_type is SemanticType.ENUM:
        legal = descriptor.values
    else:
        return symbol
    if symbol not in legal:
        raise EnumViolation(f"Property {key} has value {symbol}, which is not in {list(legal)}")
    return symbol


def set_property(executor: Executor, dataset: Dataset, key: str, value: Any) -> None:
    """Assigns the typed value to the given property of the given dataset via 'zfs set'; validates before talking to ZFS."""
    raw: str = encode_assignment(key, value)
    executor.params.log.info(executor.params.dry("Setting property %s"), f"{dataset.name}: {key}={raw}")
    executor.set_raw_property(dataset.name, key, raw)


def encode_assignment(key: str, value: Any) -> str:
    """Returns the raw string that 'zfs set' would assign, or raises if the property is not editable or the value illegal."""
    descriptor: PropertyDescriptor = lookup(key)
    if descriptor.mutability is Mutability.CREATE_ONLY:
        raise NotEditable(f"Property {key} can only be set at creation time")
    if descriptor.mutability is not Mutability.EDITABLE:
        raise NotEditable(f"Property {key} is read-only")
    return encode(descriptor, value)


def creation_options(properties: dict[str, Any]) -> list[str]:
    """Returns the '-o key=value' options for 'zfs create' that assign the given typed values at creation time."""
    opts: list[str] = []
    for key, value in properties.items():
        descriptor: PropertyDescriptor = lookup(key)
        if descriptor.mutability is Mutability.READ_ONLY:
            raise NotEditable(f"Property {key} is read-only")
        opts += ["-o", f"{key}={encode(descriptor, value)}"]
    return opts
