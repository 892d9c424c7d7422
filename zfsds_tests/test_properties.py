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
"""Unit tests for the property schema: decoding raw 'zfs get' values, encoding values for 'zfs set', and validation."""

from __future__ import (
    annotations,
)
import unittest
from datetime import (
    datetime,
    timezone,
)
from pathlib import (
    PurePosixPath,
)
from typing import (
    Any,
)

from zfsds_main.dataset import (
    parse,
)
from zfsds_main.errors import (
    DecodeError,
    EnumViolation,
    NotEditable,
    PropertyError,
    UnknownProperty,
)
from zfsds_main.properties import (
    PROPERTIES,
    Mutability,
    SemanticType,
    creation_options,
    decode,
    encode,
    get_property,
    get_symbolic,
    lookup,
    set_property,
    value_from_text,
)
from zfsds_tests.abstract_testcase import (
    AbstractTestCase,
)
from zfsds_tests.tools import (
    stop_on_failure_subtest,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestSchema,
        TestDecodeEncode,
        TestGetAndSet,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestSchema(unittest.TestCase):

    def test_lookup(self) -> None:
        descriptor = lookup("compression")
        self.assertEqual("compression", descriptor.key)
        self.assertEqual(SemanticType.BOOLEAN, descriptor.semantic_type)
        self.assertEqual(Mutability.EDITABLE, descriptor.mutability)
        self.assertTrue(descriptor.inheritable)
        self.assertIn("gzip_9", descriptor.values)

    def test_lookup_unknown_key(self) -> None:
        with self.assertRaises(UnknownProperty) as context:
            lookup("nosuchproperty")
        self.assertIsInstance(context.exception, PropertyError)
        self.assertIsInstance(context.exception, KeyError)
        self.assertIn("nosuchproperty", str(context.exception))

    def test_mutability_classes(self) -> None:
        self.assertEqual(Mutability.READ_ONLY, lookup("used").mutability)
        self.assertEqual(Mutability.READ_ONLY, lookup("origin").mutability)
        self.assertEqual(Mutability.CREATE_ONLY, lookup("casesensitivity").mutability)
        self.assertEqual(Mutability.CREATE_ONLY, lookup("volblocksize").mutability)
        self.assertTrue(lookup("quota").is_editable)
        self.assertFalse(lookup("utf8only").is_editable)

    def test_closed_versus_supplemental_values(self) -> None:
        self.assertTrue(lookup("copies").is_closed)  # 1, 2, 3
        self.assertTrue(lookup("recordsize").is_closed)
        self.assertFalse(lookup("version").is_closed)  # 1..4 plus 'current'
        self.assertFalse(lookup("quota").is_closed)  # any number plus 'none'
        self.assertFalse(lookup("used").is_closed)
        self.assertTrue(lookup("sync").is_closed)
        self.assertEqual(frozenset(["none"]), lookup("quota").symbols)

    def test_registry_keys_match_descriptors(self) -> None:
        for key, descriptor in PROPERTIES.items():
            with stop_on_failure_subtest(key=key):
                self.assertEqual(key, descriptor.key)
                if descriptor.semantic_type is SemanticType.ENUM:
                    self.assertTrue(len(descriptor.values) > 0)
                for value in descriptor.values:
                    if isinstance(value, str):
                        self.assertNotIn("-", value)  # symbols are spelled with '_' on the Python side


#############################################################################
class TestDecodeEncode(unittest.TestCase):

    def test_decode_date(self) -> None:
        self.assertEqual(datetime(2009, 2, 13, 23, 31, 30, tzinfo=timezone.utc), decode(lookup("creation"), "1234567890"))
        self.assertEqual("1234567890", encode(lookup("creation"), decode(lookup("creation"), "1234567890")))
        with self.assertRaises(DecodeError):
            decode(lookup("creation"), "yesterday")

    def test_decode_size_and_integer(self) -> None:
        self.assertEqual(1073741824, decode(lookup("used"), "1073741824"))
        self.assertEqual(0, decode(lookup("userrefs"), "0"))
        self.assertEqual("none", decode(lookup("quota"), "none"))
        self.assertEqual("current", decode(lookup("version"), "current"))
        with self.assertRaises(DecodeError):
            decode(lookup("used"), "1G")
        with self.assertRaises(DecodeError):
            decode(lookup("available"), "none")

    def test_decode_float(self) -> None:
        self.assertEqual(1.5, decode(lookup("compressratio"), "1.50x"))
        self.assertEqual(2.0, decode(lookup("refcompressratio"), "2.00"))
        with self.assertRaises(DecodeError):
            decode(lookup("compressratio"), "high")

    def test_decode_boolean(self) -> None:
        self.assertIs(True, decode(lookup("atime"), "on"))
        self.assertIs(False, decode(lookup("atime"), "off"))
        self.assertIs(False, decode(lookup("compression"), "gzip-9"))  # symbolic states read as not 'on'
        self.assertIs(False, decode(lookup("mounted"), "-"))

    def test_decode_enum(self) -> None:
        self.assertEqual("passthrough_x", decode(lookup("aclinherit"), "passthrough-x"))
        self.assertEqual("volume", decode(lookup("type"), "volume"))
        with self.assertRaises(EnumViolation):
            decode(lookup("sync"), "sometimes")

    def test_decode_pathname_snapshot_and_string(self) -> None:
        self.assertEqual(PurePosixPath("/tank/a"), decode(lookup("mountpoint"), "/tank/a"))
        self.assertIsNone(decode(lookup("origin"), "-"))
        self.assertIsNone(decode(lookup("origin"), ""))
        self.assertEqual(parse("tank/a@s1"), decode(lookup("origin"), "tank/a@s1"))
        self.assertEqual("none", decode(lookup("mlslabel"), "none"))

    def test_encode(self) -> None:
        self.assertEqual("on", encode(lookup("atime"), True))
        self.assertEqual("off", encode(lookup("atime"), False))
        self.assertEqual("gzip-9", encode(lookup("compression"), "gzip_9"))
        self.assertEqual("passthrough-x", encode(lookup("aclinherit"), "passthrough_x"))
        self.assertEqual("none", encode(lookup("quota"), "none"))
        self.assertEqual("1024", encode(lookup("quota"), 1024))
        self.assertEqual("2", encode(lookup("copies"), 2))
        self.assertEqual("/mnt/x", encode(lookup("mountpoint"), PurePosixPath("/mnt/x")))
        self.assertEqual("-", encode(lookup("origin"), None))
        self.assertEqual("tank/a@s1", encode(lookup("origin"), parse("tank/a@s1")))

    def test_encode_rejects_illegal_values(self) -> None:
        illegal: list[tuple[str, Any]] = [
            ("copies", 4),  # closed set of numbers
            ("copies", "two"),
            ("recordsize", 1000),
            ("quota", -1),
            ("quota", True),  # bool is not an int here
            ("quota", "unlimited"),
            ("compression", "gzip_42"),
            ("compression", "on"),  # booleans are True/False on the Python side
            ("compression", 1),
            ("sync", "sometimes"),
            ("sync", None),
            ("aclinherit", "passthrough-x"),  # ZFS spelling is not the Python spelling
            ("creation", 1234567890),
            ("origin", parse("tank/a")),
            ("mlslabel", "a\nb"),
            ("compressratio", "1.5x"),
        ]
        for key, value in illegal:
            with stop_on_failure_subtest(key=key, value=value):
                with self.assertRaises(EnumViolation):
                    encode(lookup(key), value)

    def test_round_trip_of_editable_properties(self) -> None:
        samples: dict[SemanticType, list[Any]] = {
            SemanticType.SIZE: [0, 1, 1 << 40],
            SemanticType.FLOAT: [1.0, 2.5],
            SemanticType.BOOLEAN: [True, False],
            SemanticType.DATE: [datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)],
            SemanticType.PATHNAME: [PurePosixPath("/mnt/a"), PurePosixPath("legacy")],
            SemanticType.SNAPSHOT: [None, parse("tank/a@s1")],
            SemanticType.STRING: ["", "none", "label with spaces"],
        }
        for key, descriptor in PROPERTIES.items():
            if not descriptor.is_editable:
                continue
            values: list[Any] = list(samples.get(descriptor.semantic_type, []))
            if descriptor.semantic_type is SemanticType.ENUM or descriptor.is_closed:
                values += list(descriptor.values)
            elif descriptor.semantic_type in (SemanticType.SIZE, SemanticType.INTEGER):
                values += [0, 12345] + sorted(descriptor.symbols)
            for value in values:
                with stop_on_failure_subtest(key=key, value=value):
                    self.assertEqual(value, decode(descriptor, encode(descriptor, value)))

    def test_value_from_text(self) -> None:
        self.assertEqual("gzip_9", value_from_text(lookup("compression"), "gzip-9"))
        self.assertIs(True, value_from_text(lookup("compression"), "on"))
        self.assertIs(False, value_from_text(lookup("atime"), "off"))
        self.assertEqual(1024, value_from_text(lookup("quota"), "1024"))
        self.assertEqual("none", value_from_text(lookup("quota"), "none"))
        self.assertEqual("passthrough_x", value_from_text(lookup("aclinherit"), "passthrough-x"))
        self.assertEqual(PurePosixPath("/mnt"), value_from_text(lookup("mountpoint"), "/mnt"))
        self.assertIsNone(value_from_text(lookup("origin"), "none"))


#############################################################################
class TestGetAndSet(AbstractTestCase):

    def test_get_property(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem"})
        executor.add("tank/a", creation="1234567890", used="4096", compression="gzip-9", origin="-")
        a = parse("tank/a")
        self.assertEqual(datetime.fromtimestamp(1234567890, tz=timezone.utc), get_property(executor, a, "creation"))
        self.assertEqual(4096, get_property(executor, a, "used"))
        self.assertIs(False, get_property(executor, a, "compression"))
        self.assertIsNone(get_property(executor, a, "origin"))
        with self.assertRaises(UnknownProperty):
            get_property(executor, a, "nosuchproperty")

    def test_get_symbolic(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem"})
        executor.add("tank/a", compression="gzip-9", atime="on", sync="standard", checksum="bogus")
        a = parse("tank/a")
        self.assertEqual("gzip_9", get_symbolic(executor, a, "compression"))
        self.assertEqual("on", get_symbolic(executor, a, "atime"))
        self.assertEqual("standard", get_symbolic(executor, a, "sync"))
        with self.assertRaises(EnumViolation):
            get_symbolic(executor, a, "checksum")

    def test_set_property(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem", "tank/a": "filesystem"})
        a = parse("tank/a")
        set_property(executor, a, "compression", "gzip_9")
        set_property(executor, a, "quota", "none")
        set_property(executor, a, "atime", False)
        self.assertEqual("gzip-9", executor.properties["tank/a"]["compression"])
        self.assertEqual("none", executor.properties["tank/a"]["quota"])
        self.assertEqual("off", executor.properties["tank/a"]["atime"])
        self.assertEqual("gzip_9", get_symbolic(executor, a, "compression"))

    def test_illegal_value_never_reaches_the_store(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem", "tank/a": "filesystem"})
        a = parse("tank/a")
        with self.assertRaises(EnumViolation):
            set_property(executor, a, "compression", "gzip_42")
        with self.assertRaises(EnumViolation):
            set_property(executor, a, "copies", 7)
        self.assertEqual([], executor.mutations)
        self.assertNotIn("compression", executor.properties["tank/a"])

    def test_set_rejects_non_editable(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem", "tank/a": "filesystem"})
        a = parse("tank/a")
        with self.assertRaises(NotEditable):
            set_property(executor, a, "used", 1)
        with self.assertRaises(NotEditable) as context:
            set_property(executor, a, "casesensitivity", "mixed")
        self.assertIn("creation time", str(context.exception))
        self.assertEqual([], executor.mutations)

    def test_set_in_dryrun_mode_does_not_mutate(self) -> None:
        executor = self.make_fake_executor({"tank": "filesystem", "tank/a": "filesystem"}, dryrun=True)
        set_property(executor, parse("tank/a"), "atime", True)
        self.assertEqual([], executor.mutations)
        self.assertNotIn("atime", executor.properties["tank/a"])

    def test_creation_options(self) -> None:
        opts = creation_options({"compression": "lz4", "casesensitivity": "mixed", "volblocksize": 8192})
        self.assertEqual(["-o", "compression=lz4", "-o", "casesensitivity=mixed", "-o", "volblocksize=8192"], opts)
        self.assertEqual([], creation_options({}))
        with self.assertRaises(NotEditable):
            creation_options({"used": 1})
        with self.assertRaises(EnumViolation):
            creation_options({"casesensitivity": "upper"})
