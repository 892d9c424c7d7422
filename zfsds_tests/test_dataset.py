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
"""Unit tests for dataset name parsing and the parent/join relationships derived from names."""

from __future__ import (
    annotations,
)
import unittest

from zfsds_main.dataset import (
    Dataset,
    DatasetKind,
    join,
    parent,
    parse,
    tag_of,
)
from zfsds_main.errors import (
    InvalidName,
    ZfsdsError,
)
from zfsds_tests.tools import (
    stop_on_failure_subtest,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestParse,
        TestParentAndJoin,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestParse(unittest.TestCase):

    def test_snapshot(self) -> None:
        snap = parse("pool/a/b@snap1")
        self.assertEqual(DatasetKind.SNAPSHOT, snap.kind)
        self.assertEqual("pool/a/b@snap1", snap.name)
        self.assertEqual("pool", snap.pool)
        self.assertEqual("pool/a/b", snap.base_name)
        self.assertEqual("snap1", snap.tag)
        self.assertEqual(parse("pool/a/b"), parent(snap))
        self.assertTrue(snap.is_snapshot)

    def test_filesystem(self) -> None:
        fs = parse("pool/a/b")
        self.assertEqual(Dataset(DatasetKind.FILESYSTEM, "pool/a/b"), fs)
        self.assertEqual("pool", fs.pool)
        self.assertEqual("a/b", fs.path)
        self.assertIsNone(fs.tag)
        self.assertEqual("pool/a/b", str(fs))
        self.assertIsNone(parse("pool").path)
        self.assertEqual("pool", parse("pool@s1").pool)

    def test_volume_requires_kind_hint(self) -> None:
        self.assertEqual(DatasetKind.FILESYSTEM, parse("pool/vol").kind)
        vol = parse("pool/vol", DatasetKind.VOLUME)
        self.assertEqual(DatasetKind.VOLUME, vol.kind)
        self.assertNotEqual(parse("pool/vol"), vol)
        self.assertEqual(parse("pool/vol@s1"), parse("pool/vol@s1", DatasetKind.SNAPSHOT))

    def test_kind_hint_must_match_name_shape(self) -> None:
        with self.assertRaises(InvalidName):
            parse("pool/a@s1", DatasetKind.FILESYSTEM)
        with self.assertRaises(InvalidName):
            parse("pool/a", DatasetKind.SNAPSHOT)

    def test_dataset_passes_through(self) -> None:
        vol = Dataset(DatasetKind.VOLUME, "pool/vol")
        self.assertIs(vol, parse(vol))

    def test_normalization(self) -> None:
        for name, expected in [
            ("pool/a/b/", "pool/a/b"),
            ("pool//a", "pool/a"),
            ("pool/./a", "pool/a"),
            ("pool/a/../b", "pool/b"),
            ("pool/a/b/..", "pool/a"),
        ]:
            with stop_on_failure_subtest(name=name):
                self.assertEqual(expected, parse(name).name)

    def test_round_trip_of_normalized_names(self) -> None:
        for name in ["pool", "pool/a", "pool/a/b", "pool@s1", "pool/a/b@s_1", "pool/a b/c", "p1/x.y-z:w@2024-01-01_00:00"]:
            with stop_on_failure_subtest(name=name):
                self.assertEqual(name, parse(name).name)

    def test_invalid_names(self) -> None:
        for name in [
            "",
            "/pool/a",
            ".",
            "pool/..",
            "pool/../..",
            "../pool",
            "pool@a@b",
            "pool@",
            "@snap",
            "pool/a@s/1",
            "pool/a\tb",
            "pool/a\nb",
            "pool/a;rm",
            "pool/$HOME",
            "pool/a|b",
            "1pool/a",
            "_pool",
        ]:
            with stop_on_failure_subtest(name=name):
                with self.assertRaises(InvalidName):
                    parse(name)

    def test_invalid_name_is_value_error(self) -> None:
        with self.assertRaises(ValueError):
            parse("")
        with self.assertRaises(ZfsdsError):
            parse("")

    def test_equality_and_hashing(self) -> None:
        self.assertEqual(parse("pool/a"), parse("pool/a/"))
        self.assertEqual(1, len({parse("pool/a"), parse("pool//a"), parse("pool/./a")}))
        self.assertNotEqual(parse("pool/a"), parse("pool/b"))


#############################################################################
class TestParentAndJoin(unittest.TestCase):

    def test_parent(self) -> None:
        self.assertEqual(parse("pool/a"), parent(parse("pool/a/b")))
        self.assertEqual(parse("pool"), parent(parse("pool/a")))
        self.assertIsNone(parent(parse("pool")))
        self.assertEqual(parse("pool/a/b"), parent(parse("pool/a/b@s1")))
        self.assertEqual(parse("pool"), parent(parse("pool@s1")))
        self.assertEqual(parse("pool/a"), parent(parse("pool/a/vol", DatasetKind.VOLUME)))

    def test_join_filesystem(self) -> None:
        fs = parse("pool/a")
        self.assertEqual(parse("pool/a/b"), join(fs, "b"))
        self.assertEqual(parse("pool/a/b/c"), join(fs, "b/c"))
        self.assertEqual(parse("pool/b"), join(fs, "../b"))
        self.assertEqual(parse("pool/a@s1"), join(fs, "@s1"))
        self.assertEqual(parse("pool/a/b@s1"), join(fs, "b@s1"))

    def test_join_snapshot(self) -> None:
        snap = parse("pool/a@s1")
        self.assertEqual(parse("pool/a/b@s1"), join(snap, "b"))
        self.assertEqual(parse("pool/b@s1"), join(snap, "../b"))
        with self.assertRaises(InvalidName):
            join(snap, "@s2")
        with self.assertRaises(InvalidName):
            join(snap, "b@s2")

    def test_join_rejects_absolute_and_empty(self) -> None:
        for rel in ["/b", "", "/"]:
            with stop_on_failure_subtest(rel=rel):
                with self.assertRaises(InvalidName):
                    join(parse("pool/a"), rel)

    def test_join_rejects_escaping_the_pool(self) -> None:
        with self.assertRaises(InvalidName):
            join(parse("pool"), "..")

    def test_parent_of_join_is_identity(self) -> None:
        for name in ["pool", "pool/a", "pool/a/b"]:
            for segment in ["x", "y.z", "child-1"]:
                with stop_on_failure_subtest(name=name, segment=segment):
                    d = parse(name)
                    self.assertEqual(d, parent(join(d, segment)))

    def test_join_parent_with_tag_is_identity(self) -> None:
        for name in ["pool@s1", "pool/a@s1", "pool/a/b@2024-01-01_00:00:00"]:
            with stop_on_failure_subtest(name=name):
                s = parse(name)
                p = parent(s)
                assert p is not None
                self.assertEqual(s, join(p, tag_of(s)))

    def test_tag_of(self) -> None:
        self.assertEqual("@s1", tag_of(parse("pool/a@s1")))
        with self.assertRaises(InvalidName):
            tag_of(parse("pool/a"))
