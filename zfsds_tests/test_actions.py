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
"""Unit tests for the dataset lifecycle operations, run against the in-memory FakeExecutor."""

from __future__ import (
    annotations,
)
import unittest

from zfsds_main import (
    actions,
)
from zfsds_main.dataset import (
    DatasetKind,
    parse,
)
from zfsds_main.errors import (
    AlreadyExists,
    CommandError,
    EnumViolation,
    InvalidName,
    NotEditable,
    NotFound,
)
from zfsds_main.properties import (
    get_property,
)
from zfsds_tests.abstract_testcase import (
    AbstractTestCase,
    FakeExecutor,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestQueries,
        TestCreateAndDestroy,
        TestRename,
        TestSnapshotCloneAndPromote,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_tree(test: AbstractTestCase, dryrun: bool = False) -> FakeExecutor:
    executor = test.make_fake_executor(dryrun=dryrun)
    executor.add("pool", mountpoint="/pool")
    executor.add("pool/a", mountpoint="/pool/a")
    executor.add("pool/a@s1", "snapshot")
    executor.add("pool/a@s2", "snapshot")
    executor.add("pool/a/b", mountpoint="none")
    executor.add("pool/v", "volume")
    executor.add("tank", mountpoint="/mnt/tank")
    return executor


#############################################################################
class TestQueries(AbstractTestCase):

    def setUp(self) -> None:
        self.executor: FakeExecutor = make_tree(self)

    def test_pools(self) -> None:
        self.assertEqual([parse("pool"), parse("tank")], actions.pools(self.executor))

    def test_mounts_skip_datasets_without_mount_directory(self) -> None:
        expected = {"/pool": parse("pool"), "/pool/a": parse("pool/a"), "/mnt/tank": parse("tank")}
        self.assertEqual(expected, actions.mounts(self.executor))

    def test_resolve_mountpoint_path(self) -> None:
        self.assertEqual(parse("pool/a"), actions.resolve(self.executor, "/pool/a"))
        self.assertEqual(parse("pool/a"), actions.resolve(self.executor, "/pool/./a/"))
        self.assertEqual(parse("tank"), actions.resolve(self.executor, "/mnt/tank"))
        with self.assertRaises(NotFound):
            actions.resolve(self.executor, "/mnt/nothing/here")

    def test_resolve_dataset_name(self) -> None:
        self.assertEqual(parse("pool/x"), actions.resolve(self.executor, "pool/x/"))  # need not exist
        self.assertEqual(parse("pool/a@s1"), actions.resolve(self.executor, "pool/a@s1"))
        dataset = parse("pool/a")
        self.assertIs(dataset, actions.resolve(self.executor, dataset))
        with self.assertRaises(InvalidName):
            actions.resolve(self.executor, "pool/a@s1@s2")

    def test_exists(self) -> None:
        self.assertTrue(actions.exists(self.executor, "pool/a"))
        self.assertTrue(actions.exists(self.executor, parse("pool/a@s1")))
        self.assertFalse(actions.exists(self.executor, "pool/nope"))

    def test_children(self) -> None:
        children = actions.children(self.executor, "pool")
        self.assertEqual(["pool/a", "pool/v"], [child.name for child in children])
        self.assertEqual([DatasetKind.FILESYSTEM, DatasetKind.VOLUME], [child.kind for child in children])

    def test_children_recursive(self) -> None:
        children = actions.children(self.executor, parse("pool"), recursive=True)
        self.assertEqual(["pool/a", "pool/a/b", "pool/v"], [child.name for child in children])

    def test_children_of_leaf_and_of_snapshot(self) -> None:
        self.assertEqual([], actions.children(self.executor, "pool/a/b"))
        with self.assertRaises(InvalidName):
            actions.children(self.executor, "pool/a@s1")
        with self.assertRaises(NotFound):
            actions.children(self.executor, "pool/nope")

    def test_snapshots_oldest_first(self) -> None:
        snapshots = actions.snapshots(self.executor, "pool/a")
        self.assertEqual([parse("pool/a@s1"), parse("pool/a@s2")], snapshots)
        self.assertTrue(all(snapshot.is_snapshot for snapshot in snapshots))
        self.assertEqual([], actions.snapshots(self.executor, "pool/a/b"))


#############################################################################
class TestCreateAndDestroy(AbstractTestCase):

    def setUp(self) -> None:
        self.executor: FakeExecutor = make_tree(self)

    def test_create_filesystem_with_properties(self) -> None:
        dataset = actions.create(self.executor, "pool/c", properties={"compression": "lz4", "recordsize": 16384})
        self.assertEqual(parse("pool/c"), dataset)
        self.assertTrue(actions.exists(self.executor, "pool/c"))
        self.assertEqual(
            [("create", "pool/c", "-o", "compression=lz4", "-o", "recordsize=16384")], self.executor.mutations
        )
        self.assertEqual(16384, get_property(self.executor, parse("pool/c"), "recordsize"))

    def test_create_volume(self) -> None:
        dataset = actions.create(self.executor, "pool/vol2", volume_size=1024 * 1024)
        assert dataset is not None
        self.assertEqual(DatasetKind.VOLUME, dataset.kind)
        self.assertEqual("volume", self.executor.datasets["pool/vol2"])

    def test_create_is_a_noop_if_dataset_already_exists(self) -> None:
        self.assertIsNone(actions.create(self.executor, "pool/a"))
        self.assertIsNone(actions.create(self.executor, parse("pool/a"), properties={"atime": False}))
        self.assertEqual([], self.executor.mutations)

    def test_create_rejects_illegal_property_before_talking_to_zfs(self) -> None:
        with self.assertRaises(EnumViolation):
            actions.create(self.executor, "pool/c", properties={"compression": "gzip_42"})
        with self.assertRaises(NotEditable):
            actions.create(self.executor, "pool/c", properties={"used": 5})
        self.assertFalse(actions.exists(self.executor, "pool/c"))
        self.assertEqual([], self.executor.mutations)

    def test_create_with_missing_parent(self) -> None:
        with self.assertRaises(CommandError):
            actions.create(self.executor, "pool/x/y")
        self.assertEqual(parse("pool/x/y"), actions.create(self.executor, "pool/x/y", parents=True))

    def test_create_snapshot_name_is_invalid(self) -> None:
        with self.assertRaises(InvalidName):
            actions.create(self.executor, "pool/a@s9")

    def test_create_dryrun(self) -> None:
        executor = make_tree(self, dryrun=True)
        self.assertEqual(parse("pool/c"), actions.create(executor, "pool/c"))
        self.assertFalse(actions.exists(executor, "pool/c"))
        self.assertEqual([], executor.mutations)
        executor.params.log.info.assert_called_once()  # type: ignore[attr-defined]
        self.assertTrue(executor.params.log.info.call_args.args[0].startswith("Dry "))  # type: ignore[attr-defined]

    def test_destroy(self) -> None:
        actions.destroy(self.executor, "pool/v")
        self.assertFalse(actions.exists(self.executor, "pool/v"))
        self.assertEqual([("destroy", "pool/v")], self.executor.mutations)

    def test_destroy_recursive(self) -> None:
        actions.destroy(self.executor, "pool/a", recursive=True)
        for name in ("pool/a", "pool/a@s1", "pool/a/b"):
            self.assertFalse(actions.exists(self.executor, name), name)
        self.assertTrue(actions.exists(self.executor, "pool"))

    def test_destroy_missing(self) -> None:
        with self.assertRaises(NotFound):
            actions.destroy(self.executor, "pool/nope")
        self.assertEqual([], self.executor.mutations)


#############################################################################
class TestRename(AbstractTestCase):

    def setUp(self) -> None:
        self.executor: FakeExecutor = make_tree(self)

    def test_rename_filesystem(self) -> None:
        target = actions.rename(self.executor, "pool/a/b", "pool/b")
        self.assertEqual(parse("pool/b"), target)
        self.assertTrue(actions.exists(self.executor, "pool/b"))
        self.assertFalse(actions.exists(self.executor, "pool/a/b"))

    def test_rename_volume_keeps_kind(self) -> None:
        target = actions.rename(self.executor, parse("pool/v", DatasetKind.VOLUME), "pool/v2")
        self.assertEqual(DatasetKind.VOLUME, target.kind)

    def test_rename_snapshot_takes_new_tag(self) -> None:
        self.assertEqual(parse("pool/a@s9"), actions.rename(self.executor, "pool/a@s2", "s9"))
        self.assertEqual(parse("pool/a@s8"), actions.rename(self.executor, "pool/a@s9", "@s8", recursive=True))
        self.assertEqual([parse("pool/a@s1"), parse("pool/a@s8")], actions.snapshots(self.executor, "pool/a"))

    def test_rename_to_existing_target(self) -> None:
        with self.assertRaises(AlreadyExists):
            actions.rename(self.executor, "pool/a/b", "pool/v")
        with self.assertRaises(AlreadyExists):
            actions.rename(self.executor, "pool/a@s1", "s2")
        self.assertEqual([], self.executor.mutations)

    def test_rename_missing_source(self) -> None:
        with self.assertRaises(NotFound):
            actions.rename(self.executor, "pool/nope", "pool/other")

    def test_rename_structurally_impossible(self) -> None:
        with self.assertRaises(InvalidName):
            actions.rename(self.executor, "pool/a/b", "pool/a/b@s1")
        with self.assertRaises(InvalidName):
            actions.rename(self.executor, "pool/a/b", "pool/b", recursive=True)
        with self.assertRaises(InvalidName):
            actions.rename(self.executor, "pool/a@s1", "s9", parents=True)
        self.assertEqual([], self.executor.mutations)


#############################################################################
class TestSnapshotCloneAndPromote(AbstractTestCase):

    def setUp(self) -> None:
        self.executor: FakeExecutor = make_tree(self)

    def test_snapshot(self) -> None:
        self.assertEqual(parse("pool/a@s3"), actions.snapshot(self.executor, "pool/a", "s3"))
        self.assertEqual(parse("pool/a/b@s3"), actions.snapshot(self.executor, "pool/a/b", "@s3", recursive=True))
        self.assertEqual([("snapshot", "pool/a@s3"), ("snapshot", "pool/a/b@s3")], self.executor.mutations)

    def test_snapshot_already_exists(self) -> None:
        with self.assertRaises(AlreadyExists):
            actions.snapshot(self.executor, "pool/a", "s1")

    def test_snapshot_of_missing_dataset(self) -> None:
        with self.assertRaises(NotFound):
            actions.snapshot(self.executor, "pool/nope", "s1")

    def test_snapshot_of_snapshot_is_invalid(self) -> None:
        with self.assertRaises(InvalidName):
            actions.snapshot(self.executor, "pool/a@s1", "s2")

    def test_clone_then_promote(self) -> None:
        clone = actions.clone(self.executor, "pool/a@s1", "pool/c")
        self.assertEqual(parse("pool/c"), clone)
        self.assertEqual(parse("pool/a@s1"), get_property(self.executor, clone, "origin"))
        actions.promote(self.executor, clone)
        self.assertEqual([("clone", "pool/a@s1", "pool/c"), ("promote", "pool/c")], self.executor.mutations)

    def test_clone_preconditions(self) -> None:
        with self.assertRaises(InvalidName):
            actions.clone(self.executor, "pool/a", "pool/c")
        with self.assertRaises(InvalidName):
            actions.clone(self.executor, "pool/a@s1", "pool/c@s1")
        with self.assertRaises(NotFound):
            actions.clone(self.executor, "pool/a@nope", "pool/c")
        with self.assertRaises(AlreadyExists):
            actions.clone(self.executor, "pool/a@s1", "pool/a/b")
        self.assertEqual([], self.executor.mutations)

    def test_promote_requires_a_clone(self) -> None:
        with self.assertRaises(NotFound):
            actions.promote(self.executor, "pool/a")
        with self.assertRaises(NotFound):
            actions.promote(self.executor, "pool/nope")
        self.assertEqual([], self.executor.mutations)
