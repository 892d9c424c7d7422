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
"""Documentation, definition of input data and ArgumentParser used by the 'zfsds' CLI."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Any,
)

from zfsds_main.configuration import (
    PIPE_CHUNK_SIZE_DEFAULT,
)
from zfsds_main.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: str = "0.9.0.dev0"
PROG_AUTHOR: str = "Wolfgang Hoschek"
ZFS_RECV_PROGRAM_OPTS_DEFAULT: str = "-u"  # don't mount the received filesystem


#############################################################################
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Strip whitespace and reject empty values."""
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


class PropertyAssignmentAction(argparse.Action):
    """Argparse action collecting 'key=value' pairs into a dict, preserving the order in which they were given."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Splits each value at the first '=' and rejects values without key."""
        assignments: dict[str, str] = dict(getattr(namespace, self.dest, None) or {})
        for value in values if isinstance(values, list) else [values]:
            key, sep, text = value.partition("=")
            if not sep or not key.strip():
                parser.error(f"{option_string or self.metavar}: Expected KEY=VALUE but got: '{value}'")
            assignments[key.strip()] = text
        setattr(namespace, self.dest, assignments)


class CheckPositive(argparse.Action):
    """Argparse action rejecting values that are zero or negative."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if values <= 0:
            parser.error(f"{option_string}: Must be positive but got: {values}")
        setattr(namespace, self.dest, values)


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by zfsds."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} manages ZFS datasets (filesystems, volumes and snapshots) on the local host through the 'zfs' and
'zpool' CLIs: it lists, creates, destroys, renames, snapshots, clones and promotes datasets, reads and writes
their properties as typed and validated values, and transfers snapshots via 'zfs send | zfs receive'.*

Property values are checked against a schema before anything is sent to ZFS, so that an illegal value such as
`compression=gzip-42` is rejected without touching the dataset. Transfers are validated against the snapshot
lineage of source and destination before any byte moves: an incremental transfer (-i) requires the base snapshot
to exist on both sides, whereas a full transfer requires the destination to be absent.

# Quickstart

* List the pools, and the direct children of a dataset:

`   {PROG_NAME} pools`

`   {PROG_NAME} list tank1/foo`

* Create a filesystem with initial properties, then take a snapshot of it:

`   {PROG_NAME} create -p -o compression=lz4 -o recordsize=16384 tank1/foo/bar`

`   {PROG_NAME} snapshot tank1/foo/bar s1`

* Replicate the snapshot to a new destination dataset, then later send the delta between s1 and s2:

`   {PROG_NAME} send tank1/foo/bar@s1 tank2/backup/bar`

`   {PROG_NAME} send -i @s1 tank1/foo/bar@s2 tank2/backup/bar`

* Read and write typed properties:

`   {PROG_NAME} get tank1/foo/bar compression used creation`

`   {PROG_NAME} set tank1/foo/bar compression=gzip-9 quota=none`

Dataset arguments may also be given as the absolute path of the directory the dataset is mounted on.
""")

    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real (optional). This option treats both the ZFS source and destination as read-only.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print what ZFS/ZPOOL commands are being executed, specify -vv.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--log-file", type=str, metavar="FILE",
        help="Path to a log file on the local host that receives the same log output as the console (optional).\n\n")
    parser.add_argument(
        "--sudo", action="store_true",
        help="Run mutating 'zfs' commands (create, destroy, rename, set, send, receive, etc) via 'sudo -n' (optional), "
             "for use by users that are not root but have been granted passwordless sudo rights.\n\n")
    parser.add_argument(
        "--timeout", type=float, action=CheckPositive, default=None, metavar="SECONDS",
        help="Terminate a 'zfs' or 'zpool' query or mutation if it hasn't completed within this many seconds "
             "(optional). Transfers via 'zfs send | zfs receive' are never timed out. Default is no timeout.\n\n")
    parser.add_argument(
        "--pipe-chunk-size", type=int, action=CheckPositive, default=None, metavar="BYTES",
        help="Maximum number of bytes to forward per read from 'zfs send' to 'zfs receive' (optional). Default is "
             f"${ENV_VAR_PREFIX}pipe_chunk_size if set, else {PIPE_CHUNK_SIZE_DEFAULT}.\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'zfs' executable (optional). Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--zpool-program", default="zpool", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'zpool' executable (optional). Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--zfs-send-program-opts", type=str, default="", metavar="STRING",
        help="Extra options to be passed to 'zfs send' (optional), e.g. '--raw --props'. Default is '%(default)s'. "
             "Options that write to stderr, such as '-v', make every transfer fail.\n\n")
    parser.add_argument(
        "--zfs-recv-program-opts", type=str, default=ZFS_RECV_PROGRAM_OPTS_DEFAULT, metavar="STRING",
        help="Extra options to be passed to 'zfs receive' (optional), e.g. '-u -o compression=lz4'. "
             "Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")

    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND", required=True)

    def add(name: str, text: str) -> argparse.ArgumentParser:
        return subparsers.add_parser(name, help=text, description=text, formatter_class=argparse.RawTextHelpFormatter)

    def dataset_arg(subparser: argparse.ArgumentParser, dest: str = "dataset", text: str = "Dataset or mountpoint.") -> None:
        subparser.add_argument(dest, action=NonEmptyStringAction, metavar=dest.upper(), help=text)

    add("pools", "List the root dataset of each imported pool.")
    add("mounts", "List the mounted datasets and their mountpoints.")

    sub = add("list", "List the filesystems and volumes below DATASET.")
    dataset_arg(sub)
    sub.add_argument(
        "--recursive", "-r", action="store_true",
        help="List all descendants, not just the direct children.")

    sub = add("snapshots", "List the snapshots of DATASET, oldest first.")
    dataset_arg(sub)

    sub = add("get", "Print the typed values of the given properties of DATASET.")
    dataset_arg(sub)
    sub.add_argument("properties", nargs="+", metavar="PROPERTY", help="Name of a ZFS property, e.g. 'compression'.")
    sub.add_argument(
        "--symbolic", action="store_true",
        help="Print the symbolic value, e.g. 'gzip_9' rather than 'True' for compression=gzip-9.")

    sub = add("set", "Assign the given property values to DATASET via 'zfs set', after validating them.")
    dataset_arg(sub)
    sub.add_argument(
        "assignments", nargs="+", action=PropertyAssignmentAction, metavar="PROPERTY=VALUE",
        help="Property assignment, e.g. 'compression=lz4' or 'quota=none'.")

    sub = add("create", "Create a filesystem, or a volume if --volume-size is given; does nothing if DATASET exists.")
    dataset_arg(sub, text="Dataset name.")
    sub.add_argument(
        "--parents", "-p", action="store_true",
        help="Create missing parent datasets.")
    sub.add_argument(
        "--volume-size", "-V", action=NonEmptyStringAction, default=None, metavar="SIZE",
        help="Create a volume of the given size, e.g. '1G', rather than a filesystem.")
    sub.add_argument(
        "-o", dest="properties", action=PropertyAssignmentAction, default={}, metavar="PROPERTY=VALUE",
        help="Initial property value; can be specified multiple times.")

    sub = add("destroy", "Destroy DATASET.")
    dataset_arg(sub)
    sub.add_argument(
        "--recursive", "-r", action="store_true",
        help="Also destroy all descendants and snapshots.")

    sub = add("rename", "Rename a filesystem or volume to NEW_NAME, or a snapshot to the new tag NEW_NAME.")
    dataset_arg(sub)
    sub.add_argument("new_name", action=NonEmptyStringAction, metavar="NEW_NAME", help="New dataset name, or new tag.")
    sub.add_argument(
        "--parents", "-p", action="store_true",
        help="Create missing parent datasets of NEW_NAME.")
    sub.add_argument(
        "--recursive", "-r", action="store_true",
        help="Rename the same-named snapshots of all descendants too.")

    sub = add("snapshot", "Take a snapshot of DATASET named TAG.")
    dataset_arg(sub)
    sub.add_argument("tag", action=NonEmptyStringAction, metavar="TAG", help="Snapshot tag, with or without leading '@'.")
    sub.add_argument(
        "--recursive", "-r", action="store_true",
        help="Atomically snapshot all descendants too.")

    sub = add("clone", "Create the writable filesystem TARGET from SNAPSHOT.")
    dataset_arg(sub, dest="snapshot", text="Snapshot name.")
    dataset_arg(sub, dest="target", text="Name of the new filesystem.")
    sub.add_argument(
        "--parents", "-p", action="store_true",
        help="Create missing parent datasets of TARGET.")

    sub = add("promote", "Make the clone DATASET independent of the snapshot it was cloned from.")
    dataset_arg(sub)

    sub = add("send", "Transfer snapshot SOURCE to DESTINATION via 'zfs send | zfs receive'.")
    dataset_arg(sub, dest="source", text="Source snapshot name.")
    dataset_arg(sub, dest="destination", text="Destination dataset name.")
    group = sub.add_mutually_exclusive_group()
    group.add_argument(
        "-i", dest="incremental", default=None, metavar="BASE",
        help="Send only the delta between the base snapshot and SOURCE. BASE is a full snapshot name in the same "
             "filesystem as SOURCE, or '@tag'. The destination must already contain BASE.")
    group.add_argument(
        "-I", dest="intermediary", default=None, metavar="BASE",
        help="Like -i but also transfer all snapshots between BASE and SOURCE.")
    sub.add_argument(
        "--use-sent-name", "-d", action="store_true",
        help="Receive into the existing DESTINATION using the name of the sent dataset ('zfs receive -d').")
    sub.add_argument(
        "--replicate", "-R", action="store_true",
        help="Send a replication stream of SOURCE and all its descendants ('zfs send -R').")
    return parser
    # fmt: on
