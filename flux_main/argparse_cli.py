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
"""Documentation, definition of input data and ArgumentParser used by the 'flux' CLI."""

from __future__ import (
    annotations,
)
import argparse
from datetime import (
    timedelta,
)
from typing import (
    Final,
)

from flux_main.argparse_actions import (
    DurationAction,
    FileNameAction,
    NonEmptyStringAction,
    NumericIdAction,
)
from flux_main.catalog import (
    CREATION_SOURCE_PROPERTY,
    CREATION_SOURCES,
)
from flux_main.utils import (
    PROG_NAME,
    getenv_any,
)

# constants:
__version__: Final[str] = "1.0.0"
PROG_AUTHOR: Final[str] = "Wolfgang Hoschek"
SKIP_ON_ERROR_DEFAULT: Final[str] = "dataset"
PURGE_OLDER_THAN_DEFAULT: Final[timedelta] = timedelta(weeks=2)
SNAPSHOT_CMD: Final[str] = "snapshot"
PURGE_CMD: Final[str] = "purge"


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by flux."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is going back in time with zfs: it takes point-in-time snapshots of ZFS datasets, replicates them
incrementally to a remote host via 'zfs send | ssh zfs receive', and purges snapshots that are older than a
given age.*

Each invocation runs one command on one or more datasets, one dataset after another:

* `{PROG_NAME} {SNAPSHOT_CMD} tank/data` creates the snapshot tank/data@<UTC timestamp>, e.g.
tank/data@2024-02-01T00:00:00Z. With `--send HOST --dest DATASET` the new snapshot is also streamed to DATASET on
HOST: incrementally, based on the most recent previous snapshot, or in full if there is none or if `--init` is
given. The ssh leg runs under the numeric identity given by `--uid` and `--gid`.

* `{PROG_NAME} {PURGE_CMD} --older-than 7d tank/data` destroys all snapshots of tank/data that were created more
than 7 days ago. Use `--dry` to only print what would be destroyed.

The order of snapshots is determined by their creation time, either per the 'creation' ZFS property (default) or
per the timestamp within the snapshot label (`--creation-source label`).
""")

    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug output in the logs. Same as -v.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print what ZFS/SSH operation exactly is happening, add the `-v -v` flag. All ZFS and SSH "
             "commands are logged such that they can be inspected, copy-and-pasted into a terminal shell and run "
             "manually to help anticipate or diagnose issues. ERROR, WARN, INFO, DEBUG, TRACE output lines are "
             "identified by [E], [W], [I], [D], [T] prefixes, respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--skip-on-error", choices=["fail", "dataset"], default=SKIP_ON_ERROR_DEFAULT,
        help="If an error occurs while processing one of multiple datasets, proceed as follows:\n\n"
             "a) 'fail': Abort the program with an error, skipping all remaining datasets.\n\n"
             "b) 'dataset' (default): Log the error, skip the dataset for which the error occurred, and continue "
             "processing the next dataset. Once all datasets have been processed, print an error summary and exit "
             "with a non-zero status.\n\n")
    parser.add_argument(
        "--zfs-program", default=getenv_any("zfs_program", "zfs"), action=NonEmptyStringAction, metavar="STRING",
        help="The name or path of the 'zfs' executable on the local host and on the remote host. "
             "Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-file", default=None, action=FileNameAction, metavar="FILE",
        help="Path of a file on the local host to append log output to, in addition to stdout (optional).\n\n")
    parser.add_argument(
        "--log-syslog-address", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog by default. See "
             "https://docs.python.org/3/library/logging.handlers.html#sysloghandler\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, choices=range(8), default=1, metavar="INT",
        help="The local facility aka category that identifies msg sources in syslog (default: %(default)s, min=0, "
             "max=7).\n\n")
    parser.add_argument(
        "--log-syslog-prefix", default=PROG_NAME, action=NonEmptyStringAction, metavar="STRING",
        help=f"The name to prepend to each message that is sent to syslog; identifies {PROG_NAME} messages as opposed "
             "to messages from other sources. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "TRACE"], default="ERROR",
        help="Only send messages with equal or higher priority than this log level to syslog. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    snapshot_parser: argparse.ArgumentParser = subparsers.add_parser(
        SNAPSHOT_CMD, formatter_class=argparse.RawTextHelpFormatter, allow_abbrev=False,
        help="Create a snapshot of each dataset, and optionally send it to a remote host.",
        description="Create the snapshot DATASET@<UTC timestamp> of each given DATASET, and optionally stream it to a "
                    "remote host via 'zfs send | ssh HOST zfs receive DEST'.")
    snapshot_parser.add_argument(
        "datasets", nargs="+", metavar="DATASET",
        help="The ZFS datasets to snapshot, e.g. tank/data.\n\n")
    snapshot_parser.add_argument(
        "--send", "-s", default="", action=NonEmptyStringAction, metavar="HOST",
        help="Send the new snapshot to this ssh target, e.g. 'backup.example.com' or 'alice@backup.example.com' "
             "(optional). Requires --dest.\n\n")
    snapshot_parser.add_argument(
        "--dest", "-d", default="", action=NonEmptyStringAction, metavar="DATASET",
        help="The dataset on the ssh target that receives the snapshot stream via 'zfs receive'.\n\n")
    snapshot_parser.add_argument(
        "--uid", type=int, default=None, action=NumericIdAction, metavar="INT",
        help="Numeric user id to run the ssh subprocess under. Default is the uid of the current process.\n\n")
    snapshot_parser.add_argument(
        "--gid", type=int, default=None, action=NumericIdAction, metavar="INT",
        help="Numeric group id to run the ssh subprocess under. Default is the gid of the current process.\n\n")
    snapshot_parser.add_argument(
        "--init", action="store_true",
        help="Send the new snapshot in full (initial replication) even if previous snapshots exist. Without this "
             "flag the snapshot is sent incrementally, based on the most recent previous snapshot, if any.\n\n")
    _add_creation_source_argument(snapshot_parser)
    snapshot_parser.add_argument(
        "--ssh-program", default=getenv_any("ssh_program", "ssh"), action=NonEmptyStringAction, metavar="STRING",
        help="The name or path of the 'ssh' executable on the local host. Default is '%(default)s'.\n\n")
    snapshot_parser.add_argument(
        "--ssh-port", type=int, default=None, metavar="INT",
        help="Remote port to connect to on the ssh target (optional).\n\n")
    snapshot_parser.add_argument(
        "--ssh-extra-opts", type=str, default="", metavar="STRING",
        help="Additional options to pass to ssh, separated by whitespace, e.g. "
             "'-oConnectTimeout=10 -i /root/.ssh/backup_key' (optional).\n\n")
    snapshot_parser.add_argument(
        "--zfs-send-program-opts", type=str, default="", metavar="STRING",
        help="Parameters to fine-tune 'zfs send' behaviour, e.g. '--raw --compressed' (optional).\n\n")
    snapshot_parser.add_argument(
        "--zfs-recv-program-opts", type=str, default="", metavar="STRING",
        help="Parameters to fine-tune 'zfs receive' behaviour on the ssh target, e.g. '-u' (optional).\n\n")

    purge_parser: argparse.ArgumentParser = subparsers.add_parser(
        PURGE_CMD, formatter_class=argparse.RawTextHelpFormatter, allow_abbrev=False,
        help="Destroy old snapshots of each dataset.",
        description="Destroy all snapshots of each given DATASET that were created before now minus --older-than.")
    purge_parser.add_argument(
        "datasets", nargs="+", metavar="DATASET",
        help="The ZFS datasets whose snapshots to purge, e.g. tank/data.\n\n")
    purge_parser.add_argument(
        "--older-than", "-o", default=PURGE_OLDER_THAN_DEFAULT, action=DurationAction, metavar="DURATION",
        help="Purge snapshots older than this, e.g. '7d', '36hours', '2weeks' (default: 2weeks). Snapshots that were "
             "created at or after the resulting cutoff time are never touched.\n\n")
    purge_parser.add_argument(
        "--dry", action="store_true",
        help="Display what would be destroyed, but don't destroy anything.\n\n")
    _add_creation_source_argument(purge_parser)
    return parser
    # fmt: on


def _add_creation_source_argument(parser: argparse.ArgumentParser) -> None:
    # fmt: off
    parser.add_argument(
        "--creation-source", choices=list(CREATION_SOURCES), default=CREATION_SOURCE_PROPERTY,
        help="How to determine the creation time of a snapshot, which defines the order of snapshots:\n\n"
             "a) 'property' (default): Per the 'creation' ZFS property. Also works for snapshots created by other "
             "tools.\n\n"
             "b) 'label': Per the UTC timestamp within the snapshot label, e.g. tank/data@2024-02-01T00:00:00Z. "
             "Snapshots whose label contains no such timestamp are ignored.\n\n")
    # fmt: on
