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
"""Thin adapter over the local 'zfs' CLI that exposes datasets and snapshots as handles; the storage engine itself (create,
list, destroy, send) is the zfs CLI.

Every method runs exactly one 'zfs' command via subprocess_run(). Failing commands raise subprocess.CalledProcessError
after their stderr has been logged, so callers see messages such as "cannot open 'tank/x': dataset does not exist".
"""

from __future__ import (
    annotations,
)
import shlex
import subprocess
import sys
from logging import (
    Logger,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    IO,
    Any,
    Final,
)

from flux_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    stderr_to_str,
    subprocess_run,
    xprint,
)

# constants:
SNAPSHOT_KIND: Final[str] = "snapshot"
CREATION_PROP: Final[str] = "creation"
LIST_PROPS: Final[tuple[str, ...]] = ("name", "type", CREATION_PROP)  # 'zfs list -o' columns prefetched per dataset


#############################################################################
class ZfsBackend:
    """Runs 'zfs' commands on the local host."""

    def __init__(self, log: Logger, zfs_program: str = "zfs", zfs_send_program_opts: list[str] | None = None) -> None:
        # immutable variables:
        self.log: Final[Logger] = log
        self.zfs_program: Final[str] = zfs_program
        self.zfs_send_program_opts: Final[list[str]] = list(zfs_send_program_opts or [])

    def run(self, cmd: list[str], level: int = LOG_TRACE, **kwargs: Any) -> str:
        """Runs 'zfs <cmd>' and returns its stdout; raises CalledProcessError on non-zero exit."""
        full_cmd: list[str] = [self.zfs_program] + cmd
        self.log.log(level, "Executing: %s", " ".join(shlex.quote(arg) for arg in full_cmd))
        try:
            process = subprocess_run(full_cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, check=True, **kwargs)
        except subprocess.CalledProcessError as e:
            xprint(self.log, stderr_to_str(e.stderr), file=sys.stderr, end="")
            raise
        return process.stdout

    def send_cmd(self, snapshot: Dataset, predecessor: Dataset | None = None) -> list[str]:
        """Returns the 'zfs send' command for a full stream, or an incremental stream if a predecessor is given."""
        incremental: list[str] = ["-i", predecessor.name] if predecessor is not None else []
        return [self.zfs_program, "send"] + self.zfs_send_program_opts + incremental + [snapshot.name]

    def stream(self, cmd: list[str], writer: IO[bytes]) -> None:
        """Runs the given 'zfs send' command with its stdout connected directly to ``writer``; blocks while the reader of
        ``writer`` is slower than the sender, as the OS pipe applies backpressure."""
        self.log.log(LOG_DEBUG, "Executing: %s", " ".join(shlex.quote(arg) for arg in cmd))
        try:
            subprocess_run(cmd, stdin=DEVNULL, stdout=writer, stderr=PIPE, check=True)
        except subprocess.CalledProcessError as e:
            xprint(self.log, stderr_to_str(e.stderr), file=sys.stderr, end="")
            raise

    def get_dataset(self, name: str) -> Dataset:
        """Returns a handle for the dataset or snapshot with the given name; raises CalledProcessError if it does not
        exist."""
        lines: list[str] = self.run(["list", "-Hp", "-o", ",".join(LIST_PROPS), name]).splitlines()
        return self._parse_list_line(lines[0])

    def list_children(self, dataset: Dataset, depth: int = 1, kinds: str = "all") -> list[Dataset]:
        """Lists the descendants of ``dataset`` up to ``depth`` levels, excluding ``dataset`` itself.

        Follows 'zfs list -d' semantics: depth 1 yields the immediate children, which includes the dataset's own snapshots.
        """
        cmd: list[str] = ["list", "-Hp", "-t", kinds, "-d", str(depth), "-o", ",".join(LIST_PROPS), dataset.name]
        children: list[Dataset] = []
        for line in self.run(cmd).splitlines():
            if line.strip():
                child: Dataset = self._parse_list_line(line)
                if child.name != dataset.name:
                    children.append(child)
        return children

    def _parse_list_line(self, line: str) -> Dataset:
        """Parses one tab-separated output line of 'zfs list -Hp -o name,type,creation'."""
        cols: list[str] = line.split("\t")
        name: str = cols[0]
        kind: str = cols[1] if len(cols) > 1 else ""
        props: dict[str, str] = dict(zip(LIST_PROPS[2:], cols[2:]))
        return Dataset(self, name, kind, props)


#############################################################################
class Dataset:
    """Handle to a named ZFS dataset, volume, snapshot or bookmark; owned by the backend, referenced by flux."""

    def __init__(self, backend: ZfsBackend, name: str, kind: str, properties: dict[str, str] | None = None) -> None:
        # immutable variables:
        self.backend: Final[ZfsBackend] = backend
        self.name: Final[str] = name
        self.kind: Final[str] = kind
        self._properties: Final[dict[str, str]] = dict(properties or {})

    def __repr__(self) -> str:
        return f"Dataset({self.name!r}, kind={self.kind!r})"

    @property
    def is_snapshot(self) -> bool:
        return self.kind == SNAPSHOT_KIND

    def children(self, depth: int = 1, kinds: str = "all") -> list[Dataset]:
        return self.backend.list_children(self, depth=depth, kinds=kinds)

    def get_property(self, name: str) -> str:
        """Returns the parsable ('-p') value of the given ZFS property; prefetched values are served without running zfs."""
        value: str | None = self._properties.get(name)
        if value is None:
            value = self.backend.run(["get", "-Hp", "-o", "value", name, self.name]).rstrip("\n")
        return value

    def create_snapshot(self, label: str, recursive: bool = False) -> Dataset:
        """Runs 'zfs snapshot' and returns a handle for the new snapshot."""
        snapshot_name: str = f"{self.name}@{label}"
        self.backend.run(["snapshot"] + (["-r"] if recursive else []) + [snapshot_name], level=LOG_DEBUG)
        return Dataset(self.backend, snapshot_name, SNAPSHOT_KIND)

    def destroy(self, recursive: bool = False) -> None:
        """Runs 'zfs destroy' on this dataset or snapshot."""
        self.backend.run(["destroy"] + (["-r"] if recursive else []) + [self.name], level=LOG_DEBUG)

    def send(self, writer: IO[bytes]) -> None:
        """Writes a full replication stream of this snapshot to ``writer``."""
        self.backend.stream(self.backend.send_cmd(self), writer)

    def incremental_send(self, predecessor: Dataset, writer: IO[bytes]) -> None:
        """Writes the incremental stream from ``predecessor`` to this snapshot to ``writer``."""
        self.backend.stream(self.backend.send_cmd(self, predecessor), writer)
