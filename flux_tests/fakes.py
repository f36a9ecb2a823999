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
"""In-memory stand-ins for ZfsBackend and Dataset, so that catalog, retention, snapshot chain, transfer and job tests run
without ZFS.

FakeBackend keeps datasets and snapshots in a dict and records every mutating call in ``calls``, e.g.
``("destroy", "tank/data@a")``. Its ``clock`` supplies the 'creation' property of newly created snapshots.
"""

from __future__ import (
    annotations,
)
import subprocess
from datetime import (
    datetime,
)
from typing import (
    IO,
)

from flux_main.zfs_backend import (
    CREATION_PROP,
    SNAPSHOT_KIND,
)


#############################################################################
class FakeBackend:

    def __init__(self) -> None:
        self.datasets: dict[str, FakeDataset] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fail_destroy: set[str] = set()
        self.fail_send: bool = False
        self.payload: bytes = b"zfs-stream"
        self.clock: int = 2_000_000_000

    def add_dataset(self, name: str) -> FakeDataset:
        dataset = FakeDataset(self, name, "filesystem")
        self.datasets[name] = dataset
        return dataset

    def add_snapshot(self, name: str, creation: int | datetime | None = None) -> FakeDataset:
        """Adds a snapshot; ``creation`` None means that the 'creation' property cannot be read."""
        if isinstance(creation, datetime):
            creation = int(creation.timestamp())
        props: dict[str, str] = {} if creation is None else {CREATION_PROP: str(creation)}
        snapshot = FakeDataset(self, name, SNAPSHOT_KIND, props)
        self.datasets[name] = snapshot
        return snapshot

    def get_dataset(self, name: str) -> FakeDataset:
        if name not in self.datasets:
            raise subprocess.CalledProcessError(1, ["zfs", "list", name], stderr=f"cannot open '{name}'")
        return self.datasets[name]

    def list_children(self, dataset: FakeDataset, depth: int = 1, kinds: str = "all") -> list[FakeDataset]:
        self.calls.append(("list", dataset.name, str(depth), kinds))
        prefix: str = dataset.name + "@"
        return [ds for ds in self.datasets.values() if ds.name.startswith(prefix) and kinds in ("all", ds.kind)]

    def send_cmd(self, snapshot: FakeDataset, predecessor: FakeDataset | None = None) -> list[str]:
        incremental: list[str] = ["-i", predecessor.name] if predecessor is not None else []
        return ["zfs", "send"] + incremental + [snapshot.name]

    def snapshot_names(self, dataset_name: str) -> list[str]:
        return sorted(name for name in self.datasets if name.startswith(dataset_name + "@"))


#############################################################################
class FakeDataset:

    def __init__(self, backend: FakeBackend, name: str, kind: str, properties: dict[str, str] | None = None) -> None:
        self.backend = backend
        self.name = name
        self.kind = kind
        self.properties: dict[str, str] = dict(properties or {})

    def __repr__(self) -> str:
        return f"FakeDataset({self.name!r})"

    @property
    def is_snapshot(self) -> bool:
        return self.kind == SNAPSHOT_KIND

    def children(self, depth: int = 1, kinds: str = "all") -> list[FakeDataset]:
        return self.backend.list_children(self, depth=depth, kinds=kinds)

    def get_property(self, name: str) -> str:
        if name not in self.properties:
            raise subprocess.CalledProcessError(1, ["zfs", "get", name, self.name])
        return self.properties[name]

    def create_snapshot(self, label: str, recursive: bool = False) -> FakeDataset:
        name: str = f"{self.name}@{label}"
        self.backend.calls.append(("snapshot", name))
        if name in self.backend.datasets:
            raise subprocess.CalledProcessError(1, ["zfs", "snapshot", name], stderr="dataset already exists")
        self.backend.clock += 1
        return self.backend.add_snapshot(name, self.backend.clock)

    def destroy(self, recursive: bool = False) -> None:
        self.backend.calls.append(("destroy", self.name))
        if self.name in self.backend.fail_destroy:
            raise subprocess.CalledProcessError(1, ["zfs", "destroy", self.name], stderr="dataset is busy")
        del self.backend.datasets[self.name]

    def send(self, writer: IO[bytes]) -> None:
        self.backend.calls.append(("send", self.name))
        self._write(writer)

    def incremental_send(self, predecessor: FakeDataset, writer: IO[bytes]) -> None:
        self.backend.calls.append(("incremental_send", predecessor.name, self.name))
        self._write(writer)

    def _write(self, writer: IO[bytes]) -> None:
        if self.backend.fail_send:
            raise subprocess.CalledProcessError(1, ["zfs", "send", self.name], stderr="cannot send")
        writer.write(self.backend.payload)
