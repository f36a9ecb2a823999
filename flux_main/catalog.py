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
"""Snapshot catalog; lists the snapshots of a dataset in creation order.

The creation time of each snapshot is resolved with exactly one of two strategies per listing:

* ``property`` (default): the 'creation' ZFS property, i.e. Unix time in seconds as maintained by ZFS. Works for all
  snapshots, including those created by other tools.
* ``label``: the UTC timestamp encoded in the snapshot label, in SNAPSHOT_LABEL_FORMAT. Snapshots whose label does not
  parse are considered not managed by flux.

Snapshots whose creation time cannot be resolved are skipped and logged at DEBUG level, so that a single malformed
snapshot never blocks purging or replicating the remaining history. The result is never cached; it is stale as soon as any
snapshot of the dataset is created or destroyed.
"""

from __future__ import (
    annotations,
)
import logging
import subprocess
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    timezone,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
)

from flux_main.utils import (
    SNAPSHOT_LABEL_FORMAT,
    unixtime_to_datetime,
)
from flux_main.zfs_backend import (
    CREATION_PROP,
    SNAPSHOT_KIND,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from flux_main.zfs_backend import (
        Dataset,
    )

# constants:
CREATION_SOURCE_PROPERTY: Final[str] = "property"
CREATION_SOURCE_LABEL: Final[str] = "label"
CREATION_SOURCES: Final[tuple[str, str]] = (CREATION_SOURCE_PROPERTY, CREATION_SOURCE_LABEL)

_log: Final[Logger] = logging.getLogger(__name__)


#############################################################################
@dataclass(frozen=True)
class SnapshotEntry:
    """One snapshot of a dataset, as listed by the catalog; the dataset handle is only used for destroy and send."""

    qualified_name: str  # tank/data@2024-01-01T00:00:00Z
    base_name: str  # tank/data
    label: str  # 2024-01-01T00:00:00Z
    created_at: datetime  # aware datetime in UTC
    dataset: Dataset = field(compare=False, repr=False)

    @classmethod
    def of(cls, dataset: Dataset, created_at: datetime) -> SnapshotEntry:
        base_name, _, label = dataset.name.partition("@")
        return cls(dataset.name, base_name, label, created_at, dataset)


def creation_from_property(snapshot: Dataset) -> datetime:
    """Returns the creation time of the snapshot per its 'creation' ZFS property (Unix time in seconds)."""
    return unixtime_to_datetime(int(snapshot.get_property(CREATION_PROP)))


def creation_from_label(snapshot: Dataset) -> datetime:
    """Returns the creation time encoded in the snapshot label, e.g. 'tank/data@2024-02-01T00:00:00Z'."""
    label: str = snapshot.name.partition("@")[2]
    return datetime.strptime(label, SNAPSHOT_LABEL_FORMAT).replace(tzinfo=timezone.utc)


def creation_resolver(creation_source: str) -> Callable[[Dataset], datetime]:
    """Returns the function that resolves the creation time for the given strategy name."""
    if creation_source == CREATION_SOURCE_PROPERTY:
        return creation_from_property
    if creation_source == CREATION_SOURCE_LABEL:
        return creation_from_label
    raise ValueError(f"Unknown creation source: {creation_source}")


def _sort_key(entry: SnapshotEntry) -> tuple[datetime, str]:
    """Orders by creation time, then by name so that equal timestamps yield a deterministic order."""
    return entry.created_at, entry.qualified_name


def list_snapshots(
    dataset: Dataset, creation_source: str = CREATION_SOURCE_PROPERTY, log: Logger | None = None
) -> list[SnapshotEntry]:
    """Returns the snapshots of ``dataset`` sorted ascending by creation time; returns an empty list if there are none.

    Errors of the child enumeration itself (dataset does not exist, zfs unavailable) propagate to the caller.
    """
    log = _log if log is None else log
    resolve: Callable[[Dataset], datetime] = creation_resolver(creation_source)
    entries: list[SnapshotEntry] = []
    for child in dataset.children(depth=1, kinds=SNAPSHOT_KIND):
        if not child.is_snapshot:
            continue
        try:
            created_at: datetime = resolve(child)
        except (ValueError, OverflowError, OSError, subprocess.CalledProcessError) as e:
            log.debug("Skipping snapshot with unresolvable %s creation time: %s: %s", creation_source, child.name, e)
            continue
        entries.append(SnapshotEntry.of(child, created_at))
    entries.sort(key=_sort_key)
    return entries


def latest_snapshot(entries: list[SnapshotEntry]) -> SnapshotEntry | None:
    """Returns the most recently created entry of an ordered snapshot sequence, or None if it is empty."""
    return entries[-1] if entries else None
