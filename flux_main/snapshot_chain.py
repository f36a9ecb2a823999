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
"""Creates a new snapshot of a dataset and resolves the predecessor snapshot that an incremental 'zfs send' is based on."""

from __future__ import (
    annotations,
)
import logging
from datetime import (
    datetime,
    timezone,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from flux_main.catalog import (
    CREATION_SOURCE_PROPERTY,
    SnapshotEntry,
    latest_snapshot,
    list_snapshots,
)
from flux_main.utils import (
    SNAPSHOT_LABEL_FORMAT,
    validate_snapshot_label,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from flux_main.zfs_backend import (
        Dataset,
    )

_log: Final[Logger] = logging.getLogger(__name__)


def snapshot_label(now: datetime) -> str:
    """Returns the label of a snapshot taken at ``now``, e.g. '2024-02-01T00:00:00Z'; sorts chronologically and parses with
    the 'label' creation source of the catalog."""
    return now.astimezone(timezone.utc).strftime(SNAPSHOT_LABEL_FORMAT)


def create_and_resolve(
    dataset: Dataset,
    label: str,
    initial: bool,
    creation_source: str = CREATION_SOURCE_PROPERTY,
    log: Logger | None = None,
) -> tuple[Dataset, SnapshotEntry | None]:
    """Creates ``dataset@label`` (non-recursively) and returns it along with its predecessor.

    The predecessor is the most recent snapshot that existed before the new one was created. It is None if ``initial`` is
    requested or if the dataset had no snapshots yet, which means that the new snapshot must be sent in full.
    """
    log = _log if log is None else log
    validate_snapshot_label(label, dataset.name)
    entries: list[SnapshotEntry] = list_snapshots(dataset, creation_source=creation_source, log=log)
    predecessor: SnapshotEntry | None = None if initial else latest_snapshot(entries)
    snapshot: Dataset = dataset.create_snapshot(label, recursive=False)
    log.info("Created snapshot: %s", snapshot.name)
    if predecessor is None:
        log.debug("No predecessor for %s; next transfer is a full send", snapshot.name)
    else:
        log.debug("Predecessor of %s is %s", snapshot.name, predecessor.qualified_name)
    return snapshot, predecessor
