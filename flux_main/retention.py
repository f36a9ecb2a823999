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
"""Time based retention policy; destroys the snapshots of a dataset that were created before a cutoff.

Only snapshots strictly older than ``now - max_age`` are eligible, independent of how many snapshots exist or how much space
they use. A failure to destroy one snapshot is logged and recorded in the PurgeReport but never aborts the purge of the
remaining snapshots.
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
    timedelta,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
)

from flux_main.catalog import (
    CREATION_SOURCE_PROPERTY,
    SnapshotEntry,
    list_snapshots,
)
from flux_main.utils import (
    current_datetime,
    die,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from flux_main.zfs_backend import (
        Dataset,
    )

_log: Final[Logger] = logging.getLogger(__name__)


#############################################################################
@dataclass
class PurgeReport:
    """Outcome of one purge run over a single dataset."""

    dataset: str
    cutoff: datetime
    dry_run: bool
    destroyed: list[SnapshotEntry] = field(default_factory=list)
    would_destroy: list[SnapshotEntry] = field(default_factory=list)
    failed: list[tuple[SnapshotEntry, str]] = field(default_factory=list)
    kept: list[SnapshotEntry] = field(default_factory=list)

    @property
    def num_errors(self) -> int:
        return len(self.failed)

    def summary(self) -> str:
        if self.dry_run:
            return f"{self.dataset}: would destroy {len(self.would_destroy)}, keep {len(self.kept)} snapshots"
        return (
            f"{self.dataset}: destroyed {len(self.destroyed)}, failed {len(self.failed)}, keep {len(self.kept)} snapshots"
        )


def purge(
    dataset: Dataset,
    max_age: timedelta,
    dry_run: bool,
    creation_source: str = CREATION_SOURCE_PROPERTY,
    log: Logger | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> PurgeReport:
    """Destroys (or with ``dry_run`` only reports) all snapshots of ``dataset`` created strictly before now - max_age."""
    log = _log if log is None else log
    if max_age <= timedelta(0):
        die(f"Retention max age must be positive, but got: {max_age}")
    now: datetime = current_datetime() if now_fn is None else now_fn()
    cutoff: datetime = now - max_age
    report = PurgeReport(dataset=dataset.name, cutoff=cutoff, dry_run=dry_run)
    for entry in list_snapshots(dataset, creation_source=creation_source, log=log):
        if entry.created_at >= cutoff:
            report.kept.append(entry)
        elif dry_run:
            log.info("Would destroy: %s", entry.qualified_name)
            report.would_destroy.append(entry)
        else:
            log.debug("Destroying: %s", entry.qualified_name)
            try:
                entry.dataset.destroy()
            except (subprocess.CalledProcessError, OSError) as e:
                log.error("Cannot destroy snapshot %s: %s", entry.qualified_name, e)
                report.failed.append((entry, str(e)))
            else:
                log.info("Destroyed: %s", entry.qualified_name)
                report.destroyed.append(entry)
    return report
