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
"""Unit tests for the time based snapshot retention policy."""

from __future__ import (
    annotations,
)
import logging
import unittest
from datetime import (
    datetime,
    timedelta,
    timezone,
)
from unittest.mock import (
    MagicMock,
)

from flux_main.catalog import (
    CREATION_SOURCE_LABEL,
)
from flux_main.retention import (
    purge,
)
from flux_main.utils import (
    DIE_STATUS,
)
from flux_tests.fakes import (
    FakeBackend,
)

NOW = datetime(2024, 2, 8, tzinfo=timezone.utc)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestPurge,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestPurge(unittest.TestCase):

    def setUp(self) -> None:
        self.log = MagicMock(spec=logging.Logger)
        self.backend = FakeBackend()
        self.dataset = self.backend.add_dataset("tank/data")
        for name, age in [("t10d", timedelta(days=10)), ("t8d", timedelta(days=8)), ("t3d", timedelta(days=3))]:
            self.backend.add_snapshot(f"tank/data@{name}", NOW - age)
        self.backend.add_snapshot("tank/data@t1h", NOW - timedelta(hours=1))

    def purge(self, max_age: timedelta = timedelta(days=7), dry_run: bool = False, **kwargs):  # type: ignore[no-untyped-def]
        return purge(self.dataset, max_age, dry_run, log=self.log, now_fn=lambda: NOW, **kwargs)

    def destroy_calls(self) -> list[str]:
        return [call[1] for call in self.backend.calls if call[0] == "destroy"]

    def test_destroys_snapshots_older_than_max_age(self) -> None:
        report = self.purge()
        self.assertEqual(["tank/data@t10d", "tank/data@t8d"], self.destroy_calls())
        self.assertEqual(["tank/data@t1h", "tank/data@t3d"], self.backend.snapshot_names("tank/data"))
        self.assertEqual(["tank/data@t10d", "tank/data@t8d"], [e.qualified_name for e in report.destroyed])
        self.assertEqual(["tank/data@t3d", "tank/data@t1h"], [e.qualified_name for e in report.kept])
        self.assertEqual(NOW - timedelta(days=7), report.cutoff)
        self.assertEqual(0, report.num_errors)
        self.assertEqual("tank/data: destroyed 2, failed 0, keep 2 snapshots", report.summary())

    def test_dry_run_destroys_nothing(self) -> None:
        report = self.purge(dry_run=True)
        self.assertEqual([], self.destroy_calls())
        self.assertEqual(4, len(self.backend.snapshot_names("tank/data")))
        self.assertEqual(["tank/data@t10d", "tank/data@t8d"], [e.qualified_name for e in report.would_destroy])
        self.assertEqual([], report.destroyed)
        self.assertEqual("tank/data: would destroy 2, keep 2 snapshots", report.summary())
        self.log.info.assert_any_call("Would destroy: %s", "tank/data@t10d")

    def test_snapshot_created_exactly_at_cutoff_is_kept(self) -> None:
        self.backend.add_snapshot("tank/data@cutoff", NOW - timedelta(days=7))
        self.purge()
        self.assertNotIn("tank/data@cutoff", self.destroy_calls())
        self.assertIn("tank/data@cutoff", self.backend.snapshot_names("tank/data"))

    def test_nothing_to_destroy(self) -> None:
        report = self.purge(max_age=timedelta(days=30))
        self.assertEqual([], self.destroy_calls())
        self.assertEqual(4, len(report.kept))

    def test_destroy_failure_does_not_abort(self) -> None:
        self.backend.fail_destroy.add("tank/data@t10d")
        report = self.purge()
        self.assertEqual(["tank/data@t10d", "tank/data@t8d"], self.destroy_calls())
        self.assertEqual(["tank/data@t8d"], [e.qualified_name for e in report.destroyed])
        self.assertEqual(1, report.num_errors)
        self.assertEqual("tank/data@t10d", report.failed[0][0].qualified_name)
        self.assertIn("tank/data@t10d", self.backend.snapshot_names("tank/data"))
        self.log.error.assert_called_once()

    def test_unresolvable_snapshots_are_never_destroyed(self) -> None:
        self.backend.add_snapshot("tank/data@unknown", None)
        self.purge()
        self.assertNotIn("tank/data@unknown", self.destroy_calls())

    def test_label_creation_source(self) -> None:
        self.backend.add_snapshot("tank/data@2024-01-01T00:00:00Z", NOW)  # property says new, label says old
        self.backend.add_snapshot("tank/data@2024-02-07T00:00:00Z", NOW - timedelta(days=100))
        self.purge(creation_source=CREATION_SOURCE_LABEL)
        self.assertEqual(["tank/data@2024-01-01T00:00:00Z"], self.destroy_calls())

    def test_non_positive_max_age_is_rejected(self) -> None:
        for max_age in [timedelta(0), timedelta(days=-1)]:
            with self.assertRaises(SystemExit) as cm:
                self.purge(max_age=max_age)
            self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertEqual([], self.backend.calls)
